"""Incremental file tailing for append-only session transcripts.

A Tail follows one file, reads only the bytes appended since the last read,
and puts complete lines on its ``events`` queue. Partial trailing lines are
held back until their newline arrives, and a file that shrinks is treated as
truncated and re-read from the start.
"""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict
from watchfiles import awatch


DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_QUEUE_SIZE = 1000


class LineSplitter:
    """Carry-over buffer that turns arbitrary byte chunks into complete lines."""

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, chunk: bytes) -> List[str]:
        """Add a chunk and return every line it completed."""
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split(b"\n")
        return [raw.decode("utf-8", errors="replace").rstrip("\r") for raw in complete]

    def reset(self) -> None:
        self._buffer = b""

    @property
    def pending(self) -> bytes:
        return self._buffer


class TailEvent(BaseModel):
    """One item on a tail's event queue: a complete line or a read error."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: str  # 'line' or 'error'
    line: Optional[str] = None
    error: Optional[BaseException] = None


class Tail:
    """Follows a single file and emits its appended lines in order."""

    def __init__(
        self,
        file_path: Union[str, Path],
        start_from_end: bool = False,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self.file_path = Path(file_path)
        self.poll_interval = poll_interval
        self.position = 0
        self.events: "asyncio.Queue[TailEvent]" = asyncio.Queue(maxsize=queue_size)

        self._splitter = LineSplitter()
        self._reading = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

        if start_from_end:
            try:
                self.position = self.file_path.stat().st_size
            except OSError:
                self.position = 0

    def start(self) -> None:
        """Start following the file in a background task."""
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop following the file. Lines already queued stay on the queue."""
        self._stop_event.set()
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        await self.read_new_content()

        # Change notifications wake us early; the timeout doubles as the
        # polling fallback for filesystems that drop events.
        try:
            async for _ in awatch(
                self.file_path,
                stop_event=self._stop_event,
                rust_timeout=int(self.poll_interval * 1000),
                yield_on_timeout=True,
                recursive=False,
            ):
                await self.read_new_content()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            print(
                f"[tail] Change notifications unavailable for {self.file_path} ({e}), polling",
                file=sys.stderr,
            )
            await self._poll()

    async def _poll(self) -> None:
        while not self._stop_event.is_set():
            await asyncio.sleep(self.poll_interval)
            await self.read_new_content()

    async def read_new_content(self) -> int:
        """Read everything appended since the last read.

        Returns the number of lines emitted. A call made while another read
        is in progress returns 0 immediately; the running read keeps looping
        until the file stops growing, so nothing is missed.
        """
        if self._reading:
            return 0
        self._reading = True
        emitted = 0
        loop = asyncio.get_running_loop()

        try:
            while True:
                try:
                    size = self.file_path.stat().st_size
                except FileNotFoundError:
                    break

                if size < self.position:
                    self.position = 0
                    self._splitter.reset()

                if size <= self.position:
                    break

                chunk = await loop.run_in_executor(
                    None, self._read_range, self.position, size
                )
                if not chunk:
                    break
                self.position += len(chunk)

                for line in self._splitter.feed(chunk):
                    await self.events.put(TailEvent(kind="line", line=line))
                    emitted += 1
        except OSError as e:
            await self.events.put(TailEvent(kind="error", error=e))
        finally:
            self._reading = False

        return emitted

    def _read_range(self, start: int, end: int) -> bytes:
        with open(self.file_path, "rb") as f:
            f.seek(start)
            return f.read(end - start)
