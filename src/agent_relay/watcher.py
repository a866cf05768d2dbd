"""Session watcher: discovers session files and hands them to the tracker."""

import asyncio
import os
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from watchfiles import Change, awatch

from agent_relay.adapters import HarnessAdapter
from agent_relay.session_tracker import SessionTracker, StartResult


RECENT_WINDOW = 300.0
RETRY_RESCAN_INTERVAL = 10.0


class SessionWatcher:
    """Watches adapter roots and starts/ends tracking as files come and go.

    ``known`` holds paths the tracker accepted, ``skipped`` paths it rejected
    for good. Paths that came back ``retry_later`` are in neither; they are
    retried on their next change and by a periodic rescan, since a burst of
    writes may reach us as a single event.
    """

    def __init__(
        self,
        adapters: List[HarnessAdapter],
        tracker: SessionTracker,
        extra_watch_paths: Optional[List[str]] = None,
        recent_window: float = RECENT_WINDOW,
        rescan_interval: float = RETRY_RESCAN_INTERVAL,
    ):
        self.adapters = adapters
        self.tracker = tracker
        self.extra_watch_paths = extra_watch_paths or []
        self.recent_window = recent_window
        self.rescan_interval = rescan_interval

        self.known: Set[str] = set()
        self.skipped: Set[str] = set()
        self.retry_later: Dict[str, HarnessAdapter] = {}

        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    def watch_roots(self) -> List[str]:
        roots = []
        for adapter in self.adapters:
            roots.extend(adapter.watch_paths())
        roots.extend(str(Path(p).expanduser()) for p in self.extra_watch_paths)
        # Preserve order, drop duplicates
        return list(dict.fromkeys(roots))

    def adapter_for(self, file_path: str) -> Optional[HarnessAdapter]:
        for adapter in self.adapters:
            if adapter.recognizes_path(file_path):
                return adapter
        return None

    async def start(self) -> None:
        """Scan for recently active sessions, then follow changes."""
        self._stop_event.clear()
        roots = []
        for root in self.watch_roots():
            if not os.path.isdir(root):
                print(f"[watcher] Watch path does not exist (yet): {root}")
                continue
            print(f"[watcher] Watching: {root}")
            roots.append(root)
            await self.scan_existing(root)

        if roots:
            self._tasks.append(asyncio.create_task(self._watch(roots)))
        self._tasks.append(asyncio.create_task(self._rescan_loop()))

    async def stop(self) -> None:
        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

    async def scan_existing(self, root: str) -> None:
        """Try to start every recently modified session file under root."""
        loop = asyncio.get_running_loop()
        try:
            candidates = await loop.run_in_executor(None, self._find_recent_files, root)
        except OSError as e:
            print(f"[watcher] Error scanning {root}: {e}", file=sys.stderr)
            return

        for file_path, adapter in candidates:
            print(f"[watcher]   Found recent session, starting: {file_path}")
            await self.try_start(file_path, adapter)

    def _find_recent_files(self, root: str) -> List[Tuple[str, HarnessAdapter]]:
        now = time.time()
        found = []
        for dirpath, _, filenames in os.walk(root):
            for filename in filenames:
                file_path = os.path.join(dirpath, filename)
                adapter = self.adapter_for(file_path)
                if adapter is None:
                    continue
                try:
                    age = now - os.stat(file_path).st_mtime
                except OSError:
                    continue
                if age < self.recent_window:
                    found.append((file_path, adapter))
        return found

    async def try_start(self, file_path: str, adapter: HarnessAdapter) -> Optional[StartResult]:
        """Ask the tracker to start a file and file the outcome."""
        try:
            result = await self.tracker.start_session(file_path, adapter)
        except Exception as e:
            print(f"[watcher] Failed to start session for {file_path}: {e}", file=sys.stderr)
            self.retry_later[file_path] = adapter
            return None

        if result in (StartResult.STARTED, StartResult.ALREADY_TRACKING):
            self.known.add(file_path)
            self.retry_later.pop(file_path, None)
        elif result == StartResult.RETRY_LATER:
            self.known.discard(file_path)
            self.retry_later[file_path] = adapter
        else:
            self.skipped.add(file_path)
            self.retry_later.pop(file_path, None)
        return result

    async def handle_change(self, change: Change, file_path: str) -> None:
        """Apply one filesystem event."""
        adapter = self.adapter_for(file_path)
        if adapter is None:
            return

        if change == Change.deleted or not os.path.exists(file_path):
            self.retry_later.pop(file_path, None)
            if file_path in self.known:
                self.known.discard(file_path)
                await self.tracker.end_session(file_path)
            return

        if file_path in self.skipped:
            return
        # A known file that is no longer tracked ended on idle; its next
        # write starts it again and the server resumes the record
        if file_path in self.known and self.tracker.is_tracking(file_path):
            return

        await self.try_start(file_path, adapter)

    async def rescan_retry_later(self) -> None:
        """Re-attempt files that were not ready on their last change."""
        for file_path, adapter in list(self.retry_later.items()):
            if not os.path.exists(file_path):
                self.retry_later.pop(file_path, None)
                continue
            await self.try_start(file_path, adapter)

    async def _watch(self, roots: List[str]) -> None:
        try:
            async for changes in awatch(*roots, stop_event=self._stop_event, recursive=True):
                for change, file_path in sorted(changes, key=lambda c: c[1]):
                    try:
                        await self.handle_change(change, file_path)
                    except Exception as e:
                        print(
                            f"[watcher] Error handling change for {file_path}: {e}",
                            file=sys.stderr,
                        )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            print(f"[watcher] Watching stopped: {e}", file=sys.stderr)

    async def _rescan_loop(self) -> None:
        while not self._stop_event.is_set():
            await asyncio.sleep(self.rescan_interval)
            try:
                await self.rescan_retry_later()
            except Exception as e:
                print(f"[watcher] Retry rescan failed: {e}", file=sys.stderr)
