"""Session tracker: streams locally observed sessions to the relay server.

One TrackedSession exists per session file. Its Tail feeds lines into a FIFO
that is drained by a single consumer, so parse state and pushes for one
session are strictly ordered while different sessions run independently.
"""

import asyncio
import re
import sys
import time
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from agent_relay.adapters import HarnessAdapter, NormalizedMessage, ParseState
from agent_relay.api_client import ApiError, CreateLiveSessionRequest, LiveSessionClient
from agent_relay.git import capture_git_diff, get_repo_https_url, get_repo_identifier
from agent_relay.tail import Tail


DIFF_DEBOUNCE = 2.0
LIVE_MODE_DELAY = 2.0
MAX_RETAINED_MESSAGES = 10
DEFAULT_IDLE_TIMEOUT = 300.0
DEFAULT_TITLE = "Live Session"
COLLABORATE_PATTERN = re.compile(r"/(?:[\w-]+:)?collaborate", re.IGNORECASE)

DiffCapturer = Callable[[str, Optional[Iterable[str]]], Awaitable[Optional[str]]]


class StartResult(str, Enum):
    """Outcome of StartSession.

    RETRY_LATER means the file has no message yet (or the server was
    unreachable) and should be retried on its next change; SKIP means never
    retry, e.g. the repository is not allow-listed.
    """

    STARTED = "started"
    ALREADY_TRACKING = "already_tracking"
    RETRY_LATER = "retry_later"
    SKIP = "skip"


class TrackedSession(BaseModel):
    """Runtime state of one locally observed session."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    adapter: HarnessAdapter
    local_path: str
    project_path: str
    session_id: str
    stream_token: Optional[str] = None
    tail: Tail
    parse_state: ParseState = Field(default_factory=ParseState)
    last_activity: float = Field(default_factory=time.monotonic)
    title: str = DEFAULT_TITLE
    title_derived: bool = False
    line_queue: Deque[str] = Field(default_factory=deque)
    draining: bool = False
    diff_timer: Optional[asyncio.TimerHandle] = None
    diff_tasks: Set[asyncio.Task] = Field(default_factory=set)
    # Captures run one at a time so pushes never go backwards
    diff_lock: asyncio.Lock = Field(default_factory=asyncio.Lock)
    live_mode_timer: Optional[asyncio.TimerHandle] = None
    pump_task: Optional[asyncio.Task] = None
    messages_pushed: int = 0
    # Messages the server already held when the session was resumed
    existing_messages: int = 0
    modified_files: Set[str] = Field(default_factory=set)
    interactive: bool = False
    live_mode: bool = False


class SessionTracker:
    """Tracks active local sessions and pushes their messages upstream."""

    def __init__(
        self,
        api: LiveSessionClient,
        repo_allowed: Callable[[Optional[str]], bool],
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        diff_capturer: DiffCapturer = capture_git_diff,
        repo_identifier: Callable[[str], Awaitable[Optional[str]]] = get_repo_identifier,
        repo_url: Callable[[str], Awaitable[Optional[str]]] = get_repo_https_url,
        diff_debounce: float = DIFF_DEBOUNCE,
        live_mode_delay: float = LIVE_MODE_DELAY,
        poll_interval: float = 2.0,
    ):
        self.api = api
        self.repo_allowed = repo_allowed
        self.idle_timeout = idle_timeout
        self.diff_capturer = diff_capturer
        self.repo_identifier = repo_identifier
        self.repo_url = repo_url
        self.diff_debounce = diff_debounce
        self.live_mode_delay = live_mode_delay
        self.poll_interval = poll_interval

        self.sessions: Dict[str, TrackedSession] = {}
        self._starting: Set[str] = set()
        self._idle_task: Optional[asyncio.Task] = None

    def is_tracking(self, file_path: str) -> bool:
        return file_path in self.sessions

    async def start_session(self, file_path: str, adapter: HarnessAdapter) -> StartResult:
        """Start streaming a session file, creating or resuming its remote record."""
        if file_path in self.sessions or file_path in self._starting:
            return StartResult.ALREADY_TRACKING

        self._starting.add(file_path)
        try:
            return await self._start_session(file_path, adapter)
        finally:
            self._starting.discard(file_path)

    async def _start_session(self, file_path: str, adapter: HarnessAdapter) -> StartResult:
        info = adapter.session_info_for(file_path)

        repo_id = await self.repo_identifier(info.project_path) if info.project_path else None
        if not repo_id or not self.repo_allowed(repo_id):
            print(f"[tracker] Session skipped, repository not in allow-list: {file_path}")
            print(f"[tracker]   Path: {info.project_path or '(unknown)'}")
            print(f"[tracker]   Repo: {repo_id or '(not a git repo)'}")
            if info.project_path:
                print(
                    f"[tracker]   To allow it, run: agent-relay-daemon repo allow {info.project_path}"
                )
            return StartResult.SKIP

        if not await self._file_has_content(file_path, adapter):
            return StartResult.RETRY_LATER

        print(f"[tracker] [{adapter.name}] Session detected: {file_path}")
        repo_url = await self.repo_url(info.project_path)

        try:
            created = await self.api.create_live_session(
                CreateLiveSessionRequest(
                    title=DEFAULT_TITLE,
                    project_path=info.project_path,
                    harness_session_id=info.harness_session_id,
                    harness=adapter.id,
                    model=info.model,
                    repo_url=repo_url,
                )
            )
        except ApiError as e:
            print(f"[tracker] Failed to create session for {file_path}: {e}", file=sys.stderr)
            return StartResult.RETRY_LATER

        if created.restored:
            print(
                f"[tracker]   Restored completed session: {created.id} ({created.message_count} existing messages)"
            )
        elif created.resumed:
            print(
                f"[tracker]   Resumed live session: {created.id} ({created.message_count} existing messages)"
            )
        else:
            print(f"[tracker]   Created server session: {created.id}")

        resumed = created.resumed or created.restored
        # Resumed sessions already hold the history; only stream what comes next
        tail = Tail(file_path, start_from_end=resumed, poll_interval=self.poll_interval)
        session = TrackedSession(
            adapter=adapter,
            local_path=file_path,
            project_path=info.project_path,
            session_id=created.id,
            stream_token=created.stream_token,
            tail=tail,
            title_derived=resumed,
            existing_messages=created.message_count if resumed else 0,
        )
        self.sessions[file_path] = session

        loop = asyncio.get_running_loop()
        session.live_mode_timer = loop.call_later(
            self.live_mode_delay, self._enable_live_mode, session
        )
        session.pump_task = asyncio.create_task(self._pump(session))
        tail.start()

        if session.project_path:
            await self._scan_existing_modifications(session)
            self._start_diff_capture(session)

        return StartResult.STARTED

    async def _file_has_content(self, file_path: str, adapter: HarnessAdapter) -> bool:
        """Whether the file holds at least one line the adapter turns into a message."""
        content = await self._read_file(file_path)
        if not content or not content.strip():
            return False

        scratch = ParseState()
        for line in content.split("\n"):
            if not line.strip():
                continue
            if adapter.parse_line(line, scratch):
                return True
        return False

    async def _read_file(self, file_path: str) -> Optional[str]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, lambda: Path(file_path).read_text(encoding="utf-8", errors="replace")
            )
        except OSError:
            return None

    async def _scan_existing_modifications(self, session: TrackedSession) -> None:
        """Rebuild the modified-files set from content written before tracking began."""
        content = await self._read_file(session.local_path)
        if not content:
            return

        scratch = ParseState()
        for line in content.split("\n"):
            if not line.strip():
                continue
            messages = session.adapter.parse_line(line, scratch)
            if messages:
                self._record_modified_files(session, messages)

        if session.modified_files:
            print(
                f"[tracker]   Found {len(session.modified_files)} files already modified by {session.session_id}"
            )

    def _enable_live_mode(self, session: TrackedSession) -> None:
        session.live_mode_timer = None
        session.live_mode = True

    async def _pump(self, session: TrackedSession) -> None:
        """Move tail events into the session's line queue, in order."""
        while True:
            event = await session.tail.events.get()
            if event.kind == "error":
                print(
                    f"[tracker] Error tailing {session.local_path}: {event.error}",
                    file=sys.stderr,
                )
                continue
            await self.queue_line(session, event.line)

    async def queue_line(self, session: TrackedSession, line: str) -> None:
        """Queue a line for processing and drain the queue unless already draining."""
        session.line_queue.append(line)
        if session.draining:
            return

        session.draining = True
        try:
            while session.line_queue:
                next_line = session.line_queue.popleft()
                try:
                    await self._handle_line(session, next_line)
                except Exception as e:
                    print(
                        f"[tracker] Error processing line for {session.session_id}: {e}",
                        file=sys.stderr,
                    )
        finally:
            session.draining = False

    async def _handle_line(self, session: TrackedSession, line: str) -> None:
        if not line.strip():
            return
        session.last_activity = time.monotonic()

        state = session.parse_state
        messages = session.adapter.parse_line(line, state)

        results = state.take_attached_results()
        if results:
            await self._push_tool_results(session, results)

        if not messages:
            return

        state.add_messages(messages)

        try:
            pushed = await self.api.push_messages(
                session.session_id,
                [message.model_dump(exclude_none=True) for message in messages],
            )
            session.messages_pushed += pushed.appended
        except ApiError as e:
            print(f"[tracker] Failed to push messages for {session.session_id}: {e}", file=sys.stderr)

        if not session.title_derived and len(state.messages) >= 2:
            await self._derive_title(session)

        if session.title_derived:
            state.trim(MAX_RETAINED_MESSAGES)

        if self._record_modified_files(session, messages):
            self.schedule_diff_capture(session)

        if session.live_mode and not session.interactive:
            await self._check_collaborate(session, messages)

    async def _push_tool_results(self, session: TrackedSession, results) -> None:
        payload = [
            {
                "tool_use_id": result.tool_use_id,
                "message_index": session.existing_messages + result.message_index,
                "content": result.content,
                "is_error": result.is_error,
            }
            for result in results
        ]
        try:
            await self.api.push_tool_results(session.session_id, payload)
        except ApiError as e:
            print(
                f"[tracker] Failed to push tool results for {session.session_id}: {e}",
                file=sys.stderr,
            )

    async def _derive_title(self, session: TrackedSession) -> None:
        """Derive and publish a title once; failures are not retried."""
        messages = session.parse_state.messages
        first_user = next((m for m in messages if m.role == "user"), None)
        if first_user is None or not first_user.first_text():
            return

        title = session.adapter.derive_title(messages)
        session.title_derived = True
        if not title:
            return

        session.title = title
        try:
            await self.api.update_title(session.session_id, title)
            print(f"[tracker]   Title: {title}")
        except ApiError as e:
            print(f"[tracker] Failed to update title for {session.session_id}: {e}", file=sys.stderr)

    def _record_modified_files(
        self, session: TrackedSession, messages: List[NormalizedMessage]
    ) -> bool:
        """Record files touched by file-modifying tools. Returns True if any were seen."""
        found = False
        for message in messages:
            for block in message.content_blocks:
                if block.get("type") != "tool_use":
                    continue
                name = block.get("name")
                if name not in session.adapter.file_modifying_tools:
                    continue
                found = True
                file_path = session.adapter.extract_file_path(name, block.get("input"))
                if file_path:
                    session.modified_files.add(file_path)
        return found

    async def _check_collaborate(
        self, session: TrackedSession, messages: List[NormalizedMessage]
    ) -> None:
        for message in messages:
            if message.role != "user":
                continue
            for block in message.content_blocks:
                text = block.get("text")
                if block.get("type") == "text" and isinstance(text, str):
                    if COLLABORATE_PATTERN.search(text):
                        await self._enable_interactive(session)
                        return

    async def _enable_interactive(self, session: TrackedSession) -> None:
        try:
            await self.api.mark_interactive(session.session_id)
        except ApiError as e:
            print(
                f"[tracker] Failed to enable collaboration for {session.session_id}: {e}",
                file=sys.stderr,
            )
            return
        session.interactive = True
        print(f"[tracker]   Collaboration enabled for session: {session.session_id}")

    def schedule_diff_capture(self, session: TrackedSession) -> None:
        """Arm the debounced diff capture, replacing any pending one."""
        if session.diff_timer is not None:
            session.diff_timer.cancel()
        loop = asyncio.get_running_loop()
        session.diff_timer = loop.call_later(self.diff_debounce, self._fire_diff_capture, session)

    def _fire_diff_capture(self, session: TrackedSession) -> None:
        session.diff_timer = None
        if self.sessions.get(session.local_path) is not session:
            return
        self._start_diff_capture(session)

    def _start_diff_capture(self, session: TrackedSession) -> None:
        task = asyncio.create_task(self._capture_and_push_diff(session))
        session.diff_tasks.add(task)
        task.add_done_callback(session.diff_tasks.discard)

    async def _capture_and_push_diff(self, session: TrackedSession) -> None:
        if not session.project_path:
            return
        async with session.diff_lock:
            try:
                diff = await self.diff_capturer(session.project_path, set(session.modified_files))
                if not diff:
                    return
                await self.api.push_diff(session.session_id, diff)
            except ApiError as e:
                print(f"[tracker] Failed to push diff for {session.session_id}: {e}", file=sys.stderr)
            except OSError as e:
                print(f"[tracker] Failed to capture diff for {session.session_id}: {e}", file=sys.stderr)

    async def end_session(self, file_path: str) -> None:
        """Stop tracking a session and complete (or delete) its remote record."""
        session = self.sessions.pop(file_path, None)
        if session is None:
            return

        print(f"[tracker] [{session.adapter.name}] Session ending: {file_path}")

        if session.diff_timer is not None:
            session.diff_timer.cancel()
            session.diff_timer = None
        if session.live_mode_timer is not None:
            session.live_mode_timer.cancel()
            session.live_mode_timer = None

        await session.tail.stop()
        if session.pump_task is not None:
            session.pump_task.cancel()
            try:
                await session.pump_task
            except asyncio.CancelledError:
                pass
            session.pump_task = None

        if session.diff_tasks:
            await asyncio.gather(*session.diff_tasks, return_exceptions=True)

        if session.interactive:
            try:
                await self.api.disable_interactive(session.session_id)
                print(f"[tracker]   Collaboration disabled for session: {session.session_id}")
            except ApiError as e:
                print(f"[tracker] Failed to disable collaboration: {e}", file=sys.stderr)

        if session.messages_pushed == 0 and session.existing_messages == 0:
            print(f"[tracker]   No messages captured, deleting empty session: {session.session_id}")
            try:
                await self.api.delete_session(session.session_id)
            except ApiError as e:
                print(f"[tracker] Failed to delete empty session: {e}", file=sys.stderr)
            return

        final_diff = None
        if session.project_path:
            try:
                final_diff = await self.diff_capturer(
                    session.project_path, set(session.modified_files)
                )
            except OSError as e:
                print(f"[tracker] Failed to capture final diff: {e}", file=sys.stderr)

        try:
            await self.api.complete_session(session.session_id, final_diff=final_diff)
            print(f"[tracker]   Completed: {session.session_id}")
        except ApiError as e:
            if e.status in (401, 404):
                print(f"[tracker]   Session already completed or not found: {session.session_id}")
            else:
                print(f"[tracker] Failed to complete session: {e}", file=sys.stderr)

    async def check_idle(self) -> List[str]:
        """End every session idle for longer than the idle timeout."""
        now = time.monotonic()
        idle = [
            path
            for path, session in self.sessions.items()
            if now - session.last_activity > self.idle_timeout
        ]
        for path in idle:
            print(f"[tracker] Session idle for over {self.idle_timeout:g}s: {path}")
            await self.end_session(path)
        return idle

    def start_idle_check(self, interval: Optional[float] = None) -> None:
        if self._idle_task is not None:
            return
        self._idle_task = asyncio.create_task(
            self._idle_loop(interval or min(60.0, self.idle_timeout / 2))
        )

    async def _idle_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_idle()
            except Exception as e:
                print(f"[tracker] Idle check failed: {e}", file=sys.stderr)

    def stop_idle_check(self) -> None:
        if self._idle_task is not None:
            self._idle_task.cancel()
            self._idle_task = None

    async def stop_all(self) -> None:
        self.stop_idle_check()
        for path in list(self.sessions.keys()):
            await self.end_session(path)

    def get_active_sessions(self) -> List[Dict[str, Any]]:
        """Summaries for the daemon status file."""
        return [
            {
                "id": session.session_id,
                "title": session.title,
                "messageCount": session.existing_messages + session.messages_pushed,
            }
            for session in self.sessions.values()
        ]
