"""Spawned session management.

Runs the agent CLI for sessions started from the relay server, frames its
NDJSON stdin/stdout, relays permission and control requests upstream and
routes the answers back into the running process.
"""

import asyncio
import json
import os
import re
import shutil
import signal
import sys
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from agent_relay.adapters import DEFAULT_FILE_MODIFYING_TOOLS
from agent_relay.git import capture_git_diff, get_current_branch, get_repo_https_url
from agent_relay.protocol import (
    ControlRequest,
    PermissionPrompt,
    ProtocolMessage,
    QuestionPrompt,
    SessionDiff,
    SessionEnded,
    SessionMetadata,
    SessionOutput,
    StartSession,
)
from agent_relay.tail import LineSplitter


DEFAULT_HARNESS_COMMAND = ["claude"]
MAX_HISTORY = 1000
SPAWN_GRACE = 0.1
KILL_GRACE = 5.0
DIFF_DEBOUNCE = 2.0
STDERR_TAIL_LINES = 20
QUESTION_TOOL = "AskUserQuestion"
DENIED_MESSAGE = "Denied by remote user"

GIT_MODIFYING_PATTERN = re.compile(
    r"(?:^|[\s;&|()`])git"
    r"(?:\s+-{1,2}[\w-]+(?:[= ](?!-)\S+)?)*"
    r"\s+(?:checkout|reset|restore|stash|clean|revert|merge|rebase|pull|cherry-pick|am|apply)"
    r"(?![\w-])"
)

SendToServer = Callable[[ProtocolMessage], Awaitable[Any]]


class SpawnState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    WAITING = "waiting"
    ENDING = "ending"
    ENDED = "ended"
    FAILED = "failed"


class PermissionRequest(BaseModel):
    """Legacy stdio permission request."""

    id: str
    tool: str
    description: str
    command: Optional[str] = None
    file_path: Optional[str] = None
    content: Optional[str] = None


class PendingControlRequest(BaseModel):
    """SDK-style tool approval request awaiting a remote decision."""

    request_id: str
    tool_name: str
    tool_use_id: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    decision_reason: Optional[str] = None


class SpawnedSessionInfo(BaseModel):
    id: str
    claude_session_id: Optional[str] = None
    cwd: str
    started_at: float
    state: SpawnState
    duration_seconds: int


class SpawnedSession(BaseModel):
    """Information about a running harness subprocess."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    claude_session_id: Optional[str] = None
    process: asyncio.subprocess.Process
    cwd: str
    started_at: float = Field(default_factory=time.time)
    state: SpawnState = SpawnState.STARTING
    permission_requests: Dict[str, PermissionRequest] = Field(default_factory=dict)
    control_requests: Dict[str, PendingControlRequest] = Field(default_factory=dict)
    pending_tool_use_id: Optional[str] = None
    output_history: Deque[Dict[str, Any]] = Field(default_factory=lambda: deque(maxlen=MAX_HISTORY))
    modified_files: Set[str] = Field(default_factory=set)
    splitter: LineSplitter = Field(default_factory=LineSplitter)
    stderr_tail: Deque[str] = Field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))
    launched: asyncio.Event = Field(default_factory=asyncio.Event)
    end_requested: bool = False
    force_killed: bool = False
    diff_timer: Optional[asyncio.TimerHandle] = None
    kill_timer: Optional[asyncio.TimerHandle] = None
    stdout_task: Optional[asyncio.Task] = None
    stderr_task: Optional[asyncio.Task] = None
    monitor_task: Optional[asyncio.Task] = None
    diff_tasks: Set[asyncio.Task] = Field(default_factory=set)
    diff_lock: asyncio.Lock = Field(default_factory=asyncio.Lock)


def build_args(request: StartSession) -> List[str]:
    """Harness arguments for a session; the prompt itself goes over stdin."""
    args = [
        "--output-format",
        "stream-json",
        "--input-format",
        "stream-json",
        "--verbose",
    ]
    if request.model:
        args.extend(["--model", request.model])
    if request.resume_session_id:
        args.extend(["--resume", request.resume_session_id])

    if request.permission_mode in ("relay", "auto-safe"):
        args.extend(["--permission-prompt-tool", "stdio"])
    elif request.permission_mode == "auto":
        args.append("--dangerously-skip-permissions")
    return args


def is_git_modifying_command(command: str) -> bool:
    """Whether a shell command runs a git subcommand that rewrites the working tree."""
    return bool(GIT_MODIFYING_PATTERN.search(command))


def describe_permission(data: Dict[str, Any]) -> str:
    """Human-readable description of a legacy permission request."""
    if data.get("description"):
        return str(data["description"])

    tool = str(data.get("tool") or "unknown")
    kind = tool.lower()
    if kind == "bash":
        return f"Run bash command: {data.get('command') or 'unknown'}"
    if kind == "write":
        return f"Write to file: {data.get('file_path') or 'unknown'}"
    if kind == "edit":
        return f"Edit file: {data.get('file_path') or 'unknown'}"
    if kind == "mcp":
        return f"Use MCP tool: {data.get('tool_name') or 'unknown'}"
    return f"Use {tool} tool"


def extract_question(tool_input: Any):
    """Question text and option labels from an AskUserQuestion input."""
    if not isinstance(tool_input, dict):
        return "", None

    source = tool_input
    questions = tool_input.get("questions")
    if not tool_input.get("question") and isinstance(questions, list) and questions:
        if isinstance(questions[0], dict):
            source = questions[0]

    question = source.get("question") or ""
    raw_options = source.get("options")
    if not isinstance(raw_options, list):
        return question, None

    options = []
    for option in raw_options:
        if isinstance(option, str):
            options.append(option)
        elif isinstance(option, dict) and option.get("label"):
            options.append(str(option["label"]))
    return question, options or None


class SpawnedSessionManager:
    """Spawns harness subprocesses and relays their traffic."""

    def __init__(
        self,
        send: SendToServer,
        harness_command: Optional[List[str]] = None,
        diff_capturer: Callable[[str, Optional[Iterable[str]]], Awaitable[Optional[str]]] = capture_git_diff,
        repo_url: Callable[[str], Awaitable[Optional[str]]] = get_repo_https_url,
        branch: Callable[[str], Awaitable[Optional[str]]] = get_current_branch,
        spawn_grace: float = SPAWN_GRACE,
        kill_grace: float = KILL_GRACE,
        diff_debounce: float = DIFF_DEBOUNCE,
    ):
        self.send = send
        self.harness_command = harness_command or list(DEFAULT_HARNESS_COMMAND)
        self.diff_capturer = diff_capturer
        self.repo_url = repo_url
        self.branch = branch
        self.spawn_grace = spawn_grace
        self.kill_grace = kill_grace
        self.diff_debounce = diff_debounce

        self.sessions: Dict[str, SpawnedSession] = {}

    def _current_time_ms(self) -> int:
        """Get current time in milliseconds."""
        return int(time.time() * 1000)

    async def _report_failure(self, session_id: str, error: str, exit_code: int = 1) -> None:
        print(f"[spawner] Session {session_id} failed: {error}", file=sys.stderr)
        await self.send(
            SessionEnded(session_id=session_id, exit_code=exit_code, reason="error", error=error)
        )

    async def start_session(self, request: StartSession) -> bool:
        """Spawn the harness for a remote session and send it the initial prompt.

        Returns False when the session could not be launched; the failure
        has already been reported upstream.
        """
        if request.session_id in self.sessions:
            print(f"[spawner] Session already running: {request.session_id}", file=sys.stderr)
            return False

        cwd = os.path.expanduser(request.cwd)
        if not os.path.isdir(cwd):
            await self._report_failure(request.session_id, f"Invalid working directory: {request.cwd}")
            return False

        binary = shutil.which(self.harness_command[0])
        if binary is None:
            await self._report_failure(
                request.session_id,
                f"Harness command not found: {self.harness_command[0]}",
            )
            return False

        args = build_args(request)
        command = [binary, *self.harness_command[1:], *args]
        print(f"[spawner] Starting session {request.session_id} in {cwd}")
        print(f"[spawner] Command: {' '.join(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=os.environ.copy(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            await self._report_failure(request.session_id, f"Failed to start harness: {e}")
            return False

        session = SpawnedSession(id=request.session_id, process=process, cwd=cwd)
        self.sessions[session.id] = session
        session.stdout_task = asyncio.create_task(self._read_stdout(session))
        session.stderr_task = asyncio.create_task(self._read_stderr(session))
        session.monitor_task = asyncio.create_task(self._monitor(session))

        prompt_message = {
            "type": "user",
            "message": {"role": "user", "content": request.prompt},
        }
        await self._write(session, prompt_message)
        session.output_history.append(prompt_message)
        await self.send(SessionOutput(session_id=session.id, messages=[prompt_message]))

        await asyncio.sleep(self.spawn_grace)
        if process.returncode is not None:
            # Exited inside the grace window: a launch failure, not a finished run
            await asyncio.gather(session.stdout_task, session.stderr_task, return_exceptions=True)
            session.state = SpawnState.FAILED
            self.sessions.pop(session.id, None)
            session.launched.set()
            error = f"Harness exited immediately with code {process.returncode}"
            if session.stderr_tail:
                error += f": {session.stderr_tail[-1]}"
            await self._report_failure(session.id, error, exit_code=process.returncode or 1)
            return False

        session.launched.set()
        return True

    async def _write(self, session: SpawnedSession, payload: Dict[str, Any]) -> bool:
        """Write one framed message to the harness stdin."""
        stdin = session.process.stdin
        if stdin is None or stdin.is_closing():
            print(f"[spawner] Stdin closed for session {session.id}", file=sys.stderr)
            return False
        try:
            stdin.write((json.dumps(payload) + "\n").encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            print(f"[spawner] Failed to write to session {session.id}: {e}", file=sys.stderr)
            return False
        return True

    async def _read_stdout(self, session: SpawnedSession) -> None:
        stdout = session.process.stdout
        try:
            while True:
                chunk = await stdout.read(65536)
                if not chunk:
                    break
                await self._handle_output_lines(session, session.splitter.feed(chunk))

            leftover = session.splitter.pending
            session.splitter.reset()
            if leftover.strip():
                await self._handle_output_lines(session, [leftover.decode("utf-8", errors="replace")])
        except Exception as e:
            print(f"[spawner] Error reading stdout of {session.id}: {e}", file=sys.stderr)

    async def _handle_output_lines(self, session: SpawnedSession, lines: List[str]) -> None:
        messages = []
        for line in lines:
            if not line.strip():
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError as e:
                print(f"[spawner] Failed to parse line from {session.id}: {e}", file=sys.stderr)
                continue
            if not isinstance(message, dict):
                continue

            messages.append(message)
            session.output_history.append(message)
            try:
                await self._classify(session, message)
            except Exception as e:
                print(
                    f"[spawner] Error handling {message.get('type')} message from {session.id}: {e}",
                    file=sys.stderr,
                )

        if messages:
            await self.send(SessionOutput(session_id=session.id, messages=messages))

    async def _read_stderr(self, session: SpawnedSession) -> None:
        stderr = session.process.stderr
        try:
            while True:
                raw = await stderr.readline()
                if not raw:
                    break
                text = raw.decode("utf-8", errors="replace").rstrip()
                if text:
                    session.stderr_tail.append(text)
                    print(f"[spawner {session.id}] stderr: {text}", file=sys.stderr)
        except Exception as e:
            print(f"[spawner] Error reading stderr of {session.id}: {e}", file=sys.stderr)

    async def _classify(self, session: SpawnedSession, message: Dict[str, Any]) -> None:
        """Update session state from one harness message and relay what needs a human."""
        kind = message.get("type")

        if kind == "system":
            if message.get("subtype") == "init" and message.get("session_id"):
                session.claude_session_id = message["session_id"]
                session.state = SpawnState.RUNNING
                print(
                    f"[spawner] Session {session.id} initialized, harness session: {session.claude_session_id}"
                )
                await self._send_metadata(session)
            elif message.get("subtype") == "permission_request" or message.get("permission_request"):
                await self._handle_permission_request(session, message)
            return

        if kind == "control_request":
            await self._handle_control_request(session, message)
            return

        if kind == "result":
            session.state = SpawnState.WAITING
            return

        if kind == "assistant":
            if session.state != SpawnState.ENDING:
                session.state = SpawnState.RUNNING
            content = (message.get("message") or {}).get("content")
            if isinstance(content, list):
                await self._scan_tool_uses(session, content)

    async def _scan_tool_uses(self, session: SpawnedSession, content: List[Any]) -> None:
        needs_diff = False
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                continue
            name = block.get("name")
            tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}

            if name == QUESTION_TOOL and block.get("id"):
                session.pending_tool_use_id = block["id"]
                question, options = extract_question(tool_input)
                await self.send(
                    QuestionPrompt(
                        session_id=session.id,
                        tool_use_id=block["id"],
                        question=question,
                        options=options,
                    )
                )
            elif name in DEFAULT_FILE_MODIFYING_TOOLS:
                needs_diff = True
                file_path = tool_input.get("file_path") or tool_input.get("notebook_path")
                if isinstance(file_path, str) and file_path:
                    session.modified_files.add(file_path)
            elif name == "Bash" and isinstance(tool_input.get("command"), str):
                if is_git_modifying_command(tool_input["command"]):
                    needs_diff = True

        if needs_diff:
            self._schedule_diff(session)

    async def _send_metadata(self, session: SpawnedSession) -> None:
        repo_url = await self.repo_url(session.cwd)
        branch = await self.branch(session.cwd)
        await self.send(
            SessionMetadata(
                session_id=session.id,
                agent_session_id=session.claude_session_id,
                repo_url=repo_url,
                branch=branch,
            )
        )

    async def _handle_permission_request(self, session: SpawnedSession, message: Dict[str, Any]) -> None:
        data = message.get("permission_request")
        if not isinstance(data, dict):
            data = message

        request_id = data.get("request_id") or data.get("id") or f"perm-{self._current_time_ms()}"
        request = PermissionRequest(
            id=request_id,
            tool=data.get("tool") or "unknown",
            description=describe_permission(data),
            command=data.get("command"),
            file_path=data.get("file_path"),
            content=data.get("content"),
        )
        session.permission_requests[request_id] = request
        print(f"[spawner] Permission request {request_id} for tool {request.tool}: {request.description}")

        details = {
            "command": request.command,
            "file_path": request.file_path,
            "content": request.content[:500] if request.content else None,
        }
        await self.send(
            PermissionPrompt(
                session_id=session.id,
                request_id=request_id,
                tool=request.tool,
                description=request.description,
                details={k: v for k, v in details.items() if v is not None},
            )
        )

    async def _handle_control_request(self, session: SpawnedSession, message: Dict[str, Any]) -> None:
        request_id = message.get("request_id")
        request = message.get("request")
        if not request_id or not isinstance(request, dict):
            print(f"[spawner] Malformed control_request from {session.id}", file=sys.stderr)
            return

        session.control_requests[request_id] = PendingControlRequest(
            request_id=request_id,
            tool_name=request.get("tool_name") or "unknown",
            tool_use_id=request.get("tool_use_id"),
            input=request.get("input") if isinstance(request.get("input"), dict) else {},
            decision_reason=request.get("decision_reason"),
        )
        print(
            f"[spawner] Control request {request_id} for tool {request.get('tool_name')} in {session.id}"
        )
        await self.send(ControlRequest(session_id=session.id, request_id=request_id, request=request))

    async def respond_to_control_request(
        self, session_id: str, request_id: str, result: Dict[str, Any]
    ) -> bool:
        """Answer a pending control request with a PermissionResult-shaped decision."""
        session = self.sessions.get(session_id)
        if session is None:
            print(f"[spawner] Session not found for control response: {session_id}", file=sys.stderr)
            return False

        pending = session.control_requests.pop(request_id, None)
        if pending is None:
            print(f"[spawner] Control request not found: {request_id}", file=sys.stderr)
            return False

        decision = dict(result)
        if decision.get("behavior") == "allow":
            decision.setdefault("updatedInput", pending.input)
        else:
            decision["behavior"] = "deny"
            decision.setdefault("message", DENIED_MESSAGE)

        written = await self._write(
            session,
            {
                "type": "control_response",
                "response": {
                    "subtype": "success",
                    "request_id": request_id,
                    "response": decision,
                },
            },
        )
        if written:
            print(f"[spawner] Sent control response for {request_id}: {decision['behavior']}")
        return written

    async def respond_to_permission(self, session_id: str, request_id: str, allow: bool) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            print(f"[spawner] Session not found for permission response: {session_id}", file=sys.stderr)
            return False

        if request_id in session.control_requests:
            decision = {"behavior": "allow"} if allow else {"behavior": "deny"}
            return await self.respond_to_control_request(session_id, request_id, decision)

        if session.permission_requests.pop(request_id, None) is None:
            print(f"[spawner] Permission request not found: {request_id}", file=sys.stderr)
            return False

        written = await self._write(
            session, {"type": "permission_response", "request_id": request_id, "allow": allow}
        )
        if written:
            print(f"[spawner] Sent permission response for {request_id}: {'allow' if allow else 'deny'}")
        return written

    async def inject_tool_result(self, session_id: str, tool_use_id: str, result: str) -> bool:
        """Answer a pending question by handing the harness a tool_result turn."""
        session = self.sessions.get(session_id)
        if session is None:
            print(f"[spawner] Session not found for tool result: {session_id}", file=sys.stderr)
            return False

        written = await self._write(
            session,
            {
                "type": "user",
                "message": {
                    "role": "user",
                    "content": [{"type": "tool_result", "tool_use_id": tool_use_id, "content": result}],
                },
            },
        )
        if written:
            if session.pending_tool_use_id == tool_use_id:
                session.pending_tool_use_id = None
            print(f"[spawner] Injected tool result for {tool_use_id}")
        return written

    async def respond_to_question(self, session_id: str, tool_use_id: str, answer: str) -> bool:
        return await self.inject_tool_result(session_id, tool_use_id, answer)

    async def send_input(self, session_id: str, content: str) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            print(f"[spawner] Session not found: {session_id}", file=sys.stderr)
            return False

        written = await self._write(
            session, {"type": "user", "message": {"role": "user", "content": content}}
        )
        if written:
            session.state = SpawnState.RUNNING
            print(f"[spawner] Sent input to session {session_id}")
        return written

    async def interrupt_session(self, session_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            print(f"[spawner] Session not found: {session_id}", file=sys.stderr)
            return

        print(f"[spawner] Interrupting session {session_id}")
        try:
            session.process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            pass

    async def end_session(self, session_id: str) -> None:
        """Close the harness stdin and kill it if it has not exited after the grace period."""
        session = self.sessions.get(session_id)
        if session is None:
            print(f"[spawner] Session not found: {session_id}", file=sys.stderr)
            return
        if session.end_requested:
            return

        session.end_requested = True
        session.state = SpawnState.ENDING
        if session.process.stdin is not None and not session.process.stdin.is_closing():
            session.process.stdin.close()

        loop = asyncio.get_running_loop()
        session.kill_timer = loop.call_later(self.kill_grace, self._force_kill, session)

    def _force_kill(self, session: SpawnedSession) -> None:
        session.kill_timer = None
        if session.process.returncode is not None:
            return
        print(f"[spawner] Force killing session {session.id}")
        session.force_killed = True
        try:
            session.process.kill()
        except ProcessLookupError:
            pass

    async def _monitor(self, session: SpawnedSession) -> None:
        """Wait for the process to exit and report how it ended."""
        await asyncio.gather(session.stdout_task, session.stderr_task, return_exceptions=True)
        exit_code = await session.process.wait()
        await session.launched.wait()
        if session.state == SpawnState.FAILED:
            return
        await self._on_exit(session, exit_code)

    async def _on_exit(self, session: SpawnedSession, exit_code: int) -> None:
        last_state = session.state
        if session.kill_timer is not None:
            session.kill_timer.cancel()
            session.kill_timer = None

        if session.diff_timer is not None:
            session.diff_timer.cancel()
            session.diff_timer = None
            self._start_diff(session)
        if session.diff_tasks:
            await asyncio.gather(*session.diff_tasks, return_exceptions=True)

        self.sessions.pop(session.id, None)

        error = None
        if session.force_killed:
            reason = "timeout"
            error = f"Killed after not exiting within {self.kill_grace:g}s"
        elif session.end_requested:
            reason = "user_terminated"
        elif exit_code == 0:
            reason = "completed"
        else:
            reason = "error"
            error = f"Exited with code {exit_code} while {last_state.value}"
            if session.stderr_tail:
                error += ": " + " | ".join(list(session.stderr_tail)[-3:])
        session.state = SpawnState.FAILED if reason == "error" else SpawnState.ENDED

        print(f"[spawner] Session {session.id} ended with code {exit_code} ({reason})")
        await self.send(
            SessionEnded(session_id=session.id, exit_code=exit_code, reason=reason, error=error)
        )

    def _schedule_diff(self, session: SpawnedSession) -> None:
        if session.diff_timer is not None:
            session.diff_timer.cancel()
        loop = asyncio.get_running_loop()
        session.diff_timer = loop.call_later(self.diff_debounce, self._fire_diff, session)

    def _fire_diff(self, session: SpawnedSession) -> None:
        session.diff_timer = None
        if session.state in (SpawnState.ENDED, SpawnState.FAILED):
            return
        self._start_diff(session)

    def _start_diff(self, session: SpawnedSession) -> None:
        task = asyncio.create_task(self._capture_and_send_diff(session))
        session.diff_tasks.add(task)
        task.add_done_callback(session.diff_tasks.discard)

    async def _capture_and_send_diff(self, session: SpawnedSession) -> None:
        async with session.diff_lock:
            try:
                diff = await self.diff_capturer(session.cwd, set(session.modified_files))
            except OSError as e:
                print(f"[spawner] Failed to capture diff for {session.id}: {e}", file=sys.stderr)
                return
            if not diff:
                return
            await self.send(
                SessionDiff(
                    session_id=session.id,
                    diff=diff,
                    modified_files=sorted(session.modified_files),
                )
            )

    def get_session(self, session_id: str) -> Optional[SpawnedSession]:
        return self.sessions.get(session_id)

    def _info(self, session: SpawnedSession) -> SpawnedSessionInfo:
        return SpawnedSessionInfo(
            id=session.id,
            claude_session_id=session.claude_session_id,
            cwd=session.cwd,
            started_at=session.started_at,
            state=session.state,
            duration_seconds=int(time.time() - session.started_at),
        )

    def get_session_info(self, session_id: str) -> Optional[SpawnedSessionInfo]:
        session = self.sessions.get(session_id)
        return self._info(session) if session else None

    def get_all_session_info(self) -> List[SpawnedSessionInfo]:
        return [self._info(session) for session in self.sessions.values()]

    def get_session_history(self, session_id: str, from_index: int = 0) -> List[Dict[str, Any]]:
        """Output history for replay to a reconnecting viewer."""
        session = self.sessions.get(session_id)
        if session is None:
            return []
        return list(session.output_history)[from_index:]

    async def stop_all(self) -> None:
        """End every session and wait for their processes to exit."""
        monitors = []
        for session in list(self.sessions.values()):
            await self.end_session(session.id)
            if session.monitor_task is not None:
                monitors.append(session.monitor_task)
        if monitors:
            await asyncio.gather(*monitors, return_exceptions=True)
