"""Relay daemon: owns the tracker, watcher, spawner and server connection."""

import asyncio
import os
import signal
import sys
from datetime import datetime, timezone
from typing import List, Optional

from agent_relay.adapters import HarnessAdapter, get_enabled_adapters
from agent_relay.api_client import LiveSessionClient
from agent_relay.config import DaemonSettings, is_repo_allowed
from agent_relay.connection import DaemonConnection, detect_capabilities
from agent_relay.credentials import ConnectionIdentity
from agent_relay.daemon_state import (
    DaemonError,
    DaemonStatus,
    remove_state_files,
    write_pid_file,
    write_status_file,
)
from agent_relay.protocol import (
    ControlResponse,
    DaemonCapabilities,
    EndSession,
    InterruptSession,
    PermissionResponse,
    ProtocolMessage,
    QuestionResponse,
    SendInput,
    SessionEnded,
    StartSession,
)
from agent_relay.session_tracker import SessionTracker
from agent_relay.spawned_sessions import SpawnedSessionManager
from agent_relay.watcher import SessionWatcher


STATUS_INTERVAL = 5.0
SPAWNABLE_HARNESSES = ("claude-code",)


class RelayDaemon:
    """Agent relay daemon connected to one server."""

    def __init__(
        self,
        settings: DaemonSettings,
        identity: ConnectionIdentity,
        adapters: Optional[List[HarnessAdapter]] = None,
        api: Optional[LiveSessionClient] = None,
        connection: Optional[DaemonConnection] = None,
        spawner: Optional[SpawnedSessionManager] = None,
    ):
        self.settings = settings
        self.identity = identity
        self.adapters = adapters if adapters is not None else get_enabled_adapters(settings.harnesses)
        self.api = api or LiveSessionClient(settings.server_url, identity)

        self.tracker = SessionTracker(
            self.api,
            repo_allowed=self._repo_allowed,
            idle_timeout=settings.idle_timeout,
        )
        self.watcher = SessionWatcher(
            self.adapters, self.tracker, extra_watch_paths=settings.watch_paths
        )
        self.spawner = spawner or SpawnedSessionManager(self.send)
        self.connection = connection or DaemonConnection(
            settings.server_url,
            identity,
            on_message=self.handle_server_message,
            capabilities=self._capabilities,
        )

        self.started_at = datetime.now(timezone.utc).isoformat()
        self.shutdown_requested = False
        self._shutdown_event = asyncio.Event()
        self._status_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._shutdown_done = False

    def _repo_allowed(self, repo_id: Optional[str]) -> bool:
        return is_repo_allowed(self.settings.home_dir, self.settings.server_url, repo_id)

    def _capabilities(self) -> DaemonCapabilities:
        if not self.settings.spawn_enabled:
            return DaemonCapabilities()
        return detect_capabilities(self.spawner.harness_command[0])

    async def send(self, message: ProtocolMessage) -> bool:
        return await self.connection.send(message)

    async def handle_server_message(self, message: ProtocolMessage) -> None:
        """Dispatch one command from the server to the spawned session manager."""
        if isinstance(message, StartSession):
            await self._handle_start_session(message)
        elif isinstance(message, SendInput):
            await self.spawner.send_input(message.session_id, message.content)
        elif isinstance(message, EndSession):
            await self.spawner.end_session(message.session_id)
        elif isinstance(message, InterruptSession):
            await self.spawner.interrupt_session(message.session_id)
        elif isinstance(message, PermissionResponse):
            await self.spawner.respond_to_permission(
                message.session_id, message.request_id, message.allow
            )
        elif isinstance(message, QuestionResponse):
            await self.spawner.respond_to_question(
                message.session_id, message.tool_use_id, message.answer
            )
        elif isinstance(message, ControlResponse):
            await self.spawner.respond_to_control_request(
                message.session_id, message.request_id, message.permission_result()
            )

    async def _handle_start_session(self, message: StartSession) -> None:
        error = None
        if not self.settings.spawn_enabled:
            error = "Session spawning is disabled on this daemon"
        elif message.harness and message.harness not in SPAWNABLE_HARNESSES:
            error = f"Unsupported harness: {message.harness}"

        if error:
            print(f"[daemon] Rejecting session {message.session_id}: {error}", file=sys.stderr)
            await self.send(
                SessionEnded(session_id=message.session_id, exit_code=1, reason="error", error=error)
            )
            return
        await self.spawner.start_session(message)

    def build_status(self) -> DaemonStatus:
        sessions = self.tracker.get_active_sessions()
        return DaemonStatus(
            pid=os.getpid(),
            started_at=self.started_at,
            server_url=self.settings.server_url,
            connection=self.connection.state.value,
            active_sessions=len(sessions),
            sessions=sessions,
            spawned_sessions=[
                info.model_dump(mode="json") for info in self.spawner.get_all_session_info()
            ],
        )

    def _write_status(self) -> None:
        try:
            write_status_file(self.settings.home_dir, self.build_status())
        except OSError as e:
            print(f"[daemon] Failed to write status file: {e}", file=sys.stderr)

    async def _status_loop(self) -> None:
        """Rewrite the status file periodically."""
        while not self.shutdown_requested:
            self._write_status()
            await asyncio.sleep(STATUS_INTERVAL)

    def request_shutdown(self) -> None:
        if not self.shutdown_requested:
            print("[daemon] Shutdown requested")
        self.shutdown_requested = True
        self._shutdown_event.set()

    async def run(self) -> None:
        """Run the daemon until a shutdown signal arrives."""
        if not self.adapters:
            raise DaemonError("No harness adapters enabled")

        write_pid_file(self.settings.home_dir)
        print(f"[daemon] Starting agent relay daemon for {self.settings.server_url}")
        print(f"[daemon] Enabled adapters: {', '.join(a.name for a in self.adapters)}")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown)

        try:
            await self.watcher.start()
            self.tracker.start_idle_check()
            # Local tracking runs whether or not the server is reachable
            self._connect_task = asyncio.create_task(self.connection.connect())
            self._status_task = asyncio.create_task(self._status_loop())

            print("[daemon] Daemon started. Press Ctrl+C to stop.")
            await self._shutdown_event.wait()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await self.shutdown()

    async def shutdown(self) -> None:
        """Shutdown the daemon gracefully."""
        if self._shutdown_done:
            return
        self._shutdown_done = True
        self.shutdown_requested = True
        print("[daemon] Shutting down...")

        if self._status_task is not None:
            self._status_task.cancel()
            try:
                await self._status_task
            except asyncio.CancelledError:
                pass
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
            try:
                await self._connect_task
            except asyncio.CancelledError:
                pass

        await self.watcher.stop()
        await self.tracker.stop_all()
        await self.spawner.stop_all()
        await self.connection.disconnect()
        await self.api.aclose()
        remove_state_files(self.settings.home_dir)

        print("[daemon] Daemon shutdown complete")
