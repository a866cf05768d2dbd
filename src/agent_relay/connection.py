"""Persistent duplex connection from the daemon to the relay server.

The connection advertises the daemon's capabilities as its first message,
keeps itself alive with a periodic ping, and reconnects with capped
exponential backoff after an unexpected close. Once the attempt budget is
spent it stays permanently disconnected until ``connect`` is called again.
"""

import asyncio
import json
import shutil
import sys
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from agent_relay.credentials import CLIENT_ID_HEADER, ConnectionIdentity
from agent_relay.protocol import (
    DaemonCapabilities,
    DaemonConnected,
    Ping,
    ProtocolError,
    ProtocolMessage,
    SpawnableHarnessInfo,
    parse_server_message,
)


SOCKET_PATH = "/api/daemon/ws"
MAX_RECONNECT_ATTEMPTS = 10
INITIAL_RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 30.0
HEARTBEAT_INTERVAL = 30.0
CONNECT_TIMEOUT = 15.0


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    PERMANENTLY_DISCONNECTED = "permanently_disconnected"


def detect_capabilities(harness_binary: str = "claude") -> DaemonCapabilities:
    """Advertise the harnesses this machine can spawn."""
    harnesses = []
    if shutil.which(harness_binary):
        harnesses.append(SpawnableHarnessInfo(id="claude-code", name="Claude Code"))
    return DaemonCapabilities(
        can_spawn_sessions=bool(harnesses), spawnable_harnesses=harnesses
    )


def reconnect_delay(
    attempt: int,
    initial: float = INITIAL_RECONNECT_DELAY,
    maximum: float = MAX_RECONNECT_DELAY,
) -> float:
    """Delay before reconnect attempt number ``attempt`` (1-based)."""
    return min(initial * (2 ** (attempt - 1)), maximum)


class DaemonConnection:
    """Reconnecting WebSocket carrying the daemon protocol as JSON text frames."""

    def __init__(
        self,
        server_url: str,
        identity: ConnectionIdentity,
        on_message: Callable[[ProtocolMessage], Awaitable[None]],
        capabilities: Callable[[], DaemonCapabilities] = detect_capabilities,
        on_connect: Optional[Callable[[], Awaitable[None]]] = None,
        on_disconnect: Optional[Callable[[], Awaitable[None]]] = None,
        session_factory: Optional[Callable[[], Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        connect_timeout: float = CONNECT_TIMEOUT,
    ):
        self.server_url = server_url.rstrip("/")
        self.identity = identity
        self.on_message = on_message
        self.capabilities = capabilities
        self.on_connect = on_connect
        self.on_disconnect = on_disconnect
        self.max_reconnect_attempts = max_reconnect_attempts
        self.heartbeat_interval = heartbeat_interval
        self.connect_timeout = connect_timeout

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.should_reconnect = True

        self._session_factory = session_factory or aiohttp.ClientSession
        self._sleep = sleep
        self._session: Optional[Any] = None
        self.ws: Optional[Any] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def can_resume(self) -> bool:
        """False once reconnection has been given up."""
        return self.state != ConnectionState.PERMANENTLY_DISCONNECTED

    def _socket_url(self) -> str:
        base = self.server_url.replace("http://", "ws://", 1).replace("https://", "wss://", 1)
        return f"{base}{SOCKET_PATH}"

    def _headers(self) -> dict:
        headers = {CLIENT_ID_HEADER: self.identity.client_id}
        if self.identity.token:
            headers["Authorization"] = f"Bearer {self.identity.token}"
        return headers

    async def connect(self) -> None:
        """Open the connection; failures schedule a reconnect instead of raising."""
        if self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        if self.state == ConnectionState.PERMANENTLY_DISCONNECTED:
            # A manual connect gets a fresh attempt budget
            self.reconnect_attempts = 0

        self.should_reconnect = True
        self.state = ConnectionState.CONNECTING

        if self._session is None:
            self._session = self._session_factory()

        try:
            ws = await asyncio.wait_for(
                self._session.ws_connect(
                    self._socket_url(), headers=self._headers(), heartbeat=None
                ),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            print(
                f"[daemon-ws] Handshake timed out after {self.connect_timeout:g}s",
                file=sys.stderr,
            )
            self._connect_failed()
            return
        except Exception as e:
            print(f"[daemon-ws] Failed to connect: {e}", file=sys.stderr)
            self._connect_failed()
            return

        if not self.should_reconnect:
            # disconnect() ran during the handshake
            await ws.close()
            return

        self.ws = ws
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        await self._on_connect()

    def _connect_failed(self) -> None:
        if self.state == ConnectionState.CONNECTING:
            self.state = ConnectionState.DISCONNECTED
        self._schedule_reconnect()

    async def _on_connect(self) -> None:
        print(f"[daemon-ws] Connected to {self.server_url}")
        self.state = ConnectionState.CONNECTED
        self.reconnect_attempts = 0

        await self.send(
            DaemonConnected(
                client_id=self.identity.client_id, capabilities=self.capabilities()
            )
        )
        self._start_heartbeat()

        if self.on_connect:
            await self.on_connect()

    async def _read_loop(self, ws: Any) -> None:
        """Feed incoming frames to the message handler until the socket closes."""
        try:
            async for msg in ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self._on_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    print(f"[daemon-ws] Connection error: {ws.exception()}", file=sys.stderr)
                    break
        except aiohttp.ClientError as e:
            print(f"[daemon-ws] Connection error: {e}", file=sys.stderr)

        if self.ws is ws:
            self.ws = None
            await self._on_disconnect()

    async def _on_disconnect(self) -> None:
        was_connected = self.state == ConnectionState.CONNECTED
        self._stop_heartbeat()
        if self.state != ConnectionState.PERMANENTLY_DISCONNECTED:
            self.state = ConnectionState.DISCONNECTED
        if not was_connected:
            return

        print("[daemon-ws] Disconnected")
        if self.on_disconnect:
            await self.on_disconnect()
        self._schedule_reconnect()

    async def _on_message(self, data: Any) -> None:
        """Handle one incoming protocol message."""
        if isinstance(data, (str, bytes)):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as e:
                print(f"[daemon-ws] Failed to parse message: {e}", file=sys.stderr)
                return

        try:
            message = parse_server_message(data)
        except ProtocolError as e:
            print(f"[daemon-ws] {e}", file=sys.stderr)
            return

        if message is None:
            kind = data.get("type") if isinstance(data, dict) else type(data).__name__
            print(f"[daemon-ws] Ignoring unknown message type: {kind}")
            return

        try:
            await self.on_message(message)
        except Exception as e:
            print(
                f"[daemon-ws] Error handling {message.type} message: {e}",
                file=sys.stderr,
            )

    def _schedule_reconnect(self) -> None:
        if not self.should_reconnect:
            return
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            print("[daemon-ws] Max reconnect attempts reached", file=sys.stderr)
            self.state = ConnectionState.PERMANENTLY_DISCONNECTED
            return

        self.reconnect_attempts += 1
        delay = reconnect_delay(self.reconnect_attempts)
        print(
            f"[daemon-ws] Reconnecting in {delay:g}s (attempt {self.reconnect_attempts})"
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        if self.should_reconnect:
            await self.connect()

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        """Ping the server while connected."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if self.is_connected:
                await self.send(Ping())

    async def send(self, message: ProtocolMessage) -> bool:
        """Send a message. Returns False, dropping it, when not connected."""
        if not self.is_connected or self.ws is None:
            print(
                f"[daemon-ws] Cannot send {message.type}, not connected (state: {self.state.value})",
                file=sys.stderr,
            )
            return False

        try:
            await self.ws.send_str(json.dumps(message.to_wire()))
        except Exception as e:
            print(f"[daemon-ws] Failed to send {message.type}: {e}", file=sys.stderr)
            return False
        return True

    async def disconnect(self) -> None:
        """Close the connection without reconnecting."""
        self.should_reconnect = False
        self._stop_heartbeat()
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        ws, self.ws = self.ws, None
        self.state = ConnectionState.DISCONNECTED
        if ws is not None:
            await ws.close()
        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None
        if self._session is not None:
            await self._session.close()
            self._session = None
