"""Tests for the reconnecting daemon connection."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import aiohttp
import pytest

from agent_relay.connection import (
    ConnectionState,
    DaemonConnection,
    reconnect_delay,
)
from agent_relay.credentials import ConnectionIdentity
from agent_relay.protocol import (
    DaemonCapabilities,
    EndSession,
    SessionOutput,
    SpawnableHarnessInfo,
)


class FakeWebSocket:
    """In-memory stand-in for aiohttp's ClientWebSocketResponse."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send_str(self, data):
        self.sent.append(json.loads(data))

    def feed(self, text):
        self._incoming.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=text))

    def drop(self):
        """Simulate the server closing the connection."""
        self._incoming.put_nowait(None)

    async def close(self):
        self.closed = True
        self._incoming.put_nowait(None)

    def exception(self):
        return None

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self._incoming.get()
        if msg is None:
            raise StopAsyncIteration
        return msg


class FakeSession:
    """In-memory stand-in for aiohttp.ClientSession."""

    def __init__(self, fail_connects=0, always_fail=False, stall=False):
        self.fail_connects = fail_connects
        self.always_fail = always_fail
        self.stall = stall
        self.sockets = []
        self.connect_calls = 0
        self.connect_args = None
        self.closed = False

    async def ws_connect(self, url, **kwargs):
        self.connect_calls += 1
        self.connect_args = (url, kwargs)
        if self.stall:
            await asyncio.Event().wait()
        if self.always_fail or self.connect_calls <= self.fail_connects:
            raise aiohttp.ClientConnectionError("connection refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    async def close(self):
        self.closed = True

    @property
    def ws(self):
        return self.sockets[-1]

    @property
    def sent(self):
        return [frame for ws in self.sockets for frame in ws.sent]


def capabilities():
    return DaemonCapabilities(
        can_spawn_sessions=True,
        spawnable_harnesses=[SpawnableHarnessInfo(id="claude-code", name="Claude Code")],
    )


def make_connection(fake, on_message=None, **kwargs):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    connection = DaemonConnection(
        "https://relay.example.com/",
        ConnectionIdentity(client_id="client-1", token="tok"),
        on_message=on_message or AsyncMock(),
        capabilities=capabilities,
        session_factory=lambda: fake,
        sleep=fake_sleep,
        **kwargs,
    )
    return connection, sleeps


def test_reconnect_delay_doubles_and_caps():
    assert [reconnect_delay(n) for n in range(1, 11)] == [1, 2, 4, 8, 16, 30, 30, 30, 30, 30]


@pytest.mark.asyncio
async def test_capabilities_are_the_first_frame():
    fake = FakeSession()
    connection, _ = make_connection(fake)

    await connection.connect()

    assert connection.is_connected
    frame = fake.ws.sent[0]
    assert frame["type"] == "daemon_connected"
    assert frame["client_id"] == "client-1"
    assert frame["capabilities"]["can_spawn_sessions"] is True

    url, kwargs = fake.connect_args
    assert url == "wss://relay.example.com/api/daemon/ws"
    assert kwargs["headers"] == {
        "X-Relay-Client-ID": "client-1",
        "Authorization": "Bearer tok",
    }
    assert kwargs["heartbeat"] is None
    await connection.disconnect()


@pytest.mark.asyncio
async def test_plain_http_maps_to_ws_without_token():
    fake = FakeSession()
    connection = DaemonConnection(
        "http://localhost:3000",
        ConnectionIdentity(client_id="client-1"),
        on_message=AsyncMock(),
        capabilities=capabilities,
        session_factory=lambda: fake,
    )

    await connection.connect()

    url, kwargs = fake.connect_args
    assert url == "ws://localhost:3000/api/daemon/ws"
    assert kwargs["headers"] == {"X-Relay-Client-ID": "client-1"}
    await connection.disconnect()


@pytest.mark.asyncio
async def test_backoff_then_permanent_disconnect(wait_until):
    fake = FakeSession(always_fail=True)
    connection, sleeps = make_connection(fake)

    await connection.connect()
    await wait_until(lambda: connection.state == ConnectionState.PERMANENTLY_DISCONNECTED)

    assert sleeps == [1, 2, 4, 8, 16, 30, 30, 30, 30, 30]
    assert fake.connect_calls == 11
    assert not connection.can_resume


@pytest.mark.asyncio
async def test_manual_connect_after_giving_up_gets_a_fresh_budget(wait_until):
    fake = FakeSession(always_fail=True)
    connection, sleeps = make_connection(fake, max_reconnect_attempts=3)

    await connection.connect()
    await wait_until(lambda: connection.state == ConnectionState.PERMANENTLY_DISCONNECTED)
    assert fake.connect_calls == 4

    await connection.connect()
    await wait_until(
        lambda: fake.connect_calls == 8
        and connection.state == ConnectionState.PERMANENTLY_DISCONNECTED
    )

    assert sleeps == [1, 2, 4, 1, 2, 4]


@pytest.mark.asyncio
async def test_stalled_handshake_times_out_and_retries(wait_until):
    fake = FakeSession(stall=True)
    connection, sleeps = make_connection(
        fake, connect_timeout=0.01, max_reconnect_attempts=2
    )

    await connection.connect()
    await wait_until(lambda: connection.state == ConnectionState.PERMANENTLY_DISCONNECTED)

    assert fake.connect_calls == 3
    assert sleeps == [1, 2]


@pytest.mark.asyncio
async def test_reconnects_after_transient_failures(wait_until):
    fake = FakeSession(fail_connects=2)
    connection, sleeps = make_connection(fake)

    await connection.connect()
    await wait_until(lambda: connection.is_connected)

    assert sleeps == [1, 2]
    assert connection.reconnect_attempts == 0
    await connection.disconnect()


@pytest.mark.asyncio
async def test_dropped_connection_reconnects(wait_until):
    fake = FakeSession()
    on_disconnect = AsyncMock()
    connection, sleeps = make_connection(fake, on_disconnect=on_disconnect)
    await connection.connect()

    fake.ws.drop()
    await wait_until(lambda: fake.connect_calls == 2 and connection.is_connected)

    on_disconnect.assert_awaited_once()
    assert sleeps == [1]
    # Capabilities are re-sent on every connection
    assert [frame["type"] for frame in fake.sent] == ["daemon_connected", "daemon_connected"]
    await connection.disconnect()


@pytest.mark.asyncio
async def test_explicit_disconnect_does_not_reconnect():
    fake = FakeSession()
    connection, sleeps = make_connection(fake)
    await connection.connect()
    ws = fake.ws

    await connection.disconnect()
    await asyncio.sleep(0.05)

    assert connection.state == ConnectionState.DISCONNECTED
    assert ws.closed
    assert fake.closed
    assert fake.connect_calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_send_is_dropped_when_not_connected():
    fake = FakeSession()
    connection, _ = make_connection(fake)

    sent = await connection.send(SessionOutput(session_id="s1", messages=[]))

    assert sent is False
    assert fake.sockets == []


@pytest.mark.asyncio
async def test_frames_are_flat_json_objects():
    fake = FakeSession()
    connection, _ = make_connection(fake)
    await connection.connect()

    sent = await connection.send(
        SessionOutput(session_id="s1", messages=[{"role": "assistant"}])
    )

    assert sent is True
    assert fake.ws.sent[-1] == {
        "type": "session_output",
        "session_id": "s1",
        "messages": [{"role": "assistant"}],
    }
    await connection.disconnect()


@pytest.mark.asyncio
async def test_heartbeat_pings_while_connected(wait_until):
    fake = FakeSession()
    connection, _ = make_connection(fake, heartbeat_interval=0.02)
    await connection.connect()

    await wait_until(lambda: any(frame["type"] == "ping" for frame in fake.ws.sent))
    await connection.disconnect()


@pytest.mark.asyncio
async def test_incoming_frames_are_dispatched(wait_until):
    fake = FakeSession()
    on_message = AsyncMock()
    connection, _ = make_connection(fake, on_message=on_message)
    await connection.connect()

    fake.ws.feed(json.dumps({"type": "end_session", "session_id": "s1"}))
    fake.ws.feed(json.dumps({"type": "something_new", "session_id": "s2"}))
    fake.ws.feed(json.dumps({"type": "end_session"}))
    fake.ws.feed("{not json")
    fake.ws.feed(json.dumps({"type": "end_session", "session_id": "s3"}))
    await wait_until(lambda: on_message.await_count == 2)

    dispatched = [call.args[0] for call in on_message.await_args_list]
    assert all(isinstance(m, EndSession) for m in dispatched)
    assert [m.session_id for m in dispatched] == ["s1", "s3"]
    assert connection.is_connected
    await connection.disconnect()


@pytest.mark.asyncio
async def test_handler_errors_do_not_break_the_connection(wait_until):
    fake = FakeSession()
    on_message = AsyncMock(side_effect=RuntimeError("boom"))
    connection, _ = make_connection(fake, on_message=on_message)
    await connection.connect()

    fake.ws.feed(json.dumps({"type": "end_session", "session_id": "s1"}))
    fake.ws.feed(json.dumps({"type": "end_session", "session_id": "s2"}))
    await wait_until(lambda: on_message.await_count == 2)

    assert connection.is_connected
    await connection.disconnect()
