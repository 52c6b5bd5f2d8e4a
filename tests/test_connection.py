from __future__ import annotations

import asyncio
import json

import pytest

from chat_relay.client import ChatClient, ConnectionManager, ConnectionStatus, EventKind, ReconnectPolicy
from chat_relay.schema import Frame

_CLOSED = object()


class FakeSocket:
    """Async-iterable socket double; the test plays the server."""

    def __init__(self):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.close_code = None

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self, code=1000):
        self.drop(code)

    def push(self, frame: Frame):
        self.inbox.put_nowait(frame.to_json())

    def drop(self, code: int):
        if self.close_code is None:
            self.close_code = code
            self.inbox.put_nowait(_CLOSED)


class FakeConnector:
    """Refuses the first ``failures`` attempts, then hands out fresh sockets."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0
        self.sockets = []

    async def __call__(self, url):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionRefusedError("refused")
        ws = FakeSocket()
        self.sockets.append(ws)
        return ws


async def _until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _policy(**kw) -> ReconnectPolicy:
    kw.setdefault("delay", 0)
    kw.setdefault("max_attempts", 3)
    return ReconnectPolicy(**kw)


def test_reconnect_budget_is_never_exceeded():
    async def scenario():
        connector = FakeConnector(failures=100)
        manager = ConnectionManager("ws://relay/ws", _policy(max_attempts=3), connector=connector)
        statuses = []
        manager.status.subscribe(statuses.append)

        await manager.connect()
        assert await manager.wait_for(ConnectionStatus.DISCONNECTED, timeout=2)
        await asyncio.sleep(0.05)

        # one initial attempt plus the reconnect budget
        assert connector.calls == 4
        assert manager.attempts == 3
        assert manager.error.value == "Maximum reconnection attempts reached"
        assert not manager.reconnect_pending
        assert ConnectionStatus.CONNECTED not in statuses

    asyncio.run(scenario())


def test_normal_closure_does_not_reconnect():
    async def scenario():
        connector = FakeConnector()
        manager = ConnectionManager("ws://relay/ws", _policy(), connector=connector)
        await manager.connect()
        assert await manager.wait_for(ConnectionStatus.CONNECTED, timeout=2)

        connector.sockets[0].drop(1000)
        assert await manager.wait_for(ConnectionStatus.DISCONNECTED, timeout=2)
        await asyncio.sleep(0.05)

        assert connector.calls == 1
        assert manager.error.value is None
        assert not manager.reconnect_pending

    asyncio.run(scenario())


def test_abnormal_closure_reconnects_and_success_resets_budget():
    async def scenario():
        connector = FakeConnector(failures=2)
        manager = ConnectionManager("ws://relay/ws", _policy(max_attempts=3), connector=connector)
        await manager.connect()
        assert await manager.wait_for(ConnectionStatus.CONNECTED, timeout=2)
        assert connector.calls == 3
        assert manager.attempts == 0

        connector.sockets[0].drop(1006)
        await _until(lambda: connector.calls == 4 and manager.status.value is ConnectionStatus.CONNECTED)
        assert manager.attempts == 0

        await manager.disconnect()
        assert connector.sockets[1].close_code == 1000

    asyncio.run(scenario())


def test_disconnect_cancels_pending_reconnect():
    async def scenario():
        connector = FakeConnector(failures=100)
        manager = ConnectionManager("ws://relay/ws", _policy(delay=60), connector=connector)
        await manager.connect()
        await _until(lambda: manager.reconnect_pending)
        assert manager.status.value is ConnectionStatus.CONNECTING

        await manager.disconnect()
        assert not manager.reconnect_pending
        assert manager.status.value is ConnectionStatus.DISCONNECTED
        assert manager.error.value is None
        assert connector.calls == 1

    asyncio.run(scenario())


def test_explicit_connect_after_exhaustion_resets_budget():
    async def scenario():
        connector = FakeConnector(failures=2)
        manager = ConnectionManager("ws://relay/ws", _policy(max_attempts=1), connector=connector)
        await manager.connect()
        assert await manager.wait_for(ConnectionStatus.DISCONNECTED, timeout=2)
        assert manager.error.value == "Maximum reconnection attempts reached"

        await manager.connect()
        assert manager.error.value is None
        assert await manager.wait_for(ConnectionStatus.CONNECTED, timeout=2)
        assert connector.calls == 3
        await manager.disconnect()

    asyncio.run(scenario())


def test_send_while_not_connected_fails_without_buffering():
    async def scenario():
        connector = FakeConnector()
        manager = ConnectionManager("ws://relay/ws", _policy(), connector=connector)
        ok = await manager.send(Frame.user_message("s1", "hello"))
        assert ok is False
        assert manager.error.value == "WebSocket is not connected"

        await manager.connect()
        assert await manager.wait_for(ConnectionStatus.CONNECTED, timeout=2)
        assert connector.sockets[0].sent == []
        assert manager.error.value is None
        await manager.disconnect()

    asyncio.run(scenario())


def test_malformed_inbound_frames_are_dropped():
    async def scenario():
        connector = FakeConnector()
        manager = ConnectionManager("ws://relay/ws", _policy(), connector=connector)
        received = []
        manager.frames.subscribe(received.append)
        await manager.connect()
        assert await manager.wait_for(ConnectionStatus.CONNECTED, timeout=2)

        ws = connector.sockets[0]
        ws.inbox.put_nowait("{broken")
        ws.push(Frame.done("s1"))
        await _until(lambda: len(received) == 1)
        assert received[0].type.value == "done"
        await manager.disconnect()

    asyncio.run(scenario())


@pytest.mark.parametrize(
    "policy,expected",
    [
        (ReconnectPolicy(delay=3.0), [3.0, 3.0, 3.0]),
        (ReconnectPolicy(delay=2.0, backoff="linear"), [2.0, 4.0, 6.0]),
        (ReconnectPolicy(delay=2.0, backoff="linear", max_delay=5.0), [2.0, 4.0, 5.0]),
    ],
)
def test_delay_schedule(policy, expected):
    assert [policy.delay_for(n) for n in (1, 2, 3)] == expected


def test_policy_rejects_unknown_backoff():
    with pytest.raises(ValueError):
        ReconnectPolicy(backoff="exponential")


def test_chat_client_keeps_session_across_reconnects():
    async def scenario():
        connector = FakeConnector()
        client = ChatClient("ws://relay/ws", policy=_policy(), connector=connector, user_id="u7")
        events = []
        client.events.subscribe(lambda e: events.append((e.kind, e.text)))
        sid = client.session_id

        async with client:
            assert await client.connection.wait_for(ConnectionStatus.CONNECTED, timeout=2)
            assert await client.send_message("Book dentist tomorrow")

            first = connector.sockets[0]
            assert first.sent[0]["sessionId"] == sid
            assert first.sent[0]["userId"] == "u7"
            first.push(Frame.typing(sid))
            first.push(Frame.agent_response(sid, "Booked "))
            first.push(Frame.agent_response(sid, "for 10:00."))
            first.push(Frame.done(sid))
            await _until(lambda: events and events[-1][0] is EventKind.COMPLETE)
            assert events[-1] == (EventKind.COMPLETE, "Booked for 10:00.")

            first.drop(1006)
            await _until(lambda: len(connector.sockets) == 2 and client.status.value is ConnectionStatus.CONNECTED)
            assert client.session_id == sid
            await client.send_message("And a reminder")
            assert connector.sockets[1].sent[0]["sessionId"] == sid

            new_sid = client.new_conversation()
            assert new_sid != sid
            # late frames for the old conversation no longer reach the surface
            connector.sockets[1].push(Frame.agent_response(sid, "stale"))
            connector.sockets[1].push(Frame.error(new_sid, "Failed to generate response: boom"))
            await _until(lambda: events[-1][0] is EventKind.FAILED)
            assert all(text != "stale" for _, text in events)

        assert client.status.value is ConnectionStatus.DISCONNECTED

    asyncio.run(scenario())


def test_unexpected_connector_error_still_follows_reconnect_policy():
    calls = []

    async def broken(url):
        calls.append(url)
        raise ValueError("bad proxy configuration")

    async def scenario():
        manager = ConnectionManager("ws://relay/ws", _policy(max_attempts=2), connector=broken)
        await manager.connect()
        assert await manager.wait_for(ConnectionStatus.DISCONNECTED, timeout=2)
        assert len(calls) == 3
        assert manager.error.value == "Maximum reconnection attempts reached"

    asyncio.run(scenario())
