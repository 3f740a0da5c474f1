import asyncio
import pytest

from server.websocket_manager import Connection, WebSocketManager
from shared.models import EventName, TimerState, WSEvent
from tests.test_helpers import FakeWebSocket


@pytest.mark.asyncio
async def test_connection_send_event_serializes_models():
    ws = FakeWebSocket()
    conn = Connection(ws, "c1")
    await conn.send_event(WSEvent(event=EventName.TIMER_STATE, data=TimerState(duration=5000, remaining_time=5000)))
    assert ws.sent[-1]["event"] == "timer-state"
    assert ws.sent[-1]["data"]["remainingTime"] == 5000
    assert "remaining_time" not in ws.sent[-1]["data"]


@pytest.mark.asyncio
async def test_manager_add_remove_count_list_get():
    mgr = WebSocketManager()
    c1 = Connection(FakeWebSocket(), "u1")
    await mgr.add("u1", c1)
    assert await mgr.count() == 1
    assert "u1" in await mgr.list_ids()
    assert await mgr.get("u1") is c1
    assert await mgr.remove("u1")
    assert await mgr.remove("u1") is False
    assert await mgr.list_ids() == []


@pytest.mark.asyncio
async def test_send_to_one():
    mgr = WebSocketManager()
    a, b = FakeWebSocket(), FakeWebSocket()
    await mgr.add("a", Connection(a, "a"))
    await mgr.add("b", Connection(b, "b"))
    assert await mgr.send("a", WSEvent(event=EventName.COUNTDOWN, data=3))
    assert a.values("countdown") == [3]
    assert b.sent == []
    assert await mgr.send("missing", WSEvent(event=EventName.COUNTDOWN, data=3)) is False


@pytest.mark.asyncio
async def test_broadcast_reports_failed_connections():
    mgr = WebSocketManager()
    good = FakeWebSocket()
    await mgr.add("good", Connection(good, "good"))
    await mgr.add("bad", Connection(FakeWebSocket(fail=True), "bad"))

    # should not raise despite the bad sender
    failed = await mgr.broadcast(WSEvent(event=EventName.CLIENTS_COUNT, data=2))
    assert failed == ["bad"]
    assert good.values("clients-count") == [2]


@pytest.mark.asyncio
async def test_broadcast_with_no_connections():
    mgr = WebSocketManager()
    assert await mgr.broadcast(WSEvent(event=EventName.COUNTDOWN, data=None)) == []


@pytest.mark.asyncio
async def test_broadcast_times_out_stalled_connection():
    mgr = WebSocketManager()
    good, stuck = FakeWebSocket(), FakeWebSocket()
    stuck.stalled = True
    await mgr.add("good", Connection(good, "good"))
    await mgr.add("stuck", Connection(stuck, "stuck", send_timeout=0.05))

    failed = await asyncio.wait_for(mgr.broadcast(WSEvent(event=EventName.COUNTDOWN, data=3)), 1.0)
    assert failed == ["stuck"]
    assert good.values("countdown") == [3]
