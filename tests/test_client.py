import asyncio
import json

import pytest

from client import client as client_module
from client.client import SyncClient, backoff_delay, ws_url
from client.config import ClientSettings
from client.projection import time_left
from shared.models import DeviceRole, TimerState
from tests.test_helpers import FakeClock


def make_settings(**overrides):
    values = dict(
        server_url="http://timer.local:3001",
        device_name="Tab1",
        device_role=DeviceRole.CONTROLLER,
        reconnect_attempts=3,
        reconnect_delay=1.0,
        reconnect_delay_max=5.0,
        sample_interval=0.01,
    )
    values.update(overrides)
    return ClientSettings.model_construct(**values)


def timer_frame(**state):
    return {"event": "timer-state", "data": TimerState(**state).model_dump(mode="json", by_alias=True)}


class FakeWS:
    """Client-side websocket: replays `incoming` frames, records sends."""

    def __init__(self, incoming=()):
        self.sent = []
        self._incoming = list(incoming)
        self.closed = False

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self

    async def __anext__(self):
        # yield control so the client can act between frames
        await asyncio.sleep(0)
        if not self._incoming:
            raise StopAsyncIteration
        return self._incoming.pop(0)


class OpenWS(FakeWS):
    """Stays open after replaying its frames until `close()` is called."""

    def __init__(self, incoming=()):
        super().__init__(incoming)
        self._closed = asyncio.Event()

    async def close(self):
        self.closed = True
        self._closed.set()

    async def __anext__(self):
        await asyncio.sleep(0)
        if self._incoming:
            return self._incoming.pop(0)
        await self._closed.wait()
        raise StopAsyncIteration


class CM:
    def __init__(self, ws):
        self._ws = ws

    async def __aenter__(self):
        return self._ws

    async def __aexit__(self, exc_type, exc, tb):
        return False


def test_ws_url_variants():
    assert ws_url("http://host:3001") == "ws://host:3001/ws"
    assert ws_url("https://host/") == "wss://host/ws"
    assert ws_url("ws://host:3001/ws") == "ws://host:3001/ws"


def test_backoff_delay_is_capped():
    assert [backoff_delay(n, 1.0, 5.0) for n in range(6)] == [1.0, 1.0, 2.0, 4.0, 5.0, 5.0]


def test_time_left_projection():
    idle = TimerState(duration=60_000, remaining_time=42_000)
    assert time_left(idle, 123) == 42_000

    running = TimerState(running=True, duration=60_000, remaining_time=60_000, end_time=10_000)
    assert time_left(running, 4_000) == 6_000
    assert time_left(running, 20_000) == 0


def test_two_clients_agree_on_time_left():
    clock = FakeClock()
    frame = timer_frame(running=True, duration=60_000, remaining_time=60_000, end_time=clock.now + 30_000)
    a = SyncClient(make_settings(), clock=clock)
    b = SyncClient(make_settings(device_name="Tab2"), clock=clock)
    a.handle_event(frame)
    clock.advance(3)
    b.handle_event(json.dumps(frame))
    clock.advance(1_000)
    a.refresh_time_left()
    b.refresh_time_left()
    assert a.time_left == b.time_left == 28_997


def test_timer_state_replaces_mirror():
    clock = FakeClock()
    c = SyncClient(make_settings(), clock=clock)
    c.handle_event(timer_frame(running=True, duration=5_000, remaining_time=5_000, end_time=clock.now + 5_000))
    assert c.time_left == 5_000
    c.handle_event(timer_frame(paused=True, duration=5_000, remaining_time=1_200))
    assert c.timer_state.running is False
    assert c.timer_state.end_time is None
    assert c.time_left == 1_200


def test_other_events_update_mirror_and_notify():
    seen = []
    c = SyncClient(make_settings(), on_change=lambda cl: seen.append(cl.countdown_value))
    assert c.handle_event({"event": "countdown", "data": 3})
    assert c.handle_event({"event": "clients-count", "data": 4})
    assert c.handle_event({"event": "devices-update", "data": [{"id": "x", "name": "Tab1", "role": "display"}]})
    assert c.countdown_value == 3
    assert c.clients_count == 4
    assert c.devices[0].role == DeviceRole.DISPLAY
    assert len(seen) == 3


def test_malformed_server_frames_raise_value_error():
    c = SyncClient(make_settings())
    for bad in ('{"event": "countdown", "data": "three"}', {"event": "nope"}, "not json",
                {"event": "timer-state", "data": {"running": "maybe"}}):
        with pytest.raises(ValueError):
            c.handle_event(bad)
    assert c.timer_state is None


def test_client_bound_commands_are_ignored():
    c = SyncClient(make_settings())
    assert c.handle_event({"event": "stop-timer"}) is False


def test_commands_dropped_while_disconnected():
    c = SyncClient(make_settings())
    assert asyncio.run(c.start_timer(5000)) is False


def test_commands_sent_while_connected():
    c = SyncClient(make_settings())
    ws = FakeWS()
    c._ws = ws
    c.connected = True

    async def go():
        await c.start_timer(5000)
        await c.stop_timer()
        await c.set_duration(90_000)
        await c.start_countdown()
        await c.clear_countdown()
        await c.reset_timer()
        await c.start_timer()

    asyncio.run(go())
    assert [m["event"] for m in ws.sent] == [
        "start-timer", "stop-timer", "set-duration", "start-countdown", "clear-countdown", "reset-timer", "start-timer",
    ]
    assert ws.sent[0]["data"] == 5000
    assert ws.sent[-1]["data"] is None


def test_session_registers_then_mirrors_pushes(monkeypatch):
    clock = FakeClock()
    frames = [
        json.dumps(timer_frame(running=True, duration=9_000, remaining_time=9_000, end_time=clock.now + 9_000)),
        json.dumps({"event": "countdown", "data": None}),
        json.dumps({"event": "clients-count", "data": 1}),
        json.dumps({"event": "devices-update", "data": [{"id": "c1", "name": "Tab1", "role": "controller"}]}),
    ]
    ws = FakeWS(frames)
    c = SyncClient(make_settings(), clock=clock)
    states = []
    c.on_change = lambda cl: states.append(cl.connected)

    async def stop_after_first_session(delay):
        await c.stop()

    monkeypatch.setattr(client_module.websockets, "connect", lambda *a, **k: CM(ws))
    monkeypatch.setattr(client_module.asyncio, "sleep", _fast_sleep(stop_after_first_session))

    asyncio.run(c.run())

    assert ws.sent[0] == {"event": "register-device", "data": {"name": "Tab1", "role": "controller"}}
    assert c.timer_state.duration == 9_000
    assert c.time_left == 9_000
    assert c.clients_count == 1
    assert c.devices[0].name == "Tab1"
    assert c.connected is False
    assert states[0] is True and states[-1] is False


def test_reconnect_gives_up_after_bounded_attempts(monkeypatch):
    attempts = []
    delays = []

    def failing_connect(url, *a, **k):
        attempts.append(url)
        raise OSError("connection refused")

    async def record_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(client_module.websockets, "connect", failing_connect)
    monkeypatch.setattr(client_module.asyncio, "sleep", _fast_sleep(record_sleep))

    c = SyncClient(make_settings(reconnect_attempts=4))
    with pytest.raises(ConnectionError):
        asyncio.run(c.run())

    assert attempts == ["ws://timer.local:3001/ws"] * 4
    assert delays == [1.0, 2.0, 4.0]
    assert c.connected is False


def test_reconnect_reregisters_with_fresh_mirror(monkeypatch):
    sockets = [
        FakeWS([json.dumps({"event": "clients-count", "data": 2})]),
        FakeWS([]),
    ]
    used = []

    def connect(url, *a, **k):
        ws = sockets[len(used)]
        used.append(ws)
        return CM(ws)

    c = SyncClient(make_settings())

    async def on_sleep(delay):
        if len(used) == 2:
            await c.stop()

    monkeypatch.setattr(client_module.websockets, "connect", connect)
    monkeypatch.setattr(client_module.asyncio, "sleep", _fast_sleep(on_sleep))

    asyncio.run(c.run())

    assert len(used) == 2
    for ws in used:
        assert ws.sent[0]["event"] == "register-device"
    # nothing from the first connection survives into the second
    assert c.clients_count == 0


@pytest.mark.asyncio
async def test_sampling_counts_down_and_ends_with_session():
    clock = FakeClock()
    seen = []
    c = SyncClient(make_settings(sample_interval=0.01), clock=clock, on_change=lambda cl: seen.append(cl.time_left))
    ws = OpenWS([json.dumps(timer_frame(running=True, duration=10_000, remaining_time=10_000, end_time=clock.now + 10_000))])

    session = asyncio.create_task(c._session(ws))
    for _ in range(100):
        if c.time_left == 10_000:
            break
        await asyncio.sleep(0.01)
    assert c.time_left == 10_000

    # no new pushes: the running mirror is re-derived from the clock alone
    for expected in (9_000, 8_000, 7_000):
        clock.advance(1_000)
        await asyncio.sleep(0.05)
        assert c.time_left == expected
    assert [v for v in seen if v is not None and v < 10_000][:3] == [9_000, 8_000, 7_000]

    await ws.close()
    await asyncio.wait_for(session, 1.0)
    assert c.connected is False
    assert [t for t in asyncio.all_tasks() if t is not asyncio.current_task()] == []

    # nothing samples after the connection is gone
    clock.advance(1_000)
    await asyncio.sleep(0.05)
    assert c.time_left == 7_000


_real_sleep = asyncio.sleep


def _fast_sleep(hook):
    """Replacement for asyncio.sleep: reconnect delays call `hook`, short ones just yield."""

    async def fake_sleep(delay, *args, **kwargs):
        if delay >= 0.5:
            await hook(delay)
        await _real_sleep(0)

    return fake_sleep
