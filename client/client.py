"""Timer sync client.

This client maintains a persistent WebSocket connection to the timer server,
mirrors every state it broadcasts, derives a live "time left" between
broadcasts from the local clock, and sends timer commands upstream.

The server is the only source of truth. Every `timer-state` push replaces the
local mirror wholesale, and nothing held locally survives a reconnect: after
each (re)connection the client registers itself again and waits for fresh
snapshots.
"""
import asyncio
import json
import logging
from typing import Callable, List, Optional
import websockets
from pydantic import ValidationError
from . import config
from .projection import time_left
from shared.models import DeviceRecord, DeviceRole, EventName, TimerState, WSEvent, now_ms

logger = logging.getLogger(__name__)


def ws_url(server_url) -> str:
    """Build the websocket endpoint URL from a configured server URL.

    Accepts both http(s) and ws(s) values by converting http:// -> ws:// and
    https:// -> wss://, then appends the `/ws` path.
    """
    server_url_str = str(server_url).rstrip('/')
    if server_url_str.startswith("http://"):
        ws_base = "ws://" + server_url_str[len("http://"):]
    elif server_url_str.startswith("https://"):
        ws_base = "wss://" + server_url_str[len("https://"):]
    else:
        ws_base = server_url_str
    if ws_base.endswith("/ws"):
        return ws_base
    return f"{ws_base}/ws"


def backoff_delay(failures: int, base: float, cap: float) -> float:
    """Seconds to wait before the next attempt after `failures` failed ones."""
    return min(cap, base * (2 ** max(0, failures - 1)))


class SyncClient:
    """Mirror of the server's timer, countdown and device registry.

    `on_change`, when given, is called with the client after every change to
    the mirrored or derived values (including the periodic time-left
    refresh). It runs on the event loop and must not block.
    """

    def __init__(
        self,
        settings: config.ClientSettings,
        on_change: Optional[Callable[["SyncClient"], None]] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.settings = settings
        self.on_change = on_change
        self._clock = clock

        # locally remembered identity, re-sent on every connection
        self.device_name: str = settings.device_name
        self.device_role: Optional[DeviceRole] = settings.device_role

        self.connected = False
        self.timer_state: Optional[TimerState] = None
        self.time_left: Optional[int] = None
        self.countdown_value: Optional[int] = None
        self.clients_count = 0
        self.devices: List[DeviceRecord] = []

        self._ws = None
        self._stopping = False

    # ---- mirror ----

    def _reset_mirror(self) -> None:
        self.timer_state = None
        self.time_left = None
        self.countdown_value = None
        self.clients_count = 0
        self.devices = []

    def _notify(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self)
        except Exception:
            logger.exception("on_change listener failed")

    def refresh_time_left(self) -> bool:
        """Recompute the derived time left. Returns True if it changed."""
        if self.timer_state is None:
            return False
        value = time_left(self.timer_state, self._clock())
        if value == self.time_left:
            return False
        self.time_left = value
        return True

    def handle_event(self, data) -> bool:
        """Apply one server frame to the mirror. Returns False if it was ignored.

        Accepts either the decoded dict or the raw JSON text.
        """
        if isinstance(data, (str, bytes)):
            data = json.loads(data)
        event = WSEvent.model_validate(data)
        name = event.event
        payload = event.data

        if name == EventName.TIMER_STATE:
            self.timer_state = TimerState.model_validate(payload)
            self.time_left = None
            self.refresh_time_left()
        elif name == EventName.COUNTDOWN:
            if payload is not None and (isinstance(payload, bool) or not isinstance(payload, int)):
                raise ValueError(f"invalid countdown value: {payload!r}")
            self.countdown_value = payload
        elif name == EventName.CLIENTS_COUNT:
            if isinstance(payload, bool) or not isinstance(payload, int):
                raise ValueError(f"invalid clients count: {payload!r}")
            self.clients_count = payload
        elif name == EventName.DEVICES_UPDATE:
            if not isinstance(payload, list):
                raise ValueError(f"invalid device list: {payload!r}")
            self.devices = [DeviceRecord.model_validate(d) for d in payload]
        else:
            logger.debug("Ignoring client-bound command %s from server", name.value)
            return False

        logger.debug("Applied %s", name.value)
        self._notify()
        return True

    # ---- commands ----

    async def send_command(self, name: EventName, data=None) -> bool:
        """Send one command to the server. Dropped (False) while disconnected."""
        ws = self._ws
        if ws is None or not self.connected:
            logger.debug("Not connected; dropping %s", name.value)
            return False
        payload = WSEvent(event=name, data=data).to_wire()
        await ws.send(json.dumps(payload))
        return True

    async def register_device(self, name: Optional[str] = None, role: Optional[DeviceRole] = None) -> bool:
        if name is not None:
            self.device_name = name
        self.device_role = role
        return await self.send_command(
            EventName.REGISTER_DEVICE,
            {"name": self.device_name, "role": self.device_role.value if self.device_role else None},
        )

    async def start_timer(self, duration: Optional[int] = None) -> bool:
        return await self.send_command(EventName.START_TIMER, duration)

    async def stop_timer(self) -> bool:
        return await self.send_command(EventName.STOP_TIMER)

    async def reset_timer(self) -> bool:
        return await self.send_command(EventName.RESET_TIMER)

    async def set_duration(self, duration: int) -> bool:
        return await self.send_command(EventName.SET_DURATION, duration)

    async def start_countdown(self) -> bool:
        return await self.send_command(EventName.START_COUNTDOWN)

    async def clear_countdown(self) -> bool:
        return await self.send_command(EventName.CLEAR_COUNTDOWN)

    # ---- connection ----

    async def receive_loop(self, ws):
        """Continuously receive frames from the WebSocket and apply them."""
        async for msg in ws:
            try:
                self.handle_event(msg)
            except (ValueError, ValidationError):
                logger.warning("Ignoring malformed frame from server: %r", msg)

    async def sample_loop(self):
        """Refresh the derived time left at a fixed cadence."""
        while True:
            try:
                await asyncio.sleep(self.settings.sample_interval)
                if self.refresh_time_left():
                    self._notify()
            except asyncio.CancelledError:
                return

    async def _session(self, ws) -> None:
        """Drive one live connection until it closes."""
        self._reset_mirror()
        self._ws = ws
        self.connected = True
        logger.info("Connected to timer server")
        self._notify()

        recv_task = asyncio.create_task(self.receive_loop(ws))
        sample_task = asyncio.create_task(self.sample_loop())
        try:
            await self.register_device(self.device_name, self.device_role)
            done, pending = await asyncio.wait([recv_task, sample_task], return_when=asyncio.FIRST_COMPLETED)
            for t in done:
                if not t.cancelled() and t.exception() is not None:
                    logger.warning("Connection lost: %s", t.exception())
        finally:
            # the sampling loop never outlives its connection
            for t in (recv_task, sample_task):
                t.cancel()
            await asyncio.gather(recv_task, sample_task, return_exceptions=True)
            self._ws = None
            self.connected = False
            logger.info("Disconnected from timer server")
            self._notify()

    async def run(self) -> None:
        """Connect and keep reconnecting until `stop()` is called.

        Failed connection attempts back off exponentially up to
        `reconnect_delay_max`. After `reconnect_attempts` consecutive failures
        this raises ConnectionError; any successful connection resets the count.
        """
        s = self.settings
        url = ws_url(s.server_url)
        failures = 0
        self._stopping = False
        while not self._stopping:
            logger.info("Connecting to server %s", url)
            try:
                async with websockets.connect(url) as ws:
                    failures = 0
                    await self._session(ws)
            except asyncio.CancelledError:
                raise
            except Exception:
                failures += 1
                logger.warning("Connection to %s failed (attempt %d/%d)", url, failures, s.reconnect_attempts)
                if failures >= s.reconnect_attempts:
                    raise ConnectionError(f"could not reach timer server at {url}") from None

            if self._stopping:
                break
            delay = backoff_delay(failures, s.reconnect_delay, s.reconnect_delay_max)
            logger.info("Reconnecting to server in %.1fs...", delay)
            await asyncio.sleep(delay)

    async def stop(self) -> None:
        """Stop reconnecting and close the current connection, if any."""
        self._stopping = True
        ws = self._ws
        if ws is not None:
            await ws.close()


def _display_logger():
    last = {"seconds": None, "countdown": None, "connected": None}

    def _log(client: SyncClient) -> None:
        if client.connected != last["connected"]:
            last["connected"] = client.connected
            logger.info("Connected: %s", client.connected)
        if client.countdown_value != last["countdown"]:
            last["countdown"] = client.countdown_value
            if client.countdown_value is not None:
                logger.info("Countdown: %s", client.countdown_value)
        seconds = None if client.time_left is None else -(-client.time_left // 1000)
        if seconds != last["seconds"]:
            last["seconds"] = seconds
            if seconds is not None:
                logger.info("Time left: %d:%02d", seconds // 60, seconds % 60)

    return _log


def main():
    logging.basicConfig(level=logging.INFO)
    try:
        settings = config.ClientSettings()
    except ValidationError as e:
        raise SystemExit(f"Failed to load client settings: {e}") from e
    client = SyncClient(settings, on_change=_display_logger())
    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        logger.info("Client exiting")
    except ConnectionError as e:
        logger.error("%s", e)
        raise SystemExit(1) from e

if __name__ == "__main__":
    main()
