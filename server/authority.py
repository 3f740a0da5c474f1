from __future__ import annotations
import asyncio
import logging
from typing import Callable, List, Optional, Set

from .models import AuthorityState, CountdownPhase, DeviceRecord, EventName, TimerState, WSEvent
from .websocket_manager import Connection, WebSocketManager
from shared.models import DEFAULT_MAX_DURATION_MS, now_ms

logger = logging.getLogger(__name__)

# Concurrency notes:
# - Every command runs to completion under `self._lock`, including its
#   broadcasts, so all clients observe broadcasts in the order the commands
#   were applied.
# - The countdown runs as one background task. It takes the lock for each
#   step and checks it is still the current task before mutating, so a
#   cancelled sequence can never tick again.
# - Methods suffixed `_locked` assume the caller already holds the lock.
# - Disconnect cleanup runs in a task owned here, not in the caller, so a
#   cancelled websocket handler cannot cut off the rebroadcast to others.
# - Every send is bounded by the connection's send timeout; a stalled peer
#   fails its send and is dropped rather than holding the lock.


class TimerAuthority:
    """The single source of truth for the shared timer.

    Applies client commands to the `AuthorityState`, then broadcasts the full
    resulting state to every connection. Invalid and redundant commands are
    dropped without a broadcast and reported as False to the caller.
    """

    def __init__(
        self,
        ws_manager: WebSocketManager,
        max_duration: int = DEFAULT_MAX_DURATION_MS,
        countdown_start: int = 3,
        tick_seconds: float = 1.0,
        finish_delay_seconds: float = 0.5,
        clock: Callable[[], int] = now_ms,
    ):
        self.ws = ws_manager
        self.state = AuthorityState(max_duration=max_duration, countdown_start=countdown_start, clock=clock)
        self.tick_seconds = tick_seconds
        self.finish_delay_seconds = finish_delay_seconds
        self._lock = asyncio.Lock()
        self._countdown_task: Optional[asyncio.Task] = None
        self._cleanup_tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings, ws_manager: WebSocketManager) -> "TimerAuthority":
        return cls(
            ws_manager,
            max_duration=settings.max_duration_ms,
            countdown_start=settings.countdown_start,
            tick_seconds=settings.countdown_tick_seconds,
            finish_delay_seconds=settings.countdown_finish_delay_seconds,
        )

    # ---- read side ----

    def timer_state(self) -> TimerState:
        return self.state.timer.snapshot()

    @property
    def countdown_value(self) -> Optional[int]:
        return self.state.countdown.value

    def devices(self) -> List[DeviceRecord]:
        return self.state.devices.list_devices()

    # ---- connection lifecycle ----

    async def connect(self, conn_id: str, conn: Connection) -> bool:
        """Register a new connection and bring it up to date.

        The newcomer gets the current timer state and countdown directly;
        everyone gets the new client count and device list. Returns False if
        the newcomer could not take its snapshot and was dropped again.
        """
        async with self._lock:
            await self.ws.add(conn_id, conn)
            self.state.devices.add(conn_id)
            logger.info("Client connected. Total clients: %d", await self.ws.count())

            sent = await self.ws.send(conn_id, WSEvent(event=EventName.TIMER_STATE, data=self.timer_state()))
            sent = sent and await self.ws.send(conn_id, WSEvent(event=EventName.COUNTDOWN, data=self.countdown_value))
            if not sent:
                await self._drop_locked([conn_id])
                return False
            await self._broadcast_clients_count_locked()
            await self._broadcast_devices_locked()
            return True

    async def disconnect(self, conn_id: str) -> None:
        """Forget `conn_id` and tell everyone else.

        The work runs in a task the authority keeps a reference to. If the
        caller is cancelled while waiting, the cleanup still completes.
        """
        task = asyncio.create_task(self._disconnect(conn_id))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)
        await asyncio.shield(task)

    async def _disconnect(self, conn_id: str) -> None:
        async with self._lock:
            await self._drop_locked([conn_id])

    # ---- timer commands ----

    async def start_timer(self, duration: object = None) -> bool:
        async with self._lock:
            self.state.timer.start(duration)
            await self._broadcast_timer_locked()
            return True

    async def stop_timer(self) -> bool:
        async with self._lock:
            if not self.state.timer.stop():
                return False
            await self._broadcast_timer_locked()
            return True

    async def reset_timer(self) -> bool:
        async with self._lock:
            self.state.timer.reset()
            await self._broadcast_timer_locked()
            return True

    async def set_duration(self, duration: object) -> bool:
        async with self._lock:
            if not self.state.timer.set_duration(duration):
                return False
            await self._broadcast_timer_locked()
            return True

    # ---- device registry ----

    async def register_device(self, conn_id: str, payload: object) -> bool:
        async with self._lock:
            if conn_id not in self.state.devices:
                logger.debug("Registration from unknown connection %s ignored", conn_id)
                return False
            if self.state.devices.register(conn_id, payload) is None:
                return False
            await self._broadcast_devices_locked()
            return True

    # ---- countdown ----

    async def start_countdown(self) -> bool:
        async with self._lock:
            if not self.state.countdown.begin():
                return False
            self._cancel_countdown_task()
            logger.info("Countdown started at %d", self.state.countdown.value)
            await self._broadcast_countdown_locked()
            self._countdown_task = asyncio.create_task(self._run_countdown())
            return True

    async def clear_countdown(self) -> bool:
        async with self._lock:
            self._cancel_countdown_task()
            self.state.countdown.clear()
            logger.info("Countdown cleared")
            await self._broadcast_countdown_locked()
            return True

    async def _run_countdown(self) -> None:
        """Tick the countdown down to zero, start the timer, then clear it.

        The timer is started at the zero step, not at the clear, and only if
        no one has started it in the meantime. Zero stays visible for
        `finish_delay_seconds` before the value goes back to None.
        """
        me = asyncio.current_task()
        try:
            finishing = False
            while not finishing:
                await asyncio.sleep(self.tick_seconds)
                async with self._lock:
                    if self._countdown_task is not me or not self.state.countdown.tick():
                        return
                    await self._broadcast_countdown_locked()
                    finishing = self.state.countdown.phase == CountdownPhase.FINISHING
                    if finishing:
                        if self.state.timer.state.running:
                            logger.info("Countdown reached zero; timer already running")
                        else:
                            self.state.timer.start()
                            await self._broadcast_timer_locked()

            await asyncio.sleep(self.finish_delay_seconds)
            async with self._lock:
                if self._countdown_task is not me or not self.state.countdown.finish():
                    return
                self._countdown_task = None
                logger.info("Countdown finished")
                await self._broadcast_countdown_locked()
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("Countdown sequence failed")
            async with self._lock:
                if self._countdown_task is me:
                    self._countdown_task = None
                    self.state.countdown.clear()
                    await self._broadcast_countdown_locked()

    def _cancel_countdown_task(self) -> None:
        task = self._countdown_task
        self._countdown_task = None
        if task is not None and not task.done():
            task.cancel()

    # ---- dispatch ----

    async def handle_event(self, conn_id: str, event: WSEvent) -> bool:
        """Apply one inbound client event. Returns whether state changed.

        Any connected client may issue any command; roles are not enforced
        here.
        """
        name = event.event
        if name == EventName.REGISTER_DEVICE:
            return await self.register_device(conn_id, event.data)
        if name == EventName.START_TIMER:
            return await self.start_timer(event.data)
        if name == EventName.STOP_TIMER:
            return await self.stop_timer()
        if name == EventName.RESET_TIMER:
            return await self.reset_timer()
        if name == EventName.SET_DURATION:
            return await self.set_duration(event.data)
        if name == EventName.START_COUNTDOWN:
            return await self.start_countdown()
        if name == EventName.CLEAR_COUNTDOWN:
            return await self.clear_countdown()
        logger.debug("Ignoring server-only event %s from %s", name.value, conn_id)
        return False

    async def shutdown(self) -> None:
        """Cancel the countdown task and let pending disconnects finish.

        State is simply dropped with the process.
        """
        async with self._lock:
            self._cancel_countdown_task()
        if self._cleanup_tasks:
            await asyncio.gather(*list(self._cleanup_tasks), return_exceptions=True)

    # ---- broadcasting ----

    async def _broadcast_locked(self, event: WSEvent) -> None:
        failed = await self.ws.broadcast(event)
        if failed:
            await self._drop_locked(failed)

    async def _broadcast_timer_locked(self) -> None:
        await self._broadcast_locked(WSEvent(event=EventName.TIMER_STATE, data=self.timer_state()))

    async def _broadcast_countdown_locked(self) -> None:
        await self._broadcast_locked(WSEvent(event=EventName.COUNTDOWN, data=self.countdown_value))

    async def _broadcast_clients_count_locked(self) -> None:
        await self._broadcast_locked(WSEvent(event=EventName.CLIENTS_COUNT, data=await self.ws.count()))

    async def _broadcast_devices_locked(self) -> None:
        await self._broadcast_locked(WSEvent(event=EventName.DEVICES_UPDATE, data=self.devices()))

    async def _drop_locked(self, conn_ids: List[str]) -> None:
        dropped = False
        for conn_id in conn_ids:
            removed = await self.ws.remove(conn_id)
            removed = self.state.devices.remove(conn_id) or removed
            dropped = dropped or removed
        if not dropped:
            return
        logger.info("Client disconnected. Total clients: %d", await self.ws.count())
        await self._broadcast_clients_count_locked()
        await self._broadcast_devices_locked()
