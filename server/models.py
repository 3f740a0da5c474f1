"""Server models module.

Shared wire models (used by client and server) are imported from
`shared.models`. `AuthorityState` groups the server-only state that the
authority owns.
"""

from __future__ import annotations
from typing import Callable

from shared.models import DEFAULT_MAX_DURATION_MS, DeviceRecord, DeviceRole, EventName, TimerState, WSEvent, now_ms

from .countdown import Countdown, CountdownPhase
from .registry import DeviceRegistry
from .timer import TimerMachine


class AuthorityState:
    """Everything the authority owns for the process lifetime.

    Nothing here is persisted; a new instance starts idle with the full
    configured duration, no countdown and an empty registry. Only
    `TimerAuthority` mutates it.
    """

    def __init__(
        self,
        max_duration: int = DEFAULT_MAX_DURATION_MS,
        countdown_start: int = 3,
        clock: Callable[[], int] = now_ms,
    ):
        self.timer = TimerMachine(max_duration=max_duration, clock=clock)
        self.countdown = Countdown(start_value=countdown_start)
        self.devices = DeviceRegistry()


__all__ = [
    "AuthorityState",
    "Countdown",
    "CountdownPhase",
    "DeviceRecord",
    "DeviceRegistry",
    "DeviceRole",
    "EventName",
    "TimerMachine",
    "TimerState",
    "WSEvent",
]
