from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Optional
from enum import Enum
import time


# ten minutes, the default ceiling for any configured duration
DEFAULT_MAX_DURATION_MS = 10 * 60 * 1000

UNKNOWN_DEVICE_NAME = "Unknown Device"


def now_ms() -> int:
    """Return the current wall-clock time as integer Unix epoch milliseconds."""
    return int(time.time() * 1000)


class DeviceRole(str, Enum):
    CONTROLLER = "controller"
    DISPLAY = "display"


class EventName(str, Enum):
    # client -> server
    REGISTER_DEVICE = "register-device"
    START_TIMER = "start-timer"
    STOP_TIMER = "stop-timer"
    RESET_TIMER = "reset-timer"
    SET_DURATION = "set-duration"
    START_COUNTDOWN = "start-countdown"
    CLEAR_COUNTDOWN = "clear-countdown"
    # server -> client(s)
    TIMER_STATE = "timer-state"
    COUNTDOWN = "countdown"
    CLIENTS_COUNT = "clients-count"
    DEVICES_UPDATE = "devices-update"


class TimerState(BaseModel):
    """Snapshot of the one shared timer.

    `end_time` is an epoch-ms instant and is only set while running.
    `remaining_time` is exact only while not running.
    """

    running: bool = False
    paused: bool = False
    duration: int = DEFAULT_MAX_DURATION_MS
    end_time: Optional[int] = None
    remaining_time: int = DEFAULT_MAX_DURATION_MS

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeviceRecord(BaseModel):
    id: str
    name: str = UNKNOWN_DEVICE_NAME
    role: Optional[DeviceRole] = None


class WSEvent(BaseModel):
    """A named event and its payload, the unit carried by every websocket frame."""

    event: EventName
    data: Any = Field(default=None)

    def to_wire(self) -> dict:
        data = self.data
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", by_alias=True)
        elif isinstance(data, list):
            data = [d.model_dump(mode="json", by_alias=True) if isinstance(d, BaseModel) else d for d in data]
        return {"event": self.event.value, "data": data}


__all__ = [
    "DEFAULT_MAX_DURATION_MS",
    "UNKNOWN_DEVICE_NAME",
    "now_ms",
    "DeviceRole",
    "EventName",
    "TimerState",
    "DeviceRecord",
    "WSEvent",
]
