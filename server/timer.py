"""Timer state machine.

`TimerMachine` owns the single `TimerState` and applies the four timer
commands to it. Every transition is computed from the current state and the
clock alone; it never trusts a client-supplied end time. Methods are
synchronous and return whether the state changed, leaving broadcasting to the
caller.
"""

from __future__ import annotations
import logging
import math
from typing import Callable, Optional

from shared.models import DEFAULT_MAX_DURATION_MS, TimerState, now_ms

logger = logging.getLogger(__name__)


def normalize_duration(value: object, max_duration: int = DEFAULT_MAX_DURATION_MS) -> Optional[int]:
    """Return `value` as whole milliseconds clamped to `max_duration`, or None.

    Accepts ints, floats and numeric strings. Anything that is not a finite
    number greater than zero (including booleans) is rejected. Fractional
    values round up so a tiny positive duration never becomes zero.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return math.ceil(min(number, float(max_duration)))


class TimerMachine:
    """Idle / Running / Paused machine over a `TimerState`."""

    def __init__(self, max_duration: int = DEFAULT_MAX_DURATION_MS, clock: Callable[[], int] = now_ms):
        self.max_duration = max_duration
        self._clock = clock
        self.state = TimerState(duration=max_duration, remaining_time=max_duration)

    def snapshot(self) -> TimerState:
        """Return a copy of the current state, safe to hand to other components."""
        return self.state.model_copy()

    def start(self, duration: object = None) -> bool:
        """Start (or restart) counting down from the current remaining time.

        A valid `duration` replaces both the configured duration and the
        remaining time first; an invalid one is ignored but does not block
        the start.
        """
        normalized = normalize_duration(duration, self.max_duration)
        s = self.state
        if normalized is not None:
            s.duration = normalized
            s.remaining_time = normalized
        self._settle()

        s.running = True
        s.paused = False
        s.end_time = self._clock() + s.remaining_time
        logger.info("Timer started: %sms (remaining %sms)", s.duration, s.remaining_time)
        return True

    def stop(self) -> bool:
        s = self.state
        if not s.running:
            logger.debug("Stop ignored; timer is not running")
            return False
        s.remaining_time = max(0, s.end_time - self._clock())
        s.running = False
        s.paused = True
        s.end_time = None
        self._settle()
        logger.info("Timer stopped with %sms remaining", s.remaining_time)
        return True

    def reset(self) -> bool:
        s = self.state
        s.running = False
        s.paused = False
        s.end_time = None
        self._settle()
        s.remaining_time = s.duration
        logger.info("Timer reset to %sms", s.duration)
        return True

    def set_duration(self, duration: object) -> bool:
        normalized = normalize_duration(duration, self.max_duration)
        if normalized is None:
            logger.debug("Ignoring invalid duration %r", duration)
            return False
        s = self.state
        s.duration = normalized
        if not s.running:
            s.remaining_time = normalized
        self._settle()
        logger.info("Duration set to: %sms", normalized)
        return True

    def _settle(self) -> None:
        # re-apply the ceiling and keep remaining_time within [0, duration]
        s = self.state
        if s.duration > self.max_duration:
            s.duration = self.max_duration
        s.remaining_time = min(max(0, s.remaining_time), s.duration)
