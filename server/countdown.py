from __future__ import annotations
from enum import Enum
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class CountdownPhase(str, Enum):
    IDLE = "idle"
    COUNTING = "counting"
    # value has reached zero and is held briefly before clearing
    FINISHING = "finishing"


class Countdown:
    """Pre-roll sub-state-machine: idle -> counting(n) -> finishing -> idle.

    Only the transitions live here; the authority schedules them. Each method
    returns True when the visible `value` changed and must be broadcast.
    """

    def __init__(self, start_value: int = 3):
        self.start_value = start_value
        self.phase = CountdownPhase.IDLE
        self.value: Optional[int] = None

    @property
    def active(self) -> bool:
        return self.phase != CountdownPhase.IDLE

    def begin(self) -> bool:
        if self.active:
            logger.debug("Countdown already active (phase=%s value=%s); ignoring", self.phase, self.value)
            return False
        self.phase = CountdownPhase.COUNTING
        self.value = self.start_value
        return True

    def tick(self) -> bool:
        """Decrement while counting. Entering zero moves to FINISHING."""
        if self.phase != CountdownPhase.COUNTING:
            return False
        self.value -= 1
        if self.value <= 0:
            self.value = 0
            self.phase = CountdownPhase.FINISHING
        return True

    def finish(self) -> bool:
        if self.phase != CountdownPhase.FINISHING:
            return False
        self.phase = CountdownPhase.IDLE
        self.value = None
        return True

    def clear(self) -> None:
        self.phase = CountdownPhase.IDLE
        self.value = None
