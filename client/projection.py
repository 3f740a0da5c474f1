from shared.models import TimerState


def time_left(state: TimerState, now: int) -> int:
    """Milliseconds left on the timer as seen at epoch-ms instant `now`.

    A read-side projection of the mirrored state: stopped timers report their
    frozen `remaining_time`, running ones count down towards `end_time`.
    The result is for display only and is never sent back to the server.
    """
    if not state.running or state.end_time is None:
        return state.remaining_time
    return max(0, state.end_time - now)
