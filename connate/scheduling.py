"""How long the manager may sleep before some service's deadline passes."""

from __future__ import annotations

from typing import Optional, Tuple

from connate.config import State, Target
from connate.machine import UP_TIME_MILLIS, ServiceSlot, ServiceTable

_I32_MAX = 2**31 - 1


def service_timeout(slot: ServiceSlot, now: int) -> Optional[int]:
    """Milliseconds left until the service's next deadline, or None if it has none."""
    state = slot.state
    if state is State.SETTING_UP:
        limit = slot.max_setup_time_millis
    elif state is State.STARTING:
        limit = slot.max_ready_time_millis
    elif state is State.UP and slot.attempt_count != 0:
        limit = UP_TIME_MILLIS
    elif state is State.STOPPING:
        limit = slot.max_stop_time_millis
    elif state is State.CLEANING_UP:
        limit = slot.max_cleanup_time_millis
    elif state is State.RETRYING:
        if slot.target in (Target.DOWN, Target.RESTART):
            return None
        limit = slot.retry_delay_millis()
    else:
        return None

    if limit is None:
        return None
    return limit - slot.millis_since_change(now)


def calculate_poll_timeout(
    table: ServiceTable, now: int
) -> Tuple[Optional[int], Optional[ServiceSlot]]:
    """The shortest wait over all services, and the service it belongs to.

    A wait of None means no deadline at all; 0 means one has already passed.
    """
    best_ms: Optional[int] = None
    best_slot: Optional[ServiceSlot] = None
    for slot in table:
        remaining = service_timeout(slot, now)
        if remaining is None:
            continue
        remaining = min(max(remaining, 0), _I32_MAX)
        if best_ms is None or remaining < best_ms:
            best_ms = remaining
            best_slot = slot
    return best_ms, best_slot


__all__ = ["service_timeout", "calculate_poll_timeout"]