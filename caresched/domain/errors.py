"""Error taxonomy shared by the scheduling services."""

from __future__ import annotations

from datetime import date, time
from typing import Optional


class SchedulingError(Exception):
    """Base exception for scheduling workflow failures."""


class InvalidRequest(SchedulingError):
    """Raised when request inputs are malformed; never retried."""


class AdapterUnavailable(SchedulingError):
    """Raised when a calendar or history source times out or fails."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source} unavailable: {message}")
        self.source = source


class NoSlotsAvailable(SchedulingError):
    """Raised when generation, scoring and conflict repair leave nothing to offer."""


class SlotConflict(SchedulingError):
    """Raised when a commit loses the race for a slot; re-plan and retry."""

    def __init__(
        self,
        provider_id: str,
        slot_date: date,
        slot_time: time,
        reason: Optional[str] = None,
    ) -> None:
        detail = reason or "slot already has an active booking"
        super().__init__(
            f"Slot {slot_date.isoformat()} {slot_time.strftime('%H:%M')} "
            f"for provider {provider_id} is not available: {detail}"
        )
        self.provider_id = provider_id
        self.slot_date = slot_date
        self.slot_time = slot_time


class BookingNotFound(SchedulingError):
    """Raised when a booking id does not exist in persisted state."""
