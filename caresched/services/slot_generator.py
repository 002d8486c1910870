"""Candidate slot generation from working-hour templates and overrides."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Callable, Iterable, Iterator, Optional

from caresched.domain.constraints import OverridePolicy, resolve_override_policy
from caresched.domain.errors import InvalidRequest
from caresched.domain.models import (
    AvailabilityOverride,
    CandidateSlot,
    DateRange,
    TimeWindow,
    WorkingHoursTemplate,
)
from caresched.utils.config import Settings, get_settings
from caresched.utils.logger import get_logger


logger = get_logger(__name__)

MINUTES_PER_DAY = 24 * 60


def _to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def _from_minutes(value: int) -> time:
    return time(hour=value // 60, minute=value % 60)


def _window_minutes(window: Optional[TimeWindow]) -> Optional[tuple[int, int]]:
    if window is None:
        return None
    return (_to_minutes(window.start), _to_minutes(window.end))


@dataclass(frozen=True)
class EffectiveDay:
    """Working window and blocked intervals for one calendar date, in minutes."""

    date: date
    window: Optional[tuple[int, int]]
    blocked: tuple[tuple[int, int], ...] = ()
    max_appointments: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.window is not None and self.window[1] > self.window[0]

    def contains(self, start: time, end: time) -> bool:
        if not self.is_open:
            return False
        window_start, window_end = self.window  # type: ignore[misc]
        return window_start <= _to_minutes(start) and _to_minutes(end) <= window_end

    def blocks(self, start: time, end: time) -> bool:
        start_minutes, end_minutes = _to_minutes(start), _to_minutes(end)
        return any(
            start_minutes < blocked_end and blocked_start < end_minutes
            for blocked_start, blocked_end in self.blocked
        )


def _intersect(windows: list[tuple[int, int]]) -> Optional[tuple[int, int]]:
    start = max(window[0] for window in windows)
    end = min(window[1] for window in windows)
    if end <= start:
        return None
    return (start, end)


def _hull(windows: list[tuple[int, int]]) -> tuple[int, int]:
    return (min(window[0] for window in windows), max(window[1] for window in windows))


def resolve_effective_day(
    slot_date: date,
    template: WorkingHoursTemplate,
    overrides: Iterable[AvailabilityOverride],
    policy: OverridePolicy = OverridePolicy.MOST_RESTRICTIVE,
) -> EffectiveDay:
    """Merge the weekly template with every override covering ``slot_date``."""
    working_day = template.for_weekday(slot_date.weekday())
    base_window = _window_minutes(working_day.window)
    break_window = _window_minutes(working_day.break_window)
    blocked: list[tuple[int, int]] = [break_window] if break_window else []

    covering = [override for override in overrides if override.covers(slot_date)]
    if policy is OverridePolicy.LATEST_CREATED and covering:
        covering = [max(covering, key=lambda override: override.override_id)]

    closures = [item for item in covering if not item.is_available and item.is_full_day]
    partial_blocks = [
        _window_minutes(item.window)
        for item in covering
        if not item.is_available and not item.is_full_day
    ]
    openings = [item for item in covering if item.is_available]

    if policy is OverridePolicy.MOST_PERMISSIVE and openings:
        closures = []
        partial_blocks = []

    if closures:
        return EffectiveDay(date=slot_date, window=None)

    window = base_window
    if openings:
        # A full-day opening keeps the template window; timed openings replace it.
        opening_windows = [
            _window_minutes(item.window) if item.window is not None else base_window
            for item in openings
        ]
        known = [item for item in opening_windows if item is not None]
        if not known:
            window = None
        elif policy is OverridePolicy.MOST_PERMISSIVE:
            window = _hull(known)
        else:
            window = _intersect(known)

    blocked.extend(item for item in partial_blocks if item is not None)
    return EffectiveDay(
        date=slot_date,
        window=window,
        blocked=tuple(blocked),
        max_appointments=working_day.max_appointments,
    )


class SlotGenerator:
    """Turns a calendar into discrete, duration-sized candidate slots."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        policy: Optional[OverridePolicy] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock or datetime.now
        self._policy = policy or resolve_override_policy(self._settings.slot_override_policy)

    def generate(
        self,
        *,
        provider_id: str,
        date_range: DateRange,
        duration_minutes: int,
        template: WorkingHoursTemplate,
        overrides: Iterable[AvailabilityOverride] = (),
        now: Optional[datetime] = None,
    ) -> Iterator[CandidateSlot]:
        """Return a lazy, ordered iterator of unscored candidate slots.

        Validation happens eagerly so malformed input fails before iteration.
        """
        if duration_minutes <= 0 or duration_minutes > MINUTES_PER_DAY:
            raise InvalidRequest("duration_minutes must be within one day and positive")
        if date_range.end < date_range.start:
            raise InvalidRequest("date range end must not precede its start")

        reference = now or self._clock()
        return self._iter_slots(
            provider_id=provider_id,
            date_range=date_range,
            duration_minutes=duration_minutes,
            template=template,
            overrides=tuple(overrides),
            now=reference,
        )

    def _iter_slots(
        self,
        *,
        provider_id: str,
        date_range: DateRange,
        duration_minutes: int,
        template: WorkingHoursTemplate,
        overrides: tuple[AvailabilityOverride, ...],
        now: datetime,
    ) -> Iterator[CandidateSlot]:
        total = 0
        for slot_date in date_range.days():
            effective = resolve_effective_day(slot_date, template, overrides, self._policy)
            for slot in self.slots_for_day(effective, duration_minutes, now):
                total += 1
                yield slot
        logger.debug(
            "Slot generation completed | provider_id=%s | start=%s | end=%s | duration=%s | slots=%s",
            provider_id,
            date_range.start.isoformat(),
            date_range.end.isoformat(),
            duration_minutes,
            total,
        )

    @staticmethod
    def slots_for_day(
        effective: EffectiveDay,
        duration_minutes: int,
        now: datetime,
    ) -> Iterator[CandidateSlot]:
        if not effective.is_open:
            return
        window_start, window_end = effective.window  # type: ignore[misc]
        cursor = window_start
        while cursor + duration_minutes <= window_end:
            slot_end = cursor + duration_minutes
            step_start = cursor
            cursor = slot_end
            if any(
                step_start < blocked_end and blocked_start < slot_end
                for blocked_start, blocked_end in effective.blocked
            ):
                continue
            start_time = _from_minutes(step_start)
            if datetime.combine(effective.date, start_time) <= now:
                continue
            yield CandidateSlot(
                date=effective.date,
                start=start_time,
                end=_from_minutes(slot_end),
            )
