"""Conflict detection, nearest-slot repair and atomic booking commits.

Commits are the only write path for bookings. Each commit holds an in-process
lock keyed by (provider, date) while it re-reads the day's calendar and
inserts, so overlapping intervals and the daily cap are checked against a
stable view. The partial unique index on active appointments backs the
exact-slot guarantee across processes.
"""

from __future__ import annotations

import sqlite3
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import date, time
from threading import Lock
from typing import Iterable, Iterator, Optional

from caresched.domain.constraints import OverridePolicy, resolve_override_policy
from caresched.domain.errors import BookingNotFound, SlotConflict
from caresched.domain.models import (
    AvailabilityOverride,
    Booking,
    BookingStatus,
    CandidateSlot,
    DateRange,
    WorkingHoursTemplate,
)
from caresched.repository.data_repository import DataRepository
from caresched.services.scoring_service import ranking_key
from caresched.services.slot_generator import resolve_effective_day
from caresched.utils.config import Settings, get_settings
from caresched.utils.logger import get_logger


logger = get_logger(__name__)

ADJUSTED_NOTE = "adjusted for conflict"

DayKey = tuple[str, date]


class SlotLockRegistry:
    """Hands out one mutex per (provider, date), dropped once unused."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[DayKey, list] = {}

    @contextmanager
    def hold(self, provider_id: str, slot_date: date) -> Iterator[None]:
        key = (provider_id, slot_date)
        with self._guard:
            entry = self._locks.setdefault(key, [Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@dataclass(frozen=True)
class ResolutionResult:
    slots: list[CandidateSlot]
    adjusted_count: int
    dropped_count: int


@dataclass(frozen=True)
class _CalendarState:
    bookings_by_date: dict[date, list[Booking]]
    overrides: list[AvailabilityOverride]
    template: WorkingHoursTemplate
    policy: OverridePolicy = OverridePolicy.MOST_RESTRICTIVE

    def _blocking_override(self, slot: CandidateSlot) -> Optional[AvailabilityOverride]:
        for override in self.overrides:
            if override.is_available or not override.covers(slot.date):
                continue
            if override.is_full_day or override.window.overlaps(slot.window):  # type: ignore[union-attr]
                return override
        return None

    def conflict_reason(
        self,
        slot: CandidateSlot,
        ignore_booking_id: Optional[int] = None,
    ) -> Optional[str]:
        day_bookings = [
            booking
            for booking in self.bookings_by_date.get(slot.date, [])
            if booking.booking_id != ignore_booking_id
        ]
        for booking in day_bookings:
            if booking.window.overlaps(slot.window):
                return f"overlaps booking {booking.booking_id}"

        effective = resolve_effective_day(slot.date, self.template, self.overrides, self.policy)
        inside = effective.contains(slot.start, slot.end)
        if not inside or effective.blocks(slot.start, slot.end):
            override = self._blocking_override(slot)
            if override is not None:
                return f"blocked by {override.override_type.value.lower()} override"
            if not inside:
                return "outside working hours"
            return "overlaps a break"

        if effective.max_appointments is not None and len(day_bookings) >= effective.max_appointments:
            return "daily appointment cap reached"
        return None


class ConflictResolver:
    """Validates ranked candidates against bookings and overrides."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        locks: Optional[SlotLockRegistry] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._locks = locks or SlotLockRegistry()
        self._policy = resolve_override_policy(self._settings.slot_override_policy)

    @property
    def search_radius(self) -> int:
        return self._settings.conflict_search_radius

    def _load_state(self, provider_id: str, date_range: DateRange) -> _CalendarState:
        bookings_by_date: dict[date, list[Booking]] = defaultdict(list)
        for booking in self._repository.list_active_bookings(provider_id, date_range):
            bookings_by_date[booking.date].append(booking)
        return _CalendarState(
            bookings_by_date=dict(bookings_by_date),
            overrides=self._repository.list_overrides(provider_id, date_range),
            template=self._repository.get_working_hours_template(provider_id),
            policy=self._policy,
        )

    def resolve(
        self,
        ranked: list[CandidateSlot],
        provider_id: str,
        candidate_pool: Iterable[CandidateSlot],
    ) -> ResolutionResult:
        """Accept, repair or drop each ranked candidate in rank order.

        Substitutes are only ever taken from ``candidate_pool`` (the generator
        output), on the same date, within ``conflict_search_radius`` steps.
        """
        if not ranked:
            return ResolutionResult(slots=[], adjusted_count=0, dropped_count=0)

        pool_by_date: dict[date, list[CandidateSlot]] = defaultdict(list)
        for slot in candidate_pool:
            pool_by_date[slot.date].append(slot)
        for slots in pool_by_date.values():
            slots.sort(key=lambda slot: slot.start)
        position = {
            slot.key: index
            for slots in pool_by_date.values()
            for index, slot in enumerate(slots)
        }

        dates = [slot.date for slot in ranked]
        state = self._load_state(provider_id, DateRange(min(dates), max(dates)))

        accepted: list[CandidateSlot] = []
        accepted_keys: set[tuple[date, time]] = set()
        adjusted = 0
        dropped = 0
        for candidate in ranked:
            if candidate.key in accepted_keys:
                continue
            reason = state.conflict_reason(candidate)
            if reason is None:
                accepted.append(candidate)
                accepted_keys.add(candidate.key)
                continue

            substitute = self._find_substitute(
                candidate,
                pool_by_date.get(candidate.date, []),
                position.get(candidate.key),
                state,
                accepted_keys,
            )
            if substitute is None:
                dropped += 1
                logger.debug(
                    "Candidate dropped | provider_id=%s | date=%s | time=%s | reason=%s",
                    provider_id,
                    candidate.date.isoformat(),
                    candidate.start.strftime("%H:%M"),
                    reason,
                )
                continue

            repaired = replace(
                substitute,
                confidence=candidate.confidence,
                reasoning=f"{candidate.reasoning}, {ADJUSTED_NOTE}",
                factors=candidate.factors,
                adjusted=True,
            )
            accepted.append(repaired)
            accepted_keys.add(repaired.key)
            adjusted += 1

        accepted.sort(key=ranking_key)
        logger.info(
            "Conflict resolution completed | provider_id=%s | accepted=%s | adjusted=%s | dropped=%s",
            provider_id,
            len(accepted),
            adjusted,
            dropped,
        )
        return ResolutionResult(slots=accepted, adjusted_count=adjusted, dropped_count=dropped)

    def _find_substitute(
        self,
        candidate: CandidateSlot,
        day_pool: list[CandidateSlot],
        index: Optional[int],
        state: _CalendarState,
        taken: set[tuple[date, time]],
    ) -> Optional[CandidateSlot]:
        if index is None:
            return None
        for distance in range(1, self.search_radius + 1):
            # Later step first, then earlier step, at each distance.
            for neighbour in (index + distance, index - distance):
                if not 0 <= neighbour < len(day_pool):
                    continue
                option = day_pool[neighbour]
                if option.key in taken:
                    continue
                if state.conflict_reason(option) is None:
                    return option
        return None

    def commit_booking(
        self,
        slot: CandidateSlot,
        requester_id: str,
        provider_id: str,
        *,
        category: str = "general",
        status: BookingStatus = BookingStatus.PENDING,
        priority_score: int = 2,
        auto_scheduled: bool = False,
        note: Optional[str] = None,
    ) -> Booking:
        """Atomically book ``slot`` or raise ``SlotConflict``."""
        with self._locks.hold(provider_id, slot.date):
            state = self._load_state(provider_id, DateRange(slot.date, slot.date))
            reason = state.conflict_reason(slot)
            if reason is not None:
                raise SlotConflict(provider_id, slot.date, slot.start, reason)
            try:
                booking = self._repository.create_booking(
                    provider_id=provider_id,
                    requester_id=requester_id,
                    slot_date=slot.date,
                    slot_time=slot.start,
                    duration_minutes=slot.duration_minutes,
                    category=category,
                    status=status,
                    confidence_score=slot.confidence,
                    reasoning=slot.reasoning or None,
                    priority_score=priority_score,
                    auto_scheduled=auto_scheduled,
                    note=note,
                )
            except sqlite3.IntegrityError as exc:
                raise SlotConflict(
                    provider_id,
                    slot.date,
                    slot.start,
                    "taken by a concurrent commit",
                ) from exc

        logger.info(
            "Booking committed | booking_id=%s | provider_id=%s | requester_id=%s | date=%s | time=%s",
            booking.booking_id,
            provider_id,
            requester_id,
            slot.date.isoformat(),
            slot.start.strftime("%H:%M"),
        )
        return booking

    def commit_reschedule(
        self,
        booking_id: int,
        slot: CandidateSlot,
        note: Optional[str] = None,
    ) -> Booking:
        """Atomically move an existing booking onto ``slot``."""
        current = self._repository.get_booking(booking_id)
        if current is None:
            raise BookingNotFound(f"booking_id {booking_id} not found")

        with self._locks.hold(current.provider_id, slot.date):
            state = self._load_state(current.provider_id, DateRange(slot.date, slot.date))
            reason = state.conflict_reason(slot, ignore_booking_id=booking_id)
            if reason is not None:
                raise SlotConflict(current.provider_id, slot.date, slot.start, reason)
            try:
                moved = self._repository.move_booking(
                    booking_id=booking_id,
                    slot_date=slot.date,
                    slot_time=slot.start,
                    confidence_score=slot.confidence,
                    reasoning=slot.reasoning or None,
                    note=note,
                )
            except sqlite3.IntegrityError as exc:
                raise SlotConflict(
                    current.provider_id,
                    slot.date,
                    slot.start,
                    "taken by a concurrent commit",
                ) from exc
        if moved is None:
            raise BookingNotFound(f"booking_id {booking_id} not found")

        logger.info(
            "Booking moved | booking_id=%s | from=%s %s | to=%s %s",
            booking_id,
            current.date.isoformat(),
            current.start.strftime("%H:%M"),
            slot.date.isoformat(),
            slot.start.strftime("%H:%M"),
        )
        return moved
