"""Booking workflow on top of the optimizer and the atomic commit boundary."""

from __future__ import annotations

import sqlite3
from typing import Optional

from caresched.domain.errors import BookingNotFound, InvalidRequest, SchedulingError, SlotConflict
from caresched.domain.models import (
    Booking,
    BookingStatus,
    CandidateSlot,
    SchedulingRequest,
    Urgency,
    add_minutes,
    format_time,
)
from caresched.repository.data_repository import DataRepository
from caresched.services.conflict_service import ConflictResolver
from caresched.services.optimizer_service import ScheduleOptimizer
from caresched.services.profile_service import ProfileService
from caresched.utils.config import Settings, get_settings
from caresched.utils.logger import get_logger


logger = get_logger(__name__)

REQUESTED_SLOT_REASONING = "requested slot kept"


class BookingWorkflowService:
    """Schedules, reschedules and closes bookings.

    A lost commit race is routine: the workflow re-plans against a fresh
    calendar up to ``booking_replan_attempts`` times before giving up.
    """

    def __init__(
        self,
        optimizer: ScheduleOptimizer,
        resolver: ConflictResolver,
        profiles: ProfileService,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._optimizer = optimizer
        self._resolver = resolver
        self._profiles = profiles

    @staticmethod
    def _requested_slot(
        request: SchedulingRequest,
        confidence: Optional[float],
    ) -> CandidateSlot:
        if request.preferred_date is None or request.preferred_time is None:
            raise InvalidRequest(
                "preferred_date and preferred_time are required when optimization is disabled"
            )
        return CandidateSlot(
            date=request.preferred_date,
            start=request.preferred_time,
            end=add_minutes(request.preferred_time, request.duration_minutes),
            confidence=confidence,
            reasoning=REQUESTED_SLOT_REASONING,
        )

    def _choose_slot(
        self,
        request: SchedulingRequest,
        enable_optimization: bool,
        force_optimized: bool,
    ) -> CandidateSlot:
        if not enable_optimization:
            return self._requested_slot(request, confidence=None)

        schedule = self._optimizer.optimize(request)
        has_explicit_slot = request.preferred_date is not None and request.preferred_time is not None
        if (
            force_optimized
            or not has_explicit_slot
            or schedule.confidence > self._settings.booking_apply_threshold
        ):
            return schedule.primary
        return self._requested_slot(request, confidence=schedule.confidence)

    def schedule(
        self,
        request: SchedulingRequest,
        enable_optimization: bool = True,
    ) -> Booking:
        attempts = self._settings.booking_replan_attempts + 1
        for attempt in range(attempts):
            slot = self._choose_slot(
                request,
                enable_optimization,
                force_optimized=attempt > 0,
            )
            confidence = float(slot.confidence or 0.0)
            try:
                booking = self._resolver.commit_booking(
                    slot,
                    request.requester_id,
                    request.provider_id,
                    category=request.category,
                    status=BookingStatus.SCHEDULED,
                    priority_score=request.urgency.priority_score,
                    auto_scheduled=(
                        enable_optimization
                        and slot.reasoning != REQUESTED_SLOT_REASONING
                        and confidence > self._settings.booking_auto_schedule_threshold
                    ),
                )
            except SlotConflict as exc:
                logger.warning(
                    "Booking commit lost race | requester_id=%s | provider_id=%s | attempt=%s | error=%s",
                    request.requester_id,
                    request.provider_id,
                    attempt + 1,
                    exc,
                )
                if not enable_optimization or attempt + 1 == attempts:
                    raise
                continue

            logger.info(
                "Booking scheduled | booking_id=%s | requester_id=%s | provider_id=%s | "
                "slot=%s %s | confidence=%.3f | auto_scheduled=%s",
                booking.booking_id,
                request.requester_id,
                request.provider_id,
                booking.date.isoformat(),
                format_time(booking.start),
                confidence,
                booking.auto_scheduled,
            )
            return booking

        raise SchedulingError("booking_replan_attempts must not be negative")

    def reschedule(self, booking_id: int, reason: str) -> Booking:
        """Move an active booking to the best slot found at HIGH urgency."""
        booking = self._repository.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound(f"booking_id {booking_id} not found")
        if not booking.status.is_active:
            raise InvalidRequest(
                f"booking_id {booking_id} is {booking.status.value} and cannot be rescheduled"
            )
        if not reason or not reason.strip():
            raise InvalidRequest("reschedule reason must be non-empty")

        request = SchedulingRequest(
            requester_id=booking.requester_id,
            provider_id=booking.provider_id,
            category=booking.category,
            urgency=Urgency.HIGH,
            duration_minutes=booking.duration_minutes,
        )
        note = f"{booking.note or ''} [Rescheduled: {reason.strip()}]".strip()

        attempts = self._settings.booking_replan_attempts + 1
        for attempt in range(attempts):
            schedule = self._optimizer.optimize(request)
            try:
                moved = self._resolver.commit_reschedule(booking_id, schedule.primary, note=note)
            except SlotConflict as exc:
                logger.warning(
                    "Reschedule commit lost race | booking_id=%s | attempt=%s | error=%s",
                    booking_id,
                    attempt + 1,
                    exc,
                )
                if attempt + 1 == attempts:
                    raise
                continue
            return moved

        raise SchedulingError("booking_replan_attempts must not be negative")

    def update_status(self, booking_id: int, status: BookingStatus) -> Booking:
        current = self._repository.get_booking(booking_id)
        if current is None:
            raise BookingNotFound(f"booking_id {booking_id} not found")

        try:
            updated = self._repository.update_booking_status(booking_id, status)
        except sqlite3.IntegrityError as exc:
            raise SlotConflict(
                current.provider_id,
                current.date,
                current.start,
                "another active booking holds this slot",
            ) from exc
        if updated is None:
            raise BookingNotFound(f"booking_id {booking_id} not found")

        if status in (BookingStatus.COMPLETED, BookingStatus.CANCELLED):
            self._profiles.invalidate(updated.requester_id, updated.provider_id)

        logger.info(
            "Booking status updated | booking_id=%s | from=%s | to=%s",
            booking_id,
            current.status.value,
            status.value,
        )
        return updated
