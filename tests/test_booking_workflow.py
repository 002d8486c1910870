from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, time

import pytest

from caresched.domain.errors import BookingNotFound, InvalidRequest, SchedulingError, SlotConflict
from caresched.domain.models import (
    BookingStatus,
    SchedulingConstraints,
    SchedulingRequest,
    Urgency,
    WorkingDay,
)
from caresched.repository.adapters import CalendarSource, HistoryStore
from caresched.repository.data_repository import DataRepository
from caresched.services.booking_service import REQUESTED_SLOT_REASONING, BookingWorkflowService
from caresched.services.conflict_service import ConflictResolver
from caresched.services.optimizer_service import ScheduleOptimizer
from caresched.services.profile_service import ProfileService
from caresched.utils.config import get_settings


MONDAY = date(2024, 1, 1)
PROVIDER = "dr_test"


def clock() -> datetime:
    return datetime(2024, 1, 1, 8, 0)


def _build_test_settings(tmp_path, filename: str, **overrides):
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        adapter_retry_attempts=1,
        adapter_backoff_multiplier=0.0,
        **overrides,
    )


def _build_workflow(tmp_path, filename: str, **overrides):
    settings = _build_test_settings(tmp_path, filename, **overrides)
    repository = DataRepository(settings)
    repository.initialize_database()
    for weekday in range(7):
        if weekday < 5:
            day = WorkingDay(
                weekday=weekday,
                is_working=True,
                start=time(9, 0),
                end=time(17, 0),
                break_start=time(12, 0),
                break_end=time(13, 0),
                max_appointments=14,
            )
        else:
            day = WorkingDay(weekday=weekday, is_working=False)
        repository.save_working_day(PROVIDER, day)

    profiles = ProfileService(
        history_store=HistoryStore(repository, settings),
        settings=settings,
        clock=clock,
    )
    resolver = ConflictResolver(repository, settings)
    optimizer = ScheduleOptimizer(
        calendar=CalendarSource(repository, settings),
        profiles=profiles,
        resolver=resolver,
        repository=repository,
        settings=settings,
        clock=clock,
    )
    workflow = BookingWorkflowService(optimizer, resolver, profiles, repository, settings)
    return workflow, resolver, profiles, repository


def _request(**kwargs) -> SchedulingRequest:
    defaults = {
        "requester_id": "patient_001",
        "provider_id": PROVIDER,
        "category": "consultation",
        "urgency": Urgency.URGENT,
        "constraints": SchedulingConstraints(max_wait_days=1),
    }
    defaults.update(kwargs)
    return SchedulingRequest(**defaults)


def _explicit_request() -> SchedulingRequest:
    return _request(
        urgency=Urgency.LOW,
        preferred_date=MONDAY,
        preferred_time=time(15, 15),
    )


def test_schedule_without_explicit_slot_books_primary(tmp_path) -> None:
    workflow, _, _, _ = _build_workflow(tmp_path, "primary.db")

    booking = workflow.schedule(_request())

    assert (booking.date, booking.start) == (MONDAY, time(9, 0))
    assert booking.status is BookingStatus.SCHEDULED
    assert booking.priority_score == 4
    assert booking.confidence_score == pytest.approx(0.635)
    assert booking.auto_scheduled is False


def test_high_confidence_primary_is_marked_auto_scheduled(tmp_path) -> None:
    workflow, _, _, repository = _build_workflow(tmp_path, "auto.db")
    for day in (date(2023, 12, 18), date(2023, 12, 25)):
        repository.create_booking(
            provider_id=PROVIDER,
            requester_id="patient_001",
            slot_date=day,
            slot_time=time(14, 0),
            duration_minutes=30,
            category="consultation",
            status=BookingStatus.COMPLETED,
        )

    booking = workflow.schedule(_request())

    assert booking.start == time(14, 0)
    assert booking.auto_scheduled is True


def test_requested_slot_is_kept_when_optimizer_is_not_confident(tmp_path) -> None:
    workflow, _, _, _ = _build_workflow(tmp_path, "requested.db")

    booking = workflow.schedule(_explicit_request())

    assert booking.start == time(15, 15)
    assert booking.reasoning == REQUESTED_SLOT_REASONING
    assert booking.auto_scheduled is False
    assert booking.priority_score == 1


def test_disabled_optimization_requires_explicit_slot(tmp_path) -> None:
    workflow, _, _, _ = _build_workflow(tmp_path, "disabled.db")

    with pytest.raises(InvalidRequest):
        workflow.schedule(_request(), enable_optimization=False)


def test_disabled_optimization_does_not_replan_on_conflict(tmp_path) -> None:
    workflow, _, _, _ = _build_workflow(tmp_path, "disabled_conflict.db")
    workflow.schedule(_explicit_request(), enable_optimization=False)

    with pytest.raises(SlotConflict):
        workflow.schedule(
            replace(_explicit_request(), requester_id="patient_002"),
            enable_optimization=False,
        )


def test_lost_race_replans_onto_optimized_primary(tmp_path, monkeypatch) -> None:
    workflow, resolver, _, _ = _build_workflow(tmp_path, "replan.db")
    real_commit = resolver.commit_booking
    attempts = []

    def flaky_commit(slot, requester_id, provider_id, **kwargs):
        attempts.append(slot.start)
        if len(attempts) == 1:
            raise SlotConflict(provider_id, slot.date, slot.start, "taken by a concurrent commit")
        return real_commit(slot, requester_id, provider_id, **kwargs)

    monkeypatch.setattr(resolver, "commit_booking", flaky_commit)

    booking = workflow.schedule(_explicit_request())

    assert attempts == [time(15, 15), time(9, 0)]
    assert booking.start == time(9, 0)


def test_replan_budget_is_bounded(tmp_path, monkeypatch) -> None:
    workflow, resolver, _, _ = _build_workflow(tmp_path, "budget.db")
    attempts = []

    def always_conflict(slot, requester_id, provider_id, **kwargs):
        attempts.append(slot.start)
        raise SlotConflict(provider_id, slot.date, slot.start)

    monkeypatch.setattr(resolver, "commit_booking", always_conflict)

    with pytest.raises(SlotConflict):
        workflow.schedule(_request())
    assert len(attempts) == get_settings().booking_replan_attempts + 1


def test_reschedule_moves_booking_and_appends_note(tmp_path) -> None:
    workflow, _, _, _ = _build_workflow(tmp_path, "reschedule.db")
    original = workflow.schedule(_request())

    moved = workflow.reschedule(original.booking_id, "doctor unavailable")

    assert moved.booking_id == original.booking_id
    assert moved.start != original.start
    assert moved.note == "[Rescheduled: doctor unavailable]"
    assert moved.status is BookingStatus.SCHEDULED


def test_reschedule_rejects_inactive_and_unknown_bookings(tmp_path) -> None:
    workflow, _, _, _ = _build_workflow(tmp_path, "reschedule_invalid.db")
    booking = workflow.schedule(_request())

    with pytest.raises(InvalidRequest):
        workflow.reschedule(booking.booking_id, "   ")

    workflow.update_status(booking.booking_id, BookingStatus.CANCELLED)
    with pytest.raises(InvalidRequest):
        workflow.reschedule(booking.booking_id, "patient request")

    with pytest.raises(BookingNotFound):
        workflow.reschedule(9999, "patient request")


def test_closing_a_booking_invalidates_cached_profiles(tmp_path) -> None:
    workflow, _, profiles, _ = _build_workflow(tmp_path, "invalidate.db")
    booking = workflow.schedule(_request())
    profiles.requester_profile("patient_001")
    assert profiles.cache.get("requester", "patient_001") is not None

    updated = workflow.update_status(booking.booking_id, BookingStatus.COMPLETED)

    assert updated.status is BookingStatus.COMPLETED
    assert profiles.cache.get("requester", "patient_001") is None


def test_reactivating_into_taken_slot_conflicts(tmp_path) -> None:
    workflow, _, _, _ = _build_workflow(tmp_path, "reactivate.db")
    first = workflow.schedule(_request())
    workflow.update_status(first.booking_id, BookingStatus.CANCELLED)
    second = workflow.schedule(_request(requester_id="patient_002"))
    assert second.start == first.start

    with pytest.raises(SlotConflict):
        workflow.update_status(first.booking_id, BookingStatus.SCHEDULED)


def test_update_status_for_unknown_booking_raises(tmp_path) -> None:
    workflow, _, _, _ = _build_workflow(tmp_path, "unknown.db")

    with pytest.raises(BookingNotFound):
        workflow.update_status(4242, BookingStatus.COMPLETED)


def test_exhausted_replans_raise_the_final_conflict(tmp_path, monkeypatch) -> None:
    workflow, resolver, _, _ = _build_workflow(tmp_path, "final_conflict.db")
    raised = []

    def always_conflict(slot, requester_id, provider_id, **kwargs):
        raised.append(SlotConflict(provider_id, slot.date, slot.start, f"attempt {len(raised) + 1}"))
        raise raised[-1]

    monkeypatch.setattr(resolver, "commit_booking", always_conflict)

    with pytest.raises(SlotConflict) as excinfo:
        workflow.schedule(_request())
    assert excinfo.value is raised[-1]


def test_reschedule_gives_up_after_replan_budget(tmp_path, monkeypatch) -> None:
    workflow, resolver, _, repository = _build_workflow(tmp_path, "reschedule_budget.db")
    original = workflow.schedule(_request())
    attempts = []

    def always_conflict(booking_id, slot, note=None):
        attempts.append(slot.start)
        raise SlotConflict(PROVIDER, slot.date, slot.start)

    monkeypatch.setattr(resolver, "commit_reschedule", always_conflict)

    with pytest.raises(SlotConflict):
        workflow.reschedule(original.booking_id, "doctor unavailable")
    assert len(attempts) == get_settings().booking_replan_attempts + 1
    assert repository.get_booking(original.booking_id).start == original.start


def test_negative_replan_budget_is_reported(tmp_path) -> None:
    workflow, _, _, _ = _build_workflow(tmp_path, "negative.db", booking_replan_attempts=-1)

    with pytest.raises(SchedulingError, match="booking_replan_attempts"):
        workflow.schedule(_explicit_request())


def test_requested_slot_in_break_is_not_booked(tmp_path) -> None:
    workflow, _, _, repository = _build_workflow(tmp_path, "break.db")
    request = replace(_explicit_request(), preferred_time=time(12, 15))

    with pytest.raises(SlotConflict, match="break"):
        workflow.schedule(request, enable_optimization=False)
    assert repository.get_booking(1) is None
