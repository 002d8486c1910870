from __future__ import annotations

import sqlite3
import threading
from dataclasses import replace
from datetime import date, datetime, time

import pytest

from caresched.domain.errors import BookingNotFound, SlotConflict
from caresched.domain.models import (
    BookingStatus,
    CandidateSlot,
    DateRange,
    OverrideType,
    WorkingDay,
)
from caresched.repository.data_repository import DataRepository
from caresched.services.conflict_service import (
    ADJUSTED_NOTE,
    ConflictResolver,
    SlotLockRegistry,
)
from caresched.services.slot_generator import SlotGenerator
from caresched.utils.config import get_settings


MONDAY = date(2024, 1, 1)
PROVIDER = "dr_test"


def _build_test_settings(tmp_path, filename: str, **overrides):
    base = get_settings()
    return replace(base, database_path=tmp_path / filename, **overrides)


def _seed_template(repository: DataRepository, max_appointments: int = 14) -> None:
    for weekday in range(5):
        repository.save_working_day(
            PROVIDER,
            WorkingDay(
                weekday=weekday,
                is_working=True,
                start=time(9, 0),
                end=time(17, 0),
                break_start=time(12, 0),
                break_end=time(13, 0),
                max_appointments=max_appointments,
            ),
        )


def _setup(tmp_path, filename: str, max_appointments: int = 14, **overrides):
    settings = _build_test_settings(tmp_path, filename, **overrides)
    repository = DataRepository(settings)
    repository.initialize_database()
    _seed_template(repository, max_appointments)
    return settings, repository


def _monday_pool(repository: DataRepository, settings) -> list[CandidateSlot]:
    generator = SlotGenerator(settings)
    return list(
        generator.generate(
            provider_id=PROVIDER,
            date_range=DateRange(MONDAY, MONDAY),
            duration_minutes=30,
            template=repository.get_working_hours_template(PROVIDER),
            now=datetime(2023, 12, 31, 8, 0),
        )
    )


def _slot(start: time, end: time, confidence: float = 0.9) -> CandidateSlot:
    return CandidateSlot(
        date=MONDAY,
        start=start,
        end=end,
        confidence=confidence,
        reasoning="excellent match",
    )


def _book(repository: DataRepository, start: time, requester_id: str = "patient_x") -> int:
    booking = repository.create_booking(
        provider_id=PROVIDER,
        requester_id=requester_id,
        slot_date=MONDAY,
        slot_time=start,
        duration_minutes=30,
        category="consultation",
    )
    return booking.booking_id


def test_concurrent_commits_for_same_slot_allow_exactly_one(tmp_path) -> None:
    settings, repository = _setup(tmp_path, "concurrent.db")
    resolver = ConflictResolver(repository, settings)
    slot = _slot(time(10, 0), time(10, 30))
    workers = 8
    barrier = threading.Barrier(workers)
    bookings = []
    conflicts = []
    errors = []

    def attempt(index: int) -> None:
        barrier.wait()
        try:
            bookings.append(resolver.commit_booking(slot, f"patient_{index:03d}", PROVIDER))
        except SlotConflict as exc:
            conflicts.append(exc)
        except Exception as exc:  # pragma: no cover - surfaces unexpected failures
            errors.append(exc)

    threads = [threading.Thread(target=attempt, args=(index,)) for index in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(bookings) == 1
    assert len(conflicts) == workers - 1
    active = repository.list_active_bookings(PROVIDER, DateRange(MONDAY, MONDAY))
    assert [(item.date, item.start) for item in active] == [(MONDAY, time(10, 0))]


def test_separate_resolvers_are_still_protected_by_unique_index(tmp_path) -> None:
    settings, repository = _setup(tmp_path, "index.db")
    _book(repository, time(10, 0))

    with pytest.raises(sqlite3.IntegrityError):
        _book(repository, time(10, 0), requester_id="patient_y")

    resolver = ConflictResolver(repository, settings, locks=SlotLockRegistry())
    with pytest.raises(SlotConflict):
        resolver.commit_booking(_slot(time(10, 0), time(10, 30)), "patient_y", PROVIDER)


def test_cancelled_booking_frees_the_slot(tmp_path) -> None:
    settings, repository = _setup(tmp_path, "cancelled.db")
    booking_id = _book(repository, time(10, 0))
    repository.update_booking_status(booking_id, BookingStatus.CANCELLED)

    booking = ConflictResolver(repository, settings).commit_booking(
        _slot(time(10, 0), time(10, 30)),
        "patient_y",
        PROVIDER,
    )

    assert booking.status is BookingStatus.PENDING
    assert booking.confidence_score == 0.9


def test_lock_registry_releases_unused_keys() -> None:
    registry = SlotLockRegistry()
    with registry.hold(PROVIDER, MONDAY):
        assert len(registry) == 1
    assert len(registry) == 0


def test_conflicting_candidate_is_repaired_with_later_step_first(tmp_path) -> None:
    settings, repository = _setup(tmp_path, "repair.db")
    _book(repository, time(10, 0))
    resolver = ConflictResolver(repository, settings)

    result = resolver.resolve(
        [_slot(time(10, 0), time(10, 30))],
        PROVIDER,
        _monday_pool(repository, settings),
    )

    assert result.adjusted_count == 1
    assert result.dropped_count == 0
    repaired = result.slots[0]
    assert repaired.start == time(10, 30)
    assert repaired.adjusted is True
    assert repaired.confidence == 0.9
    assert repaired.reasoning.endswith(ADJUSTED_NOTE)


def test_repair_falls_back_to_earlier_step(tmp_path) -> None:
    settings, repository = _setup(tmp_path, "repair_earlier.db")
    for start in (time(10, 0), time(10, 30), time(11, 0)):
        _book(repository, start)

    result = ConflictResolver(repository, settings).resolve(
        [_slot(time(10, 0), time(10, 30))],
        PROVIDER,
        _monday_pool(repository, settings),
    )

    assert [slot.start for slot in result.slots] == [time(9, 30)]


def test_candidate_is_dropped_when_radius_is_exhausted(tmp_path) -> None:
    settings, repository = _setup(tmp_path, "drop.db", conflict_search_radius=1)
    for start in (time(9, 30), time(10, 0), time(10, 30)):
        _book(repository, start)

    result = ConflictResolver(repository, settings).resolve(
        [_slot(time(10, 0), time(10, 30))],
        PROVIDER,
        _monday_pool(repository, settings),
    )

    assert result.slots == []
    assert result.dropped_count == 1


def test_resolver_never_reuses_an_accepted_slot(tmp_path) -> None:
    settings, repository = _setup(tmp_path, "reuse.db")
    _book(repository, time(10, 0))

    result = ConflictResolver(repository, settings).resolve(
        [
            _slot(time(10, 0), time(10, 30), confidence=0.9),
            _slot(time(10, 30), time(11, 0), confidence=0.8),
        ],
        PROVIDER,
        _monday_pool(repository, settings),
    )

    keys = [slot.key for slot in result.slots]
    assert len(keys) == len(set(keys))
    assert result.slots[0].start == time(10, 30)


def test_partial_override_blocks_candidates_and_commits(tmp_path) -> None:
    settings, repository = _setup(tmp_path, "override.db")
    repository.create_override(
        provider_id=PROVIDER,
        start_date=MONDAY,
        end_date=MONDAY,
        override_type=OverrideType.EMERGENCY_BLOCK,
        is_available=False,
        start=time(14, 0),
        end=time(15, 0),
        reason="staff meeting",
    )
    resolver = ConflictResolver(repository, settings)

    with pytest.raises(SlotConflict, match="emergency_block"):
        resolver.commit_booking(_slot(time(14, 30), time(15, 0)), "patient_y", PROVIDER)

    result = resolver.resolve(
        [_slot(time(14, 0), time(14, 30))],
        PROVIDER,
        _monday_pool(repository, settings),
    )
    assert [slot.start for slot in result.slots] == [time(13, 30)]


def test_daily_cap_rejects_further_bookings(tmp_path) -> None:
    settings, repository = _setup(tmp_path, "cap.db", max_appointments=1)
    _book(repository, time(9, 0))

    with pytest.raises(SlotConflict, match="cap"):
        ConflictResolver(repository, settings).commit_booking(
            _slot(time(15, 0), time(15, 30)),
            "patient_y",
            PROVIDER,
        )


def test_commit_reschedule_moves_booking_and_rejects_taken_slot(tmp_path) -> None:
    settings, repository = _setup(tmp_path, "reschedule.db")
    booking_id = _book(repository, time(10, 0))
    _book(repository, time(11, 0), requester_id="patient_y")
    resolver = ConflictResolver(repository, settings)

    moved = resolver.commit_reschedule(
        booking_id,
        _slot(time(10, 30), time(11, 0), confidence=0.7),
        note="[Rescheduled: test]",
    )
    assert moved.start == time(10, 30)
    assert moved.note == "[Rescheduled: test]"

    with pytest.raises(SlotConflict):
        resolver.commit_reschedule(booking_id, _slot(time(11, 0), time(11, 30)))

    with pytest.raises(BookingNotFound):
        resolver.commit_reschedule(9999, _slot(time(15, 0), time(15, 30)))


@pytest.mark.parametrize(
    ("max_appointments", "first", "second"),
    [
        (14, (time(10, 0), time(11, 0)), (time(10, 30), time(11, 0))),
        (1, (time(9, 0), time(9, 30)), (time(15, 0), time(15, 30))),
    ],
)
def test_commits_on_the_same_day_are_serialized(
    tmp_path, monkeypatch, max_appointments, first, second
) -> None:
    settings, repository = _setup(tmp_path, "same_day.db", max_appointments)
    resolver = ConflictResolver(repository, settings)
    first_reading = threading.Event()
    second_read = threading.Event()
    release = threading.Event()
    real_read = repository.list_active_bookings

    def gated_read(provider_id, date_range):
        bookings = real_read(provider_id, date_range)
        if threading.current_thread().name == "first":
            first_reading.set()
            release.wait(timeout=2)
        else:
            second_read.set()
        return bookings

    monkeypatch.setattr(repository, "list_active_bookings", gated_read)
    outcomes = {}

    def attempt(name: str, window: tuple[time, time]) -> None:
        try:
            outcomes[name] = resolver.commit_booking(_slot(*window), f"patient_{name}", PROVIDER)
        except SlotConflict as exc:
            outcomes[name] = exc

    first_thread = threading.Thread(target=attempt, args=("first", first), name="first")
    second_thread = threading.Thread(target=attempt, args=("second", second), name="second")
    first_thread.start()
    assert first_reading.wait(timeout=2)
    second_thread.start()

    # The second commit must not reach its read while the first holds the day.
    assert not second_read.wait(timeout=0.3)
    release.set()
    first_thread.join()
    second_thread.join()

    assert not isinstance(outcomes["first"], SlotConflict)
    assert isinstance(outcomes["second"], SlotConflict)
    active = real_read(PROVIDER, DateRange(MONDAY, MONDAY))
    assert [item.start for item in active] == [first[0]]


@pytest.mark.parametrize(
    ("slot_date", "start", "end", "reason"),
    [
        (MONDAY, time(12, 0), time(12, 30), "break"),
        (MONDAY, time(12, 45), time(13, 15), "break"),
        (MONDAY, time(3, 0), time(3, 30), "outside working hours"),
        (MONDAY, time(16, 45), time(17, 15), "outside working hours"),
        (date(2024, 1, 7), time(10, 0), time(10, 30), "outside working hours"),
    ],
)
def test_commit_rejects_slots_outside_the_working_day(tmp_path, slot_date, start, end, reason) -> None:
    settings, repository = _setup(tmp_path, "hours.db")
    resolver = ConflictResolver(repository, settings)
    slot = CandidateSlot(date=slot_date, start=start, end=end, confidence=0.9)

    with pytest.raises(SlotConflict, match=reason):
        resolver.commit_booking(slot, "patient_y", PROVIDER)

    assert repository.list_active_bookings(PROVIDER, DateRange(slot_date, slot_date)) == []


def test_reschedule_into_break_is_rejected(tmp_path) -> None:
    settings, repository = _setup(tmp_path, "reschedule_break.db")
    booking_id = _book(repository, time(10, 0))

    with pytest.raises(SlotConflict, match="break"):
        ConflictResolver(repository, settings).commit_reschedule(
            booking_id,
            _slot(time(12, 0), time(12, 30)),
        )
    assert repository.get_booking(booking_id).start == time(10, 0)


def test_extra_capacity_override_opens_a_closed_day_for_commits(tmp_path) -> None:
    settings, repository = _setup(tmp_path, "extra.db")
    saturday = date(2024, 1, 6)
    repository.create_override(
        provider_id=PROVIDER,
        start_date=saturday,
        end_date=saturday,
        override_type=OverrideType.EXTRA_CAPACITY,
        is_available=True,
        start=time(9, 0),
        end=time(12, 0),
        reason="weekend clinic",
    )
    slot = CandidateSlot(date=saturday, start=time(10, 0), end=time(10, 30), confidence=0.8)

    booking = ConflictResolver(repository, settings).commit_booking(slot, "patient_y", PROVIDER)

    assert booking.date == saturday
