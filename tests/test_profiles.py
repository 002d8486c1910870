from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, time

import pytest

from caresched.domain.errors import AdapterUnavailable
from caresched.domain.models import (
    BookingStatus,
    DailyAggregate,
    HistoricalAppointment,
    TimeWindow,
)
from caresched.repository.adapters import HistoryStore
from caresched.repository.data_repository import DataRepository
from caresched.services.profile_service import (
    PreferenceProfiler,
    ProfileCache,
    ProfileService,
    ProviderPatternProfiler,
    top_ranked,
)
from caresched.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str):
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        adapter_retry_attempts=2,
        adapter_backoff_multiplier=0.0,
    )


def _appointment(
    booking_id: int,
    day: date,
    start: time,
    status: BookingStatus = BookingStatus.COMPLETED,
    provider_id: str = "dr_adams",
    duration: int = 30,
) -> HistoricalAppointment:
    return HistoricalAppointment(
        booking_id=booking_id,
        requester_id="patient_001",
        provider_id=provider_id,
        date=day,
        start=start,
        duration_minutes=duration,
        status=status,
    )


def test_top_ranked_breaks_ties_by_natural_order() -> None:
    assert top_ranked(["b", "a", "c", "a", "b"], 2) == ("a", "b")
    assert top_ranked([], 3) == ()


def test_empty_history_yields_default_profile() -> None:
    profile = PreferenceProfiler(get_settings()).build("patient_001", [])

    assert profile.preferred_times == ()
    assert profile.preferred_days == ()
    assert profile.no_show_rate == 0.0
    assert profile.average_duration_minutes == 30
    assert profile.sample_size == 0


def test_preference_profile_counts_times_days_and_providers() -> None:
    history = [
        _appointment(1, date(2024, 1, 1), time(9, 0)),
        _appointment(2, date(2024, 1, 8), time(9, 0)),
        _appointment(3, date(2024, 1, 15), time(9, 0), status=BookingStatus.CANCELLED),
        _appointment(4, date(2024, 1, 3), time(14, 0), provider_id="dr_baker", duration=60),
        _appointment(5, date(2024, 1, 10), time(14, 0), provider_id="dr_baker"),
        _appointment(6, date(2024, 1, 5), time(11, 0), provider_id="dr_chen"),
    ]

    profile = PreferenceProfiler(get_settings()).build("patient_001", history)

    assert profile.preferred_times == (time(9, 0), time(14, 0), time(11, 0))
    assert profile.preferred_days == (0, 2)
    assert profile.preferred_providers == ("dr_adams", "dr_baker")
    assert profile.no_show_rate == 1 / 6
    assert profile.average_duration_minutes == 35
    assert profile.sample_size == 6


def test_provider_pattern_utilization_and_success_rates() -> None:
    aggregates = [
        DailyAggregate("dr_adams", date(2024, 1, 1), 7, 6, 1, 14),
        DailyAggregate("dr_adams", date(2024, 1, 2), 14, 14, 0, 14),
    ]
    history = [
        _appointment(1, date(2024, 1, 1), time(9, 0)),
        _appointment(2, date(2024, 1, 8), time(9, 0)),
        _appointment(3, date(2024, 1, 15), time(9, 0), status=BookingStatus.CANCELLED),
        _appointment(4, date(2024, 1, 16), time(10, 0)),
        _appointment(5, date(2024, 1, 22), time(15, 0), status=BookingStatus.PENDING),
    ]

    pattern = ProviderPatternProfiler(get_settings()).build("dr_adams", aggregates, history)

    assert pattern.utilization_rate == 0.75
    assert pattern.favored_windows[0] == TimeWindow(time(9, 0), time(9, 30))
    assert pattern.slot_success_rates[(0, time(9, 0))] == pytest.approx(2 / 3)
    assert pattern.slot_success_rates[(1, time(10, 0))] == 1.0
    assert (0, time(15, 0)) not in pattern.slot_success_rates
    assert pattern.sample_size == 5


def test_utilization_is_zero_without_capacity() -> None:
    assert ProviderPatternProfiler.utilization_rate([]) == 0.0
    assert ProviderPatternProfiler.utilization_rate(
        [DailyAggregate("dr_adams", date(2024, 1, 1), 3, 3, 0, 0)]
    ) == 0.0


def test_profile_cache_reuses_until_invalidated() -> None:
    cache = ProfileCache(ttl_seconds=60, max_entries=16)
    calls = []

    def builder():
        calls.append(1)
        return f"profile-{len(calls)}"

    assert cache.get_or_build("requester", "patient_001", builder) == "profile-1"
    assert cache.get_or_build("requester", "patient_001", builder) == "profile-1"
    assert len(calls) == 1

    cache.invalidate("requester", "patient_001")
    assert cache.get("requester", "patient_001") is None
    assert cache.get_or_build("requester", "patient_001", builder) == "profile-2"


def test_invalidation_during_build_discards_stale_result() -> None:
    cache = ProfileCache(ttl_seconds=60, max_entries=16)

    def builder():
        cache.invalidate("requester", "patient_001")
        return "stale"

    assert cache.get_or_build("requester", "patient_001", builder) == "stale"
    assert cache.get("requester", "patient_001") is None


def test_invalidation_is_scoped_to_profile_kind() -> None:
    cache = ProfileCache(ttl_seconds=60, max_entries=16)
    cache.get_or_build("requester", "shared_id", lambda: "requester-profile")
    cache.get_or_build("provider", "shared_id", lambda: "provider-pattern")

    cache.invalidate("requester", "shared_id")

    assert cache.get("requester", "shared_id") is None
    assert cache.get("provider", "shared_id") == "provider-pattern"


def test_stale_build_guard_only_applies_to_its_own_kind() -> None:
    cache = ProfileCache(ttl_seconds=60, max_entries=16)

    def builder():
        cache.invalidate("requester", "shared_id")
        return "provider-pattern"

    cache.get_or_build("provider", "shared_id", builder)

    assert cache.get("provider", "shared_id") == "provider-pattern"


def test_profile_service_reads_history_through_adapter(tmp_path) -> None:
    settings = _build_test_settings(tmp_path, "profiles.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    for day in (date(2024, 1, 1), date(2024, 1, 8)):
        repository.create_booking(
            provider_id="dr_adams",
            requester_id="patient_001",
            slot_date=day,
            slot_time=time(10, 0),
            duration_minutes=30,
            category="consultation",
            status=BookingStatus.COMPLETED,
        )

    history_store = HistoryStore(repository, settings)
    service = ProfileService(
        history_store=history_store,
        settings=settings,
        clock=lambda: datetime(2024, 1, 15, 8, 0),
    )

    profile, degraded = service.requester_profile("patient_001")
    pattern, pattern_degraded = service.provider_pattern("dr_adams")

    assert degraded is False and pattern_degraded is False
    assert profile.preferred_times == (time(10, 0),)
    assert pattern.slot_success_rates[(0, time(10, 0))] == 1.0
    assert service.cache.get("requester", "patient_001") is profile
    history_store.close()


def test_profile_service_degrades_without_caching(tmp_path, monkeypatch) -> None:
    settings = _build_test_settings(tmp_path, "profiles_degraded.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    history_store = HistoryStore(repository, settings)

    def unavailable(*args, **kwargs):
        raise AdapterUnavailable("history", "connection refused")

    monkeypatch.setattr(history_store, "get_appointment_history", unavailable)
    service = ProfileService(history_store=history_store, settings=settings)

    profile, degraded = service.requester_profile("patient_001")
    pattern, pattern_degraded = service.provider_pattern("dr_adams")

    assert degraded is True and pattern_degraded is True
    assert profile.sample_size == 0
    assert pattern.favored_windows == ()
    assert len(service.cache) == 0
    history_store.close()
