"""Preference and provider pattern mining with an invalidating profile cache."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, time, timedelta
from threading import RLock
from typing import Callable, Hashable, Iterable, Optional, TypeVar

import pandas as pd
from cachetools import TTLCache

from caresched.domain.errors import AdapterUnavailable
from caresched.domain.models import (
    BookingStatus,
    DailyAggregate,
    DateRange,
    HistoricalAppointment,
    PreferenceProfile,
    ProviderPattern,
)
from caresched.repository.adapters import HistoryStore
from caresched.utils.config import Settings, get_settings
from caresched.utils.logger import get_logger


logger = get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

REQUESTER_KIND = "requester"
PROVIDER_KIND = "provider"


def top_ranked(values: Iterable[K], limit: int) -> tuple[K, ...]:
    """Most frequent values first; equal counts fall back to natural order."""
    counts = Counter(values)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return tuple(value for value, _ in ranked[:limit])


class PreferenceProfiler:
    """Mines a requester's appointment history into a preference profile."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

    def build(
        self,
        requester_id: str,
        history: list[HistoricalAppointment],
    ) -> PreferenceProfile:
        if not history:
            return PreferenceProfile(
                requester_id=requester_id,
                average_duration_minutes=self._settings.profile_default_duration_minutes,
            )

        cancelled = sum(1 for item in history if item.status is BookingStatus.CANCELLED)
        average_duration = round(
            sum(item.duration_minutes for item in history) / len(history)
        )
        return PreferenceProfile(
            requester_id=requester_id,
            preferred_times=top_ranked(
                (item.start for item in history),
                self._settings.profile_top_times,
            ),
            preferred_days=top_ranked(
                (item.date.weekday() for item in history),
                self._settings.profile_top_days,
            ),
            preferred_providers=top_ranked(
                (item.provider_id for item in history),
                self._settings.profile_top_providers,
            ),
            average_duration_minutes=int(average_duration),
            no_show_rate=cancelled / len(history),
            sample_size=len(history),
        )


class ProviderPatternProfiler:
    """Mines provider analytics and history into utilization and slot patterns."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

    @staticmethod
    def utilization_rate(aggregates: list[DailyAggregate]) -> float:
        if not aggregates:
            return 0.0
        frame = pd.DataFrame(
            {
                "total_appointments": [item.total_appointments for item in aggregates],
                "available_slots": [item.available_slots for item in aggregates],
            }
        )
        available = float(frame["available_slots"].sum())
        if available <= 0.0:
            return 0.0
        booked = float(frame["total_appointments"].sum())
        return max(0.0, min(1.0, booked / available))

    @staticmethod
    def slot_success_rates(
        history: list[HistoricalAppointment],
    ) -> dict[tuple[int, time], float]:
        """Completed share of finished appointments per (weekday, start)."""
        finished = [
            item
            for item in history
            if item.status in (BookingStatus.COMPLETED, BookingStatus.CANCELLED)
        ]
        if not finished:
            return {}
        frame = pd.DataFrame(
            {
                "weekday": [item.date.weekday() for item in finished],
                "start": [item.start for item in finished],
                "completed": [
                    1.0 if item.status is BookingStatus.COMPLETED else 0.0
                    for item in finished
                ],
            }
        )
        rates = frame.groupby(["weekday", "start"], sort=True)["completed"].mean()
        return {
            (int(weekday), start): float(rate)
            for (weekday, start), rate in rates.items()
        }

    def build(
        self,
        provider_id: str,
        aggregates: list[DailyAggregate],
        history: list[HistoricalAppointment],
    ) -> ProviderPattern:
        completed_windows = [
            item.window
            for item in history
            if item.status is BookingStatus.COMPLETED
        ]
        favored = top_ranked(completed_windows, self._settings.provider_top_windows)
        return ProviderPattern(
            provider_id=provider_id,
            favored_windows=favored,
            utilization_rate=self.utilization_rate(aggregates),
            slot_success_rates=self.slot_success_rates(history),
            sample_size=len(history),
        )


class ProfileCache:
    """Thread-safe TTL cache whose entries are replaced, never mutated.

    ``invalidate`` bumps a per-(kind, party) generation so a build that started
    before the invalidation cannot store its stale result afterwards.
    """

    def __init__(self, ttl_seconds: int, max_entries: int) -> None:
        self._cache: TTLCache = TTLCache(maxsize=max_entries, ttl=ttl_seconds)
        self._generations: dict[tuple[str, str], int] = {}
        self._lock = RLock()

    def get(self, kind: str, party_id: str):
        with self._lock:
            return self._cache.get((kind, party_id))

    def get_or_build(self, kind: str, party_id: str, builder: Callable[[], V]) -> V:
        with self._lock:
            cached = self._cache.get((kind, party_id))
            generation = self._generations.get((kind, party_id), 0)
        if cached is not None:
            return cached

        value = builder()
        with self._lock:
            if self._generations.get((kind, party_id), 0) == generation:
                self._cache[(kind, party_id)] = value
        return value

    def invalidate(self, kind: str, party_id: str) -> None:
        key = (kind, party_id)
        with self._lock:
            self._generations[key] = self._generations.get(key, 0) + 1
            self._cache.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


class ProfileService:
    """Loads profiles through the history adapter, caching successful builds."""

    def __init__(
        self,
        history_store: Optional[HistoryStore] = None,
        settings: Optional[Settings] = None,
        cache: Optional[ProfileCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._history_store = history_store or HistoryStore(settings=self._settings)
        self._cache = cache or ProfileCache(
            ttl_seconds=self._settings.profile_cache_ttl_seconds,
            max_entries=self._settings.profile_cache_max_entries,
        )
        self._clock = clock or datetime.now
        self._preference_profiler = PreferenceProfiler(self._settings)
        self._pattern_profiler = ProviderPatternProfiler(self._settings)

    @property
    def cache(self) -> ProfileCache:
        return self._cache

    def requester_profile(self, requester_id: str) -> tuple[PreferenceProfile, bool]:
        """Return ``(profile, degraded)``; degraded profiles are not cached."""
        try:
            profile = self._cache.get_or_build(
                REQUESTER_KIND,
                requester_id,
                lambda: self._preference_profiler.build(
                    requester_id,
                    self._history_store.get_appointment_history(
                        requester_id,
                        self._settings.profile_history_limit,
                    ),
                ),
            )
            return profile, False
        except AdapterUnavailable as exc:
            logger.warning(
                "Preference profile degraded | requester_id=%s | error=%s",
                requester_id,
                exc,
            )
            return self._preference_profiler.build(requester_id, []), True

    def provider_pattern(self, provider_id: str) -> tuple[ProviderPattern, bool]:
        """Return ``(pattern, degraded)``; degraded patterns are not cached."""
        today = self._clock().date()
        lookback = DateRange(
            start=today - timedelta(days=self._settings.provider_pattern_lookback_days),
            end=today - timedelta(days=1),
        )

        def build() -> ProviderPattern:
            aggregates = self._history_store.get_daily_aggregates(provider_id, lookback)
            history = self._history_store.get_appointment_history(
                provider_id,
                self._settings.provider_history_limit,
                role="provider",
            )
            return self._pattern_profiler.build(provider_id, aggregates, history)

        try:
            return self._cache.get_or_build(PROVIDER_KIND, provider_id, build), False
        except AdapterUnavailable as exc:
            logger.warning(
                "Provider pattern degraded | provider_id=%s | error=%s",
                provider_id,
                exc,
            )
            return ProviderPattern(provider_id=provider_id), True

    def invalidate(self, requester_id: str, provider_id: str) -> None:
        self._cache.invalidate(REQUESTER_KIND, requester_id)
        self._cache.invalidate(PROVIDER_KIND, provider_id)
        logger.info(
            "Profile cache invalidated | requester_id=%s | provider_id=%s",
            requester_id,
            provider_id,
        )
