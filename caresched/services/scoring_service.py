"""Weighted, explainable confidence scoring for candidate slots."""

from __future__ import annotations

from typing import Iterable, Optional

from caresched.domain.constraints import ScoringConfig, validate_scoring_config
from caresched.domain.models import (
    WEEKDAY_NAMES,
    CandidateSlot,
    PreferenceProfile,
    ProviderPattern,
    SchedulingRequest,
)
from caresched.utils.config import Settings, get_settings
from caresched.utils.logger import get_logger


logger = get_logger(__name__)

LABEL_EXCELLENT = "excellent match"
LABEL_GOOD = "good match"
LABEL_LOW = "available, low optimization"


def ranking_key(slot: CandidateSlot) -> tuple:
    """Descending confidence, then earliest date and start time."""
    return (-round(float(slot.confidence or 0.0), 9), slot.date, slot.start)


class ConfidenceScorer:
    """Combines requester, provider and urgency signals into one score in [0, 1]."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        config: Optional[ScoringConfig] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._config = config or ScoringConfig.from_settings(self._settings)
        validate_scoring_config(self._config)

    def label_for(self, confidence: float) -> str:
        if confidence > self._config.excellent_threshold:
            return LABEL_EXCELLENT
        if confidence > self._config.good_threshold:
            return LABEL_GOOD
        return LABEL_LOW

    def score(
        self,
        slot: CandidateSlot,
        request: SchedulingRequest,
        profile: PreferenceProfile,
        pattern: ProviderPattern,
    ) -> CandidateSlot:
        config = self._config
        confidence = config.base
        factors: list[str] = []

        preferred_times = set(profile.preferred_times)
        if request.preferred_time is not None:
            preferred_times.add(request.preferred_time)
        if slot.start in preferred_times:
            confidence += config.preferred_time_weight
            factors.append("preferred time")

        if any(window == slot.window for window in pattern.favored_windows):
            confidence += config.provider_window_weight
            factors.append("provider favored window")

        weekday = slot.date.weekday()
        success_rate = pattern.slot_success_rates.get(
            (weekday, slot.start),
            config.default_success_rate,
        )
        confidence += success_rate * config.success_rate_weight
        if (weekday, slot.start) in pattern.slot_success_rates:
            factors.append(f"historical success {success_rate:.0%}")

        confidence += request.urgency.multiplier * config.urgency_weight
        factors.append(f"urgency {request.urgency.value}")

        preferred_days = set(profile.preferred_days) | set(request.constraints.preferred_weekdays)
        if weekday in preferred_days:
            confidence += config.preferred_day_weight
            factors.append(f"preferred day {WEEKDAY_NAMES[weekday]}")

        confidence = max(0.0, min(1.0, confidence))
        return slot.with_score(
            confidence=confidence,
            reasoning=self.label_for(confidence),
            factors=tuple(factors),
        )

    def score_all(
        self,
        slots: Iterable[CandidateSlot],
        request: SchedulingRequest,
        profile: PreferenceProfile,
        pattern: ProviderPattern,
    ) -> list[CandidateSlot]:
        return [self.score(slot, request, profile, pattern) for slot in slots]

    def rank(self, scored: Iterable[CandidateSlot]) -> list[CandidateSlot]:
        """Drop candidates under the confidence floor and order the rest."""
        kept = [
            slot
            for slot in scored
            if float(slot.confidence or 0.0) >= self._config.min_confidence
        ]
        kept.sort(key=ranking_key)
        return kept
