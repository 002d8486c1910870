"""Domain-level validation rules for scoring configuration and requests."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from caresched.domain.errors import InvalidRequest
from caresched.domain.models import SchedulingRequest, minutes_between
from caresched.utils.config import Settings


MIN_DURATION_MINUTES = 5
MAX_DURATION_MINUTES = 480
MAX_WAIT_DAYS_LIMIT = 365


class OverridePolicy(str, Enum):
    MOST_RESTRICTIVE = "most_restrictive"
    MOST_PERMISSIVE = "most_permissive"
    LATEST_CREATED = "latest_created"


@dataclass(frozen=True)
class ScoringConfig:
    base: float
    preferred_time_weight: float
    provider_window_weight: float
    success_rate_weight: float
    urgency_weight: float
    preferred_day_weight: float
    default_success_rate: float
    min_confidence: float
    excellent_threshold: float
    good_threshold: float

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoringConfig":
        return cls(
            base=settings.scoring_base,
            preferred_time_weight=settings.scoring_preferred_time_weight,
            provider_window_weight=settings.scoring_provider_window_weight,
            success_rate_weight=settings.scoring_success_rate_weight,
            urgency_weight=settings.scoring_urgency_weight,
            preferred_day_weight=settings.scoring_preferred_day_weight,
            default_success_rate=settings.scoring_default_success_rate,
            min_confidence=settings.scoring_min_confidence,
            excellent_threshold=settings.scoring_excellent_threshold,
            good_threshold=settings.scoring_good_threshold,
        )

    @property
    def weights(self) -> tuple[float, ...]:
        return (
            self.preferred_time_weight,
            self.provider_window_weight,
            self.success_rate_weight,
            self.urgency_weight,
            self.preferred_day_weight,
        )


def validate_scoring_config(config: ScoringConfig) -> None:
    if not 0.0 <= config.base <= 1.0:
        raise ValueError("base must be between 0 and 1")
    for weight in config.weights:
        if not 0.0 <= weight <= 1.0:
            raise ValueError("scoring weights must be between 0 and 1")
    if sum(config.weights) > 1.0 + 1e-9:
        raise ValueError("scoring weights must sum to at most 1")
    if not 0.0 <= config.default_success_rate <= 1.0:
        raise ValueError("default_success_rate must be between 0 and 1")
    if not 0.0 <= config.min_confidence <= 1.0:
        raise ValueError("min_confidence must be between 0 and 1")
    if not 0.0 <= config.good_threshold <= config.excellent_threshold <= 1.0:
        raise ValueError("label thresholds must satisfy 0 <= good <= excellent <= 1")


def resolve_override_policy(value: str) -> OverridePolicy:
    try:
        return OverridePolicy(value.lower())
    except ValueError as exc:
        raise ValueError(f"unknown override policy '{value}'") from exc


def validate_scheduling_request(request: SchedulingRequest) -> None:
    """Reject malformed requests before any adapter call."""
    if not request.requester_id or not request.requester_id.strip():
        raise InvalidRequest("requester_id must be non-empty")
    if not request.provider_id or not request.provider_id.strip():
        raise InvalidRequest("provider_id must be non-empty")
    if not MIN_DURATION_MINUTES <= request.duration_minutes <= MAX_DURATION_MINUTES:
        raise InvalidRequest(
            f"duration_minutes must be between {MIN_DURATION_MINUTES} "
            f"and {MAX_DURATION_MINUTES}"
        )

    constraints = request.constraints
    if constraints.max_wait_days is not None and not (
        1 <= constraints.max_wait_days <= MAX_WAIT_DAYS_LIMIT
    ):
        raise InvalidRequest(
            f"max_wait_days must be between 1 and {MAX_WAIT_DAYS_LIMIT}"
        )
    for weekday in constraints.preferred_weekdays:
        if not 0 <= weekday <= 6:
            raise InvalidRequest("preferred_weekdays must be in 0..6 (Monday=0)")
    for window in constraints.excluded_windows:
        if minutes_between(window.start, window.end) <= 0:
            raise InvalidRequest("excluded window start must be before end")
