"""Runtime configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    """Immutable settings snapshot.

    Tests derive variants with ``dataclasses.replace`` instead of mutating the
    cached instance.
    """

    app_name: str
    app_version: str
    log_level: str
    database_path: Path
    database_busy_timeout_seconds: float

    synthetic_random_seed: int
    synthetic_seed_days: int
    synthetic_provider_ids: tuple[str, ...]
    synthetic_requester_count: int

    adapter_timeout_seconds: float
    adapter_retry_attempts: int
    adapter_backoff_multiplier: float
    adapter_backoff_max_seconds: float

    slot_default_duration_minutes: int
    slot_override_policy: str

    profile_history_limit: int
    profile_top_times: int
    profile_top_days: int
    profile_top_providers: int
    profile_default_duration_minutes: int
    profile_cache_ttl_seconds: int
    profile_cache_max_entries: int

    provider_pattern_lookback_days: int
    provider_history_limit: int
    provider_top_windows: int

    scoring_base: float
    scoring_preferred_time_weight: float
    scoring_provider_window_weight: float
    scoring_success_rate_weight: float
    scoring_urgency_weight: float
    scoring_preferred_day_weight: float
    scoring_default_success_rate: float
    scoring_min_confidence: float
    scoring_excellent_threshold: float
    scoring_good_threshold: float

    conflict_search_radius: int

    optimizer_horizon_days: int
    optimizer_alternatives: int

    forecast_lookback_days: int
    forecast_base_confidence: float
    forecast_min_samples: int
    forecast_high_utilization_ratio: float
    forecast_low_demand_threshold: int

    noshow_smoothing: float
    noshow_history_threshold: int
    noshow_high_risk_threshold: float
    noshow_history_limit: int

    booking_apply_threshold: float
    booking_auto_schedule_threshold: float
    booking_replan_attempts: int

    insights_followup_threshold: float
    insights_high_average_demand: float


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process."""
    provider_ids = tuple(
        item.strip()
        for item in _env_str(
            "CARESCHED_SYNTHETIC_PROVIDERS",
            "dr_adams,dr_baker,dr_chen",
        ).split(",")
        if item.strip()
    )
    return Settings(
        app_name=_env_str("CARESCHED_APP_NAME", "caresched"),
        app_version=_env_str("CARESCHED_APP_VERSION", "1.0.0"),
        log_level=_env_str("CARESCHED_LOG_LEVEL", "INFO"),
        database_path=Path(_env_str("CARESCHED_DATABASE_PATH", "data/caresched.db")),
        database_busy_timeout_seconds=_env_float("CARESCHED_DB_BUSY_TIMEOUT", 10.0),
        synthetic_random_seed=_env_int("CARESCHED_SYNTHETIC_SEED", 42),
        synthetic_seed_days=_env_int("CARESCHED_SYNTHETIC_SEED_DAYS", 90),
        synthetic_provider_ids=provider_ids,
        synthetic_requester_count=_env_int("CARESCHED_SYNTHETIC_REQUESTERS", 40),
        adapter_timeout_seconds=_env_float("CARESCHED_ADAPTER_TIMEOUT", 5.0),
        adapter_retry_attempts=_env_int("CARESCHED_ADAPTER_RETRY_ATTEMPTS", 3),
        adapter_backoff_multiplier=_env_float("CARESCHED_ADAPTER_BACKOFF_MULTIPLIER", 0.2),
        adapter_backoff_max_seconds=_env_float("CARESCHED_ADAPTER_BACKOFF_MAX", 2.0),
        slot_default_duration_minutes=_env_int("CARESCHED_SLOT_DURATION", 30),
        slot_override_policy=_env_str("CARESCHED_OVERRIDE_POLICY", "most_restrictive"),
        profile_history_limit=_env_int("CARESCHED_PROFILE_HISTORY_LIMIT", 50),
        profile_top_times=_env_int("CARESCHED_PROFILE_TOP_TIMES", 3),
        profile_top_days=_env_int("CARESCHED_PROFILE_TOP_DAYS", 2),
        profile_top_providers=_env_int("CARESCHED_PROFILE_TOP_PROVIDERS", 2),
        profile_default_duration_minutes=_env_int("CARESCHED_PROFILE_DEFAULT_DURATION", 30),
        profile_cache_ttl_seconds=_env_int("CARESCHED_PROFILE_CACHE_TTL", 900),
        profile_cache_max_entries=_env_int("CARESCHED_PROFILE_CACHE_SIZE", 1024),
        provider_pattern_lookback_days=_env_int("CARESCHED_PROVIDER_LOOKBACK_DAYS", 90),
        provider_history_limit=_env_int("CARESCHED_PROVIDER_HISTORY_LIMIT", 500),
        provider_top_windows=_env_int("CARESCHED_PROVIDER_TOP_WINDOWS", 3),
        scoring_base=_env_float("CARESCHED_SCORING_BASE", 0.5),
        scoring_preferred_time_weight=_env_float("CARESCHED_WEIGHT_PREFERRED_TIME", 0.30),
        scoring_provider_window_weight=_env_float("CARESCHED_WEIGHT_PROVIDER_WINDOW", 0.25),
        scoring_success_rate_weight=_env_float("CARESCHED_WEIGHT_SUCCESS_RATE", 0.20),
        scoring_urgency_weight=_env_float("CARESCHED_WEIGHT_URGENCY", 0.15),
        scoring_preferred_day_weight=_env_float("CARESCHED_WEIGHT_PREFERRED_DAY", 0.10),
        scoring_default_success_rate=_env_float("CARESCHED_DEFAULT_SUCCESS_RATE", 0.0),
        scoring_min_confidence=_env_float("CARESCHED_MIN_CONFIDENCE", 0.3),
        scoring_excellent_threshold=_env_float("CARESCHED_EXCELLENT_THRESHOLD", 0.8),
        scoring_good_threshold=_env_float("CARESCHED_GOOD_THRESHOLD", 0.6),
        conflict_search_radius=_env_int("CARESCHED_CONFLICT_SEARCH_RADIUS", 2),
        optimizer_horizon_days=_env_int("CARESCHED_HORIZON_DAYS", 30),
        optimizer_alternatives=_env_int("CARESCHED_ALTERNATIVES", 3),
        forecast_lookback_days=_env_int("CARESCHED_FORECAST_LOOKBACK_DAYS", 90),
        forecast_base_confidence=_env_float("CARESCHED_FORECAST_CONFIDENCE", 0.7),
        forecast_min_samples=_env_int("CARESCHED_FORECAST_MIN_SAMPLES", 4),
        forecast_high_utilization_ratio=_env_float("CARESCHED_FORECAST_HIGH_UTILIZATION", 0.8),
        forecast_low_demand_threshold=_env_int("CARESCHED_FORECAST_LOW_DEMAND", 2),
        noshow_smoothing=_env_float("CARESCHED_NOSHOW_SMOOTHING", 10.0),
        noshow_history_threshold=_env_int("CARESCHED_NOSHOW_HISTORY_THRESHOLD", 2),
        noshow_high_risk_threshold=_env_float("CARESCHED_NOSHOW_HIGH_RISK", 0.3),
        noshow_history_limit=_env_int("CARESCHED_NOSHOW_HISTORY_LIMIT", 200),
        booking_apply_threshold=_env_float("CARESCHED_BOOKING_APPLY_THRESHOLD", 0.7),
        booking_auto_schedule_threshold=_env_float("CARESCHED_BOOKING_AUTO_THRESHOLD", 0.8),
        booking_replan_attempts=_env_int("CARESCHED_BOOKING_REPLAN_ATTEMPTS", 2),
        insights_followup_threshold=_env_float("CARESCHED_INSIGHTS_FOLLOWUP", 0.7),
        insights_high_average_demand=_env_float("CARESCHED_INSIGHTS_HIGH_AVERAGE", 12.0),
    )
