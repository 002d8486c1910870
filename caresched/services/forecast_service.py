"""Per-day demand forecasting from trailing analytics aggregates."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Callable, Optional

import numpy as np
import pandas as pd

from caresched.domain.errors import InvalidRequest
from caresched.domain.models import (
    DailyAggregate,
    DateRange,
    DemandForecast,
    WorkingHoursTemplate,
)
from caresched.repository.adapters import CalendarSource, HistoryStore
from caresched.repository.data_repository import DataRepository
from caresched.utils.config import Settings, get_settings
from caresched.utils.logger import get_logger


logger = get_logger(__name__)

FACTOR_HISTORICAL_AVERAGE = "historical average"
FACTOR_WEEKDAY_PATTERN = "day-of-week pattern"

MAX_FORECAST_DAYS = 366

HIGH_DEMAND_RECOMMENDATION = "High demand expected: consider extending hours or adding capacity"
LOW_DEMAND_RECOMMENDATION = "Low demand expected: consider follow-up outreach or reduced hours"


class DemandForecaster:
    """Same-weekday trailing means with an overall-mean fallback."""

    def __init__(
        self,
        history_store: Optional[HistoryStore] = None,
        calendar: Optional[CalendarSource] = None,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._history_store = history_store or HistoryStore(self._repository, self._settings)
        self._calendar = calendar or CalendarSource(self._repository, self._settings)
        self._clock = clock or datetime.now

    def _build_frame(self, aggregates: list[DailyAggregate]) -> pd.DataFrame:
        frame = pd.DataFrame(
            {
                "date": [item.date for item in aggregates],
                "total_appointments": [item.total_appointments for item in aggregates],
                "available_slots": [item.available_slots for item in aggregates],
            },
            columns=["date", "total_appointments", "available_slots"],
        ).astype({"total_appointments": "int64", "available_slots": "int64"})
        frame["weekday"] = [value.weekday() for value in frame["date"]]
        return frame

    def _confidence(self, sample_size: int) -> float:
        scale = min(1.0, sample_size / max(1, self._settings.forecast_min_samples))
        return float(np.clip(self._settings.forecast_base_confidence * scale, 0.0, 1.0))

    @staticmethod
    def _round_half_up(value: float) -> int:
        return int(np.floor(value + 0.5))

    def _capacity(
        self,
        target: date,
        template: WorkingHoursTemplate,
        frame: pd.DataFrame,
    ) -> Optional[float]:
        working_day = template.for_weekday(target.weekday())
        if working_day.is_working and working_day.max_appointments:
            return float(working_day.max_appointments)
        if frame.empty:
            return None
        return float(frame["available_slots"].mean())

    def _recommendations(self, predicted: int, capacity: Optional[float]) -> list[str]:
        recommendations: list[str] = []
        if capacity and predicted > self._settings.forecast_high_utilization_ratio * capacity:
            recommendations.append(HIGH_DEMAND_RECOMMENDATION)
        if predicted < self._settings.forecast_low_demand_threshold:
            recommendations.append(LOW_DEMAND_RECOMMENDATION)
        return recommendations

    def forecast(
        self,
        provider_id: str,
        date_range: DateRange,
        persist: bool = False,
    ) -> list[DemandForecast]:
        if not provider_id or not provider_id.strip():
            raise InvalidRequest("provider_id must be non-empty")
        if date_range.end < date_range.start:
            raise InvalidRequest("date range end must not precede its start")
        if len(date_range) > MAX_FORECAST_DAYS:
            raise InvalidRequest(f"forecast range must not exceed {MAX_FORECAST_DAYS} days")

        today = self._clock().date()
        lookback = DateRange(
            start=today - timedelta(days=self._settings.forecast_lookback_days),
            end=today - timedelta(days=1),
        )
        aggregates = self._history_store.get_daily_aggregates(provider_id, lookback)
        template, _ = self._calendar.get_working_hours(provider_id, date_range)

        frame = self._build_frame(aggregates)
        overall_mean = float(frame["total_appointments"].mean()) if not frame.empty else 0.0
        weekday_stats = frame.groupby("weekday")["total_appointments"].agg(["mean", "count"])

        forecasts: list[DemandForecast] = []
        for target in date_range.days():
            weekday = target.weekday()
            factors = [FACTOR_HISTORICAL_AVERAGE]
            if weekday in weekday_stats.index and int(weekday_stats.loc[weekday, "count"]) > 0:
                mean = float(weekday_stats.loc[weekday, "mean"])
                sample_size = int(weekday_stats.loc[weekday, "count"])
                factors.append(FACTOR_WEEKDAY_PATTERN)
            else:
                mean = overall_mean
                sample_size = len(frame)

            predicted = self._round_half_up(mean)
            capacity = self._capacity(target, template, frame)
            forecasts.append(
                DemandForecast(
                    provider_id=provider_id,
                    date=target,
                    predicted_demand=predicted,
                    confidence=self._confidence(sample_size),
                    factors=factors,
                    recommendations=self._recommendations(predicted, capacity),
                )
            )

        if persist:
            self._repository.save_forecast_output(forecasts)

        logger.info(
            "Demand forecast completed | provider_id=%s | start=%s | end=%s | "
            "history_days=%s | persisted=%s",
            provider_id,
            date_range.start.isoformat(),
            date_range.end.isoformat(),
            len(frame),
            persist,
        )
        return forecasts
