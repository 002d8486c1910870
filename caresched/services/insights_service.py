"""Provider-facing summary combining demand forecasts and no-show risk."""

from __future__ import annotations

from typing import Optional

from caresched.domain.models import DateRange, ProviderRecommendations
from caresched.repository.data_repository import DataRepository
from caresched.services.forecast_service import HIGH_DEMAND_RECOMMENDATION, DemandForecaster
from caresched.services.noshow_service import NoShowPredictor
from caresched.utils.config import Settings, get_settings
from caresched.utils.logger import get_logger


logger = get_logger(__name__)


class ProviderInsightsService:
    def __init__(
        self,
        forecaster: DemandForecaster,
        predictor: NoShowPredictor,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._forecaster = forecaster
        self._predictor = predictor

    def get_recommendations(
        self,
        provider_id: str,
        date_range: DateRange,
    ) -> ProviderRecommendations:
        forecasts = self._forecaster.forecast(provider_id, date_range)
        bookings = self._repository.list_active_bookings(provider_id, date_range)
        predictions = [self._predictor.predict_no_show(item.booking_id) for item in bookings]

        recommendations: list[str] = []
        high_demand_days = [
            forecast
            for forecast in forecasts
            if HIGH_DEMAND_RECOMMENDATION in forecast.recommendations
        ]
        if high_demand_days:
            recommendations.append(
                f"Consider increasing capacity on {len(high_demand_days)} high-demand days"
            )

        followups = [
            prediction
            for prediction in predictions
            if prediction.probability > self._settings.insights_followup_threshold
        ]
        if followups:
            recommendations.append(
                f"{len(followups)} appointments have high no-show risk - consider proactive follow-up"
            )

        if forecasts:
            average_demand = sum(item.predicted_demand for item in forecasts) / len(forecasts)
            if average_demand > self._settings.insights_high_average_demand:
                recommendations.append(
                    "High average demand - consider adding more appointment slots"
                )

        logger.info(
            "Provider recommendations built | provider_id=%s | days=%s | bookings=%s | recommendations=%s",
            provider_id,
            len(forecasts),
            len(bookings),
            len(recommendations),
        )
        return ProviderRecommendations(
            provider_id=provider_id,
            forecasts=forecasts,
            no_show_predictions=predictions,
            recommendations=recommendations,
        )
