"""Smoothed no-show risk for a single booking."""

from __future__ import annotations

from typing import Optional

from caresched.domain.errors import BookingNotFound
from caresched.domain.models import BookingStatus, NoShowPrediction
from caresched.repository.adapters import HistoryStore
from caresched.repository.data_repository import DataRepository
from caresched.utils.config import Settings, get_settings
from caresched.utils.logger import get_logger


logger = get_logger(__name__)

FACTOR_HIGH_HISTORY = "high historical no-show rate"
FACTOR_WEEKEND = "weekend appointment"

RECOMMEND_REMINDER = "Send reminder 24 hours before appointment"
RECOMMEND_PHONE = "Call to confirm attendance"
RECOMMEND_WEEKDAY = "Offer weekday alternatives"


class NoShowPredictor:
    def __init__(
        self,
        history_store: Optional[HistoryStore] = None,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._history_store = history_store or HistoryStore(self._repository, self._settings)

    def probability(self, cancelled_count: int) -> float:
        """Laplace-style ``c / (c + k)`` so sparse history stays conservative."""
        return cancelled_count / (cancelled_count + self._settings.noshow_smoothing)

    def predict_no_show(self, booking_id: int) -> NoShowPrediction:
        booking = self._repository.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound(f"booking_id {booking_id} not found")

        history = self._history_store.get_appointment_history(
            booking.requester_id,
            self._settings.noshow_history_limit,
        )
        cancelled = sum(
            1
            for item in history
            if item.booking_id != booking_id and item.status is BookingStatus.CANCELLED
        )
        probability = self.probability(cancelled)

        factors: list[str] = []
        if cancelled > self._settings.noshow_history_threshold:
            factors.append(FACTOR_HIGH_HISTORY)
        is_weekend = booking.date.weekday() >= 5
        if is_weekend:
            factors.append(FACTOR_WEEKEND)

        recommendations: list[str] = []
        if probability > self._settings.noshow_high_risk_threshold:
            recommendations.extend([RECOMMEND_REMINDER, RECOMMEND_PHONE])
        if is_weekend:
            recommendations.append(RECOMMEND_WEEKDAY)

        logger.info(
            "No-show prediction | booking_id=%s | requester_id=%s | cancelled=%s | probability=%.3f",
            booking_id,
            booking.requester_id,
            cancelled,
            probability,
        )
        return NoShowPrediction(
            booking_id=booking_id,
            probability=probability,
            factors=factors,
            recommendations=recommendations,
        )
