"""HTTP controller layer for scheduling, booking and forecasting."""

from __future__ import annotations

from datetime import date, datetime, time

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator

from caresched.controllers.dependencies import (
    get_booking_service,
    get_conflict_resolver,
    get_forecaster,
    get_insights_service,
    get_noshow_predictor,
    get_optimizer,
)
from caresched.domain.errors import (
    AdapterUnavailable,
    BookingNotFound,
    InvalidRequest,
    NoSlotsAvailable,
    SchedulingError,
    SlotConflict,
)
from caresched.domain.models import (
    AISuggestion,
    Booking,
    BookingStatus,
    CandidateSlot,
    DateRange,
    DemandForecast,
    NoShowPrediction,
    SchedulingConstraints,
    SchedulingRequest,
    SuggestionPriority,
    SuggestionType,
    TimeWindow,
    Urgency,
    add_minutes,
    format_time,
    minutes_between,
    parse_time,
)
from caresched.services.booking_service import BookingWorkflowService
from caresched.services.conflict_service import ConflictResolver
from caresched.services.forecast_service import DemandForecaster
from caresched.services.insights_service import ProviderInsightsService
from caresched.services.noshow_service import NoShowPredictor
from caresched.services.optimizer_service import ScheduleOptimizer
from caresched.utils.config import get_settings
from caresched.utils.logger import get_logger


logger = get_logger(__name__)
settings = get_settings()

router = APIRouter(tags=["scheduling"])

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"
MIN_REQUEST_DURATION = 15
MAX_REQUEST_DURATION = 480
MAX_REQUEST_WAIT_DAYS = 90
MINUTES_PER_DAY = 24 * 60


class TimeWindowPayload(BaseModel):
    start_time: str = Field(pattern=TIME_PATTERN)
    end_time: str = Field(pattern=TIME_PATTERN)

    @model_validator(mode="after")
    def validate_order(self) -> "TimeWindowPayload":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self

    def to_domain(self) -> TimeWindow:
        return TimeWindow(parse_time(self.start_time), parse_time(self.end_time))


class OptimizeRequest(BaseModel):
    """Input DTO validated before entering service layer."""

    requester_id: str = Field(min_length=1)
    provider_id: str = Field(min_length=1)
    category: str = Field(default="general", min_length=1)
    urgency: Urgency = Urgency.MEDIUM
    duration_minutes: int = Field(
        default=settings.slot_default_duration_minutes,
        ge=MIN_REQUEST_DURATION,
        le=MAX_REQUEST_DURATION,
    )
    preferred_date: date | None = None
    preferred_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    max_wait_days: int | None = Field(default=None, ge=1, le=MAX_REQUEST_WAIT_DAYS)
    preferred_weekdays: list[int] = Field(default_factory=list)
    excluded_windows: list[TimeWindowPayload] = Field(default_factory=list)

    @field_validator("preferred_weekdays")
    @classmethod
    def validate_weekdays(cls, value: list[int]) -> list[int]:
        for weekday in value:
            if not 0 <= weekday <= 6:
                raise ValueError("preferred_weekdays entries must be 0 (Monday) to 6 (Sunday)")
        return value

    def to_domain(self) -> SchedulingRequest:
        return SchedulingRequest(
            requester_id=self.requester_id,
            provider_id=self.provider_id,
            category=self.category,
            urgency=self.urgency,
            duration_minutes=self.duration_minutes,
            preferred_date=self.preferred_date,
            preferred_time=parse_time(self.preferred_time) if self.preferred_time else None,
            constraints=SchedulingConstraints(
                max_wait_days=self.max_wait_days,
                preferred_weekdays=tuple(self.preferred_weekdays),
                excluded_windows=tuple(item.to_domain() for item in self.excluded_windows),
            ),
        )


class ScheduleBookingRequest(OptimizeRequest):
    enable_optimization: bool = True


class CandidateSlotResponse(BaseModel):
    slot_date: date
    start_time: str
    end_time: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    factors: list[str]
    adjusted: bool

    @classmethod
    def from_domain(cls, slot: CandidateSlot) -> "CandidateSlotResponse":
        return cls(
            slot_date=slot.date,
            start_time=format_time(slot.start),
            end_time=format_time(slot.end),
            confidence=float(slot.confidence or 0.0),
            reasoning=slot.reasoning,
            factors=list(slot.factors),
            adjusted=slot.adjusted,
        )


class SuggestionResponse(BaseModel):
    type: SuggestionType
    message: str
    priority: SuggestionPriority
    action: str | None = None

    @classmethod
    def from_domain(cls, suggestion: AISuggestion) -> "SuggestionResponse":
        return cls(
            type=suggestion.type,
            message=suggestion.message,
            priority=suggestion.priority,
            action=suggestion.action,
        )


class OptimizeResponse(BaseModel):
    scheduled_at: datetime
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    primary: CandidateSlotResponse
    alternatives: list[CandidateSlotResponse]
    suggestions: list[SuggestionResponse]
    degraded: bool


class CommitBookingRequest(BaseModel):
    requester_id: str = Field(min_length=1)
    provider_id: str = Field(min_length=1)
    appointment_date: date
    start_time: str = Field(pattern=TIME_PATTERN)
    duration_minutes: int = Field(
        default=settings.slot_default_duration_minutes,
        ge=MIN_REQUEST_DURATION,
        le=MAX_REQUEST_DURATION,
    )
    category: str = Field(default="general", min_length=1)
    urgency: Urgency = Urgency.MEDIUM
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    reasoning: str | None = None

    @model_validator(mode="after")
    def validate_same_day(self) -> "CommitBookingRequest":
        start = parse_time(self.start_time)
        if minutes_between(time(0, 0), start) + self.duration_minutes >= MINUTES_PER_DAY:
            raise ValueError("appointment must end on the same day it starts")
        return self

    def to_slot(self) -> CandidateSlot:
        start = parse_time(self.start_time)
        return CandidateSlot(
            date=self.appointment_date,
            start=start,
            end=add_minutes(start, self.duration_minutes),
            confidence=self.confidence,
            reasoning=self.reasoning or "",
        )


class BookingResponse(BaseModel):
    booking_id: int = Field(gt=0)
    provider_id: str
    requester_id: str
    appointment_date: date
    start_time: str
    duration_minutes: int = Field(gt=0)
    category: str
    status: BookingStatus
    confidence_score: float | None = None
    reasoning: str | None = None
    priority_score: int = Field(ge=1, le=4)
    auto_scheduled: bool
    note: str | None = None

    @classmethod
    def from_domain(cls, booking: Booking) -> "BookingResponse":
        return cls(
            booking_id=booking.booking_id,
            provider_id=booking.provider_id,
            requester_id=booking.requester_id,
            appointment_date=booking.date,
            start_time=format_time(booking.start),
            duration_minutes=booking.duration_minutes,
            category=booking.category,
            status=booking.status,
            confidence_score=booking.confidence_score,
            reasoning=booking.reasoning,
            priority_score=booking.priority_score,
            auto_scheduled=booking.auto_scheduled,
            note=booking.note,
        )


class RescheduleRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class StatusUpdateRequest(BaseModel):
    status: BookingStatus


class PredictDemandRequest(BaseModel):
    provider_id: str = Field(min_length=1)
    start_date: date
    end_date: date
    persist: bool = False

    @model_validator(mode="after")
    def validate_range(self) -> "PredictDemandRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        return self


class DemandForecastResponse(BaseModel):
    provider_id: str
    forecast_date: date
    predicted_demand: int = Field(ge=0)
    confidence: float = Field(ge=0.0, le=1.0)
    factors: list[str]
    recommendations: list[str]

    @classmethod
    def from_domain(cls, forecast: DemandForecast) -> "DemandForecastResponse":
        return cls(
            provider_id=forecast.provider_id,
            forecast_date=forecast.date,
            predicted_demand=forecast.predicted_demand,
            confidence=forecast.confidence,
            factors=list(forecast.factors),
            recommendations=list(forecast.recommendations),
        )


class PredictDemandResponse(BaseModel):
    forecasts: list[DemandForecastResponse]


class NoShowResponse(BaseModel):
    booking_id: int = Field(gt=0)
    probability: float = Field(ge=0.0, le=1.0)
    factors: list[str]
    recommendations: list[str]

    @classmethod
    def from_domain(cls, prediction: NoShowPrediction) -> "NoShowResponse":
        return cls(
            booking_id=prediction.booking_id,
            probability=prediction.probability,
            factors=list(prediction.factors),
            recommendations=list(prediction.recommendations),
        )


class ProviderRecommendationsResponse(BaseModel):
    provider_id: str
    forecasts: list[DemandForecastResponse]
    no_show_predictions: list[NoShowResponse]
    recommendations: list[str]


class HealthResponse(BaseModel):
    status: str
    app: str
    version: str


def _to_http_exception(exc: SchedulingError) -> HTTPException:
    if isinstance(exc, InvalidRequest):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, AdapterUnavailable):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, (NoSlotsAvailable, BookingNotFound)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, SlotConflict):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(exc))


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok", app=settings.app_name, version=settings.app_version)


@router.post(
    "/optimize",
    response_model=OptimizeResponse,
    status_code=status.HTTP_200_OK,
)
def optimize(
    payload: OptimizeRequest,
    optimizer: ScheduleOptimizer = Depends(get_optimizer),
) -> OptimizeResponse:
    """Rank candidate slots without booking anything."""
    try:
        schedule = optimizer.optimize(payload.to_domain())
        return OptimizeResponse(
            scheduled_at=schedule.scheduled_at,
            confidence=schedule.confidence,
            reasoning=schedule.reasoning,
            primary=CandidateSlotResponse.from_domain(schedule.primary),
            alternatives=[CandidateSlotResponse.from_domain(item) for item in schedule.alternatives],
            suggestions=[SuggestionResponse.from_domain(item) for item in schedule.suggestions],
            degraded=schedule.degraded,
        )
    except SchedulingError as exc:
        raise _to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected optimization failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to optimize schedule",
        ) from exc


@router.post(
    "/bookings",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
def commit_booking(
    payload: CommitBookingRequest,
    resolver: ConflictResolver = Depends(get_conflict_resolver),
) -> BookingResponse:
    """Atomically book a chosen slot; a lost race answers 409."""
    try:
        booking = resolver.commit_booking(
            payload.to_slot(),
            payload.requester_id,
            payload.provider_id,
            category=payload.category,
            priority_score=payload.urgency.priority_score,
        )
        return BookingResponse.from_domain(booking)
    except SchedulingError as exc:
        raise _to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected booking commit failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to commit booking",
        ) from exc


@router.post(
    "/bookings/schedule",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
def schedule_booking(
    payload: ScheduleBookingRequest,
    service: BookingWorkflowService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = service.schedule(
            payload.to_domain(),
            enable_optimization=payload.enable_optimization,
        )
        return BookingResponse.from_domain(booking)
    except SchedulingError as exc:
        raise _to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected scheduling failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to schedule booking",
        ) from exc


@router.post(
    "/bookings/{booking_id}/reschedule",
    response_model=BookingResponse,
    status_code=status.HTTP_200_OK,
)
def reschedule_booking(
    booking_id: int,
    payload: RescheduleRequest,
    service: BookingWorkflowService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        return BookingResponse.from_domain(service.reschedule(booking_id, payload.reason))
    except SchedulingError as exc:
        raise _to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected reschedule failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reschedule booking",
        ) from exc


@router.patch(
    "/bookings/{booking_id}/status",
    response_model=BookingResponse,
    status_code=status.HTTP_200_OK,
)
def update_booking_status(
    booking_id: int,
    payload: StatusUpdateRequest,
    service: BookingWorkflowService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        return BookingResponse.from_domain(service.update_status(booking_id, payload.status))
    except SchedulingError as exc:
        raise _to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected status update failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update booking status",
        ) from exc


@router.post(
    "/predict_demand",
    response_model=PredictDemandResponse,
    status_code=status.HTTP_200_OK,
)
def predict_demand(
    payload: PredictDemandRequest,
    forecaster: DemandForecaster = Depends(get_forecaster),
) -> PredictDemandResponse:
    try:
        forecasts = forecaster.forecast(
            payload.provider_id,
            DateRange(payload.start_date, payload.end_date),
            persist=payload.persist,
        )
        return PredictDemandResponse(
            forecasts=[DemandForecastResponse.from_domain(item) for item in forecasts]
        )
    except SchedulingError as exc:
        raise _to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected forecast failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to forecast demand",
        ) from exc


@router.get(
    "/predict_noshow/{booking_id}",
    response_model=NoShowResponse,
    status_code=status.HTTP_200_OK,
)
def predict_noshow(
    booking_id: int,
    predictor: NoShowPredictor = Depends(get_noshow_predictor),
) -> NoShowResponse:
    try:
        return NoShowResponse.from_domain(predictor.predict_no_show(booking_id))
    except SchedulingError as exc:
        raise _to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected no-show prediction failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to predict no-show risk",
        ) from exc


@router.get(
    "/providers/{provider_id}/recommendations",
    response_model=ProviderRecommendationsResponse,
    status_code=status.HTTP_200_OK,
)
def provider_recommendations(
    provider_id: str,
    start_date: date = Query(...),
    end_date: date = Query(...),
    service: ProviderInsightsService = Depends(get_insights_service),
) -> ProviderRecommendationsResponse:
    try:
        result = service.get_recommendations(provider_id, DateRange(start_date, end_date))
        return ProviderRecommendationsResponse(
            provider_id=result.provider_id,
            forecasts=[DemandForecastResponse.from_domain(item) for item in result.forecasts],
            no_show_predictions=[
                NoShowResponse.from_domain(item) for item in result.no_show_predictions
            ],
            recommendations=result.recommendations,
        )
    except SchedulingError as exc:
        raise _to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected recommendations failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to build provider recommendations",
        ) from exc
