"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from caresched.services.booking_service import BookingWorkflowService
from caresched.services.conflict_service import ConflictResolver
from caresched.services.forecast_service import DemandForecaster
from caresched.services.insights_service import ProviderInsightsService
from caresched.services.noshow_service import NoShowPredictor
from caresched.services.optimizer_service import ScheduleOptimizer


def _service_from_state(request: Request, attribute: str, label: str) -> Any:
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_optimizer(request: Request) -> ScheduleOptimizer:
    return _service_from_state(request, "optimizer", "Schedule optimizer")


def get_conflict_resolver(request: Request) -> ConflictResolver:
    return _service_from_state(request, "conflict_resolver", "Conflict resolver")


def get_booking_service(request: Request) -> BookingWorkflowService:
    return _service_from_state(request, "booking_service", "Booking service")


def get_forecaster(request: Request) -> DemandForecaster:
    return _service_from_state(request, "forecaster", "Demand forecaster")


def get_noshow_predictor(request: Request) -> NoShowPredictor:
    return _service_from_state(request, "noshow_predictor", "No-show predictor")


def get_insights_service(request: Request) -> ProviderInsightsService:
    service = getattr(request.app.state, "insights_service", None)
    if service is None:
        forecaster = getattr(request.app.state, "forecaster", None)
        predictor = getattr(request.app.state, "noshow_predictor", None)
        repository = getattr(request.app.state, "repository", None)
        if forecaster is not None and predictor is not None and repository is not None:
            service = ProviderInsightsService(
                forecaster=forecaster,
                predictor=predictor,
                repository=repository,
                settings=getattr(request.app.state, "settings", None),
            )
            request.app.state.insights_service = service
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Insights service is not initialized",
        )
    return service
