"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires all services, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from caresched.controllers.scheduling_controller import router as scheduling_router
from caresched.repository.adapters import CalendarSource, HistoryStore
from caresched.repository.data_repository import DataRepository
from caresched.services.booking_service import BookingWorkflowService
from caresched.services.conflict_service import ConflictResolver
from caresched.services.forecast_service import DemandForecaster
from caresched.services.insights_service import ProviderInsightsService
from caresched.services.noshow_service import NoShowPredictor
from caresched.services.optimizer_service import ScheduleOptimizer
from caresched.services.profile_service import ProfileService
from caresched.utils.config import Settings, get_settings
from caresched.utils.logger import get_logger


logger = get_logger(__name__)


def wire_services(app: FastAPI, settings: Settings) -> None:
    """Instantiate every service once and expose it through ``app.state``.

    The optimizer and the booking workflow share one ``ProfileService`` so
    status changes invalidate the cache the optimizer reads from.
    """
    repository = DataRepository(settings)
    calendar = CalendarSource(repository, settings)
    history_store = HistoryStore(repository, settings)

    profiles = ProfileService(history_store=history_store, settings=settings)
    resolver = ConflictResolver(repository, settings)
    optimizer = ScheduleOptimizer(
        calendar=calendar,
        profiles=profiles,
        resolver=resolver,
        repository=repository,
        settings=settings,
    )
    booking_service = BookingWorkflowService(
        optimizer=optimizer,
        resolver=resolver,
        profiles=profiles,
        repository=repository,
        settings=settings,
    )
    forecaster = DemandForecaster(
        history_store=history_store,
        calendar=calendar,
        repository=repository,
        settings=settings,
    )
    predictor = NoShowPredictor(
        history_store=history_store,
        repository=repository,
        settings=settings,
    )
    insights_service = ProviderInsightsService(
        forecaster=forecaster,
        predictor=predictor,
        repository=repository,
        settings=settings,
    )

    app.state.settings = settings
    app.state.repository = repository
    app.state.calendar = calendar
    app.state.history_store = history_store
    app.state.profile_service = profiles
    app.state.conflict_resolver = resolver
    app.state.optimizer = optimizer
    app.state.booking_service = booking_service
    app.state.forecaster = forecaster
    app.state.noshow_predictor = predictor
    app.state.insights_service = insights_service


def create_app(settings: Optional[Settings] = None, seed: bool = True) -> FastAPI:
    """Build and wire the FastAPI application."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app, seed=seed)
        yield
        _shutdown(app)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.include_router(scheduling_router)
    wire_services(app, settings)
    return app


def _startup(app: FastAPI, seed: bool = True) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Schema must exist before seeding; seeding is skipped when providers exist.
    """
    repository: DataRepository = app.state.repository

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if seed:
        logger.info("Startup: seeding synthetic calendars and history")
        repository.seed_synthetic_data()

    logger.info("Startup complete | database=%s", repository.database_path)


def _shutdown(app: FastAPI) -> None:
    app.state.calendar.close()
    app.state.history_store.close()
    logger.info("Shutdown complete | adapters closed")


# Module-level app object for uvicorn
app = create_app()
