"""End-to-end schedule optimization: generate, score, resolve, rank."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from caresched.domain.constraints import validate_scheduling_request
from caresched.domain.errors import NoSlotsAvailable
from caresched.domain.models import (
    AISuggestion,
    CandidateSlot,
    DateRange,
    OptimizedSchedule,
    SchedulingRequest,
    SuggestionPriority,
    SuggestionType,
    format_time,
)
from caresched.repository.adapters import CalendarSource
from caresched.repository.data_repository import DataRepository
from caresched.services.conflict_service import ConflictResolver
from caresched.services.profile_service import ProfileService
from caresched.services.scoring_service import ConfidenceScorer
from caresched.services.slot_generator import SlotGenerator
from caresched.utils.config import Settings, get_settings
from caresched.utils.logger import get_logger


logger = get_logger(__name__)


class ScheduleOptimizer:
    """Produces a primary recommendation plus ranked alternatives."""

    def __init__(
        self,
        calendar: Optional[CalendarSource] = None,
        profiles: Optional[ProfileService] = None,
        resolver: Optional[ConflictResolver] = None,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock or datetime.now
        repository = repository or DataRepository(self._settings)
        self._calendar = calendar or CalendarSource(repository, self._settings)
        self._profiles = profiles or ProfileService(settings=self._settings, clock=self._clock)
        self._resolver = resolver or ConflictResolver(repository, self._settings)
        self._generator = SlotGenerator(self._settings, clock=self._clock)
        self._scorer = ConfidenceScorer(self._settings)

    def horizon_for(self, request: SchedulingRequest, now: datetime) -> DateRange:
        today = now.date()
        start = max(today, request.preferred_date) if request.preferred_date else today
        length = request.constraints.max_wait_days or self._settings.optimizer_horizon_days
        return DateRange(start=start, end=start + timedelta(days=length - 1))

    def optimize(self, request: SchedulingRequest) -> OptimizedSchedule:
        validate_scheduling_request(request)
        now = self._clock()
        horizon = self.horizon_for(request, now)

        template, overrides = self._calendar.get_working_hours(request.provider_id, horizon)
        generated = [
            slot
            for slot in self._generator.generate(
                provider_id=request.provider_id,
                date_range=horizon,
                duration_minutes=request.duration_minutes,
                template=template,
                overrides=overrides,
                now=now,
            )
            if not any(
                slot.window.overlaps(window)
                for window in request.constraints.excluded_windows
            )
        ]
        if not generated:
            raise NoSlotsAvailable(
                f"No open slots for provider {request.provider_id} between "
                f"{horizon.start.isoformat()} and {horizon.end.isoformat()}"
            )

        profile, profile_degraded = self._profiles.requester_profile(request.requester_id)
        pattern, pattern_degraded = self._profiles.provider_pattern(request.provider_id)
        degraded = profile_degraded or pattern_degraded

        scored = self._scorer.score_all(generated, request, profile, pattern)
        ranked = self._scorer.rank(scored)
        resolution = self._resolver.resolve(ranked, request.provider_id, generated)
        if not resolution.slots:
            raise NoSlotsAvailable(
                f"No conflict-free slot above the confidence floor for provider "
                f"{request.provider_id}"
            )

        primary = resolution.slots[0]
        alternatives = resolution.slots[1 : 1 + self._settings.optimizer_alternatives]
        suggestions = self._build_suggestions(
            primary,
            alternatives,
            adjusted_count=resolution.adjusted_count,
            degraded=degraded,
        )

        logger.info(
            "Optimization completed | requester_id=%s | provider_id=%s | candidates=%s | "
            "ranked=%s | primary=%s %s | confidence=%.3f | alternatives=%s | degraded=%s",
            request.requester_id,
            request.provider_id,
            len(generated),
            len(ranked),
            primary.date.isoformat(),
            format_time(primary.start),
            float(primary.confidence or 0.0),
            len(alternatives),
            degraded,
        )
        return OptimizedSchedule(
            primary=primary,
            alternatives=list(alternatives),
            suggestions=suggestions,
            degraded=degraded,
        )

    @staticmethod
    def _build_suggestions(
        primary: CandidateSlot,
        alternatives: list[CandidateSlot],
        *,
        adjusted_count: int,
        degraded: bool,
    ) -> list[AISuggestion]:
        confidence_pct = round(float(primary.confidence or 0.0) * 100)
        suggestions = [
            AISuggestion(
                type=SuggestionType.OPTIMIZATION,
                message=(
                    f"Optimal slot {primary.date.isoformat()} at {format_time(primary.start)} "
                    f"found with {confidence_pct}% confidence"
                ),
                priority=SuggestionPriority.HIGH,
                action="accept_primary",
            )
        ]
        if alternatives:
            suggestions.append(
                AISuggestion(
                    type=SuggestionType.OPTIMIZATION,
                    message=f"{len(alternatives)} alternative time slots available",
                    priority=SuggestionPriority.MEDIUM,
                    action="view_alternatives",
                )
            )
        if adjusted_count:
            suggestions.append(
                AISuggestion(
                    type=SuggestionType.CONFLICT_RESOLUTION,
                    message=f"{adjusted_count} recommendation(s) moved to a nearby slot to avoid conflicts",
                    priority=SuggestionPriority.MEDIUM,
                )
            )
        if degraded:
            suggestions.append(
                AISuggestion(
                    type=SuggestionType.OPTIMIZATION,
                    message="History data unavailable; confidence reflects calendar and urgency only",
                    priority=SuggestionPriority.MEDIUM,
                )
            )
        suggestions.append(
            AISuggestion(
                type=SuggestionType.PREFERENCE_LEARNING,
                message="Scheduling preferences are learned from completed appointments to improve future recommendations",
                priority=SuggestionPriority.LOW,
            )
        )
        return suggestions
