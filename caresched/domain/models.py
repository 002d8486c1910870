"""Domain models for slot generation, scoring, booking and forecasting."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Iterator, Optional


class Urgency(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"

    @property
    def multiplier(self) -> float:
        return _URGENCY_MULTIPLIERS[self]

    @property
    def priority_score(self) -> int:
        return _URGENCY_PRIORITY_SCORES[self]


_URGENCY_MULTIPLIERS = {
    Urgency.LOW: 0.1,
    Urgency.MEDIUM: 0.3,
    Urgency.HIGH: 0.6,
    Urgency.URGENT: 0.9,
}

_URGENCY_PRIORITY_SCORES = {
    Urgency.LOW: 1,
    Urgency.MEDIUM: 2,
    Urgency.HIGH: 3,
    Urgency.URGENT: 4,
}


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_active(self) -> bool:
        return self in (BookingStatus.PENDING, BookingStatus.SCHEDULED)


ACTIVE_STATUSES = (BookingStatus.PENDING, BookingStatus.SCHEDULED)


class OverrideType(str, Enum):
    LEAVE = "LEAVE"
    EMERGENCY_BLOCK = "EMERGENCY_BLOCK"
    EXTRA_CAPACITY = "EXTRA_CAPACITY"


class SuggestionType(str, Enum):
    OPTIMIZATION = "OPTIMIZATION"
    CONFLICT_RESOLUTION = "CONFLICT_RESOLUTION"
    PREFERENCE_LEARNING = "PREFERENCE_LEARNING"


class SuggestionPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


WEEKDAY_NAMES = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)


def add_minutes(value: time, minutes: int) -> time:
    """Shift a wall-clock time; callers guarantee the result stays within the day."""
    shifted = datetime.combine(date.min, value) + timedelta(minutes=minutes)
    return shifted.time()


def minutes_between(start: time, end: time) -> int:
    return (end.hour * 60 + end.minute) - (start.hour * 60 + start.minute)


def format_time(value: time) -> str:
    return value.strftime("%H:%M")


def parse_time(value: str) -> time:
    return datetime.strptime(value, "%H:%M").time()


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    def __len__(self) -> int:
        return max(0, (self.end - self.start).days + 1)


@dataclass(frozen=True, order=True)
class TimeWindow:
    start: time
    end: time

    def overlaps(self, other: "TimeWindow") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeWindow") -> bool:
        return self.start <= other.start and other.end <= self.end


@dataclass(frozen=True)
class SchedulingConstraints:
    max_wait_days: Optional[int] = None
    preferred_weekdays: tuple[int, ...] = ()
    excluded_windows: tuple[TimeWindow, ...] = ()


@dataclass(frozen=True)
class SchedulingRequest:
    requester_id: str
    provider_id: str
    category: str
    urgency: Urgency = Urgency.MEDIUM
    duration_minutes: int = 30
    preferred_date: Optional[date] = None
    preferred_time: Optional[time] = None
    constraints: SchedulingConstraints = field(default_factory=SchedulingConstraints)


@dataclass(frozen=True)
class WorkingDay:
    weekday: int
    is_working: bool
    start: Optional[time] = None
    end: Optional[time] = None
    break_start: Optional[time] = None
    break_end: Optional[time] = None
    max_appointments: Optional[int] = None

    @property
    def window(self) -> Optional[TimeWindow]:
        if not self.is_working or self.start is None or self.end is None:
            return None
        return TimeWindow(self.start, self.end)

    @property
    def break_window(self) -> Optional[TimeWindow]:
        if self.break_start is None or self.break_end is None:
            return None
        if self.break_start >= self.break_end:
            return None
        return TimeWindow(self.break_start, self.break_end)


@dataclass(frozen=True)
class WorkingHoursTemplate:
    provider_id: str
    days: dict[int, WorkingDay]

    def for_weekday(self, weekday: int) -> WorkingDay:
        return self.days.get(weekday, WorkingDay(weekday=weekday, is_working=False))


@dataclass(frozen=True)
class AvailabilityOverride:
    override_id: int
    provider_id: str
    start_date: date
    end_date: date
    override_type: OverrideType
    is_available: bool
    start: Optional[time] = None
    end: Optional[time] = None
    reason: Optional[str] = None

    def covers(self, value: date) -> bool:
        return self.start_date <= value <= self.end_date

    @property
    def window(self) -> Optional[TimeWindow]:
        if self.start is None or self.end is None:
            return None
        return TimeWindow(self.start, self.end)

    @property
    def is_full_day(self) -> bool:
        return self.window is None


@dataclass(frozen=True)
class CandidateSlot:
    date: date
    start: time
    end: time
    confidence: Optional[float] = None
    reasoning: str = ""
    factors: tuple[str, ...] = ()
    adjusted: bool = False

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start, self.end)

    @property
    def key(self) -> tuple[date, time]:
        return (self.date, self.start)

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.date, self.start)

    @property
    def duration_minutes(self) -> int:
        return minutes_between(self.start, self.end)

    def with_score(
        self,
        confidence: float,
        reasoning: str,
        factors: tuple[str, ...] = (),
    ) -> "CandidateSlot":
        return replace(self, confidence=confidence, reasoning=reasoning, factors=factors)


@dataclass(frozen=True)
class HistoricalAppointment:
    booking_id: int
    requester_id: str
    provider_id: str
    date: date
    start: time
    duration_minutes: int
    status: BookingStatus

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start, add_minutes(self.start, self.duration_minutes))


@dataclass(frozen=True)
class DailyAggregate:
    provider_id: str
    date: date
    total_appointments: int
    completed: int
    cancelled: int
    available_slots: int


@dataclass(frozen=True)
class PreferenceProfile:
    requester_id: str
    preferred_times: tuple[time, ...] = ()
    preferred_days: tuple[int, ...] = ()
    preferred_providers: tuple[str, ...] = ()
    average_duration_minutes: int = 30
    no_show_rate: float = 0.0
    sample_size: int = 0


@dataclass(frozen=True)
class ProviderPattern:
    provider_id: str
    favored_windows: tuple[TimeWindow, ...] = ()
    utilization_rate: float = 0.0
    slot_success_rates: dict[tuple[int, time], float] = field(default_factory=dict)
    sample_size: int = 0


@dataclass(frozen=True)
class Booking:
    booking_id: int
    provider_id: str
    requester_id: str
    date: date
    start: time
    duration_minutes: int
    category: str
    status: BookingStatus
    confidence_score: Optional[float] = None
    reasoning: Optional[str] = None
    priority_score: int = 2
    auto_scheduled: bool = False
    note: Optional[str] = None

    @property
    def end(self) -> time:
        return add_minutes(self.start, self.duration_minutes)

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start, self.end)


@dataclass(frozen=True)
class AISuggestion:
    type: SuggestionType
    message: str
    priority: SuggestionPriority
    action: Optional[str] = None


@dataclass(frozen=True)
class OptimizedSchedule:
    primary: CandidateSlot
    alternatives: list[CandidateSlot]
    suggestions: list[AISuggestion]
    degraded: bool = False

    @property
    def confidence(self) -> float:
        return float(self.primary.confidence or 0.0)

    @property
    def reasoning(self) -> str:
        return self.primary.reasoning

    @property
    def scheduled_at(self) -> datetime:
        return self.primary.starts_at


@dataclass(frozen=True)
class DemandForecast:
    provider_id: str
    date: date
    predicted_demand: int
    confidence: float
    factors: list[str]
    recommendations: list[str]


@dataclass(frozen=True)
class NoShowPrediction:
    booking_id: int
    probability: float
    factors: list[str]
    recommendations: list[str]


@dataclass(frozen=True)
class ProviderRecommendations:
    provider_id: str
    forecasts: list[DemandForecast]
    no_show_predictions: list[NoShowPrediction]
    recommendations: list[str]
