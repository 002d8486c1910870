"""Read-only calendar and history adapters with bounded timeouts and retries.

Every call runs on a worker thread and is abandoned after
``adapter_timeout_seconds``. Timeouts and storage errors surface as
``AdapterUnavailable`` and are retried with exponential backoff before being
re-raised to the caller, which decides whether to degrade or fail.
"""

from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from caresched.domain.errors import AdapterUnavailable
from caresched.domain.models import (
    AvailabilityOverride,
    DailyAggregate,
    DateRange,
    HistoricalAppointment,
    WorkingHoursTemplate,
)
from caresched.repository.data_repository import DataRepository
from caresched.utils.config import Settings, get_settings
from caresched.utils.logger import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


class _BoundedCaller:
    """Runs repository reads under a timeout with tenacity-driven retries."""

    def __init__(self, source: str, settings: Settings, max_workers: int = 4) -> None:
        self._source = source
        self._settings = settings
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=f"{source}-adapter",
        )

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        retrying = Retrying(
            stop=stop_after_attempt(self._settings.adapter_retry_attempts),
            wait=wait_exponential(
                multiplier=self._settings.adapter_backoff_multiplier,
                max=self._settings.adapter_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(AdapterUnavailable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self._call_once, fn, *args, **kwargs)

    def _call_once(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self._settings.adapter_timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            raise AdapterUnavailable(
                self._source,
                f"timed out after {self._settings.adapter_timeout_seconds}s",
            ) from exc
        except (sqlite3.Error, OSError) as exc:
            raise AdapterUnavailable(self._source, str(exc)) from exc

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


class CalendarSource:
    """Provider working-hour templates and availability overrides."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._caller = _BoundedCaller("calendar", self._settings)

    def get_working_hours(
        self,
        provider_id: str,
        date_range: DateRange,
    ) -> tuple[WorkingHoursTemplate, list[AvailabilityOverride]]:
        template = self._caller.call(self._repository.get_working_hours_template, provider_id)
        overrides = self._caller.call(self._repository.list_overrides, provider_id, date_range)
        logger.debug(
            "Calendar loaded | provider_id=%s | working_days=%s | overrides=%s",
            provider_id,
            sum(1 for day in template.days.values() if day.is_working),
            len(overrides),
        )
        return template, overrides

    def close(self) -> None:
        self._caller.shutdown()


class HistoryStore:
    """Past appointments and daily analytics aggregates."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._caller = _BoundedCaller("history", self._settings)

    def get_appointment_history(
        self,
        party_id: str,
        limit: int,
        role: str = "requester",
    ) -> list[HistoricalAppointment]:
        return self._caller.call(
            self._repository.list_appointment_history,
            party_id,
            limit,
            role,
        )

    def get_daily_aggregates(
        self,
        provider_id: str,
        date_range: DateRange,
    ) -> list[DailyAggregate]:
        return self._caller.call(
            self._repository.list_daily_aggregates,
            provider_id,
            date_range,
        )

    def close(self) -> None:
        self._caller.shutdown()
