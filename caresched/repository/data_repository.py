"""Repository layer responsible for all database access."""

from __future__ import annotations

import random
import sqlite3
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from caresched.domain.models import (
    ACTIVE_STATUSES,
    AvailabilityOverride,
    Booking,
    BookingStatus,
    DailyAggregate,
    DateRange,
    DemandForecast,
    HistoricalAppointment,
    OverrideType,
    WorkingDay,
    WorkingHoursTemplate,
    format_time,
    parse_time,
)
from caresched.utils.config import Settings, get_settings
from caresched.utils.logger import get_logger


logger = get_logger(__name__)


_ACTIVE_STATUS_SQL = ",".join(f"'{status.value}'" for status in ACTIVE_STATUSES)

_BOOKING_COLUMNS = """
    id,
    provider_id,
    requester_id,
    date,
    time,
    duration_minutes,
    category,
    status,
    confidence_score,
    reasoning,
    priority_score,
    auto_scheduled,
    note
"""


def _optional_time(value: Optional[str]) -> Optional[time]:
    if value is None:
        return None
    return parse_time(str(value))


def _optional_time_text(value: Optional[time]) -> Optional[str]:
    if value is None:
        return None
    return format_time(value)


def _row_to_booking(row: sqlite3.Row) -> Booking:
    return Booking(
        booking_id=int(row["id"]),
        provider_id=str(row["provider_id"]),
        requester_id=str(row["requester_id"]),
        date=date.fromisoformat(str(row["date"])),
        start=parse_time(str(row["time"])),
        duration_minutes=int(row["duration_minutes"]),
        category=str(row["category"]),
        status=BookingStatus(str(row["status"])),
        confidence_score=(
            float(row["confidence_score"])
            if row["confidence_score"] is not None
            else None
        ),
        reasoning=str(row["reasoning"]) if row["reasoning"] is not None else None,
        priority_score=int(row["priority_score"]),
        auto_scheduled=bool(row["auto_scheduled"]),
        note=str(row["note"]) if row["note"] is not None else None,
    )


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.database_busy_timeout_seconds,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Providers (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS WorkingHours (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        provider_id TEXT NOT NULL,
                        weekday INTEGER NOT NULL CHECK (weekday BETWEEN 0 AND 6),
                        is_working INTEGER NOT NULL CHECK (is_working IN (0,1)),
                        start_time TEXT,
                        end_time TEXT,
                        break_start TEXT,
                        break_end TEXT,
                        max_appointments INTEGER,
                        UNIQUE (provider_id, weekday),
                        FOREIGN KEY (provider_id) REFERENCES Providers(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS AvailabilityOverrides (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        provider_id TEXT NOT NULL,
                        start_date TEXT NOT NULL,
                        end_date TEXT NOT NULL,
                        override_type TEXT NOT NULL,
                        is_available INTEGER NOT NULL CHECK (is_available IN (0,1)),
                        start_time TEXT,
                        end_time TEXT,
                        reason TEXT,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (provider_id) REFERENCES Providers(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Appointments (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        provider_id TEXT NOT NULL,
                        requester_id TEXT NOT NULL,
                        date TEXT NOT NULL,
                        time TEXT NOT NULL,
                        duration_minutes INTEGER NOT NULL CHECK (duration_minutes > 0),
                        category TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'PENDING',
                        confidence_score REAL,
                        reasoning TEXT,
                        priority_score INTEGER NOT NULL DEFAULT 2,
                        auto_scheduled INTEGER NOT NULL DEFAULT 0,
                        note TEXT,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS ScheduleAnalytics (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        provider_id TEXT NOT NULL,
                        date TEXT NOT NULL,
                        total_appointments INTEGER NOT NULL,
                        completed INTEGER NOT NULL,
                        cancelled INTEGER NOT NULL,
                        available_slots INTEGER NOT NULL,
                        UNIQUE (provider_id, date)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS DemandForecastLogs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        provider_id TEXT NOT NULL,
                        forecast_date TEXT NOT NULL,
                        predicted_demand INTEGER NOT NULL,
                        confidence REAL NOT NULL,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                # At most one active booking per provider/date/time.
                cursor.execute(
                    f"""
                    CREATE UNIQUE INDEX IF NOT EXISTS uq_active_appointment_slot
                    ON Appointments(provider_id, date, time)
                    WHERE status IN ({_ACTIVE_STATUS_SQL});
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_appointments_requester_date
                    ON Appointments(requester_id, date);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_appointments_provider_date
                    ON Appointments(provider_id, date, status);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_overrides_provider_dates
                    ON AvailabilityOverrides(provider_id, start_date, end_date);
                    """
                )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_synthetic_data(self) -> None:
        """Seed deterministic synthetic calendars and history only when empty."""
        rng = random.Random(self._settings.synthetic_random_seed)
        try:
            with self._connect() as conn:
                cursor = conn.cursor()

                cursor.execute("SELECT COUNT(*) AS count FROM Providers;")
                provider_count = int(cursor.fetchone()["count"])
                if provider_count > 0:
                    logger.info("Synthetic data already present; skipping seed")
                    return

                provider_ids = list(self._settings.synthetic_provider_ids)
                cursor.executemany(
                    "INSERT INTO Providers (id, name) VALUES (?, ?);",
                    [
                        (provider_id, provider_id.replace("_", " ").title())
                        for provider_id in provider_ids
                    ],
                )

                working_rows = []
                for provider_id in provider_ids:
                    for weekday in range(7):
                        if weekday < 5:
                            working_rows.append(
                                (provider_id, weekday, 1, "09:00", "17:00", "12:00", "13:00", 14)
                            )
                        else:
                            working_rows.append(
                                (provider_id, weekday, 0, None, None, None, None, None)
                            )
                cursor.executemany(
                    """
                    INSERT INTO WorkingHours (
                        provider_id, weekday, is_working, start_time, end_time,
                        break_start, break_end, max_appointments
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    working_rows,
                )

                day_slots = [f"{hour:02d}:{minute:02d}" for hour in range(9, 17) for minute in (0, 30)]
                day_slots = [slot for slot in day_slots if not "12:00" <= slot < "13:00"]
                requesters = [
                    f"patient_{index:03d}"
                    for index in range(1, self._settings.synthetic_requester_count + 1)
                ]
                favorite_slot = {requester: rng.choice(day_slots) for requester in requesters}
                cancel_propensity = {requester: rng.uniform(0.02, 0.35) for requester in requesters}

                start_date = datetime.now().date() - timedelta(days=self._settings.synthetic_seed_days)
                appointment_rows = []
                aggregate_rows = []
                for offset in range(self._settings.synthetic_seed_days):
                    current_day = start_date + timedelta(days=offset)
                    if current_day.weekday() >= 5:
                        continue
                    for provider_id in provider_ids:
                        booked_count = rng.randint(6, len(day_slots))
                        chosen = rng.sample(requesters, booked_count)
                        free_slots = list(day_slots)
                        completed = 0
                        cancelled = 0
                        for requester in chosen:
                            if favorite_slot[requester] in free_slots and rng.random() < 0.6:
                                slot = favorite_slot[requester]
                            else:
                                slot = rng.choice(free_slots)
                            free_slots.remove(slot)
                            if rng.random() < cancel_propensity[requester]:
                                status = BookingStatus.CANCELLED
                                cancelled += 1
                            else:
                                status = BookingStatus.COMPLETED
                                completed += 1
                            appointment_rows.append(
                                (
                                    provider_id,
                                    requester,
                                    current_day.isoformat(),
                                    slot,
                                    30,
                                    "consultation",
                                    status.value,
                                )
                            )
                        aggregate_rows.append(
                            (
                                provider_id,
                                current_day.isoformat(),
                                booked_count,
                                completed,
                                cancelled,
                                len(day_slots),
                            )
                        )

                cursor.executemany(
                    """
                    INSERT INTO Appointments (
                        provider_id, requester_id, date, time, duration_minutes, category, status
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?);
                    """,
                    appointment_rows,
                )
                cursor.executemany(
                    """
                    INSERT INTO ScheduleAnalytics (
                        provider_id, date, total_appointments, completed, cancelled, available_slots
                    )
                    VALUES (?, ?, ?, ?, ?, ?);
                    """,
                    aggregate_rows,
                )
                conn.commit()
            logger.info(
                "Synthetic seed completed | appointments=%s | aggregates=%s",
                len(appointment_rows),
                len(aggregate_rows),
            )
        except sqlite3.Error as exc:
            raise RuntimeError(f"Synthetic data seeding failed: {exc}") from exc

    # --- calendar ---

    def create_provider(self, provider_id: str, name: Optional[str] = None) -> None:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO Providers (id, name) VALUES (?, ?);",
                (provider_id, name or provider_id),
            )
            conn.commit()

    def save_working_day(self, provider_id: str, day: WorkingDay) -> None:
        """Insert or replace one weekday row of a provider template."""
        self.create_provider(provider_id)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO WorkingHours (
                    provider_id, weekday, is_working, start_time, end_time,
                    break_start, break_end, max_appointments
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (provider_id, weekday) DO UPDATE SET
                    is_working = excluded.is_working,
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    break_start = excluded.break_start,
                    break_end = excluded.break_end,
                    max_appointments = excluded.max_appointments;
                """,
                (
                    provider_id,
                    day.weekday,
                    1 if day.is_working else 0,
                    _optional_time_text(day.start),
                    _optional_time_text(day.end),
                    _optional_time_text(day.break_start),
                    _optional_time_text(day.break_end),
                    day.max_appointments,
                ),
            )
            conn.commit()

    def get_working_hours_template(self, provider_id: str) -> WorkingHoursTemplate:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT weekday, is_working, start_time, end_time,
                       break_start, break_end, max_appointments
                FROM WorkingHours
                WHERE provider_id = ?
                ORDER BY weekday ASC;
                """,
                (provider_id,),
            )
            days = {
                int(row["weekday"]): WorkingDay(
                    weekday=int(row["weekday"]),
                    is_working=bool(row["is_working"]),
                    start=_optional_time(row["start_time"]),
                    end=_optional_time(row["end_time"]),
                    break_start=_optional_time(row["break_start"]),
                    break_end=_optional_time(row["break_end"]),
                    max_appointments=(
                        int(row["max_appointments"])
                        if row["max_appointments"] is not None
                        else None
                    ),
                )
                for row in cursor.fetchall()
            }
        return WorkingHoursTemplate(provider_id=provider_id, days=days)

    def create_override(
        self,
        *,
        provider_id: str,
        start_date: date,
        end_date: date,
        override_type: OverrideType,
        is_available: bool,
        start: Optional[time] = None,
        end: Optional[time] = None,
        reason: Optional[str] = None,
    ) -> int:
        self.create_provider(provider_id)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO AvailabilityOverrides (
                    provider_id, start_date, end_date, override_type,
                    is_available, start_time, end_time, reason
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    provider_id,
                    start_date.isoformat(),
                    end_date.isoformat(),
                    override_type.value,
                    1 if is_available else 0,
                    _optional_time_text(start),
                    _optional_time_text(end),
                    reason,
                ),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def list_overrides(
        self,
        provider_id: str,
        date_range: DateRange,
    ) -> list[AvailabilityOverride]:
        """Return overrides intersecting the range, oldest first."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, provider_id, start_date, end_date, override_type,
                       is_available, start_time, end_time, reason
                FROM AvailabilityOverrides
                WHERE provider_id = ?
                  AND start_date <= ?
                  AND end_date >= ?
                ORDER BY id ASC;
                """,
                (provider_id, date_range.end.isoformat(), date_range.start.isoformat()),
            )
            return [
                AvailabilityOverride(
                    override_id=int(row["id"]),
                    provider_id=str(row["provider_id"]),
                    start_date=date.fromisoformat(str(row["start_date"])),
                    end_date=date.fromisoformat(str(row["end_date"])),
                    override_type=OverrideType(str(row["override_type"])),
                    is_available=bool(row["is_available"]),
                    start=_optional_time(row["start_time"]),
                    end=_optional_time(row["end_time"]),
                    reason=str(row["reason"]) if row["reason"] is not None else None,
                )
                for row in cursor.fetchall()
            ]

    # --- bookings ---

    def create_booking(
        self,
        *,
        provider_id: str,
        requester_id: str,
        slot_date: date,
        slot_time: time,
        duration_minutes: int,
        category: str,
        status: BookingStatus = BookingStatus.PENDING,
        confidence_score: Optional[float] = None,
        reasoning: Optional[str] = None,
        priority_score: int = 2,
        auto_scheduled: bool = False,
        note: Optional[str] = None,
    ) -> Booking:
        """Insert a booking row.

        Raises ``sqlite3.IntegrityError`` when another active booking already
        holds the same provider/date/time.
        """
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO Appointments (
                    provider_id, requester_id, date, time, duration_minutes,
                    category, status, confidence_score, reasoning,
                    priority_score, auto_scheduled, note
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    provider_id,
                    requester_id,
                    slot_date.isoformat(),
                    format_time(slot_time),
                    duration_minutes,
                    category,
                    status.value,
                    confidence_score,
                    reasoning,
                    priority_score,
                    1 if auto_scheduled else 0,
                    note,
                ),
            )
            conn.commit()
            booking_id = int(cursor.lastrowid)
        booking = self.get_booking(booking_id)
        if booking is None:  # pragma: no cover - row was just inserted
            raise RuntimeError(f"booking {booking_id} vanished after insert")
        return booking

    def get_booking(self, booking_id: int) -> Optional[Booking]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {_BOOKING_COLUMNS} FROM Appointments WHERE id = ?;",
                (booking_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return _row_to_booking(row)

    def list_active_bookings(
        self,
        provider_id: str,
        date_range: DateRange,
    ) -> list[Booking]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_BOOKING_COLUMNS}
                FROM Appointments
                WHERE provider_id = ?
                  AND date >= ?
                  AND date <= ?
                  AND status IN ({_ACTIVE_STATUS_SQL})
                ORDER BY date ASC, time ASC, id ASC;
                """,
                (provider_id, date_range.start.isoformat(), date_range.end.isoformat()),
            )
            return [_row_to_booking(row) for row in cursor.fetchall()]

    def update_booking_status(self, booking_id: int, status: BookingStatus) -> Optional[Booking]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Appointments
                SET status = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?;
                """,
                (status.value, booking_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
        return self.get_booking(booking_id)

    def move_booking(
        self,
        *,
        booking_id: int,
        slot_date: date,
        slot_time: time,
        confidence_score: Optional[float],
        reasoning: Optional[str],
        note: Optional[str],
    ) -> Optional[Booking]:
        """Move a booking to a new date/time.

        Raises ``sqlite3.IntegrityError`` when the target slot is taken.
        """
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Appointments
                SET date = ?, time = ?, confidence_score = ?, reasoning = ?,
                    note = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?;
                """,
                (
                    slot_date.isoformat(),
                    format_time(slot_time),
                    confidence_score,
                    reasoning,
                    note,
                    booking_id,
                ),
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
        return self.get_booking(booking_id)

    def list_appointment_history(
        self,
        party_id: str,
        limit: int,
        role: str = "requester",
    ) -> List[HistoricalAppointment]:
        """Return newest-first history for a requester or provider."""
        if role not in ("requester", "provider"):
            raise ValueError("role must be 'requester' or 'provider'")
        column = "requester_id" if role == "requester" else "provider_id"
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT id, requester_id, provider_id, date, time, duration_minutes, status
                FROM Appointments
                WHERE {column} = ?
                ORDER BY date DESC, time DESC, id DESC
                LIMIT ?;
                """,
                (party_id, limit),
            )
            return [
                HistoricalAppointment(
                    booking_id=int(row["id"]),
                    requester_id=str(row["requester_id"]),
                    provider_id=str(row["provider_id"]),
                    date=date.fromisoformat(str(row["date"])),
                    start=parse_time(str(row["time"])),
                    duration_minutes=int(row["duration_minutes"]),
                    status=BookingStatus(str(row["status"])),
                )
                for row in cursor.fetchall()
            ]

    # --- analytics ---

    def save_daily_aggregates(self, aggregates: Iterable[DailyAggregate]) -> None:
        rows = [
            (
                aggregate.provider_id,
                aggregate.date.isoformat(),
                aggregate.total_appointments,
                aggregate.completed,
                aggregate.cancelled,
                aggregate.available_slots,
            )
            for aggregate in aggregates
        ]
        if not rows:
            return
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.executemany(
                """
                INSERT INTO ScheduleAnalytics (
                    provider_id, date, total_appointments, completed, cancelled, available_slots
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (provider_id, date) DO UPDATE SET
                    total_appointments = excluded.total_appointments,
                    completed = excluded.completed,
                    cancelled = excluded.cancelled,
                    available_slots = excluded.available_slots;
                """,
                rows,
            )
            conn.commit()

    def list_daily_aggregates(
        self,
        provider_id: str,
        date_range: DateRange,
    ) -> list[DailyAggregate]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT provider_id, date, total_appointments, completed, cancelled, available_slots
                FROM ScheduleAnalytics
                WHERE provider_id = ?
                  AND date >= ?
                  AND date <= ?
                ORDER BY date ASC;
                """,
                (provider_id, date_range.start.isoformat(), date_range.end.isoformat()),
            )
            return [
                DailyAggregate(
                    provider_id=str(row["provider_id"]),
                    date=date.fromisoformat(str(row["date"])),
                    total_appointments=int(row["total_appointments"]),
                    completed=int(row["completed"]),
                    cancelled=int(row["cancelled"]),
                    available_slots=int(row["available_slots"]),
                )
                for row in cursor.fetchall()
            ]

    def save_forecast_output(self, forecasts: Sequence[DemandForecast]) -> None:
        """Persist demand forecasts for auditability/debugging."""
        if not forecasts:
            return
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.executemany(
                """
                INSERT INTO DemandForecastLogs (
                    provider_id, forecast_date, predicted_demand, confidence
                )
                VALUES (?, ?, ?, ?);
                """,
                [
                    (
                        forecast.provider_id,
                        forecast.date.isoformat(),
                        forecast.predicted_demand,
                        forecast.confidence,
                    )
                    for forecast in forecasts
                ],
            )
            conn.commit()

    def count_forecast_logs(self) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM DemandForecastLogs;")
            return int(cursor.fetchone()["count"])
