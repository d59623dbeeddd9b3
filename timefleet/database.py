"""SQLite-backed persistence for the desired fleet state."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Iterator, List, Mapping, Optional, Union

from .models import (
    DailyTimeInterval,
    DesiredState,
    ManagedUser,
    ReconciliationStatus,
    TimeAdjustment,
    UsageRecord,
    WEEKDAYS,
    WeeklySchedule,
    weekday_number,
)


class StoreError(RuntimeError):
    """Raised when the underlying database cannot complete an operation."""


class MissingUserError(ValueError):
    """Raised when an operation refers to a managed user that does not exist."""

    def __init__(self, user_id: int) -> None:
        super().__init__(f"Managed user {user_id} does not exist")
        self.user_id = user_id


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the fleet database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "timefleet.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _parse_optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return _parse_datetime(str(value))


_HOURS_COLUMNS = tuple(f"{day}_hours" for day in WEEKDAYS)

DayKey = Union[int, str]


def _normalise_day(day: DayKey) -> int:
    if isinstance(day, int):
        if not 1 <= day <= 7:
            raise ValueError(f"Weekday must be between 1 and 7, got {day}")
        return day
    return weekday_number(day)


class Database:
    """Row-level store for managed users, schedules, intervals and usage."""

    def __init__(self, path: Path, *, busy_timeout: float = 30.0) -> None:
        _ensure_directory(path)
        self._path = path
        self._busy_timeout = busy_timeout

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=self._busy_timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreError(f"Unable to open database {self._path}: {exc}") from exc
        try:
            with conn:
                if immediate:
                    conn.execute("BEGIN IMMEDIATE")
                yield conn
        except sqlite3.Error as exc:
            raise StoreError(f"Database operation failed: {exc}") from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._transaction() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS managed_users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL,
                    system_ip TEXT NOT NULL,
                    is_valid INTEGER NOT NULL DEFAULT 0,
                    date_added TEXT NOT NULL,
                    last_checked TEXT,
                    last_config TEXT,
                    pending_time_adjustment INTEGER,
                    pending_time_operation TEXT CHECK(pending_time_operation IN ('+', '-')),
                    UNIQUE(username, system_ip)
                );

                CREATE TABLE IF NOT EXISTS user_weekly_schedule (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL UNIQUE REFERENCES managed_users(id) ON DELETE CASCADE,
                    monday_hours REAL NOT NULL DEFAULT 0,
                    tuesday_hours REAL NOT NULL DEFAULT 0,
                    wednesday_hours REAL NOT NULL DEFAULT 0,
                    thursday_hours REAL NOT NULL DEFAULT 0,
                    friday_hours REAL NOT NULL DEFAULT 0,
                    saturday_hours REAL NOT NULL DEFAULT 0,
                    sunday_hours REAL NOT NULL DEFAULT 0,
                    is_synced INTEGER NOT NULL DEFAULT 0,
                    last_synced TEXT,
                    last_modified TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_daily_time_interval (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES managed_users(id) ON DELETE CASCADE,
                    day_of_week INTEGER NOT NULL CHECK(day_of_week >= 1 AND day_of_week <= 7),
                    start_hour INTEGER NOT NULL CHECK(start_hour >= 0 AND start_hour <= 23),
                    start_minute INTEGER NOT NULL DEFAULT 0 CHECK(start_minute >= 0 AND start_minute <= 59),
                    end_hour INTEGER NOT NULL CHECK(end_hour >= 0 AND end_hour <= 23),
                    end_minute INTEGER NOT NULL DEFAULT 0 CHECK(end_minute >= 0 AND end_minute <= 59),
                    is_enabled INTEGER NOT NULL DEFAULT 1,
                    is_synced INTEGER NOT NULL DEFAULT 0,
                    last_synced TEXT,
                    last_modified TEXT NOT NULL,
                    UNIQUE(user_id, day_of_week)
                );

                CREATE TABLE IF NOT EXISTS user_time_usage (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES managed_users(id) ON DELETE CASCADE,
                    date TEXT NOT NULL,
                    time_spent INTEGER NOT NULL DEFAULT 0,
                    UNIQUE(user_id, date)
                );

                CREATE INDEX IF NOT EXISTS idx_interval_user_id ON user_daily_time_interval(user_id);
                CREATE INDEX IF NOT EXISTS idx_usage_user_date ON user_time_usage(user_id, date);
                """
            )

    # ------------------------------------------------------------------
    # Managed users
    # ------------------------------------------------------------------
    def create_managed_user(self, username: str, host: str) -> ManagedUser:
        """Register a remote account; it is picked up by the next scheduler round."""

        cleaned_username = username.strip()
        cleaned_host = host.strip()
        if not cleaned_username:
            raise ValueError("Username must not be empty")
        if not cleaned_host:
            raise ValueError("Host address must not be empty")

        date_added = _current_timestamp()
        with self._transaction() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO managed_users (username, system_ip, is_valid, date_added)
                    VALUES (?, ?, 0, ?)
                    """,
                    (cleaned_username, cleaned_host, _serialize_datetime(date_added)),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(
                    f"User {cleaned_username} on {cleaned_host} is already managed"
                ) from exc
            user_id = cursor.lastrowid

        user = self.get_managed_user(user_id)
        if user is None:
            raise StoreError("Failed to load managed user after creation")
        return user

    def get_managed_user(self, user_id: int) -> Optional[ManagedUser]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM managed_users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def list_managed_users(self) -> List[ManagedUser]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM managed_users ORDER BY id").fetchall()
        return [self._row_to_user(row) for row in rows]

    def list_managed_user_ids(self) -> List[int]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT id FROM managed_users ORDER BY id").fetchall()
        return [int(row["id"]) for row in rows]

    def delete_managed_user(self, user_id: int) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM managed_users WHERE id = ?", (user_id,))
            return cursor.rowcount > 0

    def load_desired_state(self, user_id: int) -> Optional[DesiredState]:
        """Read a user together with its schedule and intervals in one snapshot."""

        with self._transaction() as conn:
            user_row = conn.execute("SELECT * FROM managed_users WHERE id = ?", (user_id,)).fetchone()
            if user_row is None:
                return None
            schedule_row = conn.execute(
                "SELECT * FROM user_weekly_schedule WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            interval_rows = conn.execute(
                "SELECT * FROM user_daily_time_interval WHERE user_id = ? ORDER BY day_of_week",
                (user_id,),
            ).fetchall()

        return DesiredState(
            user=self._row_to_user(user_row),
            schedule=self._row_to_schedule(schedule_row) if schedule_row is not None else None,
            intervals=[self._row_to_interval(row) for row in interval_rows],
        )

    def get_reconciliation_status(self, user_id: int) -> Optional[ReconciliationStatus]:
        """Return the latest reconciliation outcome for a user."""

        state = self.load_desired_state(user_id)
        if state is None:
            return None
        unsynced = len(state.unsynced_intervals())
        if state.schedule is not None and not state.schedule.is_synced:
            unsynced += 1
        return ReconciliationStatus(
            user_id=state.user.id,
            is_valid=state.user.is_valid,
            last_checked=state.user.last_checked,
            has_pending_adjustment=state.user.pending_adjustment is not None,
            unsynced_rows=unsynced,
        )

    # ------------------------------------------------------------------
    # Reconciliation results
    # ------------------------------------------------------------------
    def record_unreachable(self, user_id: int, *, checked_at: datetime) -> None:
        """Flag the host as unreachable without touching any pending state."""

        with self._transaction() as conn:
            conn.execute(
                "UPDATE managed_users SET is_valid = 0, last_checked = ? WHERE id = ?",
                (_serialize_datetime(checked_at), user_id),
            )

    def record_agent_error(self, user_id: int, *, checked_at: datetime) -> None:
        """The host answered but a command failed; no new baseline is stored."""

        with self._transaction() as conn:
            conn.execute(
                "UPDATE managed_users SET is_valid = 1, last_checked = ? WHERE id = ?",
                (_serialize_datetime(checked_at), user_id),
            )

    def record_pull(
        self,
        user_id: int,
        *,
        checked_at: datetime,
        config_snapshot: str,
        usage_date: date,
        time_spent: int,
    ) -> None:
        """Store a fresh remote snapshot and today's usage atomically."""

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE managed_users
                   SET is_valid = 1, last_checked = ?, last_config = ?
                 WHERE id = ?
                """,
                (_serialize_datetime(checked_at), config_snapshot, user_id),
            )
            if cursor.rowcount == 0:
                raise MissingUserError(user_id)
            self._upsert_usage(conn, user_id, usage_date, time_spent)

    def discard_config_snapshot(self, user_id: int) -> None:
        """Forget the last pulled configuration once a push has made it stale."""

        with self._transaction() as conn:
            conn.execute("UPDATE managed_users SET last_config = NULL WHERE id = ?", (user_id,))

    # ------------------------------------------------------------------
    # Weekly schedule
    # ------------------------------------------------------------------
    def set_weekly_schedule(
        self,
        user_id: int,
        hours: Mapping[DayKey, float],
        *,
        now: Optional[datetime] = None,
    ) -> WeeklySchedule:
        """Replace the weekly quota; unspecified days keep their current value."""

        normalised = {}
        for day, value in hours.items():
            amount = float(value)
            if amount < 0.0 or amount > 24.0:
                raise ValueError(f"Hours must be between 0 and 24, got {amount}")
            normalised[_normalise_day(day)] = amount

        modified = _serialize_datetime(now or _current_timestamp())
        with self._transaction(immediate=True) as conn:
            existing = conn.execute(
                "SELECT * FROM user_weekly_schedule WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            current = {day: 0.0 for day in range(1, 8)}
            if existing is not None:
                current.update(self._row_to_schedule(existing).hours)
            current.update(normalised)
            values = [current[day] for day in range(1, 8)]
            try:
                conn.execute(
                    f"""
                    INSERT INTO user_weekly_schedule (user_id, {', '.join(_HOURS_COLUMNS)}, is_synced, last_modified)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        {', '.join(f'{column} = excluded.{column}' for column in _HOURS_COLUMNS)},
                        is_synced = 0,
                        last_modified = excluded.last_modified
                    """,
                    (user_id, *values, modified),
                )
            except sqlite3.IntegrityError as exc:
                raise MissingUserError(user_id) from exc

        schedule = self.get_weekly_schedule(user_id)
        if schedule is None:
            raise StoreError("Failed to load weekly schedule after update")
        return schedule

    def get_weekly_schedule(self, user_id: int) -> Optional[WeeklySchedule]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM user_weekly_schedule WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_schedule(row)

    def mark_schedule_unsynced(self, user_id: int, *, now: Optional[datetime] = None) -> bool:
        modified = _serialize_datetime(now or _current_timestamp())
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE user_weekly_schedule SET is_synced = 0, last_modified = ? WHERE user_id = ?",
                (modified, user_id),
            )
            return cursor.rowcount > 0

    def mark_schedule_synced(
        self,
        user_id: int,
        *,
        synced_at: datetime,
        expected_modified: datetime,
    ) -> bool:
        """Mark the schedule synced unless it was edited again since it was read."""

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE user_weekly_schedule
                   SET is_synced = 1, last_synced = ?
                 WHERE user_id = ? AND last_modified = ?
                """,
                (_serialize_datetime(synced_at), user_id, _serialize_datetime(expected_modified)),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Daily access windows
    # ------------------------------------------------------------------
    def set_daily_interval(
        self,
        user_id: int,
        day: DayKey,
        start: time,
        end: time,
        *,
        enabled: bool = True,
        now: Optional[datetime] = None,
    ) -> DailyTimeInterval:
        day_of_week = _normalise_day(day)
        modified = _serialize_datetime(now or _current_timestamp())
        with self._transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO user_daily_time_interval (
                        user_id, day_of_week, start_hour, start_minute, end_hour, end_minute,
                        is_enabled, is_synced, last_modified
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
                    ON CONFLICT(user_id, day_of_week) DO UPDATE SET
                        start_hour = excluded.start_hour,
                        start_minute = excluded.start_minute,
                        end_hour = excluded.end_hour,
                        end_minute = excluded.end_minute,
                        is_enabled = excluded.is_enabled,
                        is_synced = 0,
                        last_modified = excluded.last_modified
                    """,
                    (
                        user_id,
                        day_of_week,
                        start.hour,
                        start.minute,
                        end.hour,
                        end.minute,
                        int(bool(enabled)),
                        modified,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise MissingUserError(user_id) from exc
            row = conn.execute(
                "SELECT * FROM user_daily_time_interval WHERE user_id = ? AND day_of_week = ?",
                (user_id, day_of_week),
            ).fetchone()
        return self._row_to_interval(row)

    def list_daily_intervals(self, user_id: int) -> List[DailyTimeInterval]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM user_daily_time_interval WHERE user_id = ? ORDER BY day_of_week",
                (user_id,),
            ).fetchall()
        return [self._row_to_interval(row) for row in rows]

    def mark_interval_unsynced(
        self,
        user_id: int,
        day: DayKey,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        modified = _serialize_datetime(now or _current_timestamp())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE user_daily_time_interval
                   SET is_synced = 0, last_modified = ?
                 WHERE user_id = ? AND day_of_week = ?
                """,
                (modified, user_id, _normalise_day(day)),
            )
            return cursor.rowcount > 0

    def mark_interval_synced(
        self,
        interval_id: int,
        *,
        synced_at: datetime,
        expected_modified: datetime,
    ) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE user_daily_time_interval
                   SET is_synced = 1, last_synced = ?
                 WHERE id = ? AND last_modified = ?
                """,
                (_serialize_datetime(synced_at), interval_id, _serialize_datetime(expected_modified)),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Pending time adjustments
    # ------------------------------------------------------------------
    def queue_time_adjustment(
        self,
        user_id: int,
        operation: str,
        seconds: int,
    ) -> Optional[TimeAdjustment]:
        """Add a one-shot delta to whatever is already pending and return the net result."""

        requested = TimeAdjustment(operation, int(seconds))
        return self._shift_pending_adjustment(user_id, requested.signed_seconds)

    def consume_pending_adjustment(
        self,
        user_id: int,
        applied: TimeAdjustment,
    ) -> Optional[TimeAdjustment]:
        """Remove an adjustment that was just applied remotely.

        The applied delta is subtracted rather than the column being nulled so
        that an adjustment queued while the push was in flight is kept.
        """

        return self._shift_pending_adjustment(user_id, -applied.signed_seconds)

    def _shift_pending_adjustment(self, user_id: int, delta: int) -> Optional[TimeAdjustment]:
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT pending_time_adjustment, pending_time_operation FROM managed_users WHERE id = ?",
                (user_id,),
            ).fetchone()
            if row is None:
                raise MissingUserError(user_id)

            current = 0
            if row["pending_time_adjustment"] is not None and row["pending_time_operation"] is not None:
                current = TimeAdjustment(
                    str(row["pending_time_operation"]),
                    int(row["pending_time_adjustment"]),
                ).signed_seconds

            remaining = TimeAdjustment.from_signed(current + delta)
            conn.execute(
                """
                UPDATE managed_users
                   SET pending_time_adjustment = ?, pending_time_operation = ?
                 WHERE id = ?
                """,
                (
                    remaining.seconds if remaining else None,
                    remaining.operation if remaining else None,
                    user_id,
                ),
            )
        return remaining

    # ------------------------------------------------------------------
    # Usage records
    # ------------------------------------------------------------------
    def upsert_usage(self, user_id: int, usage_date: date, time_spent: int) -> None:
        with self._transaction() as conn:
            self._upsert_usage(conn, user_id, usage_date, time_spent)

    def get_usage(self, user_id: int, usage_date: date) -> Optional[UsageRecord]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM user_time_usage WHERE user_id = ? AND date = ?",
                (user_id, usage_date.isoformat()),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_usage(row)

    def list_usage(
        self,
        user_id: int,
        *,
        days: int = 7,
        today: Optional[date] = None,
    ) -> List[UsageRecord]:
        """Return one record per day for the last ``days`` days, zero-filled."""

        if days <= 0:
            raise ValueError("Days must be positive")
        end = today or date.today()
        start = end - timedelta(days=days - 1)
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_time_usage
                 WHERE user_id = ? AND date >= ? AND date <= ?
                 ORDER BY date
                """,
                (user_id, start.isoformat(), end.isoformat()),
            ).fetchall()

        recorded = {record.date: record for record in (self._row_to_usage(row) for row in rows)}
        return [
            recorded.get(day, UsageRecord(user_id=user_id, date=day, time_spent=0))
            for day in (start + timedelta(days=offset) for offset in range(days))
        ]

    def _upsert_usage(
        self,
        conn: sqlite3.Connection,
        user_id: int,
        usage_date: date,
        time_spent: int,
    ) -> None:
        conn.execute(
            """
            INSERT INTO user_time_usage (user_id, date, time_spent) VALUES (?, ?, ?)
            ON CONFLICT(user_id, date) DO UPDATE SET time_spent = excluded.time_spent
            """,
            (user_id, usage_date.isoformat(), int(time_spent)),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: sqlite3.Row) -> ManagedUser:
        pending = row["pending_time_adjustment"]
        return ManagedUser(
            id=int(row["id"]),
            username=str(row["username"]),
            host=str(row["system_ip"]),
            is_valid=bool(row["is_valid"]),
            date_added=_parse_datetime(str(row["date_added"])),
            last_checked=_parse_optional_datetime(row["last_checked"]),
            last_config=row["last_config"],
            pending_time_adjustment=int(pending) if pending is not None else None,
            pending_time_operation=row["pending_time_operation"],
        )

    def _row_to_schedule(self, row: sqlite3.Row) -> WeeklySchedule:
        return WeeklySchedule(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            hours={day: float(row[column]) for day, column in enumerate(_HOURS_COLUMNS, start=1)},
            is_synced=bool(row["is_synced"]),
            last_synced=_parse_optional_datetime(row["last_synced"]),
            last_modified=_parse_datetime(str(row["last_modified"])),
        )

    def _row_to_interval(self, row: sqlite3.Row) -> DailyTimeInterval:
        return DailyTimeInterval(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            day_of_week=int(row["day_of_week"]),
            start=time(int(row["start_hour"]), int(row["start_minute"])),
            end=time(int(row["end_hour"]), int(row["end_minute"])),
            is_enabled=bool(row["is_enabled"]),
            is_synced=bool(row["is_synced"]),
            last_synced=_parse_optional_datetime(row["last_synced"]),
            last_modified=_parse_datetime(str(row["last_modified"])),
        )

    def _row_to_usage(self, row: sqlite3.Row) -> UsageRecord:
        return UsageRecord(
            user_id=int(row["user_id"]),
            date=date.fromisoformat(str(row["date"])),
            time_spent=int(row["time_spent"]),
        )


__all__ = ["Database", "MissingUserError", "StoreError", "resolve_database_path"]
