"""Domain models for the desired-state store."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Dict, List, Mapping, Optional, Tuple

WEEKDAYS: Tuple[str, ...] = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

ADJUSTMENT_OPERATIONS = ("+", "-")


def weekday_number(name: str) -> int:
    """Return the ISO weekday number (Monday = 1) for a day name."""

    try:
        return WEEKDAYS.index(name.strip().lower()) + 1
    except ValueError as exc:
        raise ValueError(f"Unknown weekday '{name}'") from exc


def weekday_name(day: int) -> str:
    if not 1 <= day <= 7:
        raise ValueError(f"Weekday must be between 1 and 7, got {day}")
    return WEEKDAYS[day - 1]


@dataclass(frozen=True)
class TimeAdjustment:
    """A one-shot signed change to the remaining time of a user."""

    operation: str
    seconds: int

    def __post_init__(self) -> None:
        if self.operation not in ADJUSTMENT_OPERATIONS:
            raise ValueError("Operation must be '+' or '-'")
        if self.seconds <= 0:
            raise ValueError("Seconds must be positive")

    @property
    def signed_seconds(self) -> int:
        return self.seconds if self.operation == "+" else -self.seconds

    @classmethod
    def from_signed(cls, value: int) -> Optional["TimeAdjustment"]:
        if value == 0:
            return None
        return cls("+" if value > 0 else "-", abs(value))

    def __str__(self) -> str:
        return f"{self.operation}{self.seconds}s"


@dataclass(frozen=True)
class ManagedUser:
    """An account on a remote host whose time budget is managed centrally."""

    id: int
    username: str
    host: str
    is_valid: bool
    date_added: datetime
    last_checked: Optional[datetime] = None
    last_config: Optional[str] = None
    pending_time_adjustment: Optional[int] = None
    pending_time_operation: Optional[str] = None

    @property
    def pending_adjustment(self) -> Optional[TimeAdjustment]:
        if self.pending_time_adjustment is None or self.pending_time_operation is None:
            return None
        return TimeAdjustment(self.pending_time_operation, int(self.pending_time_adjustment))

    def config_snapshot(self) -> Optional[Dict[str, object]]:
        """Decode ``last_config``; ``None`` when nothing was pulled yet or it is unreadable."""

        if not self.last_config:
            return None
        try:
            decoded = json.loads(self.last_config)
        except ValueError:
            return None
        return decoded if isinstance(decoded, dict) else None


@dataclass(frozen=True)
class WeeklySchedule:
    """Per-weekday quota in hours for a single user."""

    id: int
    user_id: int
    hours: Mapping[int, float]
    is_synced: bool
    last_synced: Optional[datetime]
    last_modified: datetime

    def hours_for(self, day: int) -> float:
        return float(self.hours.get(day, 0.0))

    def as_dict(self) -> Dict[str, float]:
        return {weekday_name(day): self.hours_for(day) for day in range(1, 8)}


@dataclass(frozen=True)
class DailyTimeInterval:
    """Allowed clock-time window for one weekday."""

    id: int
    user_id: int
    day_of_week: int
    start: time
    end: time
    is_enabled: bool
    is_synced: bool
    last_synced: Optional[datetime]
    last_modified: datetime

    @property
    def day_name(self) -> str:
        return weekday_name(self.day_of_week).capitalize()

    def is_ordered(self) -> bool:
        return (self.start.hour, self.start.minute) < (self.end.hour, self.end.minute)

    def time_range(self) -> str:
        return f"{self.start:%H:%M}-{self.end:%H:%M}"


@dataclass(frozen=True)
class UsageRecord:
    """Minutes spent on a given day as last reported by the remote host."""

    user_id: int
    date: date
    time_spent: int


@dataclass(frozen=True)
class DesiredState:
    """Everything the reconciler needs to know about one user."""

    user: ManagedUser
    schedule: Optional[WeeklySchedule] = None
    intervals: List[DailyTimeInterval] = field(default_factory=list)

    def unsynced_intervals(self) -> List[DailyTimeInterval]:
        return sorted(
            (interval for interval in self.intervals if not interval.is_synced),
            key=lambda interval: interval.day_of_week,
        )


@dataclass(frozen=True)
class ReconciliationStatus:
    """Latest reconciliation outcome as exposed to collaborators."""

    user_id: int
    is_valid: bool
    last_checked: Optional[datetime]
    has_pending_adjustment: bool
    unsynced_rows: int


__all__ = [
    "WEEKDAYS",
    "ADJUSTMENT_OPERATIONS",
    "weekday_number",
    "weekday_name",
    "TimeAdjustment",
    "ManagedUser",
    "WeeklySchedule",
    "DailyTimeInterval",
    "UsageRecord",
    "DesiredState",
    "ReconciliationStatus",
]
