"""Per-version command builders for the ``timekpra`` administration CLI."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Tuple

from .models import DailyTimeInterval, TimeAdjustment, WeeklySchedule
from .ssh import AgentSession, CommandResult
from .usage import (
    RemoteConfiguration,
    UsageSnapshot,
    format_hour_specs,
    parse_configuration,
    parse_usage,
    parse_userinfo,
)

TIMEKPR_COMMAND = "timekpra"

FULL_DAY: Tuple[str, ...] = tuple(str(hour) for hour in range(24))


def quota_arguments(schedule: WeeklySchedule) -> Tuple[List[str], List[str]]:
    """Return the allowed day numbers and their limits in seconds.

    Days with a positive quota are allowed. A schedule without any positive
    day allows every day with a zero limit.
    """

    days = [day for day in range(1, 8) if schedule.hours_for(day) > 0]
    if not days:
        return [str(day) for day in range(1, 8)], ["0"] * 7
    limits = [str(int(round(schedule.hours_for(day) * 3600))) for day in days]
    return [str(day) for day in days], limits


class TimekprCapabilities(ABC):
    """Operations the reconciler needs from one version of the remote tool."""

    version: str = ""
    spent_key: str = ""
    left_key: str = ""

    def _execute(self, session: AgentSession, args: List[str]) -> CommandResult:
        return session.execute(TIMEKPR_COMMAND, args)

    def userinfo(self, session: AgentSession, username: str) -> Dict[str, object]:
        result = self._execute(session, ["--userinfo", username])
        return parse_userinfo(result.stdout, username)

    def query_usage(self, session: AgentSession, username: str) -> UsageSnapshot:
        return self.usage_from_fields(self.userinfo(session, username), username)

    def query_config(self, session: AgentSession, username: str) -> RemoteConfiguration:
        return self.config_from_fields(self.userinfo(session, username), username)

    def usage_from_fields(self, fields: Dict[str, object], username: str) -> UsageSnapshot:
        return parse_usage(fields, username, spent_key=self.spent_key, left_key=self.left_key)

    def config_from_fields(self, fields: Dict[str, object], username: str) -> RemoteConfiguration:
        return parse_configuration(fields, username, tool_version=self.version)

    def push_quota(self, session: AgentSession, username: str, schedule: WeeklySchedule) -> None:
        days, limits = quota_arguments(schedule)
        self._execute(session, ["--setalloweddays", username, ";".join(days)])
        self._execute(session, ["--settimelimits", username, ";".join(limits)])

    def push_interval(self, session: AgentSession, username: str, interval: DailyTimeInterval) -> None:
        specs = self.allowed_hours(interval)
        self._execute(
            session,
            ["--setallowedhours", username, str(interval.day_of_week), format_hour_specs(specs)],
        )

    def push_adjustment(self, session: AgentSession, username: str, adjustment: TimeAdjustment) -> None:
        self._execute(
            session,
            ["--settimeleft", username, adjustment.operation, str(adjustment.seconds)],
        )

    def allowed_hours(self, interval: DailyTimeInterval) -> Tuple[str, ...]:
        """Hour specs for an access window; disabled or unordered windows open the whole day."""

        if not interval.is_enabled or not interval.is_ordered():
            return FULL_DAY
        return self._window_hours(interval)

    @abstractmethod
    def _window_hours(self, interval: DailyTimeInterval) -> Tuple[str, ...]:
        raise NotImplementedError


class TimekprNextClient(TimekprCapabilities):
    """timekpr-next: minute-precision windows such as ``7[30-59]``."""

    version = "timekpr-next"
    spent_key = "ACTUAL_TIME_SPENT_DAY"
    left_key = "ACTUAL_TIME_LEFT_DAY"

    def _window_hours(self, interval: DailyTimeInterval) -> Tuple[str, ...]:
        start_hour, start_minute = interval.start.hour, interval.start.minute
        end_hour, end_minute = interval.end.hour, interval.end.minute

        if start_hour == end_hour:
            return (f"{start_hour}[{start_minute}-{end_minute}]",)

        specs = [str(start_hour) if start_minute == 0 else f"{start_hour}[{start_minute}-59]"]
        specs.extend(str(hour) for hour in range(start_hour + 1, end_hour))
        if end_minute > 0:
            specs.append(f"{end_hour}[0-{end_minute}]")
        return tuple(specs)


class TimekprClassicClient(TimekprCapabilities):
    """Older timekpr builds that only understand whole hours."""

    version = "timekpr-classic"
    spent_key = "TIME_SPENT_DAY"
    left_key = "TIME_LEFT_DAY"

    def _window_hours(self, interval: DailyTimeInterval) -> Tuple[str, ...]:
        start_hour, end_hour = interval.start.hour, interval.end.hour
        if start_hour == end_hour:
            # Window inside a single hour; the whole hour is the closest fit.
            return (str(start_hour),)
        return tuple(str(hour) for hour in range(start_hour, end_hour))


_CAPABILITIES: Dict[str, TimekprCapabilities] = {
    client.version: client for client in (TimekprNextClient(), TimekprClassicClient())
}


def available_tool_versions() -> List[str]:
    return sorted(_CAPABILITIES)


def get_timekpr_capabilities(version: str) -> TimekprCapabilities:
    try:
        return _CAPABILITIES[version]
    except KeyError as exc:
        raise ValueError(
            f"Unsupported timekpr version '{version}'. Expected one of: {', '.join(available_tool_versions())}"
        ) from exc


__all__ = [
    "TIMEKPR_COMMAND",
    "FULL_DAY",
    "quota_arguments",
    "TimekprCapabilities",
    "TimekprNextClient",
    "TimekprClassicClient",
    "available_tool_versions",
    "get_timekpr_capabilities",
]
