"""Parsing of ``timekpra --userinfo`` output into typed usage and configuration."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Sequence, Tuple

from .models import weekday_name
from .ssh import AgentCommandError, AgentSession

if TYPE_CHECKING:  # pragma: no cover
    from .timekpr import TimekprCapabilities


class ParseError(AgentCommandError):
    """The agent answered with output that could not be interpreted."""


class UserNotFoundError(AgentCommandError):
    """The managed account does not exist on the remote host."""


_INTEGER = re.compile(r"^-?\d+$")
_NOT_FOUND = re.compile(r'User "(?P<user>[^"]*)" configuration is not found')

FieldValue = object


def _convert(value: str) -> FieldValue:
    if _INTEGER.fullmatch(value):
        return int(value)
    if ";" in value:
        return [int(item) if _INTEGER.fullmatch(item) else item for item in value.split(";") if item != ""]
    if value.lower() == "true":
        return True
    if value.lower() == "false":
        return False
    return value


def parse_userinfo(output: str, username: str | None = None) -> Dict[str, FieldValue]:
    """Split ``KEY: VALUE`` lines into a dictionary with light type conversion."""

    match = _NOT_FOUND.search(output)
    if match:
        raise UserNotFoundError(f"User '{match.group('user') or username}' not found on system")

    fields: Dict[str, FieldValue] = {}
    for line in output.splitlines():
        if line.lstrip().startswith("#"):
            continue
        key, separator, value = line.partition(": ")
        if not separator:
            continue
        key = key.strip()
        value = value.strip()
        if not key or not value:
            continue
        fields[key] = _convert(value)

    if not fields:
        raise ParseError("The agent returned no configuration fields")
    return fields


def _as_list(value: FieldValue) -> List[FieldValue]:
    if isinstance(value, list):
        return value
    return [value]


def _require_int(fields: Mapping[str, FieldValue], key: str) -> int:
    if key not in fields:
        raise ParseError(f"Missing '{key}' in agent output")
    value = fields[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ParseError(f"'{key}' is not a whole number: {value!r}")
    return value


def _int_list(fields: Mapping[str, FieldValue], key: str) -> List[int]:
    if key not in fields:
        raise ParseError(f"Missing '{key}' in agent output")
    items = _as_list(fields[key])
    if not all(isinstance(item, int) and not isinstance(item, bool) for item in items):
        raise ParseError(f"'{key}' must be a list of whole numbers: {fields[key]!r}")
    return [int(item) for item in items]  # type: ignore[arg-type]


@dataclass(frozen=True)
class UsageSnapshot:
    """Time consumed today according to the agent."""

    username: str
    time_spent_seconds: int
    time_left_seconds: Optional[int] = None

    @property
    def time_spent_minutes(self) -> int:
        return max(self.time_spent_seconds, 0) // 60


def parse_usage(
    fields: Mapping[str, FieldValue],
    username: str,
    *,
    spent_key: str,
    left_key: str,
) -> UsageSnapshot:
    time_left = fields.get(left_key)
    return UsageSnapshot(
        username=username,
        time_spent_seconds=_require_int(fields, spent_key),
        time_left_seconds=time_left if isinstance(time_left, int) and not isinstance(time_left, bool) else None,
    )


@dataclass(frozen=True)
class RemoteConfiguration:
    """The quota and access windows currently enforced on a host."""

    username: str
    tool_version: str
    allowed_days: Tuple[int, ...]
    limits: Dict[int, int]
    allowed_hours: Dict[int, Tuple[str, ...]] = field(default_factory=dict)
    fields: Dict[str, FieldValue] = field(default_factory=dict)

    def quota_seconds(self, day: int) -> int:
        if day not in self.allowed_days:
            return 0
        return self.limits.get(day, 0)

    def quota_hours(self, day: int) -> float:
        return self.quota_seconds(day) / 3600.0

    def to_snapshot(self) -> Dict[str, object]:
        return {
            "username": self.username,
            "tool_version": self.tool_version,
            "allowed_days": list(self.allowed_days),
            "limits": {str(day): seconds for day, seconds in sorted(self.limits.items())},
            "quota_hours": {weekday_name(day): self.quota_hours(day) for day in range(1, 8)},
            "allowed_hours": {str(day): list(hours) for day, hours in sorted(self.allowed_hours.items())},
            "fields": dict(self.fields),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_snapshot(), sort_keys=True)

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, object]) -> "RemoteConfiguration":
        """Rebuild a configuration from a stored ``last_config`` snapshot."""

        try:
            allowed_days = tuple(int(day) for day in snapshot["allowed_days"])  # type: ignore[union-attr]
            limits = {int(day): int(value) for day, value in dict(snapshot["limits"]).items()}  # type: ignore[call-overload]
            allowed_hours = {
                int(day): tuple(str(item) for item in hours)
                for day, hours in dict(snapshot.get("allowed_hours") or {}).items()  # type: ignore[call-overload]
            }
            fields = dict(snapshot.get("fields") or {})  # type: ignore[call-overload]
        except (KeyError, TypeError, ValueError) as exc:
            raise ParseError(f"Stored configuration snapshot is malformed: {exc}") from exc
        return cls(
            username=str(snapshot.get("username", "")),
            tool_version=str(snapshot.get("tool_version", "")),
            allowed_days=allowed_days,
            limits=limits,
            allowed_hours=allowed_hours,
            fields=fields,
        )


def parse_configuration(
    fields: Mapping[str, FieldValue],
    username: str,
    *,
    tool_version: str,
) -> RemoteConfiguration:
    allowed_days = _int_list(fields, "ALLOWED_WEEKDAYS")
    if any(day < 1 or day > 7 for day in allowed_days):
        raise ParseError(f"ALLOWED_WEEKDAYS contains an invalid day: {allowed_days}")
    limits = _int_list(fields, "LIMITS_PER_WEEKDAYS")

    allowed_hours: Dict[int, Tuple[str, ...]] = {}
    for day in range(1, 8):
        key = f"ALLOWED_HOURS_{day}"
        if key in fields:
            allowed_hours[day] = tuple(str(item) for item in _as_list(fields[key]))

    return RemoteConfiguration(
        username=username,
        tool_version=tool_version,
        allowed_days=tuple(allowed_days),
        limits=dict(zip(allowed_days, limits)),
        allowed_hours=allowed_hours,
        fields=dict(fields),
    )


@dataclass(frozen=True)
class PullResult:
    configuration: RemoteConfiguration
    usage: UsageSnapshot


class UsageCollector:
    """Fetches the current configuration and today's usage for one user."""

    def __init__(self, capabilities: "TimekprCapabilities") -> None:
        self._capabilities = capabilities

    def collect(self, session: AgentSession, username: str) -> PullResult:
        # One --userinfo call so the snapshot and the usage figure agree.
        fields = self._capabilities.userinfo(session, username)
        return PullResult(
            configuration=self._capabilities.config_from_fields(fields, username),
            usage=self._capabilities.usage_from_fields(fields, username),
        )


def format_hour_specs(specs: Sequence[str]) -> str:
    return ";".join(specs)


__all__ = [
    "ParseError",
    "UserNotFoundError",
    "UsageSnapshot",
    "RemoteConfiguration",
    "PullResult",
    "UsageCollector",
    "parse_userinfo",
    "parse_usage",
    "parse_configuration",
    "format_hour_specs",
]
