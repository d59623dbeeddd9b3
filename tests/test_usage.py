from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from timefleet.ssh import AgentCommandError, CommandResult
from timefleet.timekpr import TimekprClassicClient, TimekprNextClient
from timefleet.usage import (
    ParseError,
    RemoteConfiguration,
    UsageCollector,
    UserNotFoundError,
    parse_configuration,
    parse_usage,
    parse_userinfo,
)

USERINFO = """\
# user "alice" configuration
ALLOWED_WEEKDAYS: 1;2;3;4;5;6;7
LIMITS_PER_WEEKDAYS: 7200;7200;7200;7200;7200;14400;14400
ALLOWED_HOURS_1: 7[30-59];8;9;10;11;12;13;14;15;16;17[0-30]
ALLOWED_HOURS_6: 9
TIME_LIMIT_WEEK: 604800
TRACK_INACTIVE: False
LOCKOUT_TYPE: terminate
TIME_SPENT_BALANCE: -120
TIME_SPENT_DAY: 1500
ACTUAL_TIME_SPENT_DAY: 1845
ACTUAL_TIME_LEFT_DAY: 5355
"""


class FakeSession:
    def __init__(self, stdout: str) -> None:
        self.stdout = stdout
        self.calls: list = []

    def execute(self, command, args):
        self.calls.append((command, list(args)))
        return CommandResult(command=[command, *args], exit_status=0, stdout=self.stdout, stderr="")


def test_parse_userinfo_converts_values() -> None:
    fields = parse_userinfo(USERINFO)

    assert fields["ALLOWED_WEEKDAYS"] == [1, 2, 3, 4, 5, 6, 7]
    assert fields["ALLOWED_HOURS_1"][0] == "7[30-59]"
    assert fields["ALLOWED_HOURS_1"][1] == 8
    assert fields["ALLOWED_HOURS_6"] == 9
    assert fields["TRACK_INACTIVE"] is False
    assert fields["LOCKOUT_TYPE"] == "terminate"
    assert fields["TIME_SPENT_BALANCE"] == -120
    assert "# user \"alice\" configuration" not in fields


def test_parse_userinfo_reports_missing_user() -> None:
    with pytest.raises(UserNotFoundError) as excinfo:
        parse_userinfo('User "bob" configuration is not found\n', "bob")

    assert isinstance(excinfo.value, AgentCommandError)
    assert "bob" in str(excinfo.value)


def test_parse_userinfo_rejects_empty_output() -> None:
    with pytest.raises(ParseError):
        parse_userinfo("\n\n")


def test_parse_usage_reads_configured_keys() -> None:
    fields = parse_userinfo(USERINFO)

    next_usage = parse_usage(fields, "alice", spent_key="ACTUAL_TIME_SPENT_DAY", left_key="ACTUAL_TIME_LEFT_DAY")
    assert next_usage.time_spent_seconds == 1845
    assert next_usage.time_spent_minutes == 30
    assert next_usage.time_left_seconds == 5355

    classic_usage = parse_usage(fields, "alice", spent_key="TIME_SPENT_DAY", left_key="TIME_LEFT_DAY")
    assert classic_usage.time_spent_minutes == 25
    assert classic_usage.time_left_seconds is None


def test_parse_usage_requires_numeric_value() -> None:
    with pytest.raises(ParseError):
        parse_usage({"LOCKOUT_TYPE": "terminate"}, "alice", spent_key="ACTUAL_TIME_SPENT_DAY", left_key="X")
    with pytest.raises(ParseError):
        parse_usage({"ACTUAL_TIME_SPENT_DAY": "soon"}, "alice", spent_key="ACTUAL_TIME_SPENT_DAY", left_key="X")


def test_parse_configuration_aligns_limits_with_days() -> None:
    fields = parse_userinfo(
        "ALLOWED_WEEKDAYS: 1;6\nLIMITS_PER_WEEKDAYS: 10800;14400\nALLOWED_HOURS_1: 7;8;9\n"
    )
    configuration = parse_configuration(fields, "alice", tool_version="timekpr-next")

    assert configuration.allowed_days == (1, 6)
    assert configuration.quota_hours(1) == 3.0
    assert configuration.quota_hours(6) == 4.0
    assert configuration.quota_hours(2) == 0.0
    assert configuration.allowed_hours == {1: ("7", "8", "9")}


def test_parse_configuration_accepts_single_day() -> None:
    fields = parse_userinfo("ALLOWED_WEEKDAYS: 3\nLIMITS_PER_WEEKDAYS: 3600\n")
    configuration = parse_configuration(fields, "alice", tool_version="timekpr-next")

    assert configuration.allowed_days == (3,)
    assert configuration.quota_seconds(3) == 3600


def test_parse_configuration_rejects_malformed_days() -> None:
    with pytest.raises(ParseError):
        parse_configuration({"LIMITS_PER_WEEKDAYS": [3600]}, "alice", tool_version="timekpr-next")
    with pytest.raises(ParseError):
        parse_configuration(
            {"ALLOWED_WEEKDAYS": [1, 9], "LIMITS_PER_WEEKDAYS": [3600, 3600]},
            "alice",
            tool_version="timekpr-next",
        )


def test_snapshot_is_readable_as_baseline() -> None:
    configuration = parse_configuration(parse_userinfo(USERINFO), "alice", tool_version="timekpr-next")

    snapshot = json.loads(configuration.to_json())
    assert snapshot["quota_hours"]["monday"] == 2.0
    assert snapshot["quota_hours"]["sunday"] == 4.0

    restored = RemoteConfiguration.from_snapshot(snapshot)
    assert restored.allowed_days == configuration.allowed_days
    assert restored.limits == configuration.limits
    assert restored.allowed_hours[1][0] == "7[30-59]"
    assert restored.allowed_hours[6] == ("9",)


def test_from_snapshot_rejects_malformed_data() -> None:
    with pytest.raises(ParseError):
        RemoteConfiguration.from_snapshot({"allowed_days": "monday"})


def test_collector_uses_tool_specific_keys() -> None:
    session = FakeSession(USERINFO)

    pulled = UsageCollector(TimekprNextClient()).collect(session, "alice")
    assert pulled.usage.time_spent_minutes == 30
    assert pulled.configuration.tool_version == "timekpr-next"
    assert session.calls == [("timekpra", ["--userinfo", "alice"])]

    classic = UsageCollector(TimekprClassicClient()).collect(FakeSession(USERINFO), "alice")
    assert classic.usage.time_spent_minutes == 25
    assert classic.configuration.tool_version == "timekpr-classic"


def test_direct_queries_each_read_userinfo() -> None:
    session = FakeSession(USERINFO)
    client = TimekprNextClient()

    usage = client.query_usage(session, "alice")
    configuration = client.query_config(session, "alice")

    assert usage.time_spent_minutes == 30
    assert configuration.allowed_days == (1, 2, 3, 4, 5, 6, 7)
    assert len(session.calls) == 2
