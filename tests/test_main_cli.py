import sys
from datetime import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from main import _build_reconciler, _parse_args, main
from timefleet.config import AgentAccessConfig, FleetConfig
from timefleet.database import Database
from timefleet.models import TimeAdjustment


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch):
    db_path = tmp_path / "cli.sqlite3"
    monkeypatch.setenv("TIMEFLEET_DB_PATH", str(db_path))
    monkeypatch.setenv("TIMEFLEET_CONFIG", str(tmp_path / "missing.yaml"))
    return db_path


def test_default_command_runs_loop() -> None:
    args = _parse_args([])
    assert args.command == "run"
    assert args.config is None


def test_set_window_parses_times() -> None:
    args = _parse_args(["set-window", "3", "monday", "7:30", "17"])
    assert args.user_id == 3
    assert args.start == time(7, 30)
    assert args.end == time(17, 0)
    assert args.disabled is False


def test_set_quota_parses_day_pairs() -> None:
    args = _parse_args(["set-quota", "1", "monday=2.5", "Sunday=4"])
    assert args.quotas == [("monday", 2.5), ("sunday", 4.0)]


def test_invalid_arguments_exit() -> None:
    with pytest.raises(SystemExit):
        _parse_args(["set-window", "1", "monday", "25:00", "26:00"])
    with pytest.raises(SystemExit):
        _parse_args(["set-quota", "1", "funday=2"])


def test_collaborator_edits_through_cli(cli_env, capsys) -> None:
    main(["add-user", "alice", "10.0.0.5"])
    main(["set-quota", "1", "monday=3"])
    main(["set-window", "1", "monday", "07:30", "17:30"])
    main(["adjust", "1", "+", "30", "--minutes"])
    main(["adjust", "1", "-", "600"])
    main(["status"])

    output = capsys.readouterr().out
    assert "Managing alice@10.0.0.5 as user #1" in output
    assert "monday=3h" in output
    assert "Monday window for user #1 queued: 07:30-17:30" in output
    assert "Pending adjustment for user #1: +1200s" in output
    assert "alice" in output and "never" in output

    database = Database(cli_env)
    user = database.get_managed_user(1)
    assert user.pending_adjustment == TimeAdjustment("+", 1200)
    assert database.get_weekly_schedule(1).hours_for(1) == 3.0
    assert database.get_reconciliation_status(1).unsynced_rows == 2


def test_duplicate_user_exits_with_message(cli_env) -> None:
    main(["add-user", "alice", "10.0.0.5"])
    with pytest.raises(SystemExit) as excinfo:
        main(["add-user", "alice", "10.0.0.5"])
    assert "already managed" in str(excinfo.value)


def test_remove_unknown_user_exits(cli_env) -> None:
    with pytest.raises(SystemExit):
        main(["remove-user", "7"])


def test_unsupported_tool_version_is_rejected(tmp_path: Path) -> None:
    config = FleetConfig(
        remote=AgentAccessConfig(private_key_path=tmp_path / "key", tool_version="timekpr-legacy"),
    )
    with pytest.raises(SystemExit) as excinfo:
        _build_reconciler(config, Database(tmp_path / "unused.sqlite3"))
    assert "timekpr-legacy" in str(excinfo.value)
