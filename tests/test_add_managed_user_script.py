import importlib.util
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from timefleet.database import Database


def _load_script():
    spec = importlib.util.spec_from_file_location("add_managed_user", ROOT / "scripts" / "add_managed_user.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture()
def script():
    return _load_script()


def test_registers_user_with_uniform_quota(script, tmp_path: Path, monkeypatch, capsys) -> None:
    db_path = tmp_path / "script.sqlite3"
    monkeypatch.setattr(sys, "argv", ["add_managed_user.py", "bob", "10.0.0.9", "--hours", "2", "--db", str(db_path)])

    assert script.main() == 0

    database = Database(db_path)
    user = database.list_managed_users()[0]
    assert (user.username, user.host) == ("bob", "10.0.0.9")
    assert database.get_weekly_schedule(user.id).hours_for(7) == 2.0
    assert "Registered bob@10.0.0.9" in capsys.readouterr().out


def test_out_of_range_hours_registers_nothing(script, tmp_path: Path, monkeypatch, capsys) -> None:
    db_path = tmp_path / "script.sqlite3"
    monkeypatch.setattr(sys, "argv", ["add_managed_user.py", "bob", "10.0.0.9", "--hours", "30", "--db", str(db_path)])

    assert script.main() == 1

    assert "between 0 and 24" in capsys.readouterr().err
    database = Database(db_path)
    database.initialize()
    assert database.list_managed_users() == []
