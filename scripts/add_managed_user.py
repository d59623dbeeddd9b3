import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from timefleet.database import Database, resolve_database_path
from timefleet.models import WEEKDAYS


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Register a remote account with timefleet")
    parser.add_argument("username", help="Account name on the remote host")
    parser.add_argument("host", help="Address of the remote host")
    parser.add_argument(
        "--hours",
        type=float,
        default=None,
        help="Optional daily quota in hours applied to every weekday",
    )
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to TIMEFLEET_DB_PATH or data/timefleet.sqlite3)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    if args.hours is not None and not 0 <= args.hours <= 24:
        print(f"Error: Hours must be between 0 and 24, got {args.hours:g}", file=sys.stderr)
        return 1

    db_env = args.db_path or os.getenv("TIMEFLEET_DB_PATH")
    db_path = resolve_database_path(db_env)

    database = Database(db_path)
    database.initialize()

    try:
        user = database.create_managed_user(args.username, args.host)
        if args.hours is not None:
            database.set_weekly_schedule(user.id, {day: args.hours for day in WEEKDAYS})
    except ValueError as exc:  # duplicates
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Registered {user.username}@{user.host} as managed user #{user.id}")
    if args.hours is not None:
        print(f"Daily quota of {args.hours:g}h queued for the next reconciliation tick.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
