"""Command-line interface for the timefleet reconciliation service."""

from __future__ import annotations
import argparse
import logging
import os
import signal
import sys
from datetime import time
from pathlib import Path
from typing import Dict, Sequence

from timefleet.config import ConfigError, FleetConfig, load_fleet_config, resolve_config_path, resolve_database_location
from timefleet.database import Database, StoreError, resolve_database_path
from timefleet.models import WEEKDAYS
from timefleet.reconciler import Reconciler, TickOutcome
from timefleet.scheduler import FleetScheduler
from timefleet.ssh import AgentCredential, RemoteAgentAdapter
from timefleet.timekpr import get_timekpr_capabilities

logger = logging.getLogger("timefleet.main")


def _parse_time(value: str) -> time:
    try:
        hour_text, _, minute_text = value.partition(":")
        return time(int(hour_text), int(minute_text or 0))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid time '{value}', expected HH:MM") from exc


def _parse_quota(value: str) -> tuple:
    day, separator, hours = value.partition("=")
    if not separator:
        raise argparse.ArgumentTypeError(f"Invalid quota '{value}', expected DAY=HOURS")
    day = day.strip().lower()
    if day not in WEEKDAYS:
        raise argparse.ArgumentTypeError(f"Unknown weekday '{day}'")
    try:
        return day, float(hours)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid hours '{hours}'") from exc


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="timefleet reconciliation utilities")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the YAML configuration (default: TIMEFLEET_CONFIG or config/fleet.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override the configured log level",
    )
    subparsers = parser.add_subparsers(dest="command")
    parser.set_defaults(command="run")

    subparsers.add_parser("init-db", help="Initialise the fleet database")
    subparsers.add_parser("run", help="Run the reconciliation loop until interrupted")

    reconcile_parser = subparsers.add_parser("reconcile", help="Run a single tick for one user")
    reconcile_parser.add_argument("--user", dest="user_id", type=int, required=True, help="Managed user id")

    status_parser = subparsers.add_parser("status", help="Show reconciliation status")
    status_parser.add_argument("--user", dest="user_id", type=int, default=None, help="Limit to one user")

    add_parser = subparsers.add_parser("add-user", help="Register a remote account")
    add_parser.add_argument("username", help="Account name on the remote host")
    add_parser.add_argument("host", help="Address of the remote host")

    remove_parser = subparsers.add_parser("remove-user", help="Stop managing a remote account")
    remove_parser.add_argument("user_id", type=int)

    quota_parser = subparsers.add_parser("set-quota", help="Set daily quotas in hours")
    quota_parser.add_argument("user_id", type=int)
    quota_parser.add_argument(
        "quotas",
        nargs="+",
        type=_parse_quota,
        metavar="DAY=HOURS",
        help="For example monday=2.5 saturday=4",
    )

    window_parser = subparsers.add_parser("set-window", help="Set the allowed window for a weekday")
    window_parser.add_argument("user_id", type=int)
    window_parser.add_argument("day", choices=list(WEEKDAYS))
    window_parser.add_argument("start", type=_parse_time, help="Start time (HH:MM)")
    window_parser.add_argument("end", type=_parse_time, help="End time (HH:MM)")
    window_parser.add_argument("--disabled", action="store_true", help="Store the window but open the whole day")

    adjust_parser = subparsers.add_parser("adjust", help="Queue a one-shot change to the time left today")
    adjust_parser.add_argument("user_id", type=int)
    adjust_parser.add_argument("operation", choices=["+", "-"])
    adjust_parser.add_argument("amount", type=int, help="Amount of time, in seconds unless --minutes is given")
    adjust_parser.add_argument("--minutes", action="store_true", help="Interpret the amount as minutes")

    usage_parser = subparsers.add_parser("usage", help="Show recorded usage for a user")
    usage_parser.add_argument("user_id", type=int)
    usage_parser.add_argument("--days", type=int, default=7)

    args_list = list(argv) if argv is not None else sys.argv[1:]
    return parser.parse_args(args_list)


def _load_config(config_arg: str | None) -> FleetConfig:
    config_path = Path(config_arg).expanduser() if config_arg else resolve_config_path(os.getenv("TIMEFLEET_CONFIG"))
    try:
        return load_fleet_config(config_path)
    except ConfigError as exc:
        raise SystemExit(f"Invalid configuration in {config_path}: {exc}") from exc


def _initialise_database(config: FleetConfig) -> Database:
    db_path = resolve_database_path(resolve_database_location(config))
    database = Database(db_path)
    database.initialize()
    logger.info("Database initialised at %s", db_path)
    return database


def _build_reconciler(config: FleetConfig, database: Database) -> Reconciler:
    remote = config.remote
    try:
        capabilities = get_timekpr_capabilities(remote.tool_version)
        key_path = remote.resolve_private_key()
    except (ConfigError, ValueError) as exc:
        raise SystemExit(str(exc)) from exc

    adapter = RemoteAgentAdapter(
        username=remote.username,
        port=remote.port,
        allow_unknown_hosts=remote.allow_unknown_hosts,
        known_hosts_path=remote.known_hosts_file,
        command_timeout=remote.command_timeout,
        sudo=remote.sudo,
    )
    return Reconciler(
        database,
        adapter,
        capabilities,
        AgentCredential.from_path(key_path, remote.passphrase),
        connect_timeout=remote.connect_timeout,
        repair_drift=config.repair_drift,
    )


def _run_loop(config: FleetConfig, database: Database) -> None:
    scheduler = FleetScheduler(
        database,
        _build_reconciler(config, database),
        interval=config.reconcile_interval,
        workers=config.workers,
    )

    def _handle_signal(signum, _frame) -> None:
        logger.info("Received signal %s; shutting down", signum)
        scheduler.stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    scheduler.start()
    try:
        while not scheduler.stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
    finally:
        scheduler.stop()


def _print_outcome(outcome: TickOutcome) -> None:
    print(f"User #{outcome.user_id}: {outcome.status.value}")
    print(f"  states:  {' -> '.join(state.value for state in outcome.states)}")
    if outcome.pushed:
        print(f"  pushed:  {', '.join(outcome.pushed)}")
    if outcome.failed:
        print(f"  failed:  {', '.join(outcome.failed)}")
    if outcome.drift:
        print(f"  drift:   {', '.join(outcome.drift)}")
    if outcome.error:
        print(f"  error:   {outcome.error}")


def _show_status(database: Database, user_id: int | None) -> None:
    users = database.list_managed_users()
    if user_id is not None:
        users = [user for user in users if user.id == user_id]
    if not users:
        print("No managed users found.")
        return

    print(f"{'ID':>4}  {'User':<16}  {'Host':<20}  {'Valid':<5}  {'Pending':<9}  {'Unsynced':>8}  Last checked")
    print("-" * 96)
    for user in users:
        status = database.get_reconciliation_status(user.id)
        if status is None:
            continue
        checked = status.last_checked.strftime("%Y-%m-%d %H:%M:%S") if status.last_checked else "never"
        pending = str(user.pending_adjustment) if user.pending_adjustment else "-"
        print(
            f"{user.id:>4}  {user.username:<16}  {user.host:<20}  {'yes' if status.is_valid else 'no':<5}  "
            f"{pending:<9}  {status.unsynced_rows:>8}  {checked}"
        )


def _show_usage(database: Database, user_id: int, days: int) -> None:
    for record in database.list_usage(user_id, days=days):
        print(f"{record.date.isoformat()}  {record.time_spent:>5} min")


def _set_quota(database: Database, user_id: int, quotas: Sequence[tuple]) -> None:
    hours: Dict[str, float] = dict(quotas)
    schedule = database.set_weekly_schedule(user_id, hours)
    summary = ", ".join(f"{day}={value:g}h" for day, value in schedule.as_dict().items())
    print(f"Weekly quota for user #{user_id} queued: {summary}")


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    args = _parse_args(argv)
    config = _load_config(args.config)
    logging.basicConfig(
        level=getattr(logging, args.log_level or config.log_level),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    database = _initialise_database(config)

    try:
        if args.command == "run":
            _run_loop(config, database)
        elif args.command == "init-db":
            print("Database initialisation complete.")
        elif args.command == "reconcile":
            _print_outcome(_build_reconciler(config, database).reconcile(args.user_id))
        elif args.command == "status":
            _show_status(database, args.user_id)
        elif args.command == "add-user":
            user = database.create_managed_user(args.username, args.host)
            print(f"Managing {user.username}@{user.host} as user #{user.id}")
        elif args.command == "remove-user":
            if not database.delete_managed_user(args.user_id):
                raise SystemExit(f"Managed user {args.user_id} does not exist")
            print(f"Removed user #{args.user_id}")
        elif args.command == "set-quota":
            _set_quota(database, args.user_id, args.quotas)
        elif args.command == "set-window":
            interval = database.set_daily_interval(
                args.user_id,
                args.day,
                args.start,
                args.end,
                enabled=not args.disabled,
            )
            print(f"{interval.day_name} window for user #{args.user_id} queued: {interval.time_range()}")
        elif args.command == "adjust":
            seconds = args.amount * 60 if args.minutes else args.amount
            pending = database.queue_time_adjustment(args.user_id, args.operation, seconds)
            print(f"Pending adjustment for user #{args.user_id}: {pending or 'none'}")
        elif args.command == "usage":
            _show_usage(database, args.user_id, args.days)
    except ValueError as exc:
        raise SystemExit(f"Error: {exc}") from exc
    except StoreError as exc:
        raise SystemExit(f"Database error: {exc}") from exc


if __name__ == "__main__":
    main()
