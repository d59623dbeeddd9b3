"""Central reconciliation of timekpr quotas and access windows across a fleet."""

from __future__ import annotations

from .database import Database, MissingUserError, StoreError, resolve_database_path
from .reconciler import Reconciler, TickOutcome, TickStatus
from .scheduler import FleetScheduler

__all__ = [
    "Database",
    "MissingUserError",
    "StoreError",
    "resolve_database_path",
    "Reconciler",
    "TickOutcome",
    "TickStatus",
    "FleetScheduler",
]
