"""Per-user reconciliation of desired state against a managed host."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Union

from .database import Database, MissingUserError, StoreError
from .models import DailyTimeInterval, DesiredState, ManagedUser, TimeAdjustment, WeeklySchedule, weekday_name
from .ssh import AgentCommandError, AgentCredential, AgentSession, AgentUnreachableError, RemoteAgentAdapter
from .timekpr import TimekprCapabilities, quota_arguments
from .usage import ParseError, RemoteConfiguration, UsageCollector

logger = logging.getLogger("timefleet.reconciler")


class ReconcileState(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    UNREACHABLE = "unreachable"
    REACHABLE = "reachable"
    DIFFING = "diffing"
    PUSHING = "pushing"
    PULLING = "pulling"


class TickStatus(str, Enum):
    CONVERGED = "converged"
    UNREACHABLE = "unreachable"
    AGENT_ERROR = "agent_error"
    STORE_ERROR = "store_error"
    CANCELLED = "cancelled"
    MISSING = "missing"


ChangePayload = Union[WeeklySchedule, DailyTimeInterval, TimeAdjustment]


@dataclass(frozen=True)
class PendingChange:
    """One remote operation derived from the desired state."""

    kind: str
    payload: ChangePayload

    def describe(self) -> str:
        if isinstance(self.payload, WeeklySchedule):
            return "quota"
        if isinstance(self.payload, DailyTimeInterval):
            return f"interval {self.payload.day_name} {self.payload.time_range()}"
        return f"adjustment {self.payload}"


@dataclass
class TickOutcome:
    """Result of one reconciliation attempt for a single user."""

    user_id: int
    status: TickStatus = TickStatus.CONVERGED
    states: List[ReconcileState] = field(default_factory=list)
    pushed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    drift: List[str] = field(default_factory=list)
    error: Optional[str] = None
    checked_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status is TickStatus.CONVERGED

    def enter(self, state: ReconcileState) -> None:
        self.states.append(state)

    def finish(self, status: TickStatus, error: Optional[str] = None) -> None:
        self.status = status
        if error is not None:
            self.error = error


Clock = Callable[[], datetime]


def _local_now() -> datetime:
    return datetime.now().astimezone()


class Reconciler:
    """Runs one convergence attempt per call for a single managed user.

    The reconciler holds no per-user state between calls; the store's sync
    flags and pending columns carry progress from one tick to the next.
    """

    def __init__(
        self,
        store: Database,
        adapter: RemoteAgentAdapter,
        capabilities: TimekprCapabilities,
        credential: AgentCredential,
        *,
        connect_timeout: float = 10.0,
        repair_drift: bool = False,
        clock: Clock = _local_now,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._capabilities = capabilities
        self._collector = UsageCollector(capabilities)
        self._credential = credential
        self._connect_timeout = connect_timeout
        self._repair_drift = repair_drift
        self._clock = clock

    def reconcile(self, user_id: int, cancel: Optional[threading.Event] = None) -> TickOutcome:
        outcome = TickOutcome(user_id=user_id)
        try:
            self._run(user_id, outcome, cancel or threading.Event())
        except MissingUserError as exc:
            # Deleted by a collaborator while the tick was running.
            outcome.finish(TickStatus.MISSING, str(exc))
        except StoreError as exc:
            outcome.finish(TickStatus.STORE_ERROR, str(exc))
            logger.error("Store failure while reconciling user %s: %s", user_id, exc)
        outcome.enter(ReconcileState.IDLE)
        self._log_outcome(outcome)
        return outcome

    # ------------------------------------------------------------------
    # Tick phases
    # ------------------------------------------------------------------
    def _run(self, user_id: int, outcome: TickOutcome, cancel: threading.Event) -> None:
        outcome.enter(ReconcileState.IDLE)
        state = self._store.load_desired_state(user_id)
        if state is None:
            outcome.finish(TickStatus.MISSING, f"Managed user {user_id} does not exist")
            return
        if cancel.is_set():
            outcome.finish(TickStatus.CANCELLED)
            return

        user = state.user
        outcome.enter(ReconcileState.PROBING)
        try:
            with self._adapter.connect(user.host, self._credential, self._connect_timeout) as session:
                outcome.enter(ReconcileState.REACHABLE)
                self._converge(session, state, outcome, cancel)
        except AgentUnreachableError as exc:
            outcome.enter(ReconcileState.UNREACHABLE)
            outcome.checked_at = self._checked_at(user)
            self._store.record_unreachable(user.id, checked_at=outcome.checked_at)
            outcome.finish(TickStatus.UNREACHABLE, str(exc))

    def _converge(
        self,
        session: AgentSession,
        state: DesiredState,
        outcome: TickOutcome,
        cancel: threading.Event,
    ) -> None:
        user = state.user
        outcome.enter(ReconcileState.DIFFING)
        changes = self._diff(state, outcome)

        errors: List[str] = []
        baseline_stale = user.last_config is None
        if changes:
            outcome.enter(ReconcileState.PUSHING)
        for change in changes:
            if cancel.is_set():
                outcome.finish(TickStatus.CANCELLED)
                return
            description = change.describe()
            try:
                self._push(session, user, change)
            except AgentCommandError as exc:
                logger.warning("Failed to push %s for %s@%s: %s", description, user.username, user.host, exc)
                outcome.failed.append(description)
                errors.append(f"{description}: {exc}")
                continue
            if change.kind != "adjustment" and not baseline_stale:
                # The stored snapshot predates this push; only a fresh pull may replace it.
                self._store.discard_config_snapshot(user.id)
                baseline_stale = True
            self._commit(user, change)
            outcome.pushed.append(description)

        if cancel.is_set():
            outcome.finish(TickStatus.CANCELLED)
            return

        if errors:
            outcome.checked_at = self._checked_at(user)
            self._store.record_agent_error(user.id, checked_at=outcome.checked_at)
            outcome.finish(TickStatus.AGENT_ERROR, "; ".join(errors))
            return

        outcome.enter(ReconcileState.PULLING)
        try:
            pulled = self._collector.collect(session, user.username)
        except AgentCommandError as exc:
            outcome.checked_at = self._checked_at(user)
            self._store.record_agent_error(user.id, checked_at=outcome.checked_at)
            outcome.finish(TickStatus.AGENT_ERROR, f"pull: {exc}")
            return

        now = self._clock()
        outcome.checked_at = self._checked_at(user, now)
        self._store.record_pull(
            user.id,
            checked_at=outcome.checked_at,
            config_snapshot=pulled.configuration.to_json(),
            usage_date=now.date(),
            time_spent=pulled.usage.time_spent_minutes,
        )
        outcome.finish(TickStatus.CONVERGED)

    # ------------------------------------------------------------------
    # Diffing
    # ------------------------------------------------------------------
    def _diff(self, state: DesiredState, outcome: TickOutcome) -> List[PendingChange]:
        baseline = self._baseline(state.user)
        changes: List[PendingChange] = []

        schedule = state.schedule
        if schedule is not None:
            if not schedule.is_synced:
                changes.append(PendingChange("quota", schedule))
            elif baseline is not None:
                drift = self._quota_drift(schedule, baseline)
                if drift:
                    outcome.drift.extend(drift)
                    if self._repair_drift:
                        changes.append(PendingChange("quota", schedule))

        for interval in sorted(state.intervals, key=lambda item: item.day_of_week):
            if not interval.is_synced:
                changes.append(PendingChange("interval", interval))
            elif baseline is not None:
                drift_item = self._interval_drift(interval, baseline)
                if drift_item:
                    outcome.drift.append(drift_item)
                    if self._repair_drift:
                        changes.append(PendingChange("interval", interval))

        adjustment = state.user.pending_adjustment
        if adjustment is not None:
            changes.append(PendingChange("adjustment", adjustment))

        if outcome.drift:
            logger.info(
                "Drift detected for %s@%s: %s",
                state.user.username,
                state.user.host,
                ", ".join(outcome.drift),
            )
        return changes

    def _baseline(self, user: ManagedUser) -> Optional[RemoteConfiguration]:
        snapshot = user.config_snapshot()
        if snapshot is None:
            return None
        try:
            return RemoteConfiguration.from_snapshot(snapshot)
        except ParseError as exc:
            logger.debug("Ignoring unreadable baseline for user %s: %s", user.id, exc)
            return None

    def _quota_drift(self, schedule: WeeklySchedule, baseline: RemoteConfiguration) -> List[str]:
        days, limits = quota_arguments(schedule)
        desired = {int(day): int(limit) for day, limit in zip(days, limits)}
        drift = []
        for day in range(1, 8):
            wanted = desired.get(day, 0)
            actual = baseline.quota_seconds(day)
            allowed_remotely = day in baseline.allowed_days
            if wanted != actual or (day in desired) != allowed_remotely:
                drift.append(
                    f"quota {weekday_name(day)} remote {actual / 3600:g}h, desired {wanted / 3600:g}h"
                )
        return drift

    def _interval_drift(self, interval: DailyTimeInterval, baseline: RemoteConfiguration) -> Optional[str]:
        remote = baseline.allowed_hours.get(interval.day_of_week)
        if remote is None:
            return None
        desired = self._capabilities.allowed_hours(interval)
        if tuple(remote) == tuple(desired):
            return None
        return f"interval {interval.day_name} remote {';'.join(remote)}, desired {';'.join(desired)}"

    # ------------------------------------------------------------------
    # Pushing
    # ------------------------------------------------------------------
    def _push(self, session: AgentSession, user: ManagedUser, change: PendingChange) -> None:
        payload = change.payload
        if isinstance(payload, WeeklySchedule):
            self._capabilities.push_quota(session, user.username, payload)
        elif isinstance(payload, DailyTimeInterval):
            self._capabilities.push_interval(session, user.username, payload)
        else:
            self._capabilities.push_adjustment(session, user.username, payload)

    def _commit(self, user: ManagedUser, change: PendingChange) -> None:
        payload = change.payload
        if isinstance(payload, WeeklySchedule):
            if not self._store.mark_schedule_synced(
                user.id,
                synced_at=self._clock(),
                expected_modified=payload.last_modified,
            ):
                logger.info("Quota for user %s changed during push; it stays unsynced", user.id)
        elif isinstance(payload, DailyTimeInterval):
            if not self._store.mark_interval_synced(
                payload.id,
                synced_at=self._clock(),
                expected_modified=payload.last_modified,
            ):
                logger.info(
                    "%s window for user %s changed during push; it stays unsynced",
                    payload.day_name,
                    user.id,
                )
        else:
            remaining = self._store.consume_pending_adjustment(user.id, payload)
            if remaining is not None:
                logger.info("Adjustment %s queued for user %s during push", remaining, user.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _checked_at(self, user: ManagedUser, now: Optional[datetime] = None) -> datetime:
        current = now or self._clock()
        previous = user.last_checked
        if previous is not None and current <= previous:
            current = previous + timedelta(microseconds=1)
        return current

    def _log_outcome(self, outcome: TickOutcome) -> None:
        if outcome.status is TickStatus.UNREACHABLE:
            logger.warning("User %s unreachable: %s", outcome.user_id, outcome.error)
            return
        logger.info(
            "Reconciled user %s: %s (pushed=%d failed=%d drift=%d)%s",
            outcome.user_id,
            outcome.status.value,
            len(outcome.pushed),
            len(outcome.failed),
            len(outcome.drift),
            f" {outcome.error}" if outcome.error else "",
        )


__all__ = [
    "ReconcileState",
    "TickStatus",
    "PendingChange",
    "TickOutcome",
    "Reconciler",
]
