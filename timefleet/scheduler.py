"""Background dispatcher that fires one reconciliation tick per user."""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Optional, Set

from .database import Database, StoreError
from .reconciler import Reconciler, TickOutcome

logger = logging.getLogger("timefleet.scheduler")


class FleetScheduler:
    """Runs ticks on a bounded pool with per-user mutual exclusion.

    A firing for a user whose previous tick is still running or queued is
    skipped rather than queued behind it.
    """

    def __init__(
        self,
        store: Database,
        reconciler: Reconciler,
        *,
        interval: float = 10.0,
        workers: int = 4,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0:
            raise ValueError("Interval must be greater than zero")
        if workers <= 0:
            raise ValueError("Worker count must be greater than zero")
        self._store = store
        self._reconciler = reconciler
        self._interval = interval
        self._workers = workers
        self._clock = clock

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._in_flight: Set[int] = set()
        self._next_due: Dict[int, float] = {}
        self._last_outcomes: Dict[int, TickOutcome] = {}
        self._dispatched = 0
        self._skipped = 0

        self._executor: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Scheduler already started")
        self._ensure_executor()
        self._thread = threading.Thread(target=self._loop, name="timefleet-dispatcher", daemon=True)
        self._thread.start()
        logger.info(
            "Scheduler started: interval %.1fs, %d worker(s)",
            self._interval,
            self._workers,
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal running ticks, drop queued ones and wait for the rest."""

        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        executor = self._executor
        if executor is not None:
            executor.shutdown(wait=True, cancel_futures=True)
        logger.info("Scheduler stopped after %d tick(s), %d skipped", self._dispatched, self._skipped)

    def _ensure_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._workers,
                    thread_name_prefix="timefleet-worker",
                )
            return self._executor

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.dispatch_due()
            self._stop_event.wait(self._sleep_time())

    def _sleep_time(self) -> float:
        with self._lock:
            upcoming = min(self._next_due.values(), default=None)
        if upcoming is None:
            return self._interval
        return min(max(upcoming - self._clock(), 0.05), self._interval)

    # ------------------------------------------------------------------
    # Dispatching
    # ------------------------------------------------------------------
    def dispatch_due(self) -> int:
        """Submit a tick for every user whose firing time has come.

        Returns the number of ticks submitted in this round.
        """

        if self._stop_event.is_set():
            return 0
        try:
            user_ids = self._store.list_managed_user_ids()
        except StoreError as exc:
            logger.error("Unable to list managed users: %s", exc)
            return 0

        now = self._clock()
        to_submit = []
        with self._lock:
            for stale in set(self._next_due) - set(user_ids):
                del self._next_due[stale]
            for user_id in user_ids:
                due = self._next_due.get(user_id, now)
                if due > now:
                    continue
                following = due + self._interval
                self._next_due[user_id] = following if following > now else now + self._interval
                if user_id in self._in_flight:
                    self._skipped += 1
                    logger.debug("Skipping tick for user %s; previous tick still in flight", user_id)
                    continue
                self._in_flight.add(user_id)
                self._dispatched += 1
                to_submit.append(user_id)

        executor = self._ensure_executor()
        submitted = 0
        for user_id in to_submit:
            try:
                future = executor.submit(self._run_tick, user_id)
            except RuntimeError:
                # Executor already shut down.
                self._release(user_id)
                continue
            future.add_done_callback(lambda _future, uid=user_id: self._release(uid))
            submitted += 1
        return submitted

    def _release(self, user_id: int) -> None:
        with self._lock:
            self._in_flight.discard(user_id)

    def _run_tick(self, user_id: int) -> Optional[TickOutcome]:
        try:
            outcome = self._reconciler.reconcile(user_id, cancel=self._stop_event)
        except Exception:
            logger.exception("Unexpected failure while reconciling user %s", user_id)
            return None
        with self._lock:
            self._last_outcomes[user_id] = outcome
        return outcome

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def in_flight(self) -> Set[int]:
        with self._lock:
            return set(self._in_flight)

    def last_outcomes(self) -> Dict[int, TickOutcome]:
        with self._lock:
            return dict(self._last_outcomes)

    def counters(self) -> Dict[str, int]:
        with self._lock:
            return {"dispatched": self._dispatched, "skipped": self._skipped}


__all__ = ["FleetScheduler"]
