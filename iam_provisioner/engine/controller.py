"""
Controller for the IAM Provisioner.

Schedules reconcile passes: a work queue hands resource names to a pool of
workers, never giving the same name to two workers at once, and failed
passes are retried with per-resource exponential backoff. The reconciler
itself never retries; timing lives here.
"""

import logging
import threading
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Deque, Dict, Iterable, List, Optional, Set

from ..models import ReconcileResult
from .reconciler import AccountReconciler
from .resource_store import ResourceStore

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    De-duplicating queue of resource names.

    A name is queued at most once. A name handed out by ``get`` stays
    "processing" until ``done``; adding it meanwhile marks it dirty and it
    is queued again once processing ends.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._queued: Set[str] = set()
        self._processing: Set[str] = set()
        self._dirty: Set[str] = set()
        self._delayed: Dict[str, float] = {}
        self._shutdown = False

    def add(self, name: str):
        with self._cond:
            self._add_locked(name)

    def add_after(self, name: str, delay: float):
        """Queue ``name`` once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(name)
            return

        with self._cond:
            ready_at = time.monotonic() + delay
            self._delayed[name] = min(ready_at, self._delayed.get(name, ready_at))
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Take the next ready name, waiting up to ``timeout`` seconds.

        Returns:
            The name, or None on timeout or shutdown
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._cond:
            while True:
                self._promote_delayed_locked()

                if self._queue:
                    name = self._queue.popleft()
                    self._queued.discard(name)
                    self._processing.add(name)
                    return name

                if self._shutdown:
                    return None

                now = time.monotonic()
                waits = [ready_at - now for ready_at in self._delayed.values()]
                if deadline is not None:
                    if now >= deadline:
                        return None
                    waits.append(deadline - now)

                self._cond.wait(max(min(waits), 0) if waits else None)

    def claim(self, name: str) -> bool:
        """
        Take ``name`` out of turn, e.g. for an on-demand pass.

        Returns:
            False if another worker is already processing it
        """
        with self._cond:
            if name in self._processing:
                return False
            if name in self._queued:
                self._queue.remove(name)
                self._queued.discard(name)
            self._delayed.pop(name, None)
            self._processing.add(name)
            return True

    def done(self, name: str):
        """Mark processing of ``name`` finished."""
        with self._cond:
            self._processing.discard(name)
            if name in self._dirty:
                self._dirty.discard(name)
                # a pending delayed retry keeps its backoff
                if name not in self._delayed:
                    self._add_locked(name)

    def shutdown(self):
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def is_processing(self, name: str) -> bool:
        with self._cond:
            return name in self._processing

    def pending(self) -> int:
        """Names waiting to be handed out, including delayed ones."""
        with self._cond:
            return len(self._queue) + len(self._delayed)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _add_locked(self, name: str):
        if self._shutdown or name in self._queued:
            return
        if name in self._processing:
            self._dirty.add(name)
            return

        self._delayed.pop(name, None)
        self._queue.append(name)
        self._queued.add(name)
        self._cond.notify()

    def _promote_delayed_locked(self):
        now = time.monotonic()
        for name, ready_at in list(self._delayed.items()):
            if ready_at <= now:
                del self._delayed[name]
                self._add_locked(name)


class Controller:
    """
    Runs the reconciler over every resource in the store.

    Different resources are reconciled in parallel; a single resource is
    only ever reconciled by one worker at a time.
    """

    def __init__(
        self,
        reconciler: AccountReconciler,
        store: ResourceStore,
        workers: int = 4,
        resync_seconds: float = 300.0,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
    ):
        """
        Initialize the controller.

        Args:
            reconciler: Performs one pass over a resource
            store: Source of resource names for resyncs
            workers: Number of parallel workers
            resync_seconds: Interval at which every resource is re-queued
            backoff_base: Delay before the first retry of a failed resource
            backoff_max: Upper bound for the retry delay
        """
        self.reconciler = reconciler
        self.store = store
        self.workers = max(1, workers)
        self.resync_seconds = resync_seconds
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self.queue = WorkQueue()
        self._failures: Dict[str, int] = {}
        self._lock = threading.Lock()

    def enqueue(self, name: str):
        self.queue.add(name)

    def enqueue_all(self) -> int:
        """Queue every resource in the store. Returns how many were queued."""
        names = self.store.list_names()
        for name in names:
            self.queue.add(name)
        logger.debug(f"Queued {len(names)} resources for resync")
        return len(names)

    def failures(self, name: str) -> int:
        with self._lock:
            return self._failures.get(name, 0)

    def backoff_for(self, name: str) -> float:
        """Delay before retrying ``name`` given its consecutive failures."""
        failures = self.failures(name)
        if failures == 0:
            return 0.0
        return min(self.backoff_base * (2 ** (failures - 1)), self.backoff_max)

    def process_next(self, timeout: Optional[float] = None) -> Optional[ReconcileResult]:
        """
        Reconcile the next queued resource, scheduling a retry if it fails.

        Returns:
            The pass result, or None if nothing was ready within ``timeout``
        """
        name = self.queue.get(timeout)
        if name is None:
            return None

        try:
            result = self.reconcile_one(name)
            if result.requeue:
                delay = self.backoff_for(name)
                logger.warning(f"Reconcile of {name} failed, retrying in {delay:.1f}s: {result.error}")
                self.queue.add_after(name, delay)
            return result
        finally:
            self.queue.done(name)

    def reconcile_now(self, name: str) -> Optional[ReconcileResult]:
        """
        Reconcile ``name`` immediately unless a worker already holds it.

        Returns:
            The pass result, or None if the resource is being reconciled
        """
        if not self.queue.claim(name):
            return None
        try:
            return self.reconcile_one(name)
        finally:
            self.queue.done(name)

    def reconcile_one(self, name: str) -> ReconcileResult:
        """Run one pass and update the failure count of ``name``."""
        try:
            result = self.reconciler.reconcile(name)
        except Exception as e:
            logger.exception(f"Unexpected error reconciling {name}")
            now = datetime.now(timezone.utc)
            result = ReconcileResult(
                reconcile_id=str(uuid.uuid4()),
                resource_name=name,
                success=False,
                error=f"{type(e).__name__}: {e}",
                started_at=now,
                completed_at=now,
            )

        with self._lock:
            if result.success:
                self._failures.pop(name, None)
            else:
                self._failures[name] = self._failures.get(name, 0) + 1

        return result

    def run_until_settled(
        self,
        names: Optional[Iterable[str]] = None,
        max_rounds: int = 5,
        stop_event: Optional[threading.Event] = None,
    ) -> Dict[str, ReconcileResult]:
        """
        Reconcile resources until every one succeeds or ``max_rounds`` is reached.

        Failed resources are retried in the next round after their backoff.

        Args:
            names: Resources to reconcile; defaults to every resource in the store
            max_rounds: Maximum number of passes per resource
            stop_event: Aborts waiting between rounds when set

        Returns:
            Last result per resource name
        """
        pending: List[str] = list(names) if names is not None else self.store.list_names()
        results: Dict[str, ReconcileResult] = {}

        for round_number in range(1, max_rounds + 1):
            if not pending:
                break

            logger.info(f"Reconcile round {round_number}: {len(pending)} resources")
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                round_results = dict(zip(pending, pool.map(self.reconcile_one, pending)))
            results.update(round_results)

            pending = [name for name, result in round_results.items() if result.requeue]
            if not pending or round_number == max_rounds:
                break

            delay = min(self.backoff_for(name) for name in pending)
            if stop_event is not None:
                if stop_event.wait(delay):
                    break
            else:
                time.sleep(delay)

        if pending:
            logger.warning(f"Resources still failing after {max_rounds} rounds: {pending}")

        return results

    def run(self, stop_event: threading.Event, poll_interval: float = 0.5):
        """
        Run workers and periodic resyncs until ``stop_event`` is set.

        Args:
            stop_event: Signals shutdown
            poll_interval: How often idle workers check for shutdown
        """
        logger.info(f"Starting controller with {self.workers} workers")

        def worker():
            while not stop_event.is_set():
                self.process_next(timeout=poll_interval)

        def resync():
            while not stop_event.is_set():
                self.enqueue_all()
                stop_event.wait(self.resync_seconds)

        threads = [threading.Thread(target=resync, name="resync", daemon=True)]
        threads.extend(
            threading.Thread(target=worker, name=f"worker-{i}", daemon=True) for i in range(self.workers)
        )
        for thread in threads:
            thread.start()

        try:
            stop_event.wait()
        finally:
            stop_event.set()
            self.queue.shutdown()
            for thread in threads:
                thread.join()
            logger.info("Controller stopped")
