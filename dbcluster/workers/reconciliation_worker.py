"""
Reconciliation worker.

Feeds cluster keys (``namespace/name``) to the ClusterReconciler. Keys enter
the queue from the periodic resync and from the requeue hints returned by
each pass; failed passes come back with exponential backoff.
"""
import asyncio
import time
from typing import Callable, Dict, Optional, Set

from dbcluster.config.logging import get_logger
from dbcluster.core.result import Outcome
from dbcluster.exceptions import ReconcileError
from dbcluster.services.cluster_reconciler import ClusterReconciler
from dbcluster.services.object_store import ObjectStore

logger = get_logger(__name__)


class ReconciliationWorker:
    """
    Schedules reconcile passes for every cluster.

    Features:
    - Periodic resync listing all clusters (configurable interval)
    - Due-time queue fed by requeue hints
    - At most one pass per cluster at a time
    - Bounded concurrency across clusters
    - Exponential backoff per cluster on errors
    - Validation errors retried on the resync interval, without backoff
    - Graceful shutdown
    """

    def __init__(
        self,
        reconciler: ClusterReconciler,
        store: ObjectStore,
        resync_interval: float = 60,
        max_concurrent: int = 4,
        backoff_initial: float = 1.0,
        backoff_max: float = 300.0,
        namespace: Optional[str] = None,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize reconciliation worker.

        Args:
            reconciler: Runs one pass for a cluster
            store: Used to list the clusters on every resync
            resync_interval: Seconds between full resyncs
            max_concurrent: Passes allowed to run at the same time
            backoff_initial: First retry delay in seconds after a failed pass
            backoff_max: Upper bound of the retry delay
            namespace: Only reconcile clusters in this namespace (None for all)
        """
        self.reconciler = reconciler
        self.store = store
        self.resync_interval = resync_interval
        self.max_concurrent = max_concurrent
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.namespace = namespace
        self.time_fn = time_fn

        self.running = False
        self._sleep_task: Optional[asyncio.Task] = None
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._wakeup = asyncio.Event()
        self._due: Dict[str, float] = {}
        self._in_flight: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._next_resync = 0.0

    async def start(self):
        """Start the worker (runs until stopped)."""
        self.running = True
        logger.info(
            "reconciliation_worker_started",
            resync_interval_seconds=self.resync_interval,
            max_concurrent=self.max_concurrent,
            namespace=self.namespace,
        )

        while self.running:
            try:
                if self.time_fn() >= self._next_resync:
                    await self.resync()
                    self._next_resync = self.time_fn() + self.resync_interval

                self._wakeup.clear()
                self.dispatch_due()

                try:
                    self._sleep_task = asyncio.create_task(self._sleep(self._next_wakeup()))
                    await self._sleep_task
                except asyncio.CancelledError:
                    logger.info("reconciliation_sleep_cancelled")
                    break
                finally:
                    self._sleep_task = None

            except asyncio.CancelledError:
                logger.info("reconciliation_worker_cancelled")
                break
            except Exception as e:
                logger.error("reconciliation_cycle_error", error=str(e), exc_info=True)
                if not self.running:
                    break
                # Resync failed: try again after the initial backoff
                self._next_resync = self.time_fn() + self.backoff_initial
                try:
                    self._sleep_task = asyncio.create_task(asyncio.sleep(self.backoff_initial))
                    await self._sleep_task
                except asyncio.CancelledError:
                    logger.info("reconciliation_error_sleep_cancelled")
                    break
                finally:
                    self._sleep_task = None

        logger.info("reconciliation_worker_stopped")

    async def stop(self, timeout: float = 30.0):
        """Stop the worker, letting in-flight passes finish within ``timeout``."""
        logger.info("stopping_reconciliation_worker", in_flight=len(self._in_flight))
        self.running = False

        if self._sleep_task and not self._sleep_task.done():
            self._sleep_task.cancel()
            try:
                await self._sleep_task
            except asyncio.CancelledError:
                pass

        if self._tasks:
            done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("reconcile_passes_cancelled", count=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

    async def resync(self) -> None:
        """Queue every existing cluster for an immediate pass."""
        clusters = await self.store.list_clusters(self.namespace)
        for cluster in clusters:
            self.enqueue(cluster.key)
        logger.debug("reconciliation_resync", clusters=len(clusters))

    def enqueue(self, key: str, after: float = 0.0) -> None:
        """
        Schedule a pass for ``key`` in ``after`` seconds.

        An earlier due time already queued for the key wins.
        """
        due = self.time_fn() + max(after, 0.0)
        current = self._due.get(key)
        if current is None or due < current:
            self._due[key] = due
        self._wakeup.set()

    def due_in(self, key: str) -> Optional[float]:
        """Seconds until ``key`` is due, or None when it is not queued."""
        due = self._due.get(key)
        if due is None:
            return None
        return due - self.time_fn()

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def dispatch_due(self) -> Set[asyncio.Task]:
        """Start a pass for every due key that is not already running."""
        now = self.time_fn()
        started: Set[asyncio.Task] = set()
        for key, due in sorted(self._due.items(), key=lambda item: item[1]):
            if due > now or key in self._in_flight:
                continue
            del self._due[key]
            self._in_flight.add(key)
            task = asyncio.create_task(self._run(key))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.add(task)
        return started

    async def _run(self, key: str) -> None:
        namespace, name = key.split("/", 1)
        try:
            async with self._semaphore:
                outcome = await self.reconciler.reconcile(namespace, name)
        except ReconcileError as e:
            if e.is_validation_error:
                self._failures.pop(key, None)
                logger.warning("reconcile_validation_error", key=key, phase=e.phase, error=str(e))
                self.enqueue(key, self.resync_interval)
            else:
                self._retry_with_backoff(key, e)
        except Exception as e:
            self._retry_with_backoff(key, e)
        else:
            self._failures.pop(key, None)
            self._requeue(key, outcome)
        finally:
            self._in_flight.discard(key)
            self._wakeup.set()

    def _requeue(self, key: str, outcome: Outcome) -> None:
        if not outcome.is_requeue:
            return
        after = outcome.after.total_seconds() if outcome.after else 0.0
        self.enqueue(key, after)

    def _retry_with_backoff(self, key: str, error: Exception) -> None:
        failures = self._failures.get(key, 0)
        delay = min(self.backoff_initial * (2 ** failures), self.backoff_max)
        self._failures[key] = failures + 1
        logger.error(
            "reconcile_pass_failed",
            key=key,
            error=str(error),
            retry_in_seconds=delay,
            failures=failures + 1,
        )
        self.enqueue(key, delay)

    def _next_wakeup(self) -> float:
        now = self.time_fn()
        next_at = self._next_resync
        for key, due in self._due.items():
            if key not in self._in_flight:
                next_at = min(next_at, due)
        return max(next_at - now, 0.0)

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
