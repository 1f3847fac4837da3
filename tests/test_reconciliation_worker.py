"""
Tests for the reconciliation worker queue.
"""
import asyncio
from datetime import timedelta

import pytest

from dbcluster.core.result import Outcome
from dbcluster.exceptions import ReconcileError, StorageShrinkError
from dbcluster.workers.reconciliation_worker import ReconciliationWorker
from tests.fakes import FakeObjectStore, make_cluster


class FakeReconciler:
    """Returns scripted outcomes, or raises scripted errors, in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []
        self.gate = None

    async def reconcile(self, namespace, name):
        self.calls.append(f"{namespace}/{name}")
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0) if self.results else Outcome.proceed()
        if isinstance(result, BaseException):
            raise result
        return result


class ManualTime:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


def _worker(reconciler, store=None, time_fn=None, **kwargs):
    return ReconciliationWorker(
        reconciler,
        store or FakeObjectStore(),
        time_fn=time_fn or ManualTime(),
        **kwargs,
    )


async def _drain(worker):
    await asyncio.gather(*worker.dispatch_due())


def test_enqueue_keeps_earliest_due_time():
    worker = _worker(FakeReconciler())

    worker.enqueue("default/a", 10)
    worker.enqueue("default/a", 5)
    worker.enqueue("default/a", 20)

    assert worker.due_in("default/a") == 5
    assert worker.due_in("default/b") is None


@pytest.mark.asyncio
async def test_requeue_hint_schedules_next_pass():
    reconciler = FakeReconciler(Outcome.requeue(timedelta(seconds=30)))
    worker = _worker(reconciler)
    worker.enqueue("default/a")

    await _drain(worker)

    assert reconciler.calls == ["default/a"]
    assert worker.due_in("default/a") == 30


@pytest.mark.asyncio
async def test_proceed_leaves_key_to_resync():
    worker = _worker(FakeReconciler(Outcome.proceed()))
    worker.enqueue("default/a")

    await _drain(worker)

    assert worker.due_in("default/a") is None


@pytest.mark.asyncio
async def test_keys_not_yet_due_are_not_dispatched():
    reconciler = FakeReconciler()
    worker = _worker(reconciler)
    worker.enqueue("default/a", 5)

    assert worker.dispatch_due() == set()
    assert reconciler.calls == []


@pytest.mark.asyncio
async def test_one_pass_per_cluster_at_a_time():
    reconciler = FakeReconciler()
    reconciler.gate = asyncio.Event()
    worker = _worker(reconciler)
    worker.enqueue("default/a")

    running = worker.dispatch_due()
    await asyncio.sleep(0)
    assert worker.is_in_flight("default/a")

    worker.enqueue("default/a")
    assert worker.dispatch_due() == set()

    reconciler.gate.set()
    await asyncio.gather(*running)

    assert not worker.is_in_flight("default/a")
    # The second request is still queued for the next dispatch.
    await _drain(worker)
    assert reconciler.calls == ["default/a", "default/a"]


@pytest.mark.asyncio
async def test_failed_passes_back_off_exponentially():
    time_fn = ManualTime()
    reconciler = FakeReconciler(RuntimeError("boom"), RuntimeError("boom"), RuntimeError("boom"), Outcome.proceed())
    worker = _worker(reconciler, time_fn=time_fn, backoff_initial=1.0, backoff_max=3.0)
    worker.enqueue("default/a")

    delays = []
    for _ in range(3):
        await _drain(worker)
        delay = worker.due_in("default/a")
        delays.append(delay)
        time_fn.now += delay

    assert delays == [1.0, 2.0, 3.0]

    await _drain(worker)
    assert worker.due_in("default/a") is None
    assert worker._failures == {}


@pytest.mark.asyncio
async def test_validation_errors_retry_on_resync_interval():
    error = ReconcileError("Storage", [StorageShrinkError("2Gi", "1Gi")])
    worker = _worker(FakeReconciler(error), resync_interval=60, backoff_initial=1.0)
    worker.enqueue("default/a")

    await _drain(worker)

    assert worker.due_in("default/a") == 60
    assert "default/a" not in worker._failures


@pytest.mark.asyncio
async def test_resync_queues_clusters_in_namespace():
    store = FakeObjectStore()
    store.add_cluster(make_cluster(name="a", namespace="team-1"))
    store.add_cluster(make_cluster(name="b", namespace="team-1"))
    store.add_cluster(make_cluster(name="c", namespace="team-2"))
    worker = _worker(FakeReconciler(), store=store, namespace="team-1")

    await worker.resync()

    assert worker.due_in("team-1/a") == 0
    assert worker.due_in("team-1/b") == 0
    assert worker.due_in("team-2/c") is None


@pytest.mark.asyncio
async def test_start_and_stop():
    store = FakeObjectStore()
    store.add_cluster(make_cluster())
    reconciler = FakeReconciler()
    worker = ReconciliationWorker(reconciler, store, resync_interval=60)

    task = asyncio.create_task(worker.start())
    for _ in range(100):
        if reconciler.calls:
            break
        await asyncio.sleep(0.01)

    await worker.stop()
    await asyncio.wait_for(task, timeout=1)

    assert reconciler.calls == ["default/mariadb"]
    assert not worker.running
