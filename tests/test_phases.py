"""
Tests for the phase scheduler and the reconcile pipeline.
"""
from datetime import timedelta

import pytest

from dbcluster.core.phases import Phase, PhaseScheduler
from dbcluster.core.result import Outcome, OutcomeKind
from dbcluster.exceptions import NotFoundError, ObjectStoreError, ReconcileError, StorageShrinkError
from dbcluster.models.cluster import ConditionReason, ConditionStatus, ConditionType
from dbcluster.services.cluster_reconciler import ClusterReconciler
from tests.fakes import make_cluster


def _recording(log, name, outcome=None, error=None):
    async def run(cluster):
        log.append(name)
        if error is not None:
            raise error
        return outcome or Outcome.proceed()

    return Phase(name, run)


@pytest.mark.asyncio
async def test_runs_phases_in_order(store, patcher, clock):
    cluster = store.add_cluster(make_cluster())
    log = []
    scheduler = PhaseScheduler(
        [_recording(log, "A"), _recording(log, "B", Outcome.skip()), _recording(log, "C")],
        patcher,
        clock=clock,
    )

    outcome = await scheduler.run(cluster)

    assert log == ["A", "B", "C"]
    assert outcome.kind == OutcomeKind.PROCEED


@pytest.mark.asyncio
async def test_requeue_stops_the_pass(store, patcher, clock):
    cluster = store.add_cluster(make_cluster())
    log = []
    scheduler = PhaseScheduler(
        [
            _recording(log, "A"),
            _recording(log, "B", Outcome.requeue(timedelta(seconds=1))),
            _recording(log, "C"),
        ],
        patcher,
        clock=clock,
    )

    outcome = await scheduler.run(cluster)

    assert log == ["A", "B"]
    assert outcome.is_requeue
    assert outcome.after == timedelta(seconds=1)


@pytest.mark.asyncio
async def test_not_found_continues(store, patcher, clock):
    cluster = store.add_cluster(make_cluster())
    log = []
    scheduler = PhaseScheduler(
        [
            _recording(log, "A", error=NotFoundError("StatefulSet", "mariadb")),
            _recording(log, "B", Outcome.fail(NotFoundError("Pod", "mariadb-0"))),
            _recording(log, "C"),
        ],
        patcher,
        clock=clock,
    )

    outcome = await scheduler.run(cluster)

    assert log == ["A", "B", "C"]
    assert outcome.kind == OutcomeKind.PROCEED
    assert store.cluster(cluster).status.get_condition(ConditionType.READY) is None


@pytest.mark.asyncio
async def test_failure_sets_ready_failed_and_stops(store, patcher, clock):
    cluster = store.add_cluster(make_cluster())
    log = []
    scheduler = PhaseScheduler(
        [_recording(log, "Storage", error=RuntimeError("boom")), _recording(log, "Workload")],
        patcher,
        clock=clock,
    )

    with pytest.raises(ReconcileError) as exc_info:
        await scheduler.run(cluster)

    assert log == ["Storage"]
    assert exc_info.value.phase == "Storage"
    assert len(exc_info.value.errors) == 1

    ready = store.cluster(cluster).status.get_condition(ConditionType.READY)
    assert ready.status == ConditionStatus.FALSE
    assert ready.reason == ConditionReason.FAILED.value
    assert ready.message == "Error reconciling Storage: boom"


@pytest.mark.asyncio
async def test_failed_status_write_is_aggregated(store, patcher, clock):
    cluster = store.add_cluster(make_cluster())
    store.fail_status_patch = ObjectStoreError("etcd unavailable")
    scheduler = PhaseScheduler([_recording([], "Storage", error=RuntimeError("boom"))], patcher, clock=clock)

    with pytest.raises(ReconcileError) as exc_info:
        await scheduler.run(cluster)

    errors = exc_info.value.errors
    assert len(errors) == 2
    assert str(errors[0]) == "boom"
    assert isinstance(errors[1], ObjectStoreError)


@pytest.mark.asyncio
async def test_status_write_not_found_is_ignored(store, patcher, clock):
    cluster = store.add_cluster(make_cluster())
    store.fail_status_patch = NotFoundError("Cluster", cluster.key)
    scheduler = PhaseScheduler([_recording([], "Storage", error=RuntimeError("boom"))], patcher, clock=clock)

    with pytest.raises(ReconcileError) as exc_info:
        await scheduler.run(cluster)

    assert len(exc_info.value.errors) == 1


@pytest.mark.asyncio
async def test_validation_failure_is_flagged(store, patcher, clock):
    cluster = store.add_cluster(make_cluster())
    scheduler = PhaseScheduler(
        [_recording([], "Storage", error=StorageShrinkError("2Gi", "1Gi"))], patcher, clock=clock
    )

    with pytest.raises(ReconcileError) as exc_info:
        await scheduler.run(cluster)

    assert exc_info.value.is_validation_error


@pytest.mark.asyncio
async def test_resync_after_all_phases_proceed(store, patcher, clock):
    cluster = store.add_cluster(make_cluster())
    scheduler = PhaseScheduler(
        [_recording([], "A")],
        patcher,
        clock=clock,
        resync_after=lambda c: timedelta(minutes=5),
    )

    outcome = await scheduler.run(cluster)

    assert outcome.is_requeue
    assert outcome.after == timedelta(minutes=5)


def test_pipeline_phase_order(store, db_clients, config, clock):
    reconciler = ClusterReconciler(store, db_clients, config, clock)

    assert reconciler.scheduler.phase_names == [
        "Spec",
        "Status",
        "Suspend",
        "Storage",
        "Workload",
        "Replication",
        "Failover",
        "ScaleOut",
        "ReplicaRecovery",
    ]


def test_long_requeue_only_with_replication_or_tls(store, db_clients, config, clock):
    reconciler = ClusterReconciler(store, db_clients, config, clock)

    assert reconciler.resync_after(make_cluster(replicated=True)) == config.default_requeue_interval
    assert reconciler.resync_after(make_cluster(replicated=False, tlsEnabled=True)) == (
        config.default_requeue_interval
    )
    assert reconciler.resync_after(make_cluster(replicated=False)) is None


@pytest.mark.asyncio
async def test_new_cluster_gets_workload_and_status(store, db_clients, config, clock):
    cluster = store.add_cluster(make_cluster(replicas=1, replicated=False))
    reconciler = ClusterReconciler(store, db_clients, config, clock)

    outcome = await reconciler.reconcile(cluster.namespace, cluster.name)

    assert outcome.kind == OutcomeKind.PROCEED
    assert store.calls_named("create_stateful_set") == [("create_stateful_set", "mariadb", 1)]
    ready = store.cluster(cluster).status.get_condition(ConditionType.READY)
    assert ready.reason == ConditionReason.NOT_READY.value


@pytest.mark.asyncio
async def test_spec_defaults_primary_pod_index(store, db_clients, config, clock):
    cluster = store.add_cluster(make_cluster(replicas=3))
    reconciler = ClusterReconciler(store, db_clients, config, clock)

    await reconciler.reconcile(cluster.namespace, cluster.name)

    stored = store.cluster(cluster)
    assert stored.spec.replication.primary.pod_index == 0
    assert stored.status.current_primary_pod_index == 0
    assert stored.status.current_primary == "mariadb-0"


@pytest.mark.asyncio
async def test_suspended_cluster_requeues(store, db_clients, config, clock):
    cluster = store.add_cluster(make_cluster(replicated=False, suspend=True))
    reconciler = ClusterReconciler(store, db_clients, config, clock)

    outcome = await reconciler.reconcile(cluster.namespace, cluster.name)

    assert outcome.after == config.suspend_requeue_interval
    assert store.calls_named("create_stateful_set") == []
    ready = store.cluster(cluster).status.get_condition(ConditionType.READY)
    assert ready.reason == ConditionReason.SUSPENDED.value


@pytest.mark.asyncio
async def test_missing_cluster_is_a_no_op(store, db_clients, config, clock):
    reconciler = ClusterReconciler(store, db_clients, config, clock)

    outcome = await reconciler.reconcile("default", "gone")

    assert outcome.kind == OutcomeKind.PROCEED
