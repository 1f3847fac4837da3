"""
Tests for replica recovery and the replica error bookkeeping it relies on.
"""
from datetime import timedelta

import pytest

from dbcluster.core.result import OutcomeKind
from dbcluster.exceptions import WaitTimeoutError
from dbcluster.models.cluster import (
    ConditionReason,
    ConditionStatus,
    ConditionType,
    ReplicaErrorRecord,
    ReplicaRecoveryStatus,
    ReplicationRole,
)
from dbcluster.models.resources import BackupStorage
from dbcluster.services.backup import BackupSeeder
from dbcluster.services.database_client import ReplicaErrors, node_host
from dbcluster.services.replica_recovery import ReplicaRecoveryController, is_recoverable_error
from dbcluster.services.replication import ReplicationConfigurator
from dbcluster.services.status import merge_replica_error
from tests.fakes import make_cluster

NON_RECOVERABLE = frozenset({1236})
THRESHOLD = timedelta(minutes=5)


@pytest.fixture
def controller(store, patcher, db_clients, config, clock):
    replication = ReplicationConfigurator(store, patcher, db_clients, config)
    seeder = BackupSeeder(store, clock)
    return ReplicaRecoveryController(store, patcher, db_clients, replication, seeder, config, clock)


def _broken_cluster(store, clock, errors=None, storage=BackupStorage.OBJECT_STORAGE, **replica):
    replica.setdefault("recovery", {"enabled": True})
    replica.setdefault("bootstrapFrom", {"backupTemplateRef": "backup-template"})
    cluster = make_cluster(replicas=3, replication={"primary": {"podIndex": 0}, "replica": replica})
    cluster.status.current_primary_pod_index = 0
    cluster.status.current_primary = cluster.pod_name(0)
    cluster.status.replication.roles = {
        "mariadb-0": ReplicationRole.PRIMARY,
        "mariadb-1": ReplicationRole.REPLICA,
        "mariadb-2": ReplicationRole.REPLICA,
    }
    if errors is None:
        errors = {"mariadb-1": ReplicaErrorRecord(io_error_code=1236, last_transition_time=clock.now)}
    cluster.status.replication.errors = errors
    cluster = store.add_cluster(cluster)

    store.add_stateful_set(cluster, 3)
    store.add_pods(cluster, 3)
    for ordinal in range(3):
        store.add_claim(cluster, ordinal)
    store.add_backup(cluster.namespace, "backup-template", storage=storage, spec={"schedule": "@daily"}, complete=True)
    return cluster


def test_non_recoverable_io_error_qualifies_immediately(clock):
    record = ReplicaErrorRecord(io_error_code=1236, last_transition_time=clock.now)

    assert is_recoverable_error(record, clock.now, THRESHOLD, NON_RECOVERABLE)


def test_transient_error_qualifies_after_threshold(clock):
    record = ReplicaErrorRecord(sql_error_code=1062, last_transition_time=clock.now)

    assert not is_recoverable_error(record, clock.now + timedelta(minutes=4), THRESHOLD, NON_RECOVERABLE)
    assert is_recoverable_error(record, clock.now + timedelta(minutes=6), THRESHOLD, NON_RECOVERABLE)


def test_record_without_codes_never_qualifies(clock):
    record = ReplicaErrorRecord(io_error_code=0, sql_error_code=0, last_transition_time=clock.now)

    assert not is_recoverable_error(record, clock.now + timedelta(days=1), THRESHOLD, NON_RECOVERABLE)


def test_merge_keeps_record_when_node_is_unknown(clock):
    previous = ReplicaErrorRecord(io_error_code=1236, last_transition_time=clock.now)

    assert merge_replica_error(previous, None, clock.now + timedelta(hours=1)) is previous


def test_merge_clears_record_when_healthy(clock):
    previous = ReplicaErrorRecord(io_error_code=1236, last_transition_time=clock.now)

    assert merge_replica_error(previous, ReplicaErrors(), clock.now) is None


def test_merge_keeps_transition_time_for_same_error(clock):
    previous = ReplicaErrorRecord(sql_error_code=1062, last_transition_time=clock.now)
    later = clock.now + timedelta(minutes=3)

    merged = merge_replica_error(previous, ReplicaErrors(sql_errno=1062), later)

    assert merged.last_transition_time == clock.now


def test_merge_treats_missing_code_as_no_error(clock):
    # As read back from the API: ioErrorCode was never written.
    previous = ReplicaErrorRecord.model_validate(
        {"sqlErrorCode": 1062, "lastTransitionTime": clock.now.isoformat()}
    )
    assert previous.io_error_code is None

    for minutes in (1, 3, 10):
        later = clock.now + timedelta(minutes=minutes)
        merged = merge_replica_error(previous, ReplicaErrors(io_errno=0, sql_errno=1062), later)
        assert merged.last_transition_time == clock.now
        previous = merged


def test_merge_restarts_record_when_error_changes(clock):
    previous = ReplicaErrorRecord(sql_error_code=1062, last_transition_time=clock.now)
    later = clock.now + timedelta(minutes=3)

    merged = merge_replica_error(previous, ReplicaErrors(io_errno=1236), later)

    assert merged.io_error_code == 1236
    assert merged.sql_error_code == 0
    assert merged.last_transition_time == later


def test_replicas_to_recover_ordering(store, controller, clock):
    old = clock.now - timedelta(minutes=10)
    cluster = make_cluster(replicas=4, replication={"replica": {"recovery": {"enabled": True}}})
    cluster.status.current_primary_pod_index = 0
    cluster.status.replication.errors = {
        "mariadb-0": ReplicaErrorRecord(io_error_code=1236, last_transition_time=old),
        "mariadb-3": ReplicaErrorRecord(sql_error_code=1062, last_transition_time=old),
        "mariadb-2": ReplicaErrorRecord(io_error_code=1236, last_transition_time=clock.now),
        "mariadb-1": ReplicaErrorRecord(sql_error_code=1062, last_transition_time=clock.now),
        "mariadb-7": ReplicaErrorRecord(io_error_code=1236, last_transition_time=old),
    }

    assert controller.replicas_to_recover(cluster) == ["mariadb-2", "mariadb-3"]

    cluster.status.replica_recovery = ReplicaRecoveryStatus(replica="mariadb-1")
    assert controller.replicas_to_recover(cluster) == ["mariadb-1", "mariadb-2", "mariadb-3"]


def test_error_threshold_override(controller, config):
    assert controller.error_threshold(make_cluster()) == config.replica_error_duration_threshold
    cluster = make_cluster(replication={"replica": {"recovery": {"enabled": True, "errorDurationThreshold": "1m"}}})
    assert controller.error_threshold(cluster) == timedelta(minutes=1)


@pytest.mark.asyncio
async def test_recovery_through_restore_job(store, db_clients, controller, clock):
    cluster = _broken_cluster(store, clock)
    db_clients.node(1).errors = ReplicaErrors(io_errno=1236)

    # Pass 1: the on-demand backup is created from the template.
    outcome = await controller.reconcile(cluster)

    assert outcome.is_requeue
    assert store.calls_named("create_backup") == [("create_backup", "mariadb-pb-recovery")]
    assert "schedule" not in store.backups[("default", "mariadb-pb-recovery")].spec
    assert store.cluster(cluster).status.is_condition_false(
        ConditionType.REPLICA_RECOVERED, ConditionReason.REPLICA_RECOVERING
    )

    # Pass 2: still waiting for the backup.
    outcome = await controller.reconcile(cluster)
    assert outcome.is_requeue
    assert store.calls_named("delete_volume_claim") == []

    # Pass 3: the volume is wiped and the restore Job started.
    store.complete_backup("default", "mariadb-pb-recovery")
    outcome = await controller.reconcile(cluster)

    assert outcome.is_requeue
    assert store.calls_named("delete_volume_claim") == [("delete_volume_claim", "storage-mariadb-1")]
    assert store.calls_named("delete_pod") == [("delete_pod", "mariadb-1")]
    assert store.calls_named("create_volume_claim") == [("create_volume_claim", "storage-mariadb-1", None)]
    assert store.calls_named("create_job") == [("create_job", "mariadb-pb-init-1")]
    stored = store.cluster(cluster)
    assert stored.status.replica_recovery == ReplicaRecoveryStatus(replica="mariadb-1", volume_provisioned=True)
    assert stored.status.replication.roles["mariadb-1"] == ReplicationRole.CONFIGURING

    # Pass 4: restore still running, the volume is not wiped again.
    outcome = await controller.reconcile(cluster)
    assert outcome.is_requeue
    assert len(store.calls_named("delete_volume_claim")) == 1

    # Pass 5: restore done, replication configured and healthy again.
    store.jobs[("default", "mariadb-pb-init-1")].complete = True
    store.add_pod(cluster, 1, ready=True)
    db_clients.node(1).errors = ReplicaErrors()
    outcome = await controller.reconcile(cluster)

    assert outcome.is_immediate
    assert db_clients.actions == [("replicate_from", "mariadb-1", node_host(cluster, 0))]
    stored = store.cluster(cluster)
    assert stored.status.replica_recovery is None
    assert "mariadb-1" not in stored.status.replication.errors
    assert stored.status.replication.roles["mariadb-1"] == ReplicationRole.REPLICA
    assert ("Normal", "ReplicaRecovered", "Replica 'mariadb-1' recovered") in store.events

    # Pass 6: nothing left, transient resources are cleaned up.
    outcome = await controller.reconcile(cluster)

    assert outcome.kind == OutcomeKind.PROCEED
    assert store.cluster(cluster).status.is_condition_true(ConditionType.REPLICA_RECOVERED)
    assert ("default", "mariadb-pb-recovery") not in store.backups
    assert store.jobs == {}
    assert db_clients.opened == db_clients.closed


@pytest.mark.asyncio
async def test_recovery_from_volume_snapshot(store, db_clients, controller, clock):
    cluster = _broken_cluster(store, clock, storage=BackupStorage.VOLUME_SNAPSHOT)

    await controller.reconcile(cluster)
    store.complete_backup("default", "mariadb-pb-recovery")

    # No snapshot yet.
    outcome = await controller.reconcile(cluster)
    assert outcome.is_requeue
    assert store.calls_named("delete_volume_claim") == []

    store.add_snapshot("default", "snap-old", "mariadb-pb-recovery", clock.now - timedelta(hours=1))
    store.add_snapshot("default", "snap-new", "mariadb-pb-recovery", clock.now)
    store.add_snapshot("default", "snap-pending", "mariadb-pb-recovery", clock.now + timedelta(hours=1), ready=False)
    outcome = await controller.reconcile(cluster)

    # Claim restored from the newest ready snapshot, Pod not ready yet.
    assert outcome.is_requeue
    assert store.calls_named("create_volume_claim") == [("create_volume_claim", "storage-mariadb-1", "snap-new")]
    assert store.calls_named("create_job") == []

    store.add_pod(cluster, 1, ready=True)
    outcome = await controller.reconcile(cluster)

    assert outcome.is_immediate
    assert store.cluster(cluster).status.replication.roles["mariadb-1"] == ReplicationRole.REPLICA


@pytest.mark.asyncio
async def test_unreachable_replica_times_out(store, db_clients, controller, clock):
    cluster = _broken_cluster(store, clock, storage=BackupStorage.VOLUME_SNAPSHOT)
    store.add_backup("default", "mariadb-pb-recovery", storage=BackupStorage.VOLUME_SNAPSHOT, complete=True)
    store.add_snapshot("default", "snap", "mariadb-pb-recovery", clock.now)
    await controller.reconcile(cluster)
    store.add_pod(cluster, 1, ready=True)
    db_clients.node(1).unreachable = True

    with pytest.raises(WaitTimeoutError):
        await controller.reconcile(cluster)

    # Progress is kept for the next pass.
    assert store.cluster(cluster).status.replica_recovery.volume_provisioned


@pytest.mark.asyncio
async def test_transient_error_within_threshold_is_left_alone(store, controller, clock):
    errors = {"mariadb-2": ReplicaErrorRecord(sql_error_code=1062, last_transition_time=clock.now)}
    cluster = _broken_cluster(store, clock, errors=errors)

    outcome = await controller.reconcile(cluster)

    assert outcome.kind == OutcomeKind.PROCEED
    assert store.calls_named("create_backup") == []
    assert store.cluster(cluster).status.get_condition(ConditionType.REPLICA_RECOVERED) is None


@pytest.mark.asyncio
async def test_disabled_recovery_resets_status(store, controller, clock):
    cluster = _broken_cluster(store, clock, recovery={"enabled": False})
    cluster.status.replica_recovery = ReplicaRecoveryStatus(replica="mariadb-1")
    cluster.status.set_condition(
        ConditionType.REPLICA_RECOVERED,
        ConditionStatus.FALSE,
        ConditionReason.REPLICA_RECOVERING,
        "Recovering replicas",
        clock.now,
    )
    cluster = store.add_cluster(cluster)

    outcome = await controller.reconcile(cluster)

    assert outcome.kind == OutcomeKind.SKIP
    stored = store.cluster(cluster)
    assert stored.status.replica_recovery is None
    assert stored.status.get_condition(ConditionType.REPLICA_RECOVERED) is None


@pytest.mark.asyncio
async def test_recovery_waits_for_switchover(store, controller, clock):
    cluster = _broken_cluster(store, clock)
    cluster.status.set_condition(
        ConditionType.PRIMARY_SWITCHED,
        ConditionStatus.FALSE,
        ConditionReason.SWITCHING,
        "Switching primary to 'mariadb-1'",
        clock.now,
    )
    cluster = store.add_cluster(cluster)

    outcome = await controller.reconcile(cluster)

    assert outcome.kind == OutcomeKind.SKIP
    assert store.calls_named("create_backup") == []
