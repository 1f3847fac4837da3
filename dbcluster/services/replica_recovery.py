"""
Replica recovery.

Rebuilds replicas whose replication broke beyond repair (for example the
primary purged the binary logs they still need). One replica is rebuilt at a
time: its volume is wiped and re-provisioned from the newest backup, then
replication is configured again and awaited until the error codes clear.

Progress is recorded in ``status.replicaRecovery`` so a restarted operator
resumes at the right step instead of wiping the volume again.
"""
from datetime import datetime, timedelta
from typing import AbstractSet, List, Optional

from dbcluster.config.logging import get_logger
from dbcluster.config.reconciler import ReconcilerConfig
from dbcluster.core import conditions
from dbcluster.core.clock import Clock, utcnow
from dbcluster.core.patching import ClusterPatcher
from dbcluster.core.result import Outcome
from dbcluster.core.state_machine import ReplicaRecoveryState, ReplicaRecoveryStateMachine
from dbcluster.core.wait import poll_until
from dbcluster.exceptions import ConflictError, NotFoundError
from dbcluster.models.cluster import (
    Cluster,
    ClusterStatus,
    ConditionType,
    ReplicaErrorRecord,
    ReplicaRecoveryStatus,
    ReplicationRole,
)
from dbcluster.models.resources import BackupArtifact, VolumeSnapshot, pod_ordinal
from dbcluster.services import builder
from dbcluster.services.backup import BackupSeeder
from dbcluster.services.database_client import DatabaseClientFactory
from dbcluster.services.object_store import ObjectStore
from dbcluster.services.replication import ReplicationConfigurator

logger = get_logger(__name__)


def is_recoverable_error(
    record: ReplicaErrorRecord,
    now: datetime,
    threshold: timedelta,
    non_recoverable_io_codes: AbstractSet[int],
) -> bool:
    """
    Whether a recorded replica error warrants rebuilding the replica.

    IO errors in ``non_recoverable_io_codes`` cannot heal on their own and
    qualify straight away. Any other error qualifies once it has lasted
    longer than ``threshold``.
    """
    if record.io_error_code in non_recoverable_io_codes:
        return True
    if not record.io_error_code and not record.sql_error_code:
        return False
    return now - record.last_transition_time > threshold


class ReplicaRecoveryController:
    def __init__(
        self,
        store: ObjectStore,
        patcher: ClusterPatcher,
        db_clients: DatabaseClientFactory,
        replication: ReplicationConfigurator,
        seeder: BackupSeeder,
        config: ReconcilerConfig,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.patcher = patcher
        self.db_clients = db_clients
        self.replication = replication
        self.seeder = seeder
        self.config = config
        self.clock = clock

    def error_threshold(self, cluster: Cluster) -> timedelta:
        threshold = cluster.spec.replication.replica.recovery.error_duration_threshold
        return threshold if threshold is not None else self.config.replica_error_duration_threshold

    def replicas_to_recover(self, cluster: Cluster) -> List[str]:
        """
        Replicas eligible for recovery, ordered by ordinal.

        The replica already being rebuilt always comes first, even if its
        error record has been cleared in the meantime.
        """
        now = self.clock()
        threshold = self.error_threshold(cluster)
        primary_index = cluster.status.current_primary_pod_index
        eligible = []
        for node, record in cluster.status.replication.errors.items():
            ordinal = pod_ordinal(node)
            if ordinal is None or ordinal == primary_index or ordinal >= cluster.spec.replicas:
                continue
            if is_recoverable_error(record, now, threshold, self.config.non_recoverable_io_error_codes):
                eligible.append(node)
        eligible.sort(key=pod_ordinal)

        current = cluster.replica_under_recovery
        if current is not None:
            ordinal = pod_ordinal(current)
            if ordinal is not None and ordinal != primary_index and ordinal < cluster.spec.replicas:
                eligible = [current] + [node for node in eligible if node != current]
        return eligible

    async def reconcile(self, cluster: Cluster) -> Outcome:
        if not cluster.replication_enabled or not cluster.has_configured_replication:
            return Outcome.skip()
        if not cluster.replica_recovery_enabled:
            await self._reset(cluster)
            return Outcome.skip()
        if cluster.is_switching_primary or cluster.is_resizing_storage or cluster.is_scaling_out:
            return Outcome.skip()

        state = ReplicaRecoveryStateMachine.current_state(cluster)
        replicas = self.replicas_to_recover(cluster)
        if not replicas:
            if state == ReplicaRecoveryState.RECOVERING:
                await self._set_recovered_and_cleanup(cluster)
            return Outcome.proceed()

        if state != ReplicaRecoveryState.RECOVERING:
            ReplicaRecoveryStateMachine.validate_transition(state, ReplicaRecoveryState.RECOVERING, cluster.key)
        now = self.clock()
        await self.patcher.patch_status(cluster, lambda status: conditions.set_replica_recovering(status, now))

        backup = await self.seeder.reconcile_backup(cluster, cluster.recovery_backup_name)
        if backup is None:
            return Outcome.requeue(self.config.short_requeue_interval)

        snapshot: Optional[VolumeSnapshot] = None
        if backup.uses_volume_snapshots:
            snapshot = await self.seeder.latest_snapshot(cluster, backup)
            if snapshot is None:
                logger.info("volume_snapshot_not_ready", cluster=cluster.key, backup=backup.name)
                return Outcome.requeue(self.config.snapshot_requeue_interval)

        return await self._recover(cluster, replicas[0], backup, snapshot)

    async def _recover(
        self,
        cluster: Cluster,
        replica: str,
        backup: BackupArtifact,
        snapshot: Optional[VolumeSnapshot],
    ) -> Outcome:
        ordinal = pod_ordinal(replica)
        log = logger.bind(cluster=cluster.key, replica=replica)

        def select(status: ClusterStatus) -> None:
            if status.replica_recovery is None or status.replica_recovery.replica != replica:
                status.replica_recovery = ReplicaRecoveryStatus(replica=replica)
            status.replication.roles[replica] = ReplicationRole.CONFIGURING

        await self.patcher.patch_status(cluster, select)

        if not cluster.status.replica_recovery.volume_provisioned:
            log.info("replica_volume_reprovisioning", snapshot=snapshot.name if snapshot else None)
            await self._reprovision_volume(cluster, ordinal, snapshot)

            def provisioned(status: ClusterStatus) -> None:
                if status.replica_recovery is not None and status.replica_recovery.replica == replica:
                    status.replica_recovery.volume_provisioned = True

            await self.patcher.patch_status(cluster, provisioned)

        if snapshot is None:
            if not await self._init_job_complete(cluster, ordinal):
                await self._ensure_pod_initializing(cluster, replica)
                if not await self.seeder.reconcile_init_job(cluster, ordinal, backup):
                    log.debug("replica_restore_in_progress")
                    return Outcome.requeue(self.config.short_requeue_interval)

        if not await self._is_pod_ready(cluster, replica):
            log.debug("replica_pod_not_ready")
            return Outcome.requeue(self.config.short_requeue_interval)

        async def configured() -> bool:
            await self.replication.configure_replica(cluster, ordinal)
            return True

        await poll_until(
            configured,
            description=f"replication configured on '{replica}'",
            timeout=self.config.replication_configured_timeout,
            interval=self.config.poll_interval,
        )

        async def recovered() -> bool:
            client = await self.db_clients(cluster, ordinal, self.config.database_client_timeout)
            try:
                errors = await client.replica_errors()
            finally:
                await client.close()
            return errors.healthy

        await poll_until(
            recovered,
            description=f"replica '{replica}' recovered",
            timeout=self.config.replica_recovered_timeout,
            interval=self.config.poll_interval,
        )

        def finish(status: ClusterStatus) -> None:
            status.replica_recovery = None
            status.replication.errors.pop(replica, None)
            status.replication.roles[replica] = ReplicationRole.REPLICA

        await self.patcher.patch_status(cluster, finish)
        log.info("replica_recovered")
        await self.store.record_event(cluster, "Normal", "ReplicaRecovered", f"Replica '{replica}' recovered")
        return Outcome.requeue()

    async def _reprovision_volume(self, cluster: Cluster, ordinal: int, snapshot: Optional[VolumeSnapshot]) -> None:
        claim_name = cluster.volume_claim_name(ordinal)
        pod_name = cluster.pod_name(ordinal)

        for delete in (
            lambda: self.store.delete_volume_claim(cluster.namespace, claim_name),
            lambda: self.store.delete_pod(cluster.namespace, pod_name),
        ):
            try:
                await delete()
            except NotFoundError:
                pass

        async def claim_gone() -> bool:
            try:
                await self.store.get_volume_claim(cluster.namespace, claim_name)
            except NotFoundError:
                return True
            return False

        await poll_until(
            claim_gone,
            description=f"PersistentVolumeClaim '{claim_name}' terminated",
            timeout=self.config.volume_termination_timeout,
            interval=self.config.volume_termination_interval,
        )

        claim = builder.storage_volume_claim(cluster, ordinal, snapshot.name if snapshot else None)
        try:
            await self.store.create_volume_claim(claim)
        except ConflictError:
            logger.warning("volume_claim_already_recreated", cluster=cluster.key, claim=claim_name)

    async def _ensure_pod_initializing(self, cluster: Cluster, pod_name: str) -> None:
        try:
            pod = await self.store.get_pod(cluster.namespace, pod_name)
            if pod.initializing:
                return
            await self.store.delete_pod(cluster.namespace, pod_name)
        except NotFoundError:
            pass

        async def initializing() -> bool:
            try:
                pod = await self.store.get_pod(cluster.namespace, pod_name)
            except NotFoundError:
                return False
            if pod.initializing:
                return True
            if not pod.deleting:
                await self.store.delete_pod(cluster.namespace, pod_name)
            return False

        await poll_until(
            initializing,
            description=f"Pod '{pod_name}' initializing",
            timeout=self.config.pod_initializing_timeout,
            interval=self.config.pod_initializing_interval,
        )

    async def _init_job_complete(self, cluster: Cluster, ordinal: int) -> bool:
        try:
            job = await self.store.get_job(cluster.namespace, cluster.init_job_name(ordinal))
        except NotFoundError:
            return False
        return job.complete

    async def _is_pod_ready(self, cluster: Cluster, pod_name: str) -> bool:
        try:
            pod = await self.store.get_pod(cluster.namespace, pod_name)
        except NotFoundError:
            return False
        return pod.ready

    async def _set_recovered_and_cleanup(self, cluster: Cluster) -> None:
        ReplicaRecoveryStateMachine.validate_transition(
            ReplicaRecoveryState.RECOVERING, ReplicaRecoveryState.RECOVERED, cluster.key
        )
        now = self.clock()

        def recovered(status: ClusterStatus) -> None:
            conditions.set_replica_recovered(status, now)
            status.replica_recovery = None

        await self.patcher.patch_status(cluster, recovered)
        await self.seeder.cleanup(cluster, cluster.recovery_backup_name)
        logger.info("replica_recovery_completed", cluster=cluster.key)

    async def _reset(self, cluster: Cluster) -> None:
        def reset(status: ClusterStatus) -> None:
            status.remove_condition(ConditionType.REPLICA_RECOVERED)
            status.replica_recovery = None

        await self.patcher.patch_status(cluster, reset)
