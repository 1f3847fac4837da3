"""
Scale out of a replicated cluster.

New replicas are seeded from a fresh backup before they join, instead of
replicating the whole binary log history from the primary:

1. validate: a backup template is configured and the new ordinals have no
   leftover storage claims (otherwise ``ScaledOut=False/ScaleOutError``)
2. ``ScaledOut=False/ScalingOut`` and remember the first new ordinal
3. take an on-demand backup from the template and wait for it
4. provision the storage claims of the new ordinals, from the newest
   VolumeSnapshot when the backup is a snapshot
5. snapshot backups: grow the StatefulSet in one step. Other backups: run a
   restore Job per ordinal and grow the StatefulSet one Pod at a time
6. once every Pod is up, configure replication on the new nodes, then
   ``ScaledOut=True`` and delete the backup and the restore Jobs

Setting ``spec.replicas`` back to the current number of Pods rolls the
operation back at any point.
"""
from typing import Optional

from dbcluster.config.logging import get_logger
from dbcluster.config.reconciler import ReconcilerConfig
from dbcluster.core import conditions
from dbcluster.core.clock import Clock, utcnow
from dbcluster.core.patching import ClusterPatcher
from dbcluster.core.result import Outcome
from dbcluster.core.state_machine import ScaleOutState, ScaleOutStateMachine
from dbcluster.core.wait import poll_until
from dbcluster.exceptions import MissingBackupTemplateError, NotFoundError
from dbcluster.models.cluster import Cluster, ClusterStatus
from dbcluster.models.resources import StatefulSet, VolumeSnapshot
from dbcluster.services import builder
from dbcluster.services.backup import BackupSeeder
from dbcluster.services.object_store import ObjectStore
from dbcluster.services.replication import ReplicationConfigurator

logger = get_logger(__name__)


class ScaleOutCoordinator:
    def __init__(
        self,
        store: ObjectStore,
        patcher: ClusterPatcher,
        replication: ReplicationConfigurator,
        seeder: BackupSeeder,
        config: ReconcilerConfig,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.patcher = patcher
        self.replication = replication
        self.seeder = seeder
        self.config = config
        self.clock = clock

    @staticmethod
    def is_scaling_out(cluster: Cluster, sts: StatefulSet) -> bool:
        """Whether a scale out should start or continue."""
        if not cluster.replication_enabled or not cluster.has_configured_replication or sts.replicas == 0:
            return False
        if (
            cluster.is_switching_primary
            or cluster.is_switchover_required
            or cluster.is_recovering_replicas
            or cluster.is_restoring_backup
            or cluster.is_resizing_storage
            or cluster.is_updating
        ):
            return False
        if sts.replicas == cluster.spec.replicas:
            return False
        if cluster.is_scaling_out:
            return True
        return sts.replicas == sts.ready_replicas and sts.replicas < cluster.spec.replicas

    async def reconcile(self, cluster: Cluster) -> Outcome:
        if not cluster.replication_enabled:
            return Outcome.skip()

        sts = await self.store.get_stateful_set(cluster.namespace, cluster.name)
        if not self.is_scaling_out(cluster, sts):
            return await self._set_scaled_out_and_cleanup(cluster, sts)

        from_index = cluster.status.scale_out_initial_index
        if from_index is None:
            from_index = sts.replicas
        log = logger.bind(cluster=cluster.key, from_index=from_index, replicas=cluster.spec.replicas)

        if not cluster.is_scaling_out or cluster.has_scale_out_error:
            outcome = await self._reconcile_scale_out_error(cluster, from_index)
            if outcome is not None:
                return outcome

        state = ScaleOutStateMachine.current_state(cluster)
        ScaleOutStateMachine.validate_transition(state, ScaleOutState.SCALING_OUT, cluster.key)
        now = self.clock()

        def start(status: ClusterStatus) -> None:
            conditions.set_scaling_out(status, now)
            status.scale_out_initial_index = from_index

        await self.patcher.patch_status(cluster, start)

        backup = await self.seeder.reconcile_backup(cluster, cluster.scale_out_backup_name)
        if backup is None:
            return Outcome.requeue(self.config.short_requeue_interval)

        snapshot: Optional[VolumeSnapshot] = None
        if backup.uses_volume_snapshots:
            snapshot = await self.seeder.latest_snapshot(cluster, backup)
            if snapshot is None:
                log.info("volume_snapshot_not_ready", backup=backup.name)
                return Outcome.requeue(self.config.snapshot_requeue_interval)

        await self._reconcile_volume_claims(cluster, from_index, snapshot)

        if snapshot is not None:
            if sts.replicas < cluster.spec.replicas:
                await self.store.scale_stateful_set(cluster.namespace, cluster.name, cluster.spec.replicas)
                log.info("scale_out_upscaled", snapshot=snapshot.name)
            return Outcome.proceed()

        replicas = sts.replicas
        for ordinal in range(from_index, cluster.spec.replicas):
            if not await self.seeder.reconcile_init_job(cluster, ordinal, backup):
                log.debug("scale_out_restore_in_progress", ordinal=ordinal)
                return Outcome.requeue(self.config.short_requeue_interval)
            if replicas < ordinal + 1:
                replicas = ordinal + 1
                await self.store.scale_stateful_set(cluster.namespace, cluster.name, replicas)
                log.info("scale_out_upscaled", ordinal=ordinal)
            if not await self._is_pod_scheduled(cluster, ordinal):
                log.debug("scale_out_waiting_pod_scheduled", ordinal=ordinal)
                return Outcome.requeue(self.config.short_requeue_interval)
        return Outcome.proceed()

    async def _reconcile_scale_out_error(self, cluster: Cluster, from_index: int) -> Optional[Outcome]:
        if cluster.spec.replication.replica.bootstrap_from is None:
            message = MissingBackupTemplateError().message
        elif await self._volume_claims_exist(cluster, from_index):
            message = "storage PVCs already exist"
        else:
            return None

        state = ScaleOutStateMachine.current_state(cluster)
        ScaleOutStateMachine.validate_transition(state, ScaleOutState.ERROR, cluster.key)
        await self.store.record_event(cluster, "Warning", "ScaleOutError", f"Unable to scale out: {message}")
        now = self.clock()
        await self.patcher.patch_status(cluster, lambda status: conditions.set_scale_out_error(status, message, now))
        logger.warning("scale_out_error", cluster=cluster.key, error=message)
        return Outcome.requeue(self.config.scale_out_error_requeue_interval)

    async def _volume_claims_exist(self, cluster: Cluster, from_index: int) -> bool:
        for ordinal in range(from_index, cluster.spec.replicas):
            try:
                await self.store.get_volume_claim(cluster.namespace, cluster.volume_claim_name(ordinal))
                return True
            except NotFoundError:
                continue
        return False

    async def _reconcile_volume_claims(
        self, cluster: Cluster, from_index: int, snapshot: Optional[VolumeSnapshot]
    ) -> None:
        for ordinal in range(from_index, cluster.spec.replicas):
            name = cluster.volume_claim_name(ordinal)
            try:
                await self.store.get_volume_claim(cluster.namespace, name)
            except NotFoundError:
                await self.store.create_volume_claim(
                    builder.storage_volume_claim(cluster, ordinal, snapshot.name if snapshot else None)
                )

    async def _is_pod_scheduled(self, cluster: Cluster, ordinal: int) -> bool:
        try:
            pod = await self.store.get_pod(cluster.namespace, cluster.pod_name(ordinal))
        except NotFoundError:
            return False
        return pod.scheduled

    async def _set_scaled_out_and_cleanup(self, cluster: Cluster, sts: StatefulSet) -> Outcome:
        if not cluster.is_scaling_out and not cluster.has_scale_out_error:
            return Outcome.proceed()

        from_index = cluster.status.scale_out_initial_index
        if from_index is not None:
            if sts.ready_replicas < sts.replicas:
                logger.debug("scale_out_waiting_ready", cluster=cluster.key, ready_replicas=sts.ready_replicas)
                return Outcome.requeue(self.config.short_requeue_interval)

            for ordinal in range(from_index, cluster.spec.replicas):
                await self._ensure_replication_configured(cluster, ordinal)

            def clear_index(status: ClusterStatus) -> None:
                status.scale_out_initial_index = None

            await self.patcher.patch_status(cluster, clear_index)
            return Outcome.requeue()

        state = ScaleOutStateMachine.current_state(cluster)
        ScaleOutStateMachine.validate_transition(state, ScaleOutState.SCALED_OUT, cluster.key)
        now = self.clock()

        def scaled_out(status: ClusterStatus) -> None:
            conditions.set_scaled_out(status, now)
            status.scale_out_initial_index = None

        await self.patcher.patch_status(cluster, scaled_out)
        await self.seeder.cleanup(cluster, cluster.scale_out_backup_name)
        logger.info("scaled_out", cluster=cluster.key, replicas=cluster.spec.replicas)
        return Outcome.proceed()

    async def _ensure_replication_configured(self, cluster: Cluster, ordinal: int) -> None:
        async def configured() -> bool:
            await self.replication.configure_replica(cluster, ordinal)
            return True

        await poll_until(
            configured,
            description=f"replication configured on '{cluster.pod_name(ordinal)}'",
            timeout=self.config.replication_configured_timeout,
            interval=self.config.poll_interval,
        )
