"""
Storage resize.

StatefulSet volume claim templates are immutable, so growing storage means:

1. ``StorageResized=False/StorageResizing``
2. patch every storage PVC to the new size (when resizing in use volumes)
3. delete the StatefulSet orphaning its Pods, recreate it with the new template
4. ``StorageResized=False/WaitingStorageResize``
5. wait for the PVCs to finish resizing and the Pods to be ready
6. ``StorageResized=True/StorageResized``

The waiting stage is persisted so a restarted operator goes straight back to
waiting instead of recreating the StatefulSet again.
"""
from dbcluster.config.logging import get_logger
from dbcluster.config.reconciler import ReconcilerConfig
from dbcluster.core import conditions
from dbcluster.core.clock import Clock, utcnow
from dbcluster.core.patching import ClusterPatcher
from dbcluster.core.result import Outcome
from dbcluster.core.state_machine import StorageResizeState, StorageResizeStateMachine
from dbcluster.core.wait import poll_until
from dbcluster.exceptions import NotFoundError, StorageShrinkError, ValidationError
from dbcluster.models.cluster import Cluster, ClusterStatus
from dbcluster.services import builder
from dbcluster.services.object_store import ObjectStore
from dbcluster.utils.quantity import compare_quantities

logger = get_logger(__name__)


class StorageResizeCoordinator:
    def __init__(
        self,
        store: ObjectStore,
        patcher: ClusterPatcher,
        config: ReconcilerConfig,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.patcher = patcher
        self.config = config
        self.clock = clock

    @staticmethod
    def should_reconcile(cluster: Cluster) -> bool:
        return not (
            cluster.is_restoring_backup
            or cluster.is_updating
            or cluster.is_switching_primary
            or cluster.is_multi_master_not_ready
        )

    async def reconcile(self, cluster: Cluster) -> Outcome:
        if not self.should_reconcile(cluster):
            return Outcome.skip()
        if cluster.is_waiting_for_storage_resize:
            return await self._wait_for_resize(cluster)

        try:
            sts = await self.store.get_stateful_set(cluster.namespace, cluster.name)
        except NotFoundError:
            if not cluster.is_resizing_storage:
                raise
            # Interrupted between deleting and recreating the StatefulSet.
            await self.store.create_stateful_set(builder.stateful_set(cluster, cluster.spec.replicas))
            return await self._set_waiting(cluster)
        existing = sts.storage_size
        desired = cluster.spec.storage.size
        if not existing:
            raise ValidationError(f"StatefulSet '{sts.name}' has no storage size")

        try:
            cmp = compare_quantities(desired, existing)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        if cmp == 0:
            if cluster.is_resizing_storage:
                # Interrupted after recreating the StatefulSet but before waiting was recorded.
                return await self._set_waiting(cluster)
            if cluster.status.storage_size != existing:
                await self.patcher.patch_status(cluster, _set_storage_size(existing))
            return Outcome.proceed()
        if cmp < 0:
            raise StorageShrinkError(existing, desired)

        state = StorageResizeStateMachine.current_state(cluster)
        StorageResizeStateMachine.validate_transition(state, StorageResizeState.RESIZING, cluster.key)
        now = self.clock()
        await self.patcher.patch_status(cluster, lambda status: conditions.set_storage_resizing(status, now))
        logger.info("storage_resize_started", cluster=cluster.key, existing_size=existing, desired_size=desired)

        if cluster.spec.storage.resize_in_use_volumes:
            for claim in await self.store.list_volume_claims(cluster.namespace, cluster.selector_labels()):
                if compare_quantities(claim.storage_request, desired) < 0:
                    await self.store.resize_volume_claim(cluster.namespace, claim.name, desired)

        await self._recreate_stateful_set(cluster)
        return await self._set_waiting(cluster)

    async def _set_waiting(self, cluster: Cluster) -> Outcome:
        StorageResizeStateMachine.validate_transition(
            StorageResizeState.RESIZING, StorageResizeState.WAITING, cluster.key
        )
        now = self.clock()
        await self.patcher.patch_status(cluster, lambda status: conditions.set_waiting_storage_resize(status, now))
        return await self._wait_for_resize(cluster)

    async def _recreate_stateful_set(self, cluster: Cluster) -> None:
        await self.store.delete_stateful_set(cluster.namespace, cluster.name, orphan=True)

        async def deleted() -> bool:
            try:
                await self.store.get_stateful_set(cluster.namespace, cluster.name)
            except NotFoundError:
                return True
            return False

        await poll_until(
            deleted,
            description=f"StatefulSet '{cluster.name}' deleted",
            timeout=self.config.workload_deletion_timeout,
            interval=self.config.workload_deletion_interval,
        )
        await self.store.create_stateful_set(builder.stateful_set(cluster, cluster.spec.replicas))

    async def _wait_for_resize(self, cluster: Cluster) -> Outcome:
        storage = cluster.spec.storage
        if storage.resize_in_use_volumes and storage.wait_for_volume_resize:
            for claim in await self.store.list_volume_claims(cluster.namespace, cluster.selector_labels()):
                if claim.resizing:
                    logger.debug("waiting_for_volume_claim_resize", cluster=cluster.key, claim=claim.name)
                    return Outcome.requeue(self.config.short_requeue_interval)

        sts = await self.store.get_stateful_set(cluster.namespace, cluster.name)
        if sts.ready_replicas != cluster.spec.replicas:
            logger.debug(
                "waiting_for_stateful_set_ready",
                cluster=cluster.key,
                ready_replicas=sts.ready_replicas,
                expected_replicas=cluster.spec.replicas,
            )
            return Outcome.requeue(self.config.short_requeue_interval)

        StorageResizeStateMachine.validate_transition(
            StorageResizeState.WAITING, StorageResizeState.RESIZED, cluster.key
        )
        now = self.clock()
        size = storage.size

        def resized(status: ClusterStatus) -> None:
            conditions.set_storage_resized(status, now)
            status.storage_size = size

        await self.patcher.patch_status(cluster, resized)
        logger.info("storage_resized", cluster=cluster.key, size=size)
        return Outcome.proceed()


def _set_storage_size(size: str):
    def mutate(status: ClusterStatus) -> None:
        status.storage_size = size

    return mutate
