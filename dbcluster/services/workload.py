"""
Spec defaults, suspension and the StatefulSet itself.
"""
from dbcluster.config.logging import get_logger
from dbcluster.config.reconciler import ReconcilerConfig
from dbcluster.core import conditions
from dbcluster.core.clock import Clock, utcnow
from dbcluster.core.patching import ClusterPatcher
from dbcluster.core.result import Outcome
from dbcluster.exceptions import NotFoundError
from dbcluster.models.cluster import Cluster, ClusterSpec
from dbcluster.services import builder
from dbcluster.services.object_store import ObjectStore

logger = get_logger(__name__)


class WorkloadReconciler:
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

    async def reconcile_spec(self, cluster: Cluster) -> Outcome:
        """Write computed defaults back into the spec."""
        if not cluster.replication_enabled or cluster.spec.replication.primary.pod_index is not None:
            return Outcome.skip()

        def mutate(spec: ClusterSpec) -> None:
            if spec.replication.primary.pod_index is None:
                spec.replication.primary.pod_index = 0

        await self.patcher.patch_spec(cluster, mutate)
        logger.info("spec_defaults_applied", cluster=cluster.key, primary_pod_index=0)
        return Outcome.proceed()

    async def reconcile_suspend(self, cluster: Cluster) -> Outcome:
        if not cluster.is_suspended:
            return Outcome.skip()
        now = self.clock()
        await self.patcher.patch_status(cluster, lambda status: conditions.set_ready_suspended(status, now))
        logger.info("cluster_suspended", cluster=cluster.key)
        return Outcome.requeue(self.config.suspend_requeue_interval)

    async def reconcile(self, cluster: Cluster) -> Outcome:
        """
        Create the StatefulSet or converge its replica count.

        Growing a replicated cluster that already has data is left to the
        scale out coordinator, which seeds the new nodes first.
        """
        if cluster.is_resizing_storage:
            return Outcome.skip()

        try:
            sts = await self.store.get_stateful_set(cluster.namespace, cluster.name)
        except NotFoundError:
            await self.store.create_stateful_set(builder.stateful_set(cluster, cluster.spec.replicas))
            return Outcome.proceed()

        desired = cluster.spec.replicas
        if sts.replicas == desired:
            return Outcome.proceed()
        if sts.replicas < desired and cluster.replication_enabled and sts.replicas > 0:
            return Outcome.proceed()

        await self.store.scale_stateful_set(cluster.namespace, cluster.name, desired)
        logger.info("workload_scaled", cluster=cluster.key, from_replicas=sts.replicas, to_replicas=desired)
        return Outcome.proceed()
