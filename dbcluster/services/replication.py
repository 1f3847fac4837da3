"""
Replication topology.

Makes the recorded primary writable and points every other ready node at it.
Nodes that cannot be reached are left alone and retried on the next pass.
"""
from dbcluster.config.logging import get_logger
from dbcluster.config.reconciler import ReconcilerConfig
from dbcluster.core.patching import ClusterPatcher
from dbcluster.core.result import Outcome
from dbcluster.exceptions import DatabaseUnreachableError
from dbcluster.models.cluster import Cluster, ClusterStatus, ReplicationRole
from dbcluster.services.database_client import DatabaseClientFactory, node_host
from dbcluster.services.object_store import ObjectStore

logger = get_logger(__name__)


class ReplicationConfigurator:
    def __init__(
        self,
        store: ObjectStore,
        patcher: ClusterPatcher,
        db_clients: DatabaseClientFactory,
        config: ReconcilerConfig,
    ):
        self.store = store
        self.patcher = patcher
        self.db_clients = db_clients
        self.config = config

    async def reconcile(self, cluster: Cluster) -> Outcome:
        primary_index = cluster.status.current_primary_pod_index
        if not cluster.replication_enabled or primary_index is None:
            return Outcome.skip()
        if cluster.is_switching_primary or cluster.is_switchover_required:
            return Outcome.skip()

        pods = await self.store.list_pods(cluster.namespace, cluster.selector_labels())
        ready = {p.ordinal: p for p in pods if p.ready and p.ordinal is not None}
        roles = cluster.status.replication.roles

        if primary_index not in ready:
            return Outcome.proceed()

        primary = cluster.pod_name(primary_index)
        if roles.get(primary) != ReplicationRole.PRIMARY:
            await self.promote(cluster, primary_index)

        under_recovery = cluster.replica_under_recovery
        for ordinal in sorted(ready):
            node = cluster.pod_name(ordinal)
            if ordinal == primary_index or ordinal >= cluster.spec.replicas or node == under_recovery:
                continue
            if roles.get(node) == ReplicationRole.REPLICA:
                continue
            try:
                await self.configure_replica(cluster, ordinal)
            except DatabaseUnreachableError as e:
                logger.info("replica_configuration_deferred", cluster=cluster.key, node=node, error=str(e))
        return Outcome.proceed()

    async def promote(self, cluster: Cluster, ordinal: int) -> None:
        node = cluster.pod_name(ordinal)
        client = await self.db_clients(cluster, ordinal, self.config.database_client_timeout)
        try:
            await client.promote_to_primary()
        finally:
            await client.close()
        await self._set_role(cluster, node, ReplicationRole.PRIMARY)
        logger.info("primary_configured", cluster=cluster.key, node=node)

    async def configure_replica(self, cluster: Cluster, ordinal: int) -> None:
        """Point ``ordinal`` at the recorded primary."""
        primary_index = cluster.status.current_primary_pod_index
        node = cluster.pod_name(ordinal)
        client = await self.db_clients(cluster, ordinal, self.config.database_client_timeout)
        try:
            await client.replicate_from(node_host(cluster, primary_index), cluster.spec.port)
        finally:
            await client.close()
        await self._set_role(cluster, node, ReplicationRole.REPLICA)
        logger.info("replica_configured", cluster=cluster.key, node=node, primary=cluster.pod_name(primary_index))

    async def _set_role(self, cluster: Cluster, node: str, role: ReplicationRole) -> None:
        def mutate(status: ClusterStatus) -> None:
            status.replication.roles[node] = role

        await self.patcher.patch_status(cluster, mutate)
