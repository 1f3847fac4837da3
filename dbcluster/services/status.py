"""
Status phase: observe the workload and the replication topology.

Roles and replica errors are probed on every node, then merged into the
recorded status. A node that cannot be probed keeps whatever was recorded
for it, so a flapping network never erases the evidence the replica
recovery controller relies on.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from dbcluster.config.logging import get_logger
from dbcluster.config.reconciler import ReconcilerConfig
from dbcluster.core import conditions
from dbcluster.core.clock import Clock, utcnow
from dbcluster.core.patching import ClusterPatcher
from dbcluster.core.result import Outcome
from dbcluster.exceptions import DatabaseApplicationError, DatabaseClientError, NotFoundError
from dbcluster.models.cluster import Cluster, ClusterStatus, ReplicaErrorRecord, ReplicationRole
from dbcluster.models.resources import Pod, StatefulSet, pod_ordinal
from dbcluster.services.database_client import DatabaseClientFactory, ReplicaErrors
from dbcluster.services.object_store import ObjectStore

logger = get_logger(__name__)


@dataclass
class NodeProbe:
    """What a single probe learned about a node. None means unknown."""

    role: Optional[ReplicationRole] = None
    errors: Optional[ReplicaErrors] = None


def merge_replica_error(
    previous: Optional[ReplicaErrorRecord],
    observed: Optional[ReplicaErrors],
    now: datetime,
) -> Optional[ReplicaErrorRecord]:
    """
    Merge a probe result into the recorded replica error.

    - unknown (unreachable node or failed probe): keep the previous record
    - healthy: clear the record
    - same codes as before: keep the record and its transition time
    - new or changed codes: start a new record at ``now``
    """
    if observed is None:
        return previous
    if observed.healthy:
        return None
    if previous is not None and previous.same_error(observed.io_errno, observed.sql_errno):
        return previous
    return ReplicaErrorRecord(
        io_error_code=observed.io_errno,
        sql_error_code=observed.sql_errno,
        last_transition_time=now,
    )


class StatusReconciler:
    """Refreshes replicas, primary and replication status."""

    def __init__(
        self,
        store: ObjectStore,
        patcher: ClusterPatcher,
        db_clients: DatabaseClientFactory,
        config: ReconcilerConfig,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.patcher = patcher
        self.db_clients = db_clients
        self.config = config
        self.clock = clock

    async def reconcile(self, cluster: Cluster) -> Outcome:
        try:
            sts: Optional[StatefulSet] = await self.store.get_stateful_set(cluster.namespace, cluster.name)
        except NotFoundError:
            sts = None

        probes: Dict[str, NodeProbe] = {}
        if sts is not None and cluster.replication_enabled:
            pods = await self.store.list_pods(cluster.namespace, cluster.selector_labels())
            probes = await self._probe_nodes(cluster, pods)

        now = self.clock()

        def mutate(status: ClusterStatus) -> None:
            status.replicas = sts.ready_replicas if sts else 0
            if cluster.replication_enabled:
                if status.current_primary_pod_index is None:
                    status.current_primary_pod_index = cluster.spec.replication.primary.pod_index or 0
                status.current_primary = cluster.pod_name(status.current_primary_pod_index)
                self._merge_replication(cluster, status, probes, now)

            if sts is not None and sts.ready_replicas == cluster.spec.replicas:
                conditions.set_ready_healthy(status, now)
            else:
                conditions.set_ready_not_ready(status, "Not ready", now)

        await self.patcher.patch_status(cluster, mutate)
        return Outcome.proceed()

    def _merge_replication(
        self, cluster: Cluster, status: ClusterStatus, probes: Dict[str, NodeProbe], now: datetime
    ) -> None:
        replication = status.replication
        under_recovery = status.replica_recovery.replica if status.replica_recovery else None

        for node, probe in probes.items():
            if node == under_recovery:
                replication.roles[node] = ReplicationRole.CONFIGURING
            elif probe.role is not None:
                replication.roles[node] = probe.role

            merged = merge_replica_error(replication.errors.get(node), probe.errors, now)
            if merged is None:
                replication.errors.pop(node, None)
            else:
                replication.errors[node] = merged

        for mapping in (replication.roles, replication.errors):
            for node in list(mapping):
                ordinal = pod_ordinal(node)
                if ordinal is None or ordinal >= cluster.spec.replicas:
                    del mapping[node]

    async def _probe_nodes(self, cluster: Cluster, pods: List[Pod]) -> Dict[str, NodeProbe]:
        probes: Dict[str, NodeProbe] = {}
        for pod in sorted(pods, key=lambda p: p.ordinal if p.ordinal is not None else -1):
            if pod.ordinal is None or pod.ordinal >= cluster.spec.replicas:
                continue
            if not pod.ready:
                probes[pod.name] = NodeProbe()
                continue
            probes[pod.name] = await self._probe(cluster, pod)
        return probes

    async def _probe(self, cluster: Cluster, pod: Pod) -> NodeProbe:
        probe = NodeProbe()
        client = await self.db_clients(cluster, pod.ordinal, self.config.database_client_timeout)
        try:
            if await client.is_replica():
                probe.role = ReplicationRole.REPLICA
                probe.errors = await client.replica_errors()
            elif await client.has_connected_replicas():
                probe.role = ReplicationRole.PRIMARY
                probe.errors = ReplicaErrors()
            else:
                probe.role = ReplicationRole.NOT_CONFIGURED
                probe.errors = ReplicaErrors()
        except DatabaseApplicationError as e:
            logger.warning("node_probe_failed", cluster=cluster.key, node=pod.name, error=str(e))
        except DatabaseClientError as e:
            logger.info("node_unreachable", cluster=cluster.key, node=pod.name, error=str(e))
        finally:
            await client.close()
        return probe
