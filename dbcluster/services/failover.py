"""
Primary failover.

Watches the recorded primary and, when it stays not ready for longer than
the configured delay, commits the most up to date replica as the new desired
primary. The switch itself (promotion and re-pointing the replicas) runs on
the following passes, the same way a manual switchover does.

States are derived from status on every pass:

- HEALTHY: primary ready, nothing recorded
- FAILING: ``status.primaryFailingSince`` is set
- SWITCHING: ``PrimarySwitched=False`` or spec and status primaries differ
"""
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from dbcluster.config.logging import get_logger
from dbcluster.config.reconciler import ReconcilerConfig
from dbcluster.core import conditions
from dbcluster.core.clock import Clock, utcnow
from dbcluster.core.patching import ClusterPatcher
from dbcluster.core.result import Outcome
from dbcluster.core.state_machine import FailoverState, FailoverStateMachine
from dbcluster.exceptions import (
    ClusterOperatorException,
    DatabaseClientError,
    DatabaseUnreachableError,
    MultiError,
    NoPromotionCandidateError,
    NotFoundError,
)
from dbcluster.models.cluster import Cluster, ClusterSpec, ClusterStatus, ReplicationRole
from dbcluster.models.resources import Pod
from dbcluster.services.database_client import DatabaseClientFactory, ReplicaStatus, node_host
from dbcluster.services.object_store import ObjectStore
from dbcluster.utils.gtid import Gtid, parse_position

logger = get_logger(__name__)


class PrimaryFailoverController:
    """Detects a failed primary and drives the switch to a new one."""

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
        if not cluster.replication_enabled or cluster.is_suspended:
            return Outcome.skip()
        # An external proxy owns primary selection.
        if cluster.max_scale_enabled:
            return Outcome.skip()
        if cluster.status.current_primary_pod_index is None:
            return Outcome.skip()

        if cluster.is_switching_primary or cluster.is_switchover_required:
            return await self._switchover(cluster)
        if not self._should_detect_failure(cluster):
            return Outcome.skip()
        return await self._reconcile_failover(cluster)

    def _should_detect_failure(self, cluster: Cluster) -> bool:
        if not cluster.spec.replication.primary.automatic_failover:
            return False
        if (
            cluster.is_restoring_backup
            or cluster.is_resizing_storage
            or cluster.is_scaling_out
            or cluster.is_recovering_replicas
        ):
            return False
        if cluster.spec.replicas <= 1:
            return False
        roles = cluster.status.replication.roles.values()
        return any(role == ReplicationRole.REPLICA for role in roles)

    def failover_delay(self, cluster: Cluster) -> timedelta:
        delay = cluster.spec.replication.primary.automatic_failover_delay
        return delay if delay is not None else self.config.automatic_failover_delay

    async def _reconcile_failover(self, cluster: Cluster) -> Outcome:
        state = FailoverStateMachine.current_state(cluster)
        primary_index = cluster.status.current_primary_pod_index

        if await self._is_pod_ready(cluster, primary_index):
            if state == FailoverState.FAILING:
                FailoverStateMachine.validate_transition(state, FailoverState.HEALTHY, cluster.key)
                await self.patcher.patch_status(cluster, _clear_failing_since)
                logger.info("primary_recovered", cluster=cluster.key, primary=cluster.status.current_primary)
            return Outcome.proceed()

        now = self.clock()
        if state == FailoverState.HEALTHY:
            FailoverStateMachine.validate_transition(state, FailoverState.FAILING, cluster.key)

            def mark_failing(status: ClusterStatus) -> None:
                if status.primary_failing_since is None:
                    status.primary_failing_since = now

            await self.patcher.patch_status(cluster, mark_failing)
            logger.warning("primary_not_ready", cluster=cluster.key, primary=cluster.status.current_primary)
            state = FailoverState.FAILING

        since = cluster.status.primary_failing_since or now
        delay = self.failover_delay(cluster)
        elapsed = now - since
        if elapsed < delay:
            logger.debug(
                "failover_delayed",
                cluster=cluster.key,
                remaining_seconds=(delay - elapsed).total_seconds(),
            )
            return Outcome.requeue(delay - elapsed)

        candidate = await self.select_candidate(cluster)
        FailoverStateMachine.validate_transition(state, FailoverState.SWITCHING, cluster.key)
        await self._commit(cluster, candidate)
        return Outcome.requeue()

    async def _commit(self, cluster: Cluster, candidate: int) -> None:
        previous = cluster.status.current_primary
        new_primary = cluster.pod_name(candidate)
        now = self.clock()
        errors: List[BaseException] = []

        def set_pod_index(spec: ClusterSpec) -> None:
            spec.replication.primary.pod_index = candidate

        def start_switch(status: ClusterStatus) -> None:
            conditions.set_primary_switching(status, new_primary, now)
            status.primary_failing_since = None

        try:
            await self.patcher.patch_spec(cluster, set_pod_index)
        except ClusterOperatorException as e:
            errors.append(e)
        try:
            await self.patcher.patch_status(cluster, start_switch)
        except ClusterOperatorException as e:
            errors.append(e)
        MultiError.raise_if_any(errors)

        logger.warning(
            "primary_failover_committed",
            cluster=cluster.key,
            from_primary=previous,
            to_primary=new_primary,
        )
        await self.store.record_event(
            cluster,
            "Warning",
            "PrimaryFailover",
            f"Primary '{previous}' not ready, failing over to '{new_primary}'",
        )

    async def select_candidate(self, cluster: Cluster) -> int:
        """
        Pick the replica to promote.

        Replicas that are not ready, under recovery, unreachable, not
        replicating or still applying relay log events are skipped, as are
        those without a replication position. The highest GTID sequence
        wins; on a tie the lowest ordinal wins.

        Raises:
            NoPromotionCandidateError: If no replica can be promoted
        """
        primary_index = cluster.status.current_primary_pod_index
        under_recovery = cluster.replica_under_recovery
        pods = await self.store.list_pods(cluster.namespace, cluster.selector_labels())

        skipped: Dict[str, str] = {}
        best: Optional[Tuple[int, Gtid]] = None

        for pod in sorted(pods, key=lambda p: p.ordinal if p.ordinal is not None else -1):
            ordinal = pod.ordinal
            if ordinal is None or ordinal == primary_index or ordinal >= cluster.spec.replicas:
                continue
            if not pod.ready or pod.deleting:
                skipped[pod.name] = "not ready"
                continue
            if pod.name == under_recovery:
                skipped[pod.name] = "under recovery"
                continue

            client = await self.db_clients(cluster, ordinal, self.config.database_client_timeout)
            try:
                replica = await client.replica_status()
                domain_id = await client.gtid_domain_id()
                position = await client.replication_position()
            except DatabaseClientError as e:
                skipped[pod.name] = str(e)
                continue
            finally:
                await client.close()

            try:
                reason = _replica_unfit(replica, position, domain_id)
                gtid = parse_position(position, domain_id)
            except ValueError as e:
                skipped[pod.name] = str(e)
                continue
            if reason is None and gtid is None:
                reason = "no replication position"
            if reason is None and best is not None and gtid.domain_id != best[1].domain_id:
                reason = f"GTID domain {gtid.domain_id} differs from {best[1].domain_id}"
            if reason is not None:
                skipped[pod.name] = reason
                continue

            if best is None or gtid.greater_than(best[1]):
                best = (ordinal, gtid)

        if best is None:
            logger.error("no_promotion_candidate", cluster=cluster.key, skipped=skipped)
            raise NoPromotionCandidateError(cluster.key, skipped)

        logger.info(
            "promotion_candidate_selected",
            cluster=cluster.key,
            candidate=cluster.pod_name(best[0]),
            gtid=str(best[1]),
            skipped=skipped,
        )
        return best[0]

    async def _switchover(self, cluster: Cluster) -> Outcome:
        new_index = cluster.spec.replication.primary.pod_index
        if new_index is None:
            return Outcome.skip()
        new_primary = cluster.pod_name(new_index)
        previous = cluster.status.current_primary
        previous_index = cluster.status.current_primary_pod_index
        now = self.clock()

        def start_switch(status: ClusterStatus) -> None:
            status.primary_failing_since = None
            conditions.set_primary_switching(status, new_primary, now)

        await self.patcher.patch_status(cluster, start_switch)

        pods = await self.store.list_pods(cluster.namespace, cluster.selector_labels())
        ready = {p.ordinal: p for p in pods if p.ready and not p.deleting and p.ordinal is not None}
        if new_index not in ready:
            logger.info("switchover_waiting_for_primary", cluster=cluster.key, primary=new_primary)
            return Outcome.requeue(self.config.short_requeue_interval)

        client = await self.db_clients(cluster, new_index, self.config.database_client_timeout)
        try:
            await client.promote_to_primary()
        finally:
            await client.close()

        replicas = await self._repoint_replicas(cluster, new_index, ready)

        FailoverStateMachine.validate_transition(FailoverState.SWITCHING, FailoverState.HEALTHY, cluster.key)

        def finish_switch(status: ClusterStatus) -> None:
            status.current_primary_pod_index = new_index
            status.current_primary = new_primary
            status.primary_failing_since = None
            status.replication.roles[new_primary] = ReplicationRole.PRIMARY
            for node in replicas:
                status.replication.roles[node] = ReplicationRole.REPLICA
            if previous_index is not None and previous_index != new_index:
                # The old primary rejoins through the replication phase once it is back.
                previous_node = cluster.pod_name(previous_index)
                if previous_node not in replicas:
                    status.replication.roles[previous_node] = ReplicationRole.NOT_CONFIGURED
            conditions.set_primary_switched(status, new_primary, now)

        await self.patcher.patch_status(cluster, finish_switch)
        logger.info("primary_switched", cluster=cluster.key, from_primary=previous, to_primary=new_primary)
        await self.store.record_event(
            cluster, "Normal", "PrimarySwitched", f"Primary switched from '{previous}' to '{new_primary}'"
        )
        return Outcome.proceed()

    async def _repoint_replicas(self, cluster: Cluster, new_index: int, ready: Dict[int, Pod]) -> List[str]:
        under_recovery = cluster.replica_under_recovery
        host = node_host(cluster, new_index)
        replicas: List[str] = []
        for ordinal in sorted(ready):
            node = cluster.pod_name(ordinal)
            if ordinal == new_index or ordinal >= cluster.spec.replicas or node == under_recovery:
                continue
            client = await self.db_clients(cluster, ordinal, self.config.database_client_timeout)
            try:
                await client.replicate_from(host, cluster.spec.port)
                replicas.append(node)
            except DatabaseUnreachableError as e:
                logger.info("replica_repoint_deferred", cluster=cluster.key, node=node, error=str(e))
            finally:
                await client.close()
        return replicas

    async def _is_pod_ready(self, cluster: Cluster, ordinal: int) -> bool:
        try:
            pod = await self.store.get_pod(cluster.namespace, cluster.pod_name(ordinal))
        except NotFoundError:
            return False
        return pod.ready and not pod.deleting


def _clear_failing_since(status: ClusterStatus) -> None:
    status.primary_failing_since = None


def _replica_unfit(replica: Optional[ReplicaStatus], position: Optional[str], domain_id: int) -> Optional[str]:
    """Why a replica cannot be promoted, or None when it can."""
    if replica is None:
        return "replication not configured"
    if not replica.io_running:
        return "IO thread not running"
    if not replica.sql_running:
        return "SQL thread not running"
    received = parse_position(replica.io_position, domain_id)
    applied = parse_position(position, domain_id)
    # Events received from the old primary but not yet applied would be lost.
    if received is not None and (applied is None or received.greater_than(applied)):
        return "relay log events pending"
    return None
