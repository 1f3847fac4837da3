"""
Cluster reconciler.

Wires the controllers into the phase pipeline and runs one pass per call.
The phase order is declared once, in ``_phases``.
"""
from datetime import timedelta
from typing import List, Optional

import structlog

from dbcluster.config.logging import get_logger
from dbcluster.config.reconciler import ReconcilerConfig
from dbcluster.core.clock import Clock, utcnow
from dbcluster.core.patching import ClusterPatcher
from dbcluster.core.phases import Phase, PhaseScheduler
from dbcluster.core.result import Outcome
from dbcluster.exceptions import NotFoundError
from dbcluster.models.cluster import Cluster
from dbcluster.services.backup import BackupSeeder
from dbcluster.services.database_client import DatabaseClientFactory
from dbcluster.services.failover import PrimaryFailoverController
from dbcluster.services.object_store import ObjectStore
from dbcluster.services.replica_recovery import ReplicaRecoveryController
from dbcluster.services.replication import ReplicationConfigurator
from dbcluster.services.scale_out import ScaleOutCoordinator
from dbcluster.services.status import StatusReconciler
from dbcluster.services.storage import StorageResizeCoordinator
from dbcluster.services.workload import WorkloadReconciler

logger = get_logger(__name__)


class ClusterReconciler:
    """
    Reconciles one cluster object per call.

    All controllers share the same object store, patcher, database client
    factory, configuration and clock, so tests can swap any of them for
    fakes in one place.
    """

    def __init__(
        self,
        store: ObjectStore,
        db_clients: DatabaseClientFactory,
        config: Optional[ReconcilerConfig] = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.config = config or ReconcilerConfig()
        self.clock = clock
        self.patcher = ClusterPatcher(store, conflict_retries=self.config.conflict_retries)

        seeder = BackupSeeder(store, clock)
        self.replication = ReplicationConfigurator(store, self.patcher, db_clients, self.config)
        self.workload = WorkloadReconciler(store, self.patcher, self.config, clock)
        self.status = StatusReconciler(store, self.patcher, db_clients, self.config, clock)
        self.storage = StorageResizeCoordinator(store, self.patcher, self.config, clock)
        self.failover = PrimaryFailoverController(store, self.patcher, db_clients, self.config, clock)
        self.scale_out = ScaleOutCoordinator(store, self.patcher, self.replication, seeder, self.config, clock)
        self.replica_recovery = ReplicaRecoveryController(
            store, self.patcher, db_clients, self.replication, seeder, self.config, clock
        )

        self.scheduler = PhaseScheduler(
            self._phases(),
            self.patcher,
            clock=clock,
            resync_after=self.resync_after,
        )

    def _phases(self) -> List[Phase]:
        return [
            Phase("Spec", self.workload.reconcile_spec),
            Phase("Status", self.status.reconcile),
            Phase("Suspend", self.workload.reconcile_suspend),
            Phase("Storage", self.storage.reconcile),
            Phase("Workload", self.workload.reconcile),
            Phase("Replication", self.replication.reconcile),
            Phase("Failover", self.failover.reconcile),
            Phase("ScaleOut", self.scale_out.reconcile),
            Phase("ReplicaRecovery", self.replica_recovery.reconcile),
        ]

    def resync_after(self, cluster: Cluster) -> Optional[timedelta]:
        """Long requeue used to notice drift the watch would not report."""
        if cluster.replication_enabled or cluster.spec.tls_enabled:
            return self.config.default_requeue_interval
        return None

    async def reconcile(self, namespace: str, name: str) -> Outcome:
        """
        Run one pass for ``namespace/name``.

        A cluster that no longer exists needs nothing and returns PROCEED.

        Raises:
            ReconcileError: If a phase failed
        """
        structlog.contextvars.bind_contextvars(cluster=name, namespace=namespace)
        try:
            try:
                cluster = await self.store.get_cluster(namespace, name)
            except NotFoundError:
                logger.debug("cluster_gone")
                return Outcome.proceed()

            outcome = await self.scheduler.run(cluster)
            logger.debug("reconcile_pass_finished", outcome=str(outcome))
            return outcome
        finally:
            structlog.contextvars.unbind_contextvars("cluster", "namespace")
