"""
Seeding replicas from backups.

Scale-out and replica recovery both bootstrap new data the same way: take an
on-demand backup from the template referenced in
``replication.replica.bootstrapFrom``, then either provision the storage claim
from its newest VolumeSnapshot or run a restore Job into the claim.
"""
from typing import Optional

from dbcluster.config.logging import get_logger
from dbcluster.core.clock import Clock, utcnow
from dbcluster.exceptions import MissingBackupTemplateError, NotFoundError
from dbcluster.models.cluster import Cluster
from dbcluster.models.resources import BackupArtifact, VolumeSnapshot
from dbcluster.services import builder
from dbcluster.services.object_store import ObjectStore

logger = get_logger(__name__)

BACKUP_NAME_LABEL = "dbcluster.io/physicalbackup"


class BackupSeeder:
    """Creates, awaits and cleans up the backups and Jobs used to seed replicas."""

    def __init__(self, store: ObjectStore, clock: Clock = utcnow):
        self.store = store
        self.clock = clock

    async def reconcile_backup(self, cluster: Cluster, name: str) -> Optional[BackupArtifact]:
        """
        Ensure the on-demand backup ``name`` exists and is complete.

        Returns:
            The complete backup, or None while it is still being taken

        Raises:
            MissingBackupTemplateError: If the cluster has no backup template
        """
        bootstrap_from = cluster.spec.replication.replica.bootstrap_from
        if bootstrap_from is None:
            raise MissingBackupTemplateError()

        try:
            backup = await self.store.get_backup(cluster.namespace, name)
        except NotFoundError:
            template = await self.store.get_backup(cluster.namespace, bootstrap_from.backup_template_ref)
            await self.store.create_backup(builder.backup_from_template(cluster, template, name))
            logger.info(
                "backup_created_from_template",
                cluster=cluster.key,
                backup=name,
                template=template.name,
            )
            return None

        if not backup.is_complete():
            logger.debug("backup_not_complete", cluster=cluster.key, backup=name)
            return None
        return backup

    async def latest_snapshot(self, cluster: Cluster, backup: BackupArtifact) -> Optional[VolumeSnapshot]:
        """Newest ready VolumeSnapshot taken by ``backup``."""
        snapshots = await self.store.list_volume_snapshots(cluster.namespace, {BACKUP_NAME_LABEL: backup.name})
        ready = [s for s in snapshots if s.ready]
        if not ready:
            return None
        ready.sort(key=lambda s: s.created_at, reverse=True)
        return ready[0]

    async def reconcile_init_job(self, cluster: Cluster, ordinal: int, backup: BackupArtifact) -> bool:
        """
        Ensure the restore Job for ``ordinal`` exists.

        Returns:
            True once the Job has completed
        """
        name = cluster.init_job_name(ordinal)
        try:
            job = await self.store.get_job(cluster.namespace, name)
        except NotFoundError:
            await self.store.create_job(builder.restore_job(cluster, ordinal, backup, self.clock()))
            logger.info("restore_job_created", cluster=cluster.key, job=name, backup=backup.name)
            return False

        if job.failed:
            logger.warning("restore_job_failed", cluster=cluster.key, job=name)
        return job.complete

    async def cleanup(self, cluster: Cluster, backup_name: str) -> None:
        """Delete the on-demand backup and every restore Job of the cluster."""
        try:
            await self.store.delete_backup(cluster.namespace, backup_name)
            logger.info("transient_backup_deleted", cluster=cluster.key, backup=backup_name)
        except NotFoundError:
            pass

        for job in await self.store.list_jobs(cluster.namespace, builder.init_job_labels(cluster)):
            try:
                await self.store.delete_job(cluster.namespace, job.name)
            except NotFoundError:
                pass
