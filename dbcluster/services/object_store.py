"""
Object store contract consumed by the reconciler.

The production implementation talks to the Kubernetes API server
(see kubernetes_store.py); tests use an in-memory fake. Every method raises
NotFoundError for missing objects and ConflictError when a resourceVersion
precondition fails or an object already exists.
"""
from typing import Any, Dict, List, Optional, Protocol

from dbcluster.models.cluster import Cluster
from dbcluster.models.resources import (
    BackupArtifact,
    Job,
    Pod,
    StatefulSet,
    VolumeClaim,
    VolumeSnapshot,
)


class ObjectStore(Protocol):
    # Clusters

    async def get_cluster(self, namespace: str, name: str) -> Cluster: ...

    async def list_clusters(self, namespace: Optional[str] = None) -> List[Cluster]: ...

    async def patch_cluster(
        self, namespace: str, name: str, patch: Dict[str, Any], resource_version: Optional[str]
    ) -> Cluster:
        """Merge-patch the cluster object (spec and metadata)."""
        ...

    async def patch_cluster_status(
        self, namespace: str, name: str, patch: Dict[str, Any], resource_version: Optional[str]
    ) -> Cluster:
        """Merge-patch the status sub-resource. ``patch`` is the status diff."""
        ...

    # Workload

    async def get_stateful_set(self, namespace: str, name: str) -> StatefulSet: ...

    async def create_stateful_set(self, stateful_set: StatefulSet) -> StatefulSet: ...

    async def delete_stateful_set(self, namespace: str, name: str, orphan: bool = False) -> None: ...

    async def scale_stateful_set(self, namespace: str, name: str, replicas: int) -> StatefulSet: ...

    # Pods

    async def get_pod(self, namespace: str, name: str) -> Pod: ...

    async def list_pods(self, namespace: str, labels: Dict[str, str]) -> List[Pod]: ...

    async def delete_pod(self, namespace: str, name: str) -> None: ...

    # Storage

    async def get_volume_claim(self, namespace: str, name: str) -> VolumeClaim: ...

    async def list_volume_claims(self, namespace: str, labels: Dict[str, str]) -> List[VolumeClaim]: ...

    async def create_volume_claim(self, claim: VolumeClaim) -> VolumeClaim: ...

    async def resize_volume_claim(self, namespace: str, name: str, size: str) -> VolumeClaim: ...

    async def delete_volume_claim(self, namespace: str, name: str) -> None: ...

    # Jobs

    async def get_job(self, namespace: str, name: str) -> Job: ...

    async def list_jobs(self, namespace: str, labels: Dict[str, str]) -> List[Job]: ...

    async def create_job(self, job: Job) -> Job: ...

    async def delete_job(self, namespace: str, name: str) -> None: ...

    # Backups

    async def get_backup(self, namespace: str, name: str) -> BackupArtifact: ...

    async def create_backup(self, backup: BackupArtifact) -> BackupArtifact: ...

    async def delete_backup(self, namespace: str, name: str) -> None: ...

    async def list_volume_snapshots(self, namespace: str, labels: Dict[str, str]) -> List[VolumeSnapshot]: ...

    # Misc

    async def get_secret_value(self, namespace: str, name: str, key: str) -> str: ...

    async def record_event(self, cluster: Cluster, event_type: str, reason: str, message: str) -> None:
        """Emit an event on the cluster object. Must not raise."""
        ...
