"""
Views over the child resources the reconciler reads and writes.

These are deliberately small: only the fields the reconcile phases look at.
The object store adapter converts to and from the full Kubernetes objects;
``manifest`` carries the rendered body for objects the operator creates.
"""
import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dbcluster.exceptions import BackupError

_ORDINAL_RE = re.compile(r"-(\d+)$")


def pod_ordinal(name: str) -> Optional[int]:
    """Ordinal of a StatefulSet Pod, e.g. ``mariadb-2`` -> 2."""
    match = _ORDINAL_RE.search(name)
    return int(match.group(1)) if match else None


class Pod(BaseModel):
    name: str
    namespace: str
    labels: Dict[str, str] = Field(default_factory=dict)
    ip: Optional[str] = None
    node_name: Optional[str] = None
    ready: bool = False
    initializing: bool = False
    deleting: bool = False

    @property
    def ordinal(self) -> Optional[int]:
        return pod_ordinal(self.name)

    @property
    def scheduled(self) -> bool:
        return bool(self.node_name)


class VolumeClaim(BaseModel):
    name: str
    namespace: str
    labels: Dict[str, str] = Field(default_factory=dict)
    storage_request: str
    storage_capacity: Optional[str] = None
    storage_class_name: Optional[str] = None
    snapshot_source: Optional[str] = None
    resizing: bool = False
    deleting: bool = False


class StatefulSet(BaseModel):
    name: str
    namespace: str
    labels: Dict[str, str] = Field(default_factory=dict)
    replicas: int = 0
    ready_replicas: int = 0
    storage_size: Optional[str] = None
    manifest: Dict[str, Any] = Field(default_factory=dict)


class Job(BaseModel):
    name: str
    namespace: str
    labels: Dict[str, str] = Field(default_factory=dict)
    complete: bool = False
    failed: bool = False
    manifest: Dict[str, Any] = Field(default_factory=dict)


class BackupStorage(str, Enum):
    """Where a physical backup keeps its data."""

    VOLUME_SNAPSHOT = "volumeSnapshot"
    OBJECT_STORAGE = "objectStorage"


class BackupFile(BaseModel):
    name: str
    taken_at: datetime


class BackupArtifact(BaseModel):
    """
    A physical backup: either a template referenced by the cluster spec or an
    on-demand copy created from it to seed replicas.
    """

    name: str
    namespace: str
    labels: Dict[str, str] = Field(default_factory=dict)
    storage: BackupStorage = BackupStorage.OBJECT_STORAGE
    spec: Dict[str, Any] = Field(default_factory=dict)
    complete: bool = False
    files: List[BackupFile] = Field(default_factory=list)

    def is_complete(self) -> bool:
        return self.complete

    @property
    def uses_volume_snapshots(self) -> bool:
        return self.storage == BackupStorage.VOLUME_SNAPSHOT

    def target_file_for(self, recovery_time: datetime) -> str:
        """
        Pick the newest backup file taken at or before ``recovery_time``.

        Raises:
            BackupError: If the backup holds no file old enough
        """
        eligible = [f for f in self.files if f.taken_at <= recovery_time]
        if not eligible:
            raise BackupError(
                f"no backup file in '{self.name}' was taken before {recovery_time.isoformat()}",
                details={"backup": self.name, "files": [f.name for f in self.files]},
            )
        return max(eligible, key=lambda f: f.taken_at).name


class VolumeSnapshot(BaseModel):
    name: str
    namespace: str
    labels: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime
    ready: bool = False
