from dbcluster.models.cluster import (
    Cluster,
    ClusterSpec,
    ClusterStatus,
    ConditionReason,
    ConditionStatus,
    ConditionType,
    ReplicationMode,
    ReplicationRole,
)
from dbcluster.models.resources import (
    BackupArtifact,
    BackupStorage,
    Job,
    Pod,
    StatefulSet,
    VolumeClaim,
    VolumeSnapshot,
)

__all__ = [
    "Cluster",
    "ClusterSpec",
    "ClusterStatus",
    "ConditionReason",
    "ConditionStatus",
    "ConditionType",
    "ReplicationMode",
    "ReplicationRole",
    "BackupArtifact",
    "BackupStorage",
    "Job",
    "Pod",
    "StatefulSet",
    "VolumeClaim",
    "VolumeSnapshot",
]
