"""
Pydantic models for the database cluster custom resource.

Field names are snake_case in Python and camelCase on the wire, matching the
shape stored in the Kubernetes API server.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from dbcluster.utils.duration import parse_duration


class CamelModel(BaseModel):
    """Base model serialized with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """Dump to the JSON document stored in the API server."""
        return self.model_dump(mode="json", by_alias=True)


class ReplicationMode(str, Enum):
    """How the cluster nodes replicate data."""

    NONE = "none"
    ASYNC = "async-replication"
    MULTI_MASTER = "synchronous-multi-master"


class UpdateStrategy(str, Enum):
    """How Pod template changes are rolled out."""

    REPLICAS_FIRST_PRIMARY_LAST = "ReplicasFirstPrimaryLast"
    ROLLING_UPDATE = "RollingUpdate"
    ON_DELETE = "OnDelete"


class ReplicationRole(str, Enum):
    """Per-node replication state recorded in status."""

    NOT_CONFIGURED = "not-configured"
    CONFIGURING = "configuring"
    REPLICA = "replica"
    PRIMARY = "primary"


class ConditionType(str, Enum):
    """Status condition types."""

    READY = "Ready"
    STORAGE_RESIZED = "StorageResized"
    SCALED_OUT = "ScaledOut"
    REPLICA_RECOVERED = "ReplicaRecovered"
    PRIMARY_SWITCHED = "PrimarySwitched"
    BACKUP_RESTORED = "BackupRestored"
    UPDATED = "Updated"
    MULTI_MASTER_READY = "MultiMasterReady"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionReason(str, Enum):
    """Reasons written by the reconcile phases."""

    HEALTHY = "Healthy"
    NOT_READY = "NotReady"
    FAILED = "Failed"
    SUSPENDED = "Suspended"
    STORAGE_RESIZING = "StorageResizing"
    WAITING_STORAGE_RESIZE = "WaitingStorageResize"
    STORAGE_RESIZED = "StorageResized"
    SCALING_OUT = "ScalingOut"
    SCALE_OUT_ERROR = "ScaleOutError"
    SCALED_OUT = "ScaledOut"
    REPLICA_RECOVERING = "ReplicaRecovering"
    REPLICA_RECOVERED = "ReplicaRecovered"
    SWITCHING = "Switching"
    SWITCHED = "Switched"
    RESTORING_BACKUP = "RestoringBackup"
    UPDATING = "Updating"


# Spec


class StorageSpec(CamelModel):
    """Persistent storage for every node."""

    size: str = Field(..., description="Requested volume size, e.g. 300Mi")
    storage_class_name: Optional[str] = Field(default=None, description="StorageClass of the volumes")
    resize_in_use_volumes: bool = Field(
        default=True, description="Patch existing PVCs in place when the size grows"
    )
    wait_for_volume_resize: bool = Field(
        default=True, description="Wait for the filesystem resize before marking storage resized"
    )


class PrimarySpec(CamelModel):
    """Primary selection policy."""

    pod_index: Optional[int] = Field(default=None, ge=0, description="Ordinal of the desired primary")
    automatic_failover: bool = Field(default=True, description="Promote a replica when the primary fails")
    automatic_failover_delay: Optional[timedelta] = Field(
        default=None, description="Time the primary may stay not ready before a failover"
    )

    @field_validator("automatic_failover_delay", mode="before")
    @classmethod
    def parse_delay(cls, v: Any) -> Any:
        return parse_duration(v)


class BootstrapFrom(CamelModel):
    """Data source used to seed new or broken replicas."""

    backup_template_ref: str = Field(..., description="Name of the backup used as template")
    restore_job: Dict[str, Any] = Field(
        default_factory=dict, description="Overrides merged into the restore Job spec"
    )


class ReplicaRecoverySpec(CamelModel):
    enabled: bool = Field(default=False, description="Re-bootstrap replicas with broken replication")
    error_duration_threshold: Optional[timedelta] = Field(
        default=None, description="How long a transient replica error may last before recovery"
    )

    @field_validator("error_duration_threshold", mode="before")
    @classmethod
    def parse_threshold(cls, v: Any) -> Any:
        return parse_duration(v)


class ReplicaSpec(CamelModel):
    bootstrap_from: Optional[BootstrapFrom] = None
    recovery: ReplicaRecoverySpec = Field(default_factory=ReplicaRecoverySpec)


class ReplicationSpec(CamelModel):
    mode: ReplicationMode = Field(default=ReplicationMode.NONE, description="Replication mode")
    primary: PrimarySpec = Field(default_factory=PrimarySpec)
    replica: ReplicaSpec = Field(default_factory=ReplicaSpec)


class SecretKeyRef(CamelModel):
    name: str
    key: str


class ClusterSpec(CamelModel):
    """Desired state, owned by the API caller."""

    replicas: int = Field(default=1, ge=0, description="Number of database nodes")
    image: str = Field(default="mariadb:11.4", description="Database server image")
    port: int = Field(default=3306, ge=1, le=65535, description="Database port")
    storage: StorageSpec
    update_strategy: UpdateStrategy = Field(default=UpdateStrategy.REPLICAS_FIRST_PRIMARY_LAST)
    replication: ReplicationSpec = Field(default_factory=ReplicationSpec)
    root_password_secret_key_ref: Optional[SecretKeyRef] = None
    max_scale_ref: Optional[str] = Field(
        default=None, description="Proxy that owns primary selection when set"
    )
    suspend: bool = Field(default=False, description="Stop reconciling child resources")
    tls_enabled: bool = Field(default=False, description="Serve TLS; enables the long drift requeue")


# Status


class Condition(CamelModel):
    type: str
    status: ConditionStatus
    reason: str
    message: str = ""
    last_transition_time: datetime


class ReplicaErrorRecord(CamelModel):
    """Last replication error observed on a replica."""

    io_error_code: Optional[int] = None
    sql_error_code: Optional[int] = None
    last_transition_time: datetime

    def same_error(self, io_error_code: Optional[int], sql_error_code: Optional[int]) -> bool:
        # Probes report 0 for "no error"; a record read back from the API may omit it.
        return (self.io_error_code or 0, self.sql_error_code or 0) == (io_error_code or 0, sql_error_code or 0)


class ReplicationStatus(CamelModel):
    roles: Dict[str, ReplicationRole] = Field(default_factory=dict)
    errors: Dict[str, ReplicaErrorRecord] = Field(default_factory=dict)


class ReplicaRecoveryStatus(CamelModel):
    """Replica currently being rebuilt and how far the rebuild got."""

    replica: str
    volume_provisioned: bool = False


class ClusterStatus(CamelModel):
    """Observed state, written only by the operator."""

    conditions: List[Condition] = Field(default_factory=list)
    replicas: int = 0
    current_primary_pod_index: Optional[int] = None
    current_primary: Optional[str] = None
    primary_failing_since: Optional[datetime] = None
    replication: ReplicationStatus = Field(default_factory=ReplicationStatus)
    replica_recovery: Optional[ReplicaRecoveryStatus] = None
    scale_out_initial_index: Optional[int] = None
    storage_size: Optional[str] = None

    def get_condition(self, condition_type: ConditionType) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type.value:
                return condition
        return None

    def set_condition(
        self,
        condition_type: ConditionType,
        status: ConditionStatus,
        reason: ConditionReason,
        message: str,
        now: datetime,
    ) -> None:
        """
        Add or update a condition.

        The transition time only moves when the condition status changes.
        """
        existing = self.get_condition(condition_type)
        if existing is None:
            self.conditions.append(
                Condition(
                    type=condition_type.value,
                    status=status,
                    reason=reason.value,
                    message=message,
                    last_transition_time=now,
                )
            )
            return
        if existing.status != status:
            existing.last_transition_time = now
        existing.status = status
        existing.reason = reason.value
        existing.message = message

    def remove_condition(self, condition_type: ConditionType) -> None:
        self.conditions = [c for c in self.conditions if c.type != condition_type.value]

    def is_condition_true(self, condition_type: ConditionType) -> bool:
        condition = self.get_condition(condition_type)
        return condition is not None and condition.status == ConditionStatus.TRUE

    def is_condition_false(self, condition_type: ConditionType, reason: Optional[ConditionReason] = None) -> bool:
        condition = self.get_condition(condition_type)
        if condition is None or condition.status != ConditionStatus.FALSE:
            return False
        return reason is None or condition.reason == reason.value


class ObjectMeta(CamelModel):
    name: str
    namespace: str = "default"
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    generation: Optional[int] = None
    labels: Dict[str, str] = Field(default_factory=dict)


class Cluster(CamelModel):
    """A managed database cluster: desired spec plus observed status."""

    api_version: str = "dbcluster.io/v1alpha1"
    kind: str = "DBCluster"
    metadata: ObjectMeta
    spec: ClusterSpec
    status: ClusterStatus = Field(default_factory=ClusterStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    # Naming

    def pod_name(self, ordinal: int) -> str:
        return f"{self.name}-{ordinal}"

    def volume_claim_name(self, ordinal: int) -> str:
        return f"storage-{self.name}-{ordinal}"

    def selector_labels(self) -> Dict[str, str]:
        return {
            "app.kubernetes.io/name": "mariadb",
            "app.kubernetes.io/instance": self.name,
        }

    @property
    def scale_out_backup_name(self) -> str:
        return f"{self.name}-pb-scale-out"

    @property
    def recovery_backup_name(self) -> str:
        return f"{self.name}-pb-recovery"

    def init_job_name(self, ordinal: int) -> str:
        return f"{self.name}-pb-init-{ordinal}"

    # Spec predicates

    @property
    def replication_enabled(self) -> bool:
        return self.spec.replication.mode == ReplicationMode.ASYNC

    @property
    def multi_master_enabled(self) -> bool:
        return self.spec.replication.mode == ReplicationMode.MULTI_MASTER

    @property
    def replica_recovery_enabled(self) -> bool:
        return self.replication_enabled and self.spec.replication.replica.recovery.enabled

    @property
    def max_scale_enabled(self) -> bool:
        return self.spec.max_scale_ref is not None

    @property
    def is_suspended(self) -> bool:
        return self.spec.suspend

    # Status predicates

    @property
    def has_configured_replication(self) -> bool:
        roles = self.status.replication.roles.values()
        return any(role in (ReplicationRole.PRIMARY, ReplicationRole.REPLICA) for role in roles)

    @property
    def is_switching_primary(self) -> bool:
        return self.status.is_condition_false(ConditionType.PRIMARY_SWITCHED)

    @property
    def is_switchover_required(self) -> bool:
        desired = self.spec.replication.primary.pod_index
        current = self.status.current_primary_pod_index
        if not self.replication_enabled or desired is None or current is None:
            return False
        return desired != current

    @property
    def is_resizing_storage(self) -> bool:
        return self.status.is_condition_false(ConditionType.STORAGE_RESIZED)

    @property
    def is_waiting_for_storage_resize(self) -> bool:
        return self.status.is_condition_false(
            ConditionType.STORAGE_RESIZED, ConditionReason.WAITING_STORAGE_RESIZE
        )

    @property
    def is_scaling_out(self) -> bool:
        return self.status.is_condition_false(ConditionType.SCALED_OUT, ConditionReason.SCALING_OUT)

    @property
    def has_scale_out_error(self) -> bool:
        return self.status.is_condition_false(ConditionType.SCALED_OUT, ConditionReason.SCALE_OUT_ERROR)

    @property
    def is_recovering_replicas(self) -> bool:
        return self.status.is_condition_false(ConditionType.REPLICA_RECOVERED)

    @property
    def is_restoring_backup(self) -> bool:
        return self.status.is_condition_false(ConditionType.BACKUP_RESTORED)

    @property
    def is_updating(self) -> bool:
        return self.status.is_condition_false(ConditionType.UPDATED)

    @property
    def is_multi_master_not_ready(self) -> bool:
        return self.multi_master_enabled and self.status.is_condition_false(ConditionType.MULTI_MASTER_READY)

    @property
    def replica_under_recovery(self) -> Optional[str]:
        recovery = self.status.replica_recovery
        return recovery.replica if recovery else None
