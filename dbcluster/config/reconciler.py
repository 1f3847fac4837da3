"""
Reconciler tuning knobs.

Plain configuration object with named fields and explicit defaults. It is
built once from Settings and handed to every controller at construction time.
"""
from datetime import timedelta
from typing import FrozenSet

from pydantic import BaseModel, Field


class ReconcilerConfig(BaseModel):
    """Timings and thresholds used by the reconcile phases."""

    model_config = {"frozen": True}

    # Scheduling
    default_requeue_interval: timedelta = Field(
        default=timedelta(minutes=5), description="Long requeue used to catch external drift"
    )
    suspend_requeue_interval: timedelta = Field(
        default=timedelta(seconds=10), description="Requeue while the cluster is suspended"
    )
    short_requeue_interval: timedelta = Field(
        default=timedelta(seconds=1), description="Requeue while waiting on jobs, backups and volumes"
    )
    snapshot_requeue_interval: timedelta = Field(
        default=timedelta(seconds=5), description="Requeue while a volume snapshot is not ready"
    )
    scale_out_error_requeue_interval: timedelta = Field(
        default=timedelta(seconds=30), description="Requeue after a scale out validation error"
    )

    # Failover
    automatic_failover_delay: timedelta = Field(
        default=timedelta(0), description="Default delay before promoting a new primary"
    )
    database_client_timeout: timedelta = Field(
        default=timedelta(seconds=3), description="Deadline for a single database probe"
    )

    # Replica recovery
    replica_error_duration_threshold: timedelta = Field(
        default=timedelta(minutes=5), description="Default grace period for transient replica errors"
    )
    non_recoverable_io_error_codes: FrozenSet[int] = Field(
        default=frozenset({1236}), description="I/O error codes that make a replica eligible immediately"
    )

    # Bounded waits
    volume_termination_timeout: timedelta = Field(default=timedelta(minutes=2))
    volume_termination_interval: timedelta = Field(default=timedelta(seconds=1))
    workload_deletion_timeout: timedelta = Field(default=timedelta(minutes=1))
    workload_deletion_interval: timedelta = Field(default=timedelta(seconds=1))
    pod_initializing_timeout: timedelta = Field(default=timedelta(minutes=2))
    pod_initializing_interval: timedelta = Field(default=timedelta(seconds=30))
    replication_configured_timeout: timedelta = Field(default=timedelta(minutes=1))
    replica_recovered_timeout: timedelta = Field(default=timedelta(minutes=1))
    poll_interval: timedelta = Field(default=timedelta(seconds=1))

    # Object store writes
    conflict_retries: int = Field(default=5, ge=1)
