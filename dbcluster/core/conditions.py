"""
Condition setters shared by the reconcile phases.

Each helper mutates a ClusterStatus in place; callers apply them inside a
status patch so the change is persisted with a resourceVersion precondition.
"""
from datetime import datetime

from dbcluster.models.cluster import (
    ClusterStatus,
    ConditionReason,
    ConditionStatus,
    ConditionType,
)


# Ready


def set_ready_healthy(status: ClusterStatus, now: datetime) -> None:
    status.set_condition(
        ConditionType.READY, ConditionStatus.TRUE, ConditionReason.HEALTHY, "Running", now
    )


def set_ready_not_ready(status: ClusterStatus, message: str, now: datetime) -> None:
    status.set_condition(
        ConditionType.READY, ConditionStatus.FALSE, ConditionReason.NOT_READY, message, now
    )


def set_ready_failed(status: ClusterStatus, message: str, now: datetime) -> None:
    status.set_condition(
        ConditionType.READY, ConditionStatus.FALSE, ConditionReason.FAILED, message, now
    )


def set_ready_suspended(status: ClusterStatus, now: datetime) -> None:
    status.set_condition(
        ConditionType.READY, ConditionStatus.FALSE, ConditionReason.SUSPENDED, "Suspended", now
    )


# Storage


def set_storage_resizing(status: ClusterStatus, now: datetime) -> None:
    status.set_condition(
        ConditionType.STORAGE_RESIZED,
        ConditionStatus.FALSE,
        ConditionReason.STORAGE_RESIZING,
        "Resizing storage",
        now,
    )


def set_waiting_storage_resize(status: ClusterStatus, now: datetime) -> None:
    status.set_condition(
        ConditionType.STORAGE_RESIZED,
        ConditionStatus.FALSE,
        ConditionReason.WAITING_STORAGE_RESIZE,
        "Waiting for storage resize",
        now,
    )


def set_storage_resized(status: ClusterStatus, now: datetime) -> None:
    status.set_condition(
        ConditionType.STORAGE_RESIZED,
        ConditionStatus.TRUE,
        ConditionReason.STORAGE_RESIZED,
        "Storage resized",
        now,
    )


# Scale out


def set_scaling_out(status: ClusterStatus, now: datetime) -> None:
    status.set_condition(
        ConditionType.SCALED_OUT, ConditionStatus.FALSE, ConditionReason.SCALING_OUT, "Scaling out", now
    )


def set_scale_out_error(status: ClusterStatus, message: str, now: datetime) -> None:
    status.set_condition(
        ConditionType.SCALED_OUT,
        ConditionStatus.FALSE,
        ConditionReason.SCALE_OUT_ERROR,
        f"Error scaling out: {message}",
        now,
    )


def set_scaled_out(status: ClusterStatus, now: datetime) -> None:
    status.set_condition(
        ConditionType.SCALED_OUT, ConditionStatus.TRUE, ConditionReason.SCALED_OUT, "Scaled out", now
    )


# Replica recovery


def set_replica_recovering(status: ClusterStatus, now: datetime) -> None:
    status.set_condition(
        ConditionType.REPLICA_RECOVERED,
        ConditionStatus.FALSE,
        ConditionReason.REPLICA_RECOVERING,
        "Recovering replicas",
        now,
    )


def set_replica_recovered(status: ClusterStatus, now: datetime) -> None:
    status.set_condition(
        ConditionType.REPLICA_RECOVERED,
        ConditionStatus.TRUE,
        ConditionReason.REPLICA_RECOVERED,
        "Replicas recovered",
        now,
    )


# Primary switch


def set_primary_switching(status: ClusterStatus, pod: str, now: datetime) -> None:
    status.set_condition(
        ConditionType.PRIMARY_SWITCHED,
        ConditionStatus.FALSE,
        ConditionReason.SWITCHING,
        f"Switching primary to '{pod}'",
        now,
    )


def set_primary_switched(status: ClusterStatus, pod: str, now: datetime) -> None:
    status.set_condition(
        ConditionType.PRIMARY_SWITCHED,
        ConditionStatus.TRUE,
        ConditionReason.SWITCHED,
        f"Switchover to '{pod}' complete",
        now,
    )
