"""
Cluster state machines.

The reconcile phases derive their current state from the persisted status on
every pass and validate each move against an explicit transition table
before writing anything. An invalid move is a programming error and raises.

Machines:
- FailoverStateMachine: HEALTHY -> FAILING -> SWITCHING -> HEALTHY
- StorageResizeStateMachine: IDLE -> RESIZING -> WAITING -> RESIZED
- ScaleOutStateMachine: IDLE -> SCALING_OUT -> SCALED_OUT, with ERROR
- ReplicaRecoveryStateMachine: IDLE -> RECOVERING -> RECOVERED

Usage:
    >>> from dbcluster.core.state_machine import FailoverState, FailoverStateMachine
    >>>
    >>> FailoverStateMachine.can_transition(
    ...     FailoverState.HEALTHY,
    ...     FailoverState.SWITCHING
    ... )
    False
"""

from enum import Enum
from typing import ClassVar, Dict, Optional, Set

import structlog

from dbcluster.models.cluster import Cluster, ConditionType

logger = structlog.get_logger(__name__)


class FailoverState(str, Enum):
    """Primary failover states"""
    HEALTHY = "healthy"
    FAILING = "failing"
    SWITCHING = "switching"


class StorageResizeState(str, Enum):
    """Storage resize choreography states"""
    IDLE = "idle"
    RESIZING = "resizing"
    WAITING = "waiting"
    RESIZED = "resized"


class ScaleOutState(str, Enum):
    """Scale out choreography states"""
    IDLE = "idle"
    SCALING_OUT = "scaling_out"
    ERROR = "error"
    SCALED_OUT = "scaled_out"


class ReplicaRecoveryState(str, Enum):
    """Replica recovery states"""
    IDLE = "idle"
    RECOVERING = "recovering"
    RECOVERED = "recovered"


class StateMachine:
    """
    Transition table shared by all cluster state machines.

    Subclasses only declare TRANSITIONS and NAME.
    """

    NAME: ClassVar[str] = "state"
    TRANSITIONS: ClassVar[Dict[Enum, Set[Enum]]] = {}

    @classmethod
    def can_transition(cls, from_state: Enum, to_state: Enum) -> bool:
        """
        Check if state transition is valid.

        Args:
            from_state: Current state
            to_state: Target state

        Returns:
            True if transition is allowed, False otherwise
        """
        allowed_states = cls.TRANSITIONS.get(from_state, set())
        return to_state in allowed_states

    @classmethod
    def validate_transition(
        cls,
        from_state: Enum,
        to_state: Enum,
        cluster: Optional[str] = None,
    ) -> None:
        """
        Validate state transition and raise exception if invalid.

        Args:
            from_state: Current state
            to_state: Target state
            cluster: Optional cluster key for logging

        Raises:
            ValueError: If transition is not allowed
        """
        if not cls.can_transition(from_state, to_state):
            error_msg = (
                f"Invalid {cls.NAME} transition from {from_state.value} "
                f"to {to_state.value}"
            )
            if cluster:
                error_msg += f" for cluster {cluster}"

            logger.error(
                "invalid_state_transition",
                machine=cls.NAME,
                cluster=cluster,
                from_state=from_state.value,
                to_state=to_state.value,
                allowed_states=[s.value for s in cls.TRANSITIONS.get(from_state, set())],
            )
            raise ValueError(error_msg)

        logger.debug(
            "state_transition_validated",
            machine=cls.NAME,
            cluster=cluster,
            from_state=from_state.value,
            to_state=to_state.value,
        )


class FailoverStateMachine(StateMachine):
    NAME = "failover"
    TRANSITIONS = {
        FailoverState.HEALTHY: {
            FailoverState.FAILING,     # Primary observed not ready
            FailoverState.SWITCHING,   # Manual switchover requested
        },
        FailoverState.FAILING: {
            FailoverState.HEALTHY,     # Primary recovered within the delay
            FailoverState.SWITCHING,   # Delay elapsed, candidate committed
        },
        FailoverState.SWITCHING: {
            FailoverState.HEALTHY,     # New primary promoted
        },
    }

    @staticmethod
    def current_state(cluster: Cluster) -> FailoverState:
        """Derive the failover state from persisted status."""
        if cluster.is_switching_primary or cluster.is_switchover_required:
            return FailoverState.SWITCHING
        if cluster.status.primary_failing_since is not None:
            return FailoverState.FAILING
        return FailoverState.HEALTHY


class StorageResizeStateMachine(StateMachine):
    NAME = "storage_resize"
    TRANSITIONS = {
        StorageResizeState.IDLE: {StorageResizeState.RESIZING},
        StorageResizeState.RESIZING: {
            StorageResizeState.RESIZING,  # Resumed after a crash mid-patch
            StorageResizeState.WAITING,
        },
        StorageResizeState.WAITING: {StorageResizeState.RESIZED},
        StorageResizeState.RESIZED: {StorageResizeState.RESIZING},
    }

    @staticmethod
    def current_state(cluster: Cluster) -> StorageResizeState:
        if cluster.is_waiting_for_storage_resize:
            return StorageResizeState.WAITING
        if cluster.is_resizing_storage:
            return StorageResizeState.RESIZING
        if cluster.status.is_condition_true(ConditionType.STORAGE_RESIZED):
            return StorageResizeState.RESIZED
        return StorageResizeState.IDLE


class ScaleOutStateMachine(StateMachine):
    NAME = "scale_out"
    TRANSITIONS = {
        ScaleOutState.IDLE: {ScaleOutState.SCALING_OUT, ScaleOutState.ERROR},
        ScaleOutState.ERROR: {
            ScaleOutState.ERROR,         # Still invalid
            ScaleOutState.SCALING_OUT,   # Datasource fixed
            ScaleOutState.SCALED_OUT,    # Rolled back by matching replicas
        },
        ScaleOutState.SCALING_OUT: {
            ScaleOutState.SCALING_OUT,
            ScaleOutState.ERROR,
            ScaleOutState.SCALED_OUT,
        },
        ScaleOutState.SCALED_OUT: {ScaleOutState.SCALING_OUT, ScaleOutState.ERROR},
    }

    @staticmethod
    def current_state(cluster: Cluster) -> ScaleOutState:
        if cluster.has_scale_out_error:
            return ScaleOutState.ERROR
        if cluster.is_scaling_out:
            return ScaleOutState.SCALING_OUT
        if cluster.status.is_condition_true(ConditionType.SCALED_OUT):
            return ScaleOutState.SCALED_OUT
        return ScaleOutState.IDLE


class ReplicaRecoveryStateMachine(StateMachine):
    NAME = "replica_recovery"
    TRANSITIONS = {
        ReplicaRecoveryState.IDLE: {ReplicaRecoveryState.RECOVERING},
        ReplicaRecoveryState.RECOVERING: {
            ReplicaRecoveryState.RECOVERING,  # Next replica
            ReplicaRecoveryState.RECOVERED,
            ReplicaRecoveryState.IDLE,        # Recovery disabled mid-way
        },
        ReplicaRecoveryState.RECOVERED: {
            ReplicaRecoveryState.RECOVERING,
            ReplicaRecoveryState.IDLE,
        },
    }

    @staticmethod
    def current_state(cluster: Cluster) -> ReplicaRecoveryState:
        if cluster.is_recovering_replicas:
            return ReplicaRecoveryState.RECOVERING
        if cluster.status.is_condition_true(ConditionType.REPLICA_RECOVERED):
            return ReplicaRecoveryState.RECOVERED
        return ReplicaRecoveryState.IDLE
