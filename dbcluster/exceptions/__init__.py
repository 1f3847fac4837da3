"""
Custom exceptions for the cluster operator.

Every error raised by the reconcile phases derives from ClusterOperatorException
so the phase scheduler and the worker can classify failures consistently.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence


class ClusterOperatorException(Exception):
    """
    Base exception for all operator errors.

    All custom exceptions should inherit from this base class.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(ClusterOperatorException):
    """
    Raised when an object is not (yet) present in the object store.

    Reconcile phases treat it as "try again on the next pass".
    """

    def __init__(self, kind: str, name: str, details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.name = name
        super().__init__(
            message=f"{kind} '{name}' not found",
            details=details or {"kind": kind, "name": name},
        )


class ConflictError(ClusterOperatorException):
    """
    Raised when a write loses an optimistic concurrency check.

    Used for stale resourceVersion patches and objects that already exist.
    """


class ObjectStoreError(ClusterOperatorException):
    """Raised when the Kubernetes API fails for any other reason."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=f"Kubernetes error: {message}", details=details)


class ValidationError(ClusterOperatorException):
    """
    Raised when the desired state cannot be satisfied as written.

    The worker does not back off on these: they are retried on the normal
    interval since the check is cheap and only a spec change can fix them.
    """


class StorageShrinkError(ValidationError):
    """Raised when the desired storage size is smaller than the existing one."""

    def __init__(self, existing: str, desired: str):
        super().__init__(
            message=f"Storage size cannot be decreased from {existing} to {desired}",
            details={"existing_size": existing, "desired_size": desired},
        )


class MissingBackupTemplateError(ValidationError):
    """Raised when a replica datasource is needed but none is configured."""

    def __init__(self, message: str = "replica datasource not found (replication.replica.bootstrapFrom is nil)"):
        super().__init__(message=message)


class MissingSecretError(ValidationError):
    """Raised when a credential Secret, or the key inside it, does not exist."""

    def __init__(self, name: str, key: str):
        super().__init__(
            message=f"Secret key '{name}/{key}' not found",
            details={"secret": name, "key": key},
        )


class BackupError(ClusterOperatorException):
    """Raised when a backup artifact cannot be used to seed a replica."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=f"Backup error: {message}", details=details)


class DatabaseClientError(ClusterOperatorException):
    """Base class for errors talking to a single database node."""


class DatabaseUnreachableError(DatabaseClientError):
    """Raised when a node cannot be reached before the call deadline."""

    def __init__(self, node: str, reason: str):
        self.node = node
        super().__init__(
            message=f"Database node '{node}' unreachable: {reason}",
            details={"node": node, "reason": reason},
        )


class DatabaseApplicationError(DatabaseClientError):
    """Raised when a node answers but the statement fails."""

    def __init__(self, node: str, reason: str):
        self.node = node
        super().__init__(
            message=f"Database node '{node}' returned an error: {reason}",
            details={"node": node, "reason": reason},
        )


class NoPromotionCandidateError(ClusterOperatorException):
    """Raised when no replica can be promoted to primary."""

    def __init__(self, cluster: str, skipped: Optional[Dict[str, str]] = None):
        super().__init__(
            message=f"No promotion candidates were found for cluster '{cluster}'",
            details={"cluster": cluster, "skipped": skipped or {}},
        )


class WaitTimeoutError(ClusterOperatorException):
    """Raised when a bounded wait exceeds its deadline."""

    def __init__(self, description: str, timeout: timedelta, last_error: Optional[BaseException] = None):
        message = f"Timed out after {timeout.total_seconds():g}s waiting for {description}"
        if last_error is not None:
            message += f": {last_error}"
        self.last_error = last_error
        super().__init__(
            message=message,
            details={"description": description, "timeout_seconds": timeout.total_seconds()},
        )


class MultiError(ClusterOperatorException):
    """
    Several errors reported together.

    Used when a primary action and its status patch both fail, so the second
    does not mask the first.
    """

    def __init__(self, errors: Sequence[BaseException], message: Optional[str] = None):
        self.errors: List[BaseException] = list(errors)
        joined = "; ".join(str(e) for e in self.errors)
        super().__init__(
            message=message or joined,
            details={"errors": [str(e) for e in self.errors]},
        )

    @classmethod
    def raise_if_any(cls, errors: Sequence[BaseException]) -> None:
        """Raise the single error as-is, or all of them aggregated."""
        if not errors:
            return
        if len(errors) == 1:
            raise errors[0]
        raise cls(errors)


class ReconcileError(MultiError):
    """Raised by the phase scheduler when a phase fails."""

    def __init__(self, phase: str, errors: Sequence[BaseException]):
        self.phase = phase
        joined = "; ".join(str(e) for e in errors)
        super().__init__(errors, message=f"error reconciling {phase}: {joined}")

    @property
    def is_validation_error(self) -> bool:
        """True when the phase failed only because the desired state is invalid."""
        return bool(self.errors) and isinstance(self.errors[0], ValidationError)


# Export all exceptions
__all__ = [
    "ClusterOperatorException",
    "NotFoundError",
    "ConflictError",
    "ObjectStoreError",
    "ValidationError",
    "StorageShrinkError",
    "MissingBackupTemplateError",
    "MissingSecretError",
    "BackupError",
    "DatabaseClientError",
    "DatabaseUnreachableError",
    "DatabaseApplicationError",
    "NoPromotionCandidateError",
    "WaitTimeoutError",
    "MultiError",
    "ReconcileError",
]
