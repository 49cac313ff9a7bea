"""
Custom exceptions for the memcached operator.

Every error raised by the reconciliation core inherits from OperatorError so
the controller can map it onto a requeue decision.
"""
from typing import Optional, Dict, Any, List


class OperatorError(Exception):
    """
    Base exception for all operator errors.

    All custom exceptions should inherit from this base class.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class TransientAPIError(OperatorError):
    """
    Raised for network failures, timeouts and throttling (408/429/5xx).

    Retried with capped exponential backoff.
    """

    def __init__(self, message: str, status: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        self.status = status
        super().__init__(
            message=f"Transient API error: {message}",
            details=details or ({"status": status} if status else None),
        )


class ConflictError(OperatorError):
    """
    Raised when a write is rejected because the object changed since it was read.

    Callers refetch and retry immediately.
    """

    def __init__(self, kind: str, name: str, details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.name = name
        super().__init__(
            message=f"Conflict writing {kind} '{name}': object was modified",
            details=details or {"kind": kind, "name": name},
        )


class ValidationError(OperatorError):
    """
    Raised when the resource spec cannot be satisfied.

    Fatal for the current generation: the phase becomes Failed and no retry
    happens until the spec changes.
    """

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.field = field
        super().__init__(
            message=message,
            details=details or ({"field": field} if field else None),
        )


class PartialCleanupError(OperatorError):
    """
    Raised when a termination sweep leaves identity-labelled objects behind.

    Retried as part of the normal Terminating requeue.
    """

    def __init__(self, partition: str, remaining: List[str]):
        self.partition = partition
        self.remaining = remaining
        super().__init__(
            message=f"Cleanup of {partition} partition incomplete: {len(remaining)} object(s) remain",
            details={"partition": partition, "remaining": remaining},
        )


class KubernetesError(OperatorError):
    """
    Raised when Kubernetes API operations fail for non-transient reasons.

    Used for forbidden requests, unexpected status codes, client setup errors.
    """

    def __init__(self, message: str, status: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        self.status = status
        super().__init__(
            message=f"Kubernetes error: {message}",
            details=details,
        )


class InvariantViolation(OperatorError):
    """
    Raised when the reconciler reaches a state that should be unreachable.

    This is the only error treated as fatal to the worker process.
    """


__all__ = [
    "OperatorError",
    "TransientAPIError",
    "ConflictError",
    "ValidationError",
    "PartialCleanupError",
    "KubernetesError",
    "InvariantViolation",
]
