"""
Exception classes for Marketplace Job Orchestrator

Provides the hierarchy of exceptions raised by the lifecycle services. Every
exception carries a stable ``error_kind`` which the orchestrator facade returns
to callers inside an ``OperationResult`` instead of propagating the exception.
"""

from typing import Optional, Dict, Any


class ErrorKind:
    """Stable error kinds exposed to the API layer."""
    NOT_FOUND = "NotFound"
    INVALID_STATE = "InvalidState"
    UNAUTHORIZED = "Unauthorized"
    CONFLICT = "Conflict"
    ALREADY_RESOLVED = "AlreadyResolved"
    DEPENDENCY_FAILURE = "DependencyFailure"
    VALIDATION_ERROR = "ValidationError"


class JobOrchestratorError(Exception):
    """Base exception for all job orchestrator errors."""

    error_kind: str = ErrorKind.DEPENDENCY_FAILURE

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "error_kind": self.error_kind,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class NotFoundError(JobOrchestratorError):
    """Raised when a referenced entity cannot be found."""

    error_kind = ErrorKind.NOT_FOUND

    def __init__(self, kind: str, entity_id: str):
        super().__init__(
            f"{kind} {entity_id} not found",
            error_code=f"{kind.upper().replace(' ', '_')}_NOT_FOUND",
            details={"kind": kind, "id": entity_id}
        )


class JobNotFoundError(NotFoundError):
    """Raised when a requested job cannot be found."""

    def __init__(self, job_id: str):
        super().__init__("Job", job_id)


class BidNotFoundError(NotFoundError):
    """Raised when a requested bid cannot be found."""

    def __init__(self, bid_id: str):
        super().__init__("Bid", bid_id)


class ChangeOrderNotFoundError(NotFoundError):
    """Raised when a requested change order cannot be found."""

    def __init__(self, change_order_id: str):
        super().__init__("Change order", change_order_id)


class InvalidStateError(JobOrchestratorError):
    """Raised when an operation is not legal for the entity's current status."""

    error_kind = ErrorKind.INVALID_STATE

    def __init__(self, message: str, entity_id: Optional[str] = None, current_status: Optional[str] = None):
        super().__init__(
            message,
            error_code="INVALID_STATE",
            details={"id": entity_id, "current_status": current_status}
        )


class UnauthorizedError(JobOrchestratorError):
    """Raised when the actor is not the job's customer or assigned mechanic."""

    error_kind = ErrorKind.UNAUTHORIZED

    def __init__(self, message: str, actor_id: Optional[str] = None, job_id: Optional[str] = None):
        super().__init__(
            message,
            error_code="UNAUTHORIZED",
            details={"actor_id": actor_id, "job_id": job_id}
        )


class ConflictError(JobOrchestratorError):
    """Raised when a write loses an optimistic concurrency race."""

    error_kind = ErrorKind.CONFLICT

    def __init__(self, kind: str, entity_id: str, expected_version: Optional[int] = None,
                 actual_version: Optional[int] = None):
        super().__init__(
            f"Concurrent modification of {kind} {entity_id}",
            error_code="CONFLICT",
            details={
                "kind": kind,
                "id": entity_id,
                "expected_version": expected_version,
                "actual_version": actual_version
            }
        )


class AlreadyResolvedError(JobOrchestratorError):
    """Raised when a bid or change order has already been finalized."""

    error_kind = ErrorKind.ALREADY_RESOLVED

    def __init__(self, kind: str, entity_id: str, status: str):
        super().__init__(
            f"{kind} {entity_id} is already {status}",
            error_code="ALREADY_RESOLVED",
            details={"kind": kind, "id": entity_id, "status": status}
        )


class DatabaseError(JobOrchestratorError):
    """Raised when entity store operations fail."""

    error_kind = ErrorKind.DEPENDENCY_FAILURE

    def __init__(self, operation: str, message: str, table: Optional[str] = None):
        super().__init__(
            f"Database operation '{operation}' failed: {message}",
            error_code="DATABASE_ERROR",
            details={"operation": operation, "table": table}
        )


class NotificationError(JobOrchestratorError):
    """Raised by notification gateways; always logged and suppressed by the engine."""

    error_kind = ErrorKind.DEPENDENCY_FAILURE

    def __init__(self, event_name: str, message: str, recipient_id: Optional[str] = None):
        super().__init__(
            f"Notification '{event_name}' failed: {message}",
            error_code="NOTIFICATION_ERROR",
            details={"event_name": event_name, "recipient_id": recipient_id}
        )


class ConfigurationError(JobOrchestratorError):
    """Raised when there's an error in configuration."""

    error_kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class ValidationError(JobOrchestratorError):
    """Raised when input validation fails."""

    error_kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, field: str, message: str, value: Any = None):
        super().__init__(
            f"Validation error for {field}: {message}",
            error_code="VALIDATION_ERROR",
            details={"field": field, "value": str(value) if value is not None else None}
        )


class OrchestratorError(JobOrchestratorError):
    """Raised when orchestrator-level operations fail."""

    def __init__(self, message: str):
        super().__init__(
            f"Orchestrator error: {message}",
            error_code="ORCHESTRATOR_ERROR"
        )


# Global error registry for tracking patterns
class ErrorRegistry:
    """Registry for tracking and analyzing errors."""

    def __init__(self):
        self.error_counts = {}

    def record_error(self, error: JobOrchestratorError):
        """Record an error for analysis."""
        error_type = error.__class__.__name__
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics for monitoring."""
        return {
            "total_errors": sum(self.error_counts.values()),
            "error_counts": self.error_counts,
            "most_common_error": max(self.error_counts.items(), key=lambda x: x[1])[0] if self.error_counts else None
        }

    def reset(self):
        """Clear recorded counts."""
        self.error_counts.clear()


# Global error registry instance
error_registry = ErrorRegistry()
