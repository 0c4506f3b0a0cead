"""
Core package for Marketplace Job Orchestrator

Contains the main orchestrator class, configuration and the exception hierarchy.
"""

from .exceptions import (
    ErrorKind,
    JobOrchestratorError,
    NotFoundError,
    JobNotFoundError,
    BidNotFoundError,
    ChangeOrderNotFoundError,
    InvalidStateError,
    UnauthorizedError,
    ConflictError,
    AlreadyResolvedError,
    DatabaseError,
    NotificationError,
    ConfigurationError,
    ValidationError,
    OrchestratorError,
    error_registry
)
from .config import OrchestratorConfig
from .orchestrator import JobOrchestrator

__all__ = [
    "JobOrchestrator",
    "OrchestratorConfig",
    "ErrorKind",
    "JobOrchestratorError",
    "NotFoundError",
    "JobNotFoundError",
    "BidNotFoundError",
    "ChangeOrderNotFoundError",
    "InvalidStateError",
    "UnauthorizedError",
    "ConflictError",
    "AlreadyResolvedError",
    "DatabaseError",
    "NotificationError",
    "ConfigurationError",
    "ValidationError",
    "OrchestratorError",
    "error_registry"
]
