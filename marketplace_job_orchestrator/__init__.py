"""
Marketplace Job Orchestrator

Lifecycle engine for service jobs in a two-sided marketplace connecting
customers with mechanics: posting, competitive bidding, acceptance,
scheduling, in-progress work, completion, mid-job change orders with escrowed
payment, and time-based expiration.

The engine is an explicit instance constructed with an entity store and a
notification gateway. Every mutating command returns an ``OperationResult``.

Usage:
    from marketplace_job_orchestrator import JobOrchestrator, OrchestratorConfig

    orchestrator = JobOrchestrator(config=OrchestratorConfig(database_url="postgresql://localhost/marketplace"))
    await orchestrator.start()

    result = await orchestrator.create_job("CUSTOMER-1", "Brake pads", "Front pads squeal")
    job = result.entity

    bid = (await orchestrator.submit_bid(job.job_id, "MECHANIC-7", "120.00")).entity
    accepted = await orchestrator.accept_bid(bid.bid_id, customer_id="CUSTOMER-1")
    print(accepted.ok, accepted.details["job_status"])

    await orchestrator.stop()
"""

__version__ = "1.0.0"
__author__ = "Marketplace Job Orchestrator Team"
__license__ = "MIT"

# Core orchestrator
from .core.orchestrator import JobOrchestrator
from .core.config import OrchestratorConfig

# Data models
from .models.job import Job, JobStatus, ProgressionEntry
from .models.bid import Bid, BidStatus
from .models.change_order import ChangeOrder, ChangeOrderStatus, EscrowPayment, PaymentStatus, LineItem
from .models.result import OperationResult

# Services (for advanced usage)
from .services.notification_service import NotificationService
from .services.job_manager import JobManager
from .services.bid_manager import BidManager
from .services.change_order_manager import ChangeOrderManager
from .services.expiration_service import ExpirationService, SweepReport

# Utilities
from .utils.database import DatabaseManager, InMemoryEntityStore
from .utils.logger import setup_logger, get_logger

# Exceptions
from .core.exceptions import (
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
    ConfigurationError,
    ValidationError
)

__all__ = [
    # Core
    "JobOrchestrator",
    "OrchestratorConfig",

    # Models
    "Job",
    "JobStatus",
    "ProgressionEntry",
    "Bid",
    "BidStatus",
    "ChangeOrder",
    "ChangeOrderStatus",
    "EscrowPayment",
    "PaymentStatus",
    "LineItem",
    "OperationResult",

    # Services (for advanced usage)
    "NotificationService",
    "JobManager",
    "BidManager",
    "ChangeOrderManager",
    "ExpirationService",
    "SweepReport",

    # Utilities
    "DatabaseManager",
    "InMemoryEntityStore",
    "setup_logger",
    "get_logger",

    # Exceptions
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
    "ConfigurationError",
    "ValidationError",

    # Package metadata
    "__version__",
    "__author__",
    "__license__"
]

# Package-level configuration
import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())


# Quick start helper
def quick_start(database_url: str = "postgresql://localhost/marketplace_jobs") -> JobOrchestrator:
    """
    Quick start helper for simple use cases.

    Args:
        database_url: PostgreSQL connection URL

    Returns:
        Configured JobOrchestrator instance; call ``await orchestrator.start()``
    """
    return JobOrchestrator(config=OrchestratorConfig(database_url=database_url))
