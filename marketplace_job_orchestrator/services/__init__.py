"""
Services package for Marketplace Job Orchestrator

Contains the lifecycle service implementations coordinated by the orchestrator.
"""

from .notification_service import NotificationService, LoggingNotificationGateway
from .job_manager import JobManager
from .bid_manager import BidManager
from .change_order_manager import ChangeOrderManager
from .expiration_service import ExpirationService, SweepReport

__all__ = [
    "NotificationService",
    "LoggingNotificationGateway",
    "JobManager",
    "BidManager",
    "ChangeOrderManager",
    "ExpirationService",
    "SweepReport"
]
