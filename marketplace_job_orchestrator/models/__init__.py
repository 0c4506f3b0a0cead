"""
Data models for Marketplace Job Orchestrator

This module contains the data models used throughout the orchestrator:
jobs and their progression timeline, bids, change orders with escrow
payments, and the result type returned by every command.
"""

# Job models
from .job import (
    Job,
    JobStatus,
    ProgressionEntry,
    JOB_STATUS_TRANSITIONS,
    can_transition_to,
    get_valid_transitions
)

# Bid models
from .bid import Bid, BidStatus

# Change order models
from .change_order import (
    ChangeOrder,
    ChangeOrderStatus,
    EscrowPayment,
    PaymentStatus,
    LineItem,
    CHANGE_ORDER_STATUS_TRANSITIONS
)

# Command results
from .result import OperationResult

__all__ = [
    # Job models
    "Job",
    "JobStatus",
    "ProgressionEntry",
    "JOB_STATUS_TRANSITIONS",
    "can_transition_to",
    "get_valid_transitions",

    # Bid models
    "Bid",
    "BidStatus",

    # Change order models
    "ChangeOrder",
    "ChangeOrderStatus",
    "EscrowPayment",
    "PaymentStatus",
    "LineItem",
    "CHANGE_ORDER_STATUS_TRANSITIONS",

    # Command results
    "OperationResult"
]
