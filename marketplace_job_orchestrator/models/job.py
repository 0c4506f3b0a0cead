"""
Job-related data models for Marketplace Job Orchestrator

Defines the Job aggregate, its status enumeration, the append-only progression
timeline and the legal status transitions.
"""

from enum import Enum
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

from ..utils.clock import utc_now, to_iso, from_iso


def money(value: Any) -> Optional[Decimal]:
    """Coerce a stored amount into a Decimal."""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money_str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def format_money(value: Optional[Decimal]) -> str:
    """Human-readable dollar amount for timeline descriptions."""
    return f"${value or Decimal('0'):,.2f}"


class JobStatus(Enum):
    """Job lifecycle status enumeration."""
    POSTED = "posted"
    BIDDING = "bidding"
    ACCEPTED = "accepted"
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses before a bid has been accepted
PRE_ACCEPTANCE_STATUSES = (JobStatus.POSTED, JobStatus.BIDDING)

# Statuses in which a mechanic is assigned
ASSIGNED_STATUSES = (
    JobStatus.ACCEPTED,
    JobStatus.SCHEDULED,
    JobStatus.CONFIRMED,
    JobStatus.IN_PROGRESS,
    JobStatus.PENDING,
    JobStatus.COMPLETED,
)

# Statuses in which a change order may be requested
CHANGE_ORDER_ELIGIBLE_STATUSES = (JobStatus.SCHEDULED, JobStatus.CONFIRMED, JobStatus.IN_PROGRESS)

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.CANCELLED)


@dataclass(frozen=True)
class ProgressionEntry:
    """One immutable entry in a job's progression timeline."""

    status: str
    timestamp: datetime
    description: str
    actor: str = "System"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": to_iso(self.timestamp),
            "description": self.description,
            "actor": self.actor
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressionEntry":
        return cls(
            status=data["status"],
            timestamp=from_iso(data["timestamp"]),
            description=data.get("description", ""),
            actor=data.get("actor") or "System"
        )


@dataclass
class Job:
    """Core job data model."""

    # Primary identification
    job_id: str
    customer_id: str
    title: str
    description: str

    # Status tracking
    status: JobStatus = JobStatus.POSTED

    # Listing details
    category: str = "general"
    priority: str = "medium"
    location: Optional[str] = None
    vehicle_id: Optional[str] = None
    customer_name: Optional[str] = None

    # Assignment
    mechanic_id: Optional[str] = None
    mechanic_name: Optional[str] = None
    accepted_bid_id: Optional[str] = None
    price: Optional[Decimal] = None
    estimated_cost: Optional[Decimal] = None

    # Direct booking
    is_direct_booking: bool = False
    requested_mechanic_id: Optional[str] = None

    # Scheduling
    scheduled_date: Optional[str] = None
    scheduled_time: Optional[str] = None
    scheduled_datetime: Optional[datetime] = None
    estimated_duration_minutes: Optional[int] = None
    special_instructions: Optional[str] = None
    schedule_confirmed_at: Optional[datetime] = None

    # Execution
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    work_completed: Optional[str] = None
    completion_notes: Optional[str] = None
    completion_photos: List[str] = field(default_factory=list)

    # Cancellation and expiry
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    is_expiring: bool = False
    expiring_at: Optional[datetime] = None

    # Audit trail and children
    progression_timeline: List[ProgressionEntry] = field(default_factory=list)
    change_orders: List[str] = field(default_factory=list)
    escrowed_change_orders: List[str] = field(default_factory=list)
    notes: List[Dict[str, Any]] = field(default_factory=list)

    # Additional work accounting
    additional_work_amount: Decimal = Decimal("0")
    paid_additional_work_amount: Decimal = Decimal("0")
    paused_by_change_order_id: Optional[str] = None

    # Metadata
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    version: int = 0

    def record_progress(self, status: str, description: str, actor: Optional[str] = None,
                        timestamp: Optional[datetime] = None) -> ProgressionEntry:
        """
        Append an entry to the progression timeline.

        Entries are kept ordered by timestamp; entries with equal timestamps
        keep their insertion order.
        """
        entry = ProgressionEntry(
            status=status,
            timestamp=timestamp or utc_now(),
            description=description,
            actor=actor or "System"
        )
        self.progression_timeline.append(entry)
        self.progression_timeline.sort(key=lambda e: e.timestamp)
        return entry

    def is_pre_acceptance(self) -> bool:
        return self.status in PRE_ACCEPTANCE_STATUSES

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_assigned_to(self, mechanic_id: Optional[str]) -> bool:
        return mechanic_id is not None and self.mechanic_id == mechanic_id

    def time_remaining(self, now: datetime, posting_ttl: timedelta) -> timedelta:
        """Time left before a pre-acceptance job expires (may be negative)."""
        return (self.created_at + posting_ttl) - now

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for serialization."""
        return {
            "job_id": self.job_id,
            "customer_id": self.customer_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "category": self.category,
            "priority": self.priority,
            "location": self.location,
            "vehicle_id": self.vehicle_id,
            "customer_name": self.customer_name,
            "mechanic_id": self.mechanic_id,
            "mechanic_name": self.mechanic_name,
            "accepted_bid_id": self.accepted_bid_id,
            "price": money_str(self.price),
            "estimated_cost": money_str(self.estimated_cost),
            "is_direct_booking": self.is_direct_booking,
            "requested_mechanic_id": self.requested_mechanic_id,
            "scheduled_date": self.scheduled_date,
            "scheduled_time": self.scheduled_time,
            "scheduled_datetime": to_iso(self.scheduled_datetime),
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "special_instructions": self.special_instructions,
            "schedule_confirmed_at": to_iso(self.schedule_confirmed_at),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "work_completed": self.work_completed,
            "completion_notes": self.completion_notes,
            "completion_photos": list(self.completion_photos),
            "cancellation_reason": self.cancellation_reason,
            "cancelled_at": to_iso(self.cancelled_at),
            "is_expiring": self.is_expiring,
            "expiring_at": to_iso(self.expiring_at),
            "progression_timeline": [entry.to_dict() for entry in self.progression_timeline],
            "change_orders": list(self.change_orders),
            "escrowed_change_orders": list(self.escrowed_change_orders),
            "notes": [dict(note) for note in self.notes],
            "additional_work_amount": money_str(self.additional_work_amount),
            "paid_additional_work_amount": money_str(self.paid_additional_work_amount),
            "paused_by_change_order_id": self.paused_by_change_order_id,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "version": self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Create job from dictionary."""
        data = dict(data)

        # Parse datetime fields
        for field_name in ["scheduled_datetime", "schedule_confirmed_at", "started_at", "completed_at",
                           "cancelled_at", "expiring_at"]:
            data[field_name] = from_iso(data.get(field_name))
        for field_name in ["created_at", "updated_at"]:
            if data.get(field_name):
                data[field_name] = from_iso(data[field_name])
            else:
                data.pop(field_name, None)

        # Parse money fields
        for field_name in ["price", "estimated_cost"]:
            data[field_name] = money(data.get(field_name))
        for field_name in ["additional_work_amount", "paid_additional_work_amount"]:
            data[field_name] = money(data.get(field_name)) or Decimal("0")

        data["status"] = JobStatus(data.get("status", JobStatus.POSTED.value))
        data["progression_timeline"] = [
            ProgressionEntry.from_dict(entry) for entry in data.get("progression_timeline") or []
        ]
        data["change_orders"] = list(data.get("change_orders") or [])
        data["escrowed_change_orders"] = list(data.get("escrowed_change_orders") or [])
        data["completion_photos"] = list(data.get("completion_photos") or [])
        data["notes"] = list(data.get("notes") or [])
        data["version"] = int(data.get("version") or 0)

        known = cls.__dataclass_fields__.keys()
        return cls(**{key: value for key, value in data.items() if key in known})


# Job status transition rules
JOB_STATUS_TRANSITIONS = {
    JobStatus.POSTED: [JobStatus.BIDDING, JobStatus.ACCEPTED, JobStatus.CANCELLED],
    JobStatus.BIDDING: [JobStatus.ACCEPTED, JobStatus.CANCELLED],
    JobStatus.ACCEPTED: [JobStatus.SCHEDULED],
    JobStatus.SCHEDULED: [JobStatus.CONFIRMED, JobStatus.IN_PROGRESS],
    JobStatus.CONFIRMED: [JobStatus.IN_PROGRESS],
    JobStatus.IN_PROGRESS: [JobStatus.PENDING, JobStatus.COMPLETED],
    JobStatus.PENDING: [JobStatus.IN_PROGRESS],
    JobStatus.COMPLETED: [],  # Terminal state
    JobStatus.CANCELLED: [],  # Terminal state
}


def can_transition_to(current_status: JobStatus, target_status: JobStatus) -> bool:
    """Check if a job can transition from current status to target status."""
    return target_status in JOB_STATUS_TRANSITIONS.get(current_status, [])


def get_valid_transitions(current_status: JobStatus) -> List[JobStatus]:
    """Get list of valid status transitions from current status."""
    return JOB_STATUS_TRANSITIONS.get(current_status, [])
