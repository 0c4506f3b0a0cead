"""
Bid data models for Marketplace Job Orchestrator

A bid is a mechanic's priced offer against a posted job. Bids are resolved
exactly once.
"""

from enum import Enum
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any
from dataclasses import dataclass, field

from .job import money, money_str
from ..utils.clock import utc_now, to_iso, from_iso


class BidStatus(Enum):
    """Bid status enumeration."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DECLINED = "declined"
    WITHDRAWN = "withdrawn"


@dataclass
class Bid:
    """A mechanic's offer against a job."""

    bid_id: str
    job_id: str
    mechanic_id: str
    customer_id: str
    price: Decimal

    message: Optional[str] = None
    mechanic_name: Optional[str] = None
    bid_type: str = "fixed"
    estimated_duration_minutes: Optional[int] = None

    status: BidStatus = BidStatus.PENDING
    reason: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None
    version: int = 0

    def is_resolved(self) -> bool:
        return self.status != BidStatus.PENDING

    def resolve(self, status: BidStatus, reason: Optional[str] = None, at: Optional[datetime] = None):
        """Move a pending bid to its final status."""
        now = at or utc_now()
        self.status = status
        self.reason = reason
        self.resolved_at = now
        self.updated_at = now

    def to_dict(self) -> Dict[str, Any]:
        """Convert bid to dictionary."""
        return {
            "bid_id": self.bid_id,
            "job_id": self.job_id,
            "mechanic_id": self.mechanic_id,
            "customer_id": self.customer_id,
            "price": money_str(self.price),
            "message": self.message,
            "mechanic_name": self.mechanic_name,
            "bid_type": self.bid_type,
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "status": self.status.value,
            "reason": self.reason,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "resolved_at": to_iso(self.resolved_at),
            "version": self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Bid":
        """Create bid from dictionary."""
        data = dict(data)
        data["price"] = money(data.get("price"))
        data["status"] = BidStatus(data.get("status", BidStatus.PENDING.value))
        data["resolved_at"] = from_iso(data.get("resolved_at"))
        for field_name in ["created_at", "updated_at"]:
            if data.get(field_name):
                data[field_name] = from_iso(data[field_name])
            else:
                data.pop(field_name, None)
        data["version"] = int(data.get("version") or 0)

        known = cls.__dataclass_fields__.keys()
        return cls(**{key: value for key, value in data.items() if key in known})
