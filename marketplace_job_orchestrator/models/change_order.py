"""
Change order and escrow payment models for Marketplace Job Orchestrator

A change order requests additional scoped work on an assigned job. Once the
customer approves it, its payment is held in escrow until the job completes.
"""

from enum import Enum
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

from .job import money, money_str
from ..utils.clock import utc_now, to_iso, from_iso


class ChangeOrderStatus(Enum):
    """Change order status enumeration."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    ESCROW = "escrow"
    PAID = "paid"
    EXPIRED = "expired"


class PaymentStatus(Enum):
    """Escrow payment status enumeration."""
    ESCROW = "escrow"
    RELEASED = "released"


@dataclass
class LineItem:
    """One priced line of additional work."""

    line_item_id: str
    description: str
    quantity: Decimal = Decimal("1")
    unit_price: Decimal = Decimal("0")

    @property
    def total_price(self) -> Decimal:
        return self.quantity * self.unit_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line_item_id": self.line_item_id,
            "description": self.description,
            "quantity": money_str(self.quantity),
            "unit_price": money_str(self.unit_price),
            "total_price": money_str(self.total_price)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LineItem":
        return cls(
            line_item_id=data["line_item_id"],
            description=data.get("description", ""),
            quantity=money(data.get("quantity")) or Decimal("1"),
            unit_price=money(data.get("unit_price")) or Decimal("0")
        )


@dataclass
class ChangeOrder:
    """Request for additional work on an assigned job."""

    change_order_id: str
    job_id: str
    mechanic_id: str
    customer_id: str
    title: str
    total_amount: Decimal

    description: Optional[str] = None
    line_items: List[LineItem] = field(default_factory=list)
    status: ChangeOrderStatus = ChangeOrderStatus.PENDING
    reason: Optional[str] = None

    expires_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    payment_id: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    version: int = 0

    def is_pending(self) -> bool:
        return self.status == ChangeOrderStatus.PENDING

    def is_past_deadline(self, now: datetime) -> bool:
        return self.is_pending() and self.expires_at is not None and self.expires_at < now

    def to_dict(self) -> Dict[str, Any]:
        """Convert change order to dictionary."""
        return {
            "change_order_id": self.change_order_id,
            "job_id": self.job_id,
            "mechanic_id": self.mechanic_id,
            "customer_id": self.customer_id,
            "title": self.title,
            "total_amount": money_str(self.total_amount),
            "description": self.description,
            "line_items": [item.to_dict() for item in self.line_items],
            "status": self.status.value,
            "reason": self.reason,
            "expires_at": to_iso(self.expires_at),
            "approved_by": self.approved_by,
            "approved_at": to_iso(self.approved_at),
            "rejected_by": self.rejected_by,
            "rejected_at": to_iso(self.rejected_at),
            "payment_id": self.payment_id,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "version": self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeOrder":
        """Create change order from dictionary."""
        data = dict(data)
        data["total_amount"] = money(data.get("total_amount")) or Decimal("0")
        data["line_items"] = [LineItem.from_dict(item) for item in data.get("line_items") or []]
        data["status"] = ChangeOrderStatus(data.get("status", ChangeOrderStatus.PENDING.value))
        for field_name in ["expires_at", "approved_at", "rejected_at"]:
            data[field_name] = from_iso(data.get(field_name))
        for field_name in ["created_at", "updated_at"]:
            if data.get(field_name):
                data[field_name] = from_iso(data[field_name])
            else:
                data.pop(field_name, None)
        data["version"] = int(data.get("version") or 0)

        known = cls.__dataclass_fields__.keys()
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass
class EscrowPayment:
    """Payment for a change order held by the platform until release."""

    payment_id: str
    change_order_id: str
    job_id: str
    customer_id: str
    mechanic_id: str
    amount: Decimal

    currency: str = "USD"
    status: PaymentStatus = PaymentStatus.ESCROW
    payment_method: Optional[str] = None
    escrow_at: datetime = field(default_factory=utc_now)
    released_at: Optional[datetime] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "change_order_id": self.change_order_id,
            "job_id": self.job_id,
            "customer_id": self.customer_id,
            "mechanic_id": self.mechanic_id,
            "amount": money_str(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "payment_method": self.payment_method,
            "escrow_at": to_iso(self.escrow_at),
            "released_at": to_iso(self.released_at),
            "version": self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscrowPayment":
        data = dict(data)
        data["amount"] = money(data.get("amount")) or Decimal("0")
        data["status"] = PaymentStatus(data.get("status", PaymentStatus.ESCROW.value))
        data["released_at"] = from_iso(data.get("released_at"))
        if data.get("escrow_at"):
            data["escrow_at"] = from_iso(data["escrow_at"])
        else:
            data.pop("escrow_at", None)
        data["version"] = int(data.get("version") or 0)

        known = cls.__dataclass_fields__.keys()
        return cls(**{key: value for key, value in data.items() if key in known})


# Change order status transition rules
CHANGE_ORDER_STATUS_TRANSITIONS = {
    ChangeOrderStatus.PENDING: [
        ChangeOrderStatus.APPROVED,
        ChangeOrderStatus.REJECTED,
        ChangeOrderStatus.CANCELLED,
        ChangeOrderStatus.EXPIRED,
    ],
    ChangeOrderStatus.APPROVED: [ChangeOrderStatus.ESCROW],
    ChangeOrderStatus.ESCROW: [ChangeOrderStatus.PAID],
    ChangeOrderStatus.REJECTED: [],
    ChangeOrderStatus.CANCELLED: [],
    ChangeOrderStatus.PAID: [],
    ChangeOrderStatus.EXPIRED: [],
}
