"""
ChangeOrderManager service for Marketplace Job Orchestrator

Lets the assigned mechanic request additional scoped work on a job. The
customer approves or rejects the request; approved work is paid into escrow
and released when the job completes. Pending requests expire at their own
deadline or when the job completes.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Any, Tuple

from ..models.job import Job, JobStatus, CHANGE_ORDER_ELIGIBLE_STATUSES, format_money
from ..models.change_order import (
    ChangeOrder, ChangeOrderStatus, EscrowPayment, PaymentStatus, LineItem
)
from ..core.exceptions import (
    ChangeOrderNotFoundError, NotFoundError, InvalidStateError, UnauthorizedError, ValidationError
)
from ..services.job_manager import JobManager
from ..utils.database import CHANGE_ORDERS, PAYMENTS
from ..utils.ids import sort_by_id
from ..utils.logger import get_logger, set_log_context, LoggerContext
from ..utils.validation import validate_id, validate_amount, require_text

COMPLETION_EXPIRY_REASON = "Job completed - change order no longer applicable"
DEADLINE_EXPIRY_REASON = "Change order expired without customer response"

CENT = Decimal("0.01")


class ChangeOrderManager:
    """
    Manages change orders and their escrow payments.

    Provides capabilities for:
    - Change order creation with priced line items
    - Customer approval and rejection, mechanic cancellation
    - Escrow payment and release
    - Expiry on job completion and at the change order deadline
    - Change order statistics
    """

    def __init__(self, job_manager: JobManager):
        """
        Initialize ChangeOrderManager.

        Args:
            job_manager: Job state machine whose store, locks and notifications are shared
        """
        self.jobs = job_manager
        self.store = job_manager.store
        self.notifications = job_manager.notifications
        self.locks = job_manager.locks
        self.clock = job_manager.clock
        self.ids = job_manager.ids
        self.config = job_manager.config

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="change_order_manager")

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def get_change_order(self, change_order_id: str) -> Optional[ChangeOrder]:
        record = await self.store.get(CHANGE_ORDERS, change_order_id)
        return ChangeOrder.from_dict(record) if record else None

    async def load_change_order(self, change_order_id: str) -> ChangeOrder:
        change_order = await self.get_change_order(change_order_id)
        if change_order is None:
            raise ChangeOrderNotFoundError(change_order_id)
        return change_order

    async def save_change_order(self, change_order: ChangeOrder) -> ChangeOrder:
        change_order.updated_at = self.clock()
        return ChangeOrder.from_dict(await self.store.upsert(CHANGE_ORDERS, change_order.to_dict()))

    async def save_payment(self, payment: EscrowPayment) -> EscrowPayment:
        return EscrowPayment.from_dict(await self.store.upsert(PAYMENTS, payment.to_dict()))

    async def get_payment_for_change_order(self, change_order_id: str) -> Optional[EscrowPayment]:
        records = await self.store.list(PAYMENTS, {"change_order_id": change_order_id})
        return EscrowPayment.from_dict(records[0]) if records else None

    async def get_change_orders_by_job(self, job_id: str) -> List[ChangeOrder]:
        """Change orders for a job in creation order."""
        records = await self.store.list(CHANGE_ORDERS, {"job_id": job_id})
        return sort_by_id([ChangeOrder.from_dict(r) for r in records],
                          key=lambda c: c.change_order_id, descending=False)

    async def list_change_orders(self, mechanic_id: Optional[str] = None, customer_id: Optional[str] = None,
                                 status: Optional[ChangeOrderStatus] = None) -> List[ChangeOrder]:
        """List change orders, newest first."""
        filters: Dict[str, Any] = {}
        if mechanic_id:
            filters["mechanic_id"] = mechanic_id
        if customer_id:
            filters["customer_id"] = customer_id
        if status:
            filters["status"] = status.value
        records = await self.store.list(CHANGE_ORDERS, filters)
        return sort_by_id([ChangeOrder.from_dict(r) for r in records], key=lambda c: c.change_order_id)

    def _resume_if_paused(self, job: Job, change_order: ChangeOrder, description: str, at: datetime):
        """Return a job paused for this change order to in_progress."""
        if job.status == JobStatus.PENDING and job.paused_by_change_order_id == change_order.change_order_id:
            self.jobs.apply_transition(job, JobStatus.IN_PROGRESS, description, actor="System", at=at)
            job.paused_by_change_order_id = None

    @staticmethod
    def _require_pending(change_order: ChangeOrder, action: str):
        if not change_order.is_pending():
            raise InvalidStateError(
                f"Change order must be pending to {action}",
                entity_id=change_order.change_order_id,
                current_status=change_order.status.value
            )

    @staticmethod
    def _build_line_items(change_order_id: str, line_items: List[Dict[str, Any]]) -> List[LineItem]:
        items = []
        for index, raw in enumerate(line_items):
            description = require_text(f"line_items[{index}].description", raw.get("description"))
            quantity = validate_amount(f"line_items[{index}].quantity", raw.get("quantity", 1))
            unit_price = validate_amount(f"line_items[{index}].unit_price", raw.get("unit_price"), allow_zero=True)
            items.append(LineItem(
                line_item_id=raw.get("line_item_id") or f"{change_order_id}-L{index + 1}",
                description=description,
                quantity=quantity,
                unit_price=unit_price
            ))
        return items

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_change_order(
        self,
        job_id: str,
        mechanic_id: str,
        title: str,
        description: Optional[str] = None,
        line_items: Optional[List[Dict[str, Any]]] = None,
        total_amount: Any = None,
        mechanic_name: Optional[str] = None,
        change_order_id: Optional[str] = None
    ) -> ChangeOrder:
        """
        Request additional work on a job.

        When line items are given the total is their sum. A job that is in
        progress is paused (``pending``) until the request is resolved.
        Passing an explicit ``change_order_id`` makes a retried request
        idempotent.

        Raises:
            InvalidStateError: Unless the job is scheduled, confirmed or in progress
            UnauthorizedError: If the caller is not the assigned mechanic
        """
        validate_id("job_id", job_id)
        self.jobs.check_mechanic_id(mechanic_id)
        title = require_text("title", title)
        if change_order_id is not None:
            validate_id("change_order_id", change_order_id)
        new_id = change_order_id or self.ids.change_order_id()

        items = self._build_line_items(new_id, line_items or [])
        if items:
            amount = sum((item.total_price for item in items), Decimal("0"))
            if total_amount is not None and validate_amount("total_amount", total_amount) != amount:
                raise ValidationError("total_amount", "does not match the sum of the line items", total_amount)
            if amount <= 0:
                raise ValidationError("line_items", "total must be positive", amount)
        else:
            amount = validate_amount("total_amount", total_amount)

        with LoggerContext(job_id=job_id, change_order_id=new_id):
            async with self.locks.hold(job_id):
                if change_order_id is not None:
                    existing = await self.get_change_order(change_order_id)
                    if existing is not None:
                        if existing.job_id != job_id or existing.mechanic_id != mechanic_id:
                            raise ValidationError("change_order_id", "identifier already in use", change_order_id)
                        return existing

                job = await self.jobs.load_job(job_id)
                # The job already references this id when an earlier attempt
                # stopped between the job write and the change order write
                resuming = new_id in job.change_orders
                if not resuming and job.status not in CHANGE_ORDER_ELIGIBLE_STATUSES:
                    raise InvalidStateError(
                        "Change orders can only be created for scheduled, confirmed or in-progress jobs",
                        entity_id=job_id, current_status=job.status.value
                    )
                self.jobs.require_assigned_mechanic(job, mechanic_id, "request additional work")

                now = self.clock()
                change_order = ChangeOrder(
                    change_order_id=new_id,
                    job_id=job_id,
                    mechanic_id=mechanic_id,
                    customer_id=job.customer_id,
                    title=title,
                    total_amount=amount,
                    description=description,
                    line_items=items,
                    expires_at=now + self.config.change_order_ttl,
                    created_at=now,
                    updated_at=now
                )

                if not resuming:
                    job.change_orders.append(new_id)
                    if job.status == JobStatus.IN_PROGRESS:
                        self.jobs.apply_transition(job, JobStatus.PENDING,
                                                   "Job paused - waiting for customer approval of change order",
                                                   actor="System", at=now)
                        job.paused_by_change_order_id = new_id
                    job.record_progress("change_order_created",
                                        f"Additional work requested: {title} ({format_money(amount)})",
                                        actor=mechanic_name or job.mechanic_name or "Mechanic", timestamp=now)
                    job = await self.jobs.save_job(job)

                change_order = ChangeOrder.from_dict(await self.store.upsert(CHANGE_ORDERS, change_order.to_dict()))

            self.logger.info("Change order created", extra={
                "mechanic_id": mechanic_id,
                "total_amount": str(amount),
                "job_paused": job.paused_by_change_order_id == new_id
            })
            self.notifications.notify(job.customer_id, job_id, "change_order_created", {
                "change_order_id": new_id,
                "title": title,
                "amount": str(amount),
                "mechanic_name": mechanic_name or job.mechanic_name or "Your mechanic"
            })

        return change_order

    async def approve_change_order(self, change_order_id: str, customer_id: str) -> ChangeOrder:
        """
        Approve a pending change order.

        Raises:
            InvalidStateError: Unless the change order is pending
            UnauthorizedError: If the caller is not the job's customer
        """
        validate_id("change_order_id", change_order_id)
        self.jobs.check_customer_id(customer_id)
        snapshot = await self.load_change_order(change_order_id)

        with LoggerContext(job_id=snapshot.job_id, change_order_id=change_order_id):
            async with self.locks.hold(snapshot.job_id):
                change_order = await self.load_change_order(change_order_id)
                job = await self.jobs.load_job(change_order.job_id)
                self._require_pending(change_order, "approve it")
                self.jobs.require_customer(job, customer_id, "approve change orders")

                now = self.clock()
                job.additional_work_amount += change_order.total_amount
                self._resume_if_paused(job, change_order, "Work resumed - change order approved", now)
                job.record_progress(
                    "change_order_approved",
                    f"Additional work approved: {change_order.title} ({format_money(change_order.total_amount)})",
                    actor=job.customer_name or "Customer", timestamp=now
                )

                change_order.status = ChangeOrderStatus.APPROVED
                change_order.approved_by = customer_id
                change_order.approved_at = now
                change_order.expires_at = None

                job = await self.jobs.save_job(job)
                change_order = await self.save_change_order(change_order)

            self.logger.info("Change order approved", extra={"total_amount": str(change_order.total_amount)})
            self.notifications.notify(change_order.mechanic_id, job.job_id, "change_order_approved", {
                "change_order_id": change_order_id,
                "title": change_order.title,
                "amount": str(change_order.total_amount),
                "customer_name": job.customer_name or "Customer"
            })

        return change_order

    async def reject_change_order(self, change_order_id: str, customer_id: str,
                                  reason: Optional[str] = None) -> ChangeOrder:
        """Reject a pending change order; the job continues with its original scope."""
        validate_id("change_order_id", change_order_id)
        self.jobs.check_customer_id(customer_id)
        snapshot = await self.load_change_order(change_order_id)

        with LoggerContext(job_id=snapshot.job_id, change_order_id=change_order_id):
            async with self.locks.hold(snapshot.job_id):
                change_order = await self.load_change_order(change_order_id)
                job = await self.jobs.load_job(change_order.job_id)
                self._require_pending(change_order, "reject it")
                self.jobs.require_customer(job, customer_id, "reject change orders")

                now = self.clock()
                self._resume_if_paused(job, change_order,
                                       "Work resumed - change order rejected, continuing with original scope", now)
                job.record_progress(
                    "change_order_rejected",
                    f"Additional work rejected: {change_order.title}" + (f" - {reason}" if reason else ""),
                    actor=job.customer_name or "Customer", timestamp=now
                )

                change_order.status = ChangeOrderStatus.REJECTED
                change_order.rejected_by = customer_id
                change_order.rejected_at = now
                change_order.reason = reason

                job = await self.jobs.save_job(job)
                change_order = await self.save_change_order(change_order)

            self.logger.info("Change order rejected", extra={"reason": reason})
            self.notifications.notify(change_order.mechanic_id, job.job_id, "change_order_rejected", {
                "change_order_id": change_order_id,
                "title": change_order.title,
                "reason": reason,
                "customer_name": job.customer_name or "Customer"
            })

        return change_order

    async def cancel_change_order(self, change_order_id: str, mechanic_id: str,
                                  reason: Optional[str] = None) -> ChangeOrder:
        """Withdraw a pending change order (requesting mechanic only)."""
        validate_id("change_order_id", change_order_id)
        self.jobs.check_mechanic_id(mechanic_id)
        snapshot = await self.load_change_order(change_order_id)

        with LoggerContext(job_id=snapshot.job_id, change_order_id=change_order_id):
            async with self.locks.hold(snapshot.job_id):
                change_order = await self.load_change_order(change_order_id)
                if change_order.mechanic_id != mechanic_id:
                    raise UnauthorizedError("Only the requesting mechanic can cancel this change order",
                                            actor_id=mechanic_id, job_id=change_order.job_id)
                self._require_pending(change_order, "cancel it")
                job = await self.jobs.load_job(change_order.job_id)

                now = self.clock()
                self._resume_if_paused(job, change_order, "Work resumed - change order cancelled", now)
                job.record_progress("change_order_cancelled",
                                    f"Additional work request cancelled: {change_order.title}",
                                    actor=job.mechanic_name or "Mechanic", timestamp=now)

                change_order.status = ChangeOrderStatus.CANCELLED
                change_order.reason = reason

                job = await self.jobs.save_job(job)
                change_order = await self.save_change_order(change_order)

            self.logger.info("Change order cancelled", extra={"reason": reason})
            self.notifications.notify(change_order.customer_id, job.job_id, "change_order_cancelled", {
                "change_order_id": change_order_id,
                "title": change_order.title,
                "reason": reason,
                "mechanic_name": job.mechanic_name or "Your mechanic"
            })

        return change_order

    async def process_change_order_payment(self, change_order_id: str, payment_method: Optional[str] = None,
                                           customer_id: Optional[str] = None) -> EscrowPayment:
        """
        Hold the payment for an approved change order in escrow.

        Raises:
            InvalidStateError: Unless the change order is approved
        """
        validate_id("change_order_id", change_order_id)
        if customer_id is not None:
            self.jobs.check_customer_id(customer_id)
        snapshot = await self.load_change_order(change_order_id)

        with LoggerContext(job_id=snapshot.job_id, change_order_id=change_order_id):
            async with self.locks.hold(snapshot.job_id):
                change_order = await self.load_change_order(change_order_id)
                if change_order.status != ChangeOrderStatus.APPROVED:
                    raise InvalidStateError("Change order must be approved before payment",
                                            entity_id=change_order_id, current_status=change_order.status.value)
                job = await self.jobs.load_job(change_order.job_id)
                if customer_id is not None:
                    self.jobs.require_customer(job, customer_id, "pay for change orders")

                # An earlier attempt may have stopped after the job or payment
                # write; each step below runs at most once per change order
                if change_order_id not in job.escrowed_change_orders:
                    job.paid_additional_work_amount += change_order.total_amount
                    job.escrowed_change_orders.append(change_order_id)
                    job = await self.jobs.save_job(job)

                payment = await self.get_payment_for_change_order(change_order_id)
                if payment is None:
                    payment = await self.save_payment(EscrowPayment(
                        payment_id=self.ids.payment_id(),
                        change_order_id=change_order_id,
                        job_id=job.job_id,
                        customer_id=change_order.customer_id,
                        mechanic_id=change_order.mechanic_id,
                        amount=change_order.total_amount,
                        payment_method=payment_method,
                        escrow_at=self.clock()
                    ))

                change_order.status = ChangeOrderStatus.ESCROW
                change_order.payment_id = payment.payment_id
                change_order = await self.save_change_order(change_order)

            self.logger.info("Change order payment held in escrow", extra={
                "payment_id": payment.payment_id,
                "amount": str(payment.amount)
            })
            self.notifications.notify(change_order.mechanic_id, job.job_id, "change_order_payment_escrow", {
                "change_order_id": change_order_id,
                "amount": str(payment.amount),
                "customer_name": job.customer_name or "Customer"
            })

        return payment

    async def release_escrow_payment(self, change_order_id: str) -> EscrowPayment:
        """
        Release the escrowed payment of a change order to the mechanic.

        The job's timeline entry is written before the payment and change
        order move to released/paid.

        Raises:
            InvalidStateError: Unless the change order is in escrow
        """
        validate_id("change_order_id", change_order_id)
        snapshot = await self.load_change_order(change_order_id)

        with LoggerContext(job_id=snapshot.job_id, change_order_id=change_order_id):
            async with self.locks.hold(snapshot.job_id):
                change_order = await self.load_change_order(change_order_id)
                payment = await self._load_escrow_payment(change_order)
                job = await self.jobs.load_job(change_order.job_id)

                self.record_settlement(job, [], [payment], at=self.clock())
                await self.jobs.save_job(job)

                payment = await self._release(change_order, payment)

            self._announce_released([(change_order, payment)])

        return payment

    async def expire_pending_for_job(self, job_id: str, reason: str = COMPLETION_EXPIRY_REASON) -> List[ChangeOrder]:
        """Expire every pending change order of a job. Safe to call repeatedly."""
        validate_id("job_id", job_id)

        with LoggerContext(job_id=job_id):
            async with self.locks.hold(job_id):
                job = await self.jobs.load_job(job_id)
                pending = [co for co in await self.get_change_orders_by_job(job_id) if co.is_pending()]
                if not pending:
                    return []

                now = self.clock()
                for change_order in pending:
                    self._resume_if_paused(job, change_order, "Work resumed - change order expired", now)
                self.record_settlement(job, pending, [], at=now)
                await self.jobs.save_job(job)

                expired = await self._expire_all(pending, reason)

            self._announce_expired(expired, reason)

        return expired

    async def expire_if_overdue(self, change_order_id: str) -> Optional[ChangeOrder]:
        """
        Expire a change order left pending past its deadline.

        Returns:
            The expired change order, or None if it no longer qualifies
        """
        snapshot = await self.get_change_order(change_order_id)
        if snapshot is None:
            return None

        with LoggerContext(job_id=snapshot.job_id, change_order_id=change_order_id):
            async with self.locks.hold(snapshot.job_id):
                change_order = await self.get_change_order(change_order_id)
                now = self.clock()
                if change_order is None or not change_order.is_past_deadline(now):
                    return None

                job = await self.jobs.get_job(change_order.job_id)
                if job is not None:
                    self._resume_if_paused(job, change_order, "Work resumed - change order expired", now)
                    job.record_progress(
                        "change_order_expired",
                        f"Change order expired: {change_order.title} ({format_money(change_order.total_amount)})",
                        actor="System", timestamp=now
                    )
                    await self.jobs.save_job(job)

                expired = await self._expire_all([change_order], DEADLINE_EXPIRY_REASON)

            self._announce_expired(expired, DEADLINE_EXPIRY_REASON)

        return expired[0]

    # ------------------------------------------------------------------
    # Completion settlement (caller holds the job lock)
    # ------------------------------------------------------------------

    async def plan_settlement(self, job: Job) -> Tuple[List[ChangeOrder], List[Tuple[ChangeOrder, EscrowPayment]]]:
        """
        Collect what completing ``job`` settles: pending change orders to
        expire and escrowed change orders with the payments to release.
        Approved but unpaid change orders are left untouched. Nothing is
        written.
        """
        change_orders = await self.get_change_orders_by_job(job.job_id)
        pending = [co for co in change_orders if co.is_pending()]
        escrowed = []
        for change_order in change_orders:
            if change_order.status == ChangeOrderStatus.ESCROW:
                escrowed.append((change_order, await self._load_escrow_payment(change_order)))
        return pending, escrowed

    async def apply_settlement(
        self,
        pending: List[ChangeOrder],
        escrowed: List[Tuple[ChangeOrder, EscrowPayment]]
    ) -> Tuple[List[ChangeOrder], List[Tuple[ChangeOrder, EscrowPayment]]]:
        """Write a planned settlement. The job record must already be saved."""
        expired = await self._expire_all(pending, COMPLETION_EXPIRY_REASON)
        released = []
        for change_order, payment in escrowed:
            released.append((change_order, await self._release(change_order, payment)))
        return expired, released

    def announce_settlement(self, expired: List[ChangeOrder],
                            released: List[Tuple[ChangeOrder, EscrowPayment]]):
        """Notify both parties of a written settlement."""
        self._announce_expired(expired, COMPLETION_EXPIRY_REASON)
        self._announce_released(released)

    def record_settlement(self, job: Job, expired: List[ChangeOrder], released: List[EscrowPayment],
                          at: datetime):
        """Add timeline entries for expired change orders and released payments."""
        if expired:
            job.record_progress(
                "change_orders_expired",
                f"{len(expired)} pending change order(s) expired due to job completion",
                actor="System", timestamp=at
            )
            for change_order in expired:
                job.record_progress(
                    "change_order_expired",
                    f"Change order expired: {change_order.title} ({format_money(change_order.total_amount)})",
                    actor="System", timestamp=at
                )
        for payment in released:
            job.record_progress(
                "change_order_payment_released",
                f"Additional work payment released: {format_money(payment.amount)}",
                actor="System", timestamp=at
            )

    async def _expire_all(self, change_orders: List[ChangeOrder], reason: str) -> List[ChangeOrder]:
        expired = []
        for change_order in change_orders:
            change_order.status = ChangeOrderStatus.EXPIRED
            change_order.reason = reason
            expired.append(await self.save_change_order(change_order))
        return expired

    def _announce_expired(self, expired: List[ChangeOrder], reason: str):
        for change_order in expired:
            self.logger.info("Change order expired", extra={
                "change_order_id": change_order.change_order_id,
                "reason": reason
            })
            payload = {
                "change_order_id": change_order.change_order_id,
                "title": change_order.title,
                "amount": str(change_order.total_amount),
                "reason": reason
            }
            self.notifications.notify(change_order.customer_id, change_order.job_id, "change_order_expired", payload)
            self.notifications.notify(change_order.mechanic_id, change_order.job_id, "change_order_expired", payload)

    async def _load_escrow_payment(self, change_order: ChangeOrder) -> EscrowPayment:
        if change_order.status != ChangeOrderStatus.ESCROW:
            raise InvalidStateError("Change order must be in escrow to release payment",
                                    entity_id=change_order.change_order_id,
                                    current_status=change_order.status.value)

        payment = await self.get_payment_for_change_order(change_order.change_order_id)
        if payment is None:
            raise NotFoundError("Escrow payment", change_order.change_order_id)
        return payment

    async def _release(self, change_order: ChangeOrder, payment: EscrowPayment) -> EscrowPayment:
        # The payment may already be released by an earlier, interrupted attempt
        if payment.status != PaymentStatus.RELEASED:
            payment.status = PaymentStatus.RELEASED
            payment.released_at = self.clock()
            payment = await self.save_payment(payment)

        change_order.status = ChangeOrderStatus.PAID
        await self.save_change_order(change_order)
        return payment

    def _announce_released(self, released: List[Tuple[ChangeOrder, EscrowPayment]]):
        for change_order, payment in released:
            self.logger.info("Escrow payment released", extra={
                "change_order_id": change_order.change_order_id,
                "payment_id": payment.payment_id,
                "amount": str(payment.amount)
            })
            self.notifications.notify(change_order.mechanic_id, change_order.job_id, "change_order_payment_released", {
                "change_order_id": change_order.change_order_id,
                "amount": str(payment.amount)
            })

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_change_order_stats(self, mechanic_id: Optional[str] = None,
                                     customer_id: Optional[str] = None) -> Dict[str, Any]:
        """Counts per status plus total and average amount."""
        change_orders = await self.list_change_orders(mechanic_id=mechanic_id, customer_id=customer_id)

        stats: Dict[str, Any] = {"total": len(change_orders)}
        for status in ChangeOrderStatus:
            stats[status.value] = sum(1 for co in change_orders if co.status == status)

        total_amount = sum((co.total_amount for co in change_orders), Decimal("0"))
        stats["total_amount"] = total_amount
        stats["average_amount"] = (
            (total_amount / len(change_orders)).quantize(CENT) if change_orders else Decimal("0")
        )
        return stats
