"""
BidManager service for Marketplace Job Orchestrator

Handles mechanics' bids against posted jobs: submission, acceptance with
atomic decline of sibling bids, rejection and withdrawal.
"""

from typing import Dict, List, Optional, Any, Tuple

from ..models.job import Job, JobStatus, format_money
from ..models.bid import Bid, BidStatus
from ..core.exceptions import BidNotFoundError, InvalidStateError, AlreadyResolvedError, UnauthorizedError
from ..services.job_manager import JobManager
from ..utils.database import BIDS
from ..utils.ids import sort_by_id
from ..utils.logger import get_logger, set_log_context, LoggerContext
from ..utils.validation import validate_id, validate_amount

DECLINED_REASON = "Another bid was accepted"


class BidManager:
    """
    Manages bids and the one-accepted-bid-per-job rule.

    Every bid command runs under the lock of the bid's job, so acceptance,
    rejection and the expiration sweep never interleave on the same job.
    """

    def __init__(self, job_manager: JobManager):
        """
        Initialize BidManager.

        Args:
            job_manager: Job state machine whose store, locks and notifications are shared
        """
        self.jobs = job_manager
        self.store = job_manager.store
        self.notifications = job_manager.notifications
        self.locks = job_manager.locks
        self.clock = job_manager.clock
        self.ids = job_manager.ids

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="bid_manager")

    async def get_bid(self, bid_id: str) -> Optional[Bid]:
        record = await self.store.get(BIDS, bid_id)
        return Bid.from_dict(record) if record else None

    async def load_bid(self, bid_id: str) -> Bid:
        bid = await self.get_bid(bid_id)
        if bid is None:
            raise BidNotFoundError(bid_id)
        return bid

    async def save_bid(self, bid: Bid) -> Bid:
        bid.updated_at = self.clock()
        return Bid.from_dict(await self.store.upsert(BIDS, bid.to_dict()))

    async def get_bids_by_job(self, job_id: str) -> List[Bid]:
        """Bids for a job in submission order."""
        records = await self.store.list(BIDS, {"job_id": job_id})
        return sort_by_id([Bid.from_dict(r) for r in records], key=lambda b: b.bid_id, descending=False)

    async def get_bids_by_mechanic(self, mechanic_id: str) -> List[Bid]:
        records = await self.store.list(BIDS, {"mechanic_id": mechanic_id})
        return sort_by_id([Bid.from_dict(r) for r in records], key=lambda b: b.bid_id)

    async def get_accepted_bid(self, job_id: str) -> Optional[Bid]:
        job = await self.jobs.load_job(job_id)
        if not job.accepted_bid_id:
            return None
        return await self.get_bid(job.accepted_bid_id)

    async def get_mechanic_bid_stats(self, mechanic_id: str) -> Dict[str, Any]:
        """Count a mechanic's bids by status."""
        bids = await self.get_bids_by_mechanic(mechanic_id)
        stats = {status.value: 0 for status in BidStatus}
        for bid in bids:
            stats[bid.status.value] += 1
        stats["total"] = len(bids)
        return stats

    async def submit_bid(
        self,
        job_id: str,
        mechanic_id: str,
        price: Any,
        message: Optional[str] = None,
        mechanic_name: Optional[str] = None,
        bid_type: str = "fixed",
        estimated_duration_minutes: Optional[int] = None,
        bid_id: Optional[str] = None
    ) -> Bid:
        """
        Submit a bid on a posted or bidding job.

        The first bid moves the job from ``posted`` to ``bidding``. Passing an
        explicit ``bid_id`` makes a retried submission idempotent.

        Raises:
            InvalidStateError: If the job is past the bidding phase
        """
        validate_id("job_id", job_id)
        self.jobs.check_mechanic_id(mechanic_id)
        amount = validate_amount("price", price)
        if bid_id is not None:
            validate_id("bid_id", bid_id)

        with LoggerContext(job_id=job_id):
            async with self.locks.hold(job_id):
                if bid_id is not None:
                    existing = await self.get_bid(bid_id)
                    if existing is not None and existing.job_id == job_id and existing.mechanic_id == mechanic_id:
                        return existing

                job = await self.jobs.load_job(job_id)
                if not job.is_pre_acceptance():
                    raise InvalidStateError("Bids can only be placed on posted or bidding jobs",
                                            entity_id=job_id, current_status=job.status.value)

                now = self.clock()
                bid = Bid(
                    bid_id=bid_id or self.ids.bid_id(),
                    job_id=job_id,
                    mechanic_id=mechanic_id,
                    customer_id=job.customer_id,
                    price=amount,
                    message=message,
                    mechanic_name=mechanic_name,
                    bid_type=bid_type,
                    estimated_duration_minutes=estimated_duration_minutes,
                    created_at=now,
                    updated_at=now
                )

                description = f"Bid submitted by {mechanic_name or 'Mechanic'} for {format_money(amount)}"
                if job.status == JobStatus.POSTED:
                    self.jobs.apply_transition(job, JobStatus.BIDDING, description,
                                               actor=mechanic_name or "Mechanic", at=now)
                else:
                    job.record_progress(JobStatus.BIDDING.value, description,
                                        actor=mechanic_name or "Mechanic", timestamp=now)

                job = await self.jobs.save_job(job)
                bid = Bid.from_dict(await self.store.upsert(BIDS, bid.to_dict()))

            self.logger.info("Bid submitted", extra={
                "bid_id": bid.bid_id,
                "mechanic_id": mechanic_id,
                "price": str(amount)
            })

            self.notifications.ensure_conversation(job.job_id, [job.customer_id, mechanic_id], {
                "job_title": job.title,
                "bid_id": bid.bid_id,
                "price": str(amount),
                "bid_type": bid_type,
                "message": message
            })
            self.notifications.notify(job.customer_id, job.job_id, "new_bid_placed", {
                "bid_id": bid.bid_id,
                "mechanic_name": mechanic_name,
                "price": str(amount)
            })

        return bid

    async def accept_bid(self, bid_id: str, customer_id: Optional[str] = None) -> Tuple[Job, Bid]:
        """
        Accept a pending bid.

        The job is written first (assigning the mechanic, guarded by its
        version), then the accepted bid and every pending sibling, declined,
        are written as one batch. If the batch write fails after the job was
        written, calling accept_bid again with the same bid completes it.

        Returns:
            The updated job and accepted bid

        Raises:
            BidNotFoundError, JobNotFoundError: If the bid or its job is missing
            AlreadyResolvedError: If the bid is no longer pending
            InvalidStateError: If the job has left ``posted``/``bidding``
        """
        validate_id("bid_id", bid_id)
        if customer_id is not None:
            self.jobs.check_customer_id(customer_id)

        snapshot = await self.load_bid(bid_id)

        with LoggerContext(job_id=snapshot.job_id, bid_id=bid_id):
            async with self.locks.hold(snapshot.job_id):
                bid = await self.load_bid(bid_id)
                job = await self.jobs.load_job(bid.job_id)
                if customer_id is not None:
                    self.jobs.require_customer(job, customer_id, "accept bids on this job")

                resuming = job.accepted_bid_id == bid.bid_id and bid.status == BidStatus.PENDING
                if not resuming:
                    if bid.is_resolved():
                        raise AlreadyResolvedError("Bid", bid_id, bid.status.value)
                    if not job.is_pre_acceptance():
                        raise InvalidStateError("Job is no longer accepting bids",
                                                entity_id=job.job_id, current_status=job.status.value)

                    now = self.clock()
                    job.mechanic_id = bid.mechanic_id
                    job.mechanic_name = bid.mechanic_name
                    job.accepted_bid_id = bid.bid_id
                    job.price = bid.price
                    job.estimated_cost = bid.price
                    self.jobs.apply_transition(
                        job, JobStatus.ACCEPTED,
                        f"Bid accepted from {bid.mechanic_name or 'Mechanic'} for {format_money(bid.price)}",
                        actor=job.customer_name or "Customer", at=now
                    )
                    job = await self.jobs.save_job(job)

                now = self.clock()
                batch = []
                for sibling in await self.get_bids_by_job(job.job_id):
                    if sibling.bid_id == bid.bid_id:
                        sibling.resolve(BidStatus.ACCEPTED, at=now)
                        batch.append(sibling)
                    elif sibling.status == BidStatus.PENDING:
                        sibling.resolve(BidStatus.DECLINED, reason=DECLINED_REASON, at=now)
                        batch.append(sibling)

                written = [Bid.from_dict(r) for r in await self.store.upsert_many(BIDS, [b.to_dict() for b in batch])]
                accepted = next(b for b in written if b.bid_id == bid.bid_id)

            self.logger.info("Bid accepted", extra={
                "mechanic_id": accepted.mechanic_id,
                "price": str(accepted.price),
                "declined_bids": len(written) - 1,
                "resumed": resuming
            })

            self.notifications.notify(accepted.mechanic_id, job.job_id, "bid_accepted", {
                "job_title": job.title,
                "customer_name": job.customer_name
            })
            self.notifications.notify(job.customer_id, job.job_id, "bid_accepted_confirmation", {
                "mechanic_name": accepted.mechanic_name
            })

        return job, accepted

    async def reject_bid(self, bid_id: str, customer_id: Optional[str] = None,
                         reason: Optional[str] = None) -> Bid:
        """
        Reject a pending bid. The job is not modified.

        Raises:
            AlreadyResolvedError: If the bid is no longer pending
        """
        validate_id("bid_id", bid_id)
        if customer_id is not None:
            self.jobs.check_customer_id(customer_id)

        snapshot = await self.load_bid(bid_id)

        with LoggerContext(job_id=snapshot.job_id, bid_id=bid_id):
            async with self.locks.hold(snapshot.job_id):
                bid = await self.load_bid(bid_id)
                if customer_id is not None and bid.customer_id != customer_id:
                    raise UnauthorizedError("Only the job's customer can reject bids",
                                            actor_id=customer_id, job_id=bid.job_id)
                if bid.is_resolved():
                    raise AlreadyResolvedError("Bid", bid_id, bid.status.value)

                bid.resolve(BidStatus.REJECTED, reason=reason, at=self.clock())
                bid = await self.save_bid(bid)

            job = await self.jobs.get_job(bid.job_id)
            self.logger.info("Bid rejected", extra={"mechanic_id": bid.mechanic_id})
            self.notifications.notify(bid.mechanic_id, bid.job_id, "bid_rejected", {
                "job_title": job.title if job else "Your bid",
                "mechanic_name": bid.mechanic_name,
                "reason": reason
            })

        return bid

    async def withdraw_bid(self, bid_id: str, mechanic_id: str) -> Bid:
        """
        Withdraw a mechanic's own pending bid.

        Raises:
            UnauthorizedError: If the caller did not place the bid
            AlreadyResolvedError: If the bid is no longer pending
        """
        validate_id("bid_id", bid_id)
        self.jobs.check_mechanic_id(mechanic_id)

        snapshot = await self.load_bid(bid_id)

        with LoggerContext(job_id=snapshot.job_id, bid_id=bid_id):
            async with self.locks.hold(snapshot.job_id):
                bid = await self.load_bid(bid_id)
                if bid.mechanic_id != mechanic_id:
                    raise UnauthorizedError("Only the mechanic who placed the bid can withdraw it",
                                            actor_id=mechanic_id, job_id=bid.job_id)
                if bid.is_resolved():
                    raise AlreadyResolvedError("Bid", bid_id, bid.status.value)

                bid.resolve(BidStatus.WITHDRAWN, at=self.clock())
                bid = await self.save_bid(bid)

            self.logger.info("Bid withdrawn", extra={"mechanic_id": mechanic_id})

        return bid
