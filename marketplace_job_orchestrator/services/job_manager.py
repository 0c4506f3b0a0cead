"""
JobManager service for Marketplace Job Orchestrator

Owns the Job status field and every legal transition of the job lifecycle:
posting, scheduling, schedule confirmation, start, completion, explicit
cancellation and administrative deletion. All mutations of one job are
serialized under that job's lock and persisted with an optimistic version
check.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Any, TYPE_CHECKING

from ..models.job import (
    Job, JobStatus,
    can_transition_to
)
from ..core.config import OrchestratorConfig
from ..core.exceptions import JobNotFoundError, InvalidStateError, UnauthorizedError, ValidationError
from ..services.notification_service import NotificationService, ADMINS_RECIPIENT
from ..utils.database import EntityStore, JOBS, BIDS
from ..utils.clock import Clock, utc_now
from ..utils.ids import IdGenerator, in_date_range, parse_id, sort_by_id
from ..utils.locks import KeyedLockManager
from ..utils.logger import get_logger, set_log_context, LoggerContext
from ..utils.validation import (
    validate_id, validate_amount, require_text, CUSTOMER_ID_PREFIX, MECHANIC_ID_PREFIX
)

# Conditional imports to avoid circular dependencies
if TYPE_CHECKING:
    from ..services.change_order_manager import ChangeOrderManager

DEFAULT_DURATION_MINUTES = 60
NOTE_PREVIEW_LENGTH = 50

EARLIEST = datetime.min.replace(tzinfo=timezone.utc)
LATEST = datetime.max.replace(tzinfo=timezone.utc)


class JobManager:
    """
    Manages the job lifecycle state machine.

    Provides capabilities for:
    - Job posting (open and direct bookings)
    - Scheduling and schedule confirmation
    - Start and completion by the assigned mechanic
    - Customer cancellation and administrative deletion
    - Job notes, listing and statistics
    """

    def __init__(
        self,
        store: EntityStore,
        notifications: NotificationService,
        locks: Optional[KeyedLockManager] = None,
        id_generator: Optional[IdGenerator] = None,
        config: Optional[OrchestratorConfig] = None,
        clock: Optional[Clock] = None
    ):
        """
        Initialize JobManager.

        Args:
            store: Entity store adapter
            notifications: Notification fan-out service
            locks: Per-job lock registry shared with the other lifecycle services
            id_generator: Sortable id generator
            config: Orchestrator configuration
            clock: Time source, injectable for tests
        """
        self.store = store
        self.notifications = notifications
        self.locks = locks or KeyedLockManager()
        self.clock = clock or utc_now
        self.ids = id_generator or IdGenerator(self.clock)
        self.config = config or OrchestratorConfig()

        # Wired by the orchestrator once both services exist
        self.change_order_manager: Optional['ChangeOrderManager'] = None

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="job_manager")

    async def start(self):
        """Start the job manager."""
        self.logger.info("Starting JobManager", extra={
            "posting_ttl_hours": self.config.posting_ttl_hours,
            "enforce_id_prefixes": self.config.enforce_id_prefixes,
            "change_orders_enabled": self.change_order_manager is not None
        })

    async def stop(self):
        """Stop the job manager."""
        self.logger.info("Stopping JobManager")

    # ------------------------------------------------------------------
    # Shared primitives (also used by the bid, change-order and sweep services)
    # ------------------------------------------------------------------

    def check_customer_id(self, value: Any, field: str = "customer_id") -> str:
        prefix = CUSTOMER_ID_PREFIX if self.config.enforce_id_prefixes else None
        return validate_id(field, value, prefix)

    def check_mechanic_id(self, value: Any, field: str = "mechanic_id") -> str:
        prefix = MECHANIC_ID_PREFIX if self.config.enforce_id_prefixes else None
        return validate_id(field, value, prefix)

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID, or None if it does not exist."""
        record = await self.store.get(JOBS, job_id)
        return Job.from_dict(record) if record else None

    async def load_job(self, job_id: str) -> Job:
        """Get a job by ID, raising JobNotFoundError if it does not exist."""
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def save_job(self, job: Job) -> Job:
        """Persist a job; fails with ConflictError if it changed since it was loaded."""
        job.updated_at = self.clock()
        record = await self.store.upsert(JOBS, job.to_dict())
        return Job.from_dict(record)

    def apply_transition(self, job: Job, target: JobStatus, description: str,
                         actor: Optional[str] = None, at: Optional[datetime] = None):
        """
        Move a job to ``target`` and record the progression entry.

        Raises:
            InvalidStateError: If the transition is not legal from the current status
        """
        if not can_transition_to(job.status, target):
            raise InvalidStateError(
                f"Cannot move job from {job.status.value} to {target.value}",
                entity_id=job.job_id,
                current_status=job.status.value
            )

        job.status = target
        job.record_progress(target.value, description, actor=actor, timestamp=at or self.clock())

    def require_assigned_mechanic(self, job: Job, mechanic_id: str, action: str):
        if not job.is_assigned_to(mechanic_id):
            raise UnauthorizedError(
                f"Only the assigned mechanic can {action}",
                actor_id=mechanic_id,
                job_id=job.job_id
            )

    def require_customer(self, job: Job, customer_id: str, action: str):
        if job.customer_id != customer_id:
            raise UnauthorizedError(
                f"Only the job's customer can {action}",
                actor_id=customer_id,
                job_id=job.job_id
            )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_job(
        self,
        customer_id: str,
        title: str,
        description: str,
        category: str = "general",
        priority: str = "medium",
        location: Optional[str] = None,
        vehicle_id: Optional[str] = None,
        customer_name: Optional[str] = None,
        estimated_cost: Any = None,
        requested_mechanic_id: Optional[str] = None,
        job_id: Optional[str] = None
    ) -> Job:
        """
        Post a new job.

        A job posted with ``requested_mechanic_id`` is a direct booking: the
        requested mechanic is notified and may bid on it like any other job.
        Passing an explicit ``job_id`` makes a retried post idempotent.
        """
        self.check_customer_id(customer_id)
        title = require_text("title", title)
        description = require_text("description", description)
        if requested_mechanic_id is not None:
            self.check_mechanic_id(requested_mechanic_id, "requested_mechanic_id")
        cost = validate_amount("estimated_cost", estimated_cost, allow_zero=True) if estimated_cost is not None else None

        if job_id is not None:
            validate_id("job_id", job_id)
            existing = await self.get_job(job_id)
            if existing is not None:
                if existing.customer_id != customer_id:
                    raise ValidationError("job_id", "identifier already in use", job_id)
                return existing

        now = self.clock()
        job = Job(
            job_id=job_id or self.ids.job_id(),
            customer_id=customer_id,
            title=title,
            description=description,
            category=category,
            priority=priority,
            location=location,
            vehicle_id=vehicle_id,
            customer_name=customer_name,
            estimated_cost=cost,
            is_direct_booking=requested_mechanic_id is not None,
            requested_mechanic_id=requested_mechanic_id,
            created_at=now,
            updated_at=now
        )
        job.record_progress(JobStatus.POSTED.value, "Job posted by customer",
                            actor=customer_name or "Customer", timestamp=now)

        with LoggerContext(job_id=job.job_id):
            job = await self.save_job(job)

            self.logger.info("Job posted", extra={
                "customer_id": customer_id,
                "category": category,
                "is_direct_booking": job.is_direct_booking
            })

            self.notifications.notify(ADMINS_RECIPIENT, job.job_id, "new_job_posted", {
                "job_title": job.title,
                "customer_name": job.customer_name,
                "estimated_price": str(cost) if cost is not None else None
            })
            if job.is_direct_booking:
                self.notifications.notify(requested_mechanic_id, job.job_id, "direct_booking_received", {
                    "customer_name": job.customer_name,
                    "job_title": job.title,
                    "estimated_cost": str(cost) if cost is not None else None,
                    "location": job.location,
                    "job": job.to_dict()
                })

        return job

    async def schedule_job(
        self,
        job_id: str,
        scheduled_date: str,
        scheduled_time: str,
        scheduled_datetime: Optional[datetime] = None,
        estimated_duration_minutes: Optional[int] = None,
        location: Optional[str] = None,
        special_instructions: Optional[str] = None,
        customer_id: Optional[str] = None
    ) -> Job:
        """
        Schedule an accepted job.

        Raises:
            InvalidStateError: Unless the job is ``accepted``
            UnauthorizedError: If ``customer_id`` is given and is not the job's customer
        """
        validate_id("job_id", job_id)
        scheduled_date = require_text("scheduled_date", scheduled_date)
        scheduled_time = require_text("scheduled_time", scheduled_time)
        if estimated_duration_minutes is not None and estimated_duration_minutes <= 0:
            raise ValidationError("estimated_duration_minutes", "must be positive", estimated_duration_minutes)

        with LoggerContext(job_id=job_id):
            async with self.locks.hold(job_id):
                job = await self.load_job(job_id)
                if job.status != JobStatus.ACCEPTED:
                    raise InvalidStateError("Job must be accepted before scheduling",
                                            entity_id=job_id, current_status=job.status.value)
                if customer_id is not None:
                    self.require_customer(job, customer_id, "schedule this job")

                job.scheduled_date = scheduled_date
                job.scheduled_time = scheduled_time
                job.scheduled_datetime = scheduled_datetime
                job.estimated_duration_minutes = (
                    estimated_duration_minutes or job.estimated_duration_minutes or DEFAULT_DURATION_MINUTES
                )
                job.location = location or job.location
                job.special_instructions = special_instructions or ""
                self.apply_transition(job, JobStatus.SCHEDULED,
                                      f"Job scheduled for {scheduled_date} at {scheduled_time}",
                                      actor=job.customer_name or "Customer")
                job = await self.save_job(job)

            self.logger.info("Job scheduled", extra={
                "scheduled_date": scheduled_date,
                "scheduled_time": scheduled_time,
                "mechanic_id": job.mechanic_id
            })

            self.notifications.notify(job.customer_id, job.job_id, "job_scheduled", {
                "scheduled_date": scheduled_date,
                "scheduled_time": scheduled_time
            })
            if job.is_direct_booking:
                self.notifications.notify(job.mechanic_id, job.job_id, "direct_booking_scheduled", {
                    "customer_name": job.customer_name,
                    "scheduled_date": scheduled_date,
                    "scheduled_time": scheduled_time,
                    "location": job.location,
                    "job": job.to_dict()
                })
            else:
                self.notifications.notify(job.mechanic_id, job.job_id, "schedule_proposed", {
                    "scheduled_date": scheduled_date,
                    "scheduled_time": scheduled_time
                })

        return job

    async def confirm_schedule(self, job_id: str, mechanic_id: str, accept: bool = True) -> Job:
        """
        Record the assigned mechanic's response to a proposed schedule.

        Accepting moves the job to ``confirmed``; declining leaves it
        ``scheduled`` so the customer can propose another slot.
        """
        validate_id("job_id", job_id)
        self.check_mechanic_id(mechanic_id)

        with LoggerContext(job_id=job_id):
            async with self.locks.hold(job_id):
                job = await self.load_job(job_id)
                if job.status != JobStatus.SCHEDULED:
                    raise InvalidStateError("Only a scheduled job can have its schedule confirmed",
                                            entity_id=job_id, current_status=job.status.value)
                self.require_assigned_mechanic(job, mechanic_id, "respond to the schedule")

                actor = job.mechanic_name or "Mechanic"
                if accept:
                    job.schedule_confirmed_at = self.clock()
                    self.apply_transition(job, JobStatus.CONFIRMED, "Schedule confirmed by mechanic", actor=actor)
                else:
                    job.record_progress(JobStatus.SCHEDULED.value, "Schedule declined by mechanic",
                                        actor=actor, timestamp=self.clock())
                job = await self.save_job(job)

            self.logger.info("Schedule response recorded", extra={"mechanic_id": mechanic_id, "accepted": accept})
            self.notifications.notify(
                job.customer_id, job.job_id,
                "schedule_confirmed" if accept else "schedule_declined",
                {"mechanic_name": job.mechanic_name or "Your mechanic"}
            )

        return job

    async def start_job(self, job_id: str, mechanic_id: str) -> Job:
        """
        Start work on a scheduled or confirmed job.

        Raises:
            InvalidStateError: Unless the job is ``scheduled`` or ``confirmed``
            UnauthorizedError: If the caller is not the assigned mechanic
        """
        validate_id("job_id", job_id)
        self.check_mechanic_id(mechanic_id)

        with LoggerContext(job_id=job_id):
            async with self.locks.hold(job_id):
                job = await self.load_job(job_id)
                if job.status not in (JobStatus.SCHEDULED, JobStatus.CONFIRMED):
                    raise InvalidStateError("Job must be scheduled before starting",
                                            entity_id=job_id, current_status=job.status.value)
                self.require_assigned_mechanic(job, mechanic_id, "start this job")

                now = self.clock()
                job.started_at = now
                self.apply_transition(job, JobStatus.IN_PROGRESS, "Work started by mechanic",
                                      actor=job.mechanic_name or "Mechanic", at=now)
                job = await self.save_job(job)

            self.logger.info("Job started", extra={"mechanic_id": mechanic_id})
            self.notifications.notify(job.customer_id, job.job_id, "job_started", {
                "mechanic_name": job.mechanic_name or "Your mechanic"
            })

        return job

    async def complete_job(
        self,
        job_id: str,
        mechanic_id: str,
        work_completed: Optional[str] = None,
        completion_notes: Optional[str] = None,
        completion_photos: Optional[List[str]] = None,
        mechanic_name: Optional[str] = None
    ) -> Job:
        """
        Complete an in-progress job.

        The completed job, including the settlement timeline entries, is
        written first. Pending change orders are then expired and escrowed
        change-order payments released; approved but unpaid change orders are
        left as they are. If settlement is interrupted, calling complete_job
        again on the completed job finishes it.

        Raises:
            InvalidStateError: Unless the job is ``in_progress`` (or completed
                with settlement still outstanding)
            UnauthorizedError: If the caller is not the assigned mechanic
        """
        validate_id("job_id", job_id)
        self.check_mechanic_id(mechanic_id)
        settlement = self.change_order_manager

        with LoggerContext(job_id=job_id):
            async with self.locks.hold(job_id):
                job = await self.load_job(job_id)
                resuming = job.status == JobStatus.COMPLETED
                if job.status != JobStatus.IN_PROGRESS and not resuming:
                    raise InvalidStateError("Job must be in progress before completing",
                                            entity_id=job_id, current_status=job.status.value)
                self.require_assigned_mechanic(job, mechanic_id, "complete this job")

                pending, escrowed = [], []
                if settlement:
                    pending, escrowed = await settlement.plan_settlement(job)
                if resuming and not (pending or escrowed):
                    raise InvalidStateError("Job must be in progress before completing",
                                            entity_id=job_id, current_status=job.status.value)

                if not resuming:
                    now = self.clock()
                    if mechanic_name:
                        job.mechanic_name = mechanic_name
                    if work_completed:
                        job.work_completed = work_completed
                    if completion_notes:
                        job.completion_notes = completion_notes
                    if completion_photos:
                        job.completion_photos = list(completion_photos)
                    job.completed_at = now

                    actor = job.mechanic_name or "Mechanic"
                    self.apply_transition(job, JobStatus.COMPLETED, "Job completed by mechanic", actor=actor, at=now)
                    if work_completed or completion_notes:
                        job.record_progress(JobStatus.COMPLETED.value, "Completion details added",
                                            actor=actor, timestamp=now)
                    if settlement:
                        settlement.record_settlement(job, pending, [payment for _, payment in escrowed], at=now)

                    job = await self.save_job(job)

                expired, released = [], []
                if settlement:
                    expired, released = await settlement.apply_settlement(pending, escrowed)

            self.logger.info("Job completed", extra={
                "mechanic_id": mechanic_id,
                "expired_change_orders": len(expired),
                "released_payments": len(released),
                "resumed": resuming
            })
            self.notifications.notify(job.customer_id, job.job_id, "job_completed", {
                "mechanic_name": job.mechanic_name or "Your mechanic"
            })
            if settlement:
                settlement.announce_settlement(expired, released)

        return job

    async def cancel_job(self, job_id: str, customer_id: str, reason: Optional[str] = None) -> Job:
        """Cancel a job that has not yet accepted a bid."""
        validate_id("job_id", job_id)
        self.check_customer_id(customer_id)

        with LoggerContext(job_id=job_id):
            async with self.locks.hold(job_id):
                job = await self.load_job(job_id)
                if not job.is_pre_acceptance():
                    raise InvalidStateError("Only posted or bidding jobs can be cancelled",
                                            entity_id=job_id, current_status=job.status.value)
                self.require_customer(job, customer_id, "cancel this job")

                now = self.clock()
                job.cancellation_reason = reason or "cancelled_by_customer"
                job.cancelled_at = now
                self.apply_transition(job, JobStatus.CANCELLED, "Job cancelled by customer",
                                      actor=job.customer_name or "Customer", at=now)
                job = await self.save_job(job)

            self.logger.info("Job cancelled", extra={"customer_id": customer_id, "reason": job.cancellation_reason})

        return job

    async def delete_job(self, job_id: str) -> Job:
        """Administratively delete a job together with its bids."""
        validate_id("job_id", job_id)

        with LoggerContext(job_id=job_id):
            async with self.locks.hold(job_id):
                job = await self.load_job(job_id)

                # Bids first, the job record last
                bids = await self.store.list(BIDS, {"job_id": job_id})
                for bid in bids:
                    await self.store.delete(BIDS, bid["bid_id"])

                await self.store.delete(JOBS, job_id)

            self.logger.warning("Job deleted", extra={
                "customer_id": job.customer_id,
                "status": job.status.value,
                "deleted_bids": len(bids)
            })

        return job

    async def add_job_note(self, job_id: str, author_id: str, text: Optional[str] = None,
                           photo_url: Optional[str] = None, author_name: Optional[str] = None) -> Job:
        """Attach a note or photo to a job without changing its status."""
        validate_id("job_id", job_id)
        validate_id("author_id", author_id)
        if not (text and text.strip()) and not photo_url:
            raise ValidationError("text", "a note needs text or a photo")

        with LoggerContext(job_id=job_id):
            async with self.locks.hold(job_id):
                job = await self.load_job(job_id)
                if author_id not in (job.customer_id, job.mechanic_id):
                    raise UnauthorizedError("Only the job's customer or assigned mechanic can add notes",
                                            actor_id=author_id, job_id=job_id)

                now = self.clock()
                job.notes.append({
                    "text": text,
                    "photo_url": photo_url,
                    "author_id": author_id,
                    "author_name": author_name,
                    "created_at": now.isoformat()
                })
                preview = f"{text[:NOTE_PREVIEW_LENGTH]}..." if text else "Photo added"
                job.record_progress(job.status.value, f"Additional note added: {preview}",
                                    actor=author_name or ("Customer" if author_id == job.customer_id else "Mechanic"),
                                    timestamp=now)
                job = await self.save_job(job)

            self.logger.info("Job note added", extra={"author_id": author_id})

        return job

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    async def list_jobs(self, customer_id: Optional[str] = None, mechanic_id: Optional[str] = None,
                        status: Optional[JobStatus] = None, limit: Optional[int] = None,
                        created_from: Optional[datetime] = None,
                        created_to: Optional[datetime] = None) -> List[Job]:
        """
        List jobs, newest first.

        ``created_from``/``created_to`` bound the creation time recovered from
        each job id, inclusive on both ends.
        """
        filters: Dict[str, Any] = {}
        if customer_id:
            filters["customer_id"] = customer_id
        if mechanic_id:
            filters["mechanic_id"] = mechanic_id
        if status:
            filters["status"] = status.value

        records = await self.store.list(JOBS, filters)
        jobs = sort_by_id([Job.from_dict(r) for r in records], key=lambda j: j.job_id)
        if created_from or created_to:
            start = created_from or EARLIEST
            end = created_to or LATEST
            jobs = [job for job in jobs if in_date_range(job.job_id, start, end)]
        return jobs[:limit] if limit else jobs

    async def get_time_remaining(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Time left before a posted or bidding job expires.

        Returns:
            Dictionary with hours, minutes and expiry details, or None if the
            job is past the bidding phase
        """
        job = await self.load_job(job_id)
        if not job.is_pre_acceptance():
            return None

        remaining = job.time_remaining(self.clock(), self.config.posting_ttl)
        seconds = max(remaining.total_seconds(), 0)
        return {
            "job_id": job.job_id,
            "hours": int(seconds // 3600),
            "minutes": int((seconds % 3600) // 60),
            "expired": remaining <= timedelta(0),
            "is_expiring": job.is_expiring,
            "expires_at": (job.created_at + self.config.posting_ttl).isoformat()
        }

    async def get_job_stats(self, customer_id: Optional[str] = None,
                            mechanic_id: Optional[str] = None) -> Dict[str, Any]:
        """Aggregate job counts by status and by creation date."""
        jobs = await self.list_jobs(customer_id=customer_id, mechanic_id=mechanic_id)
        cutoff = self.clock() - timedelta(days=self.config.recent_jobs_days)

        by_status: Dict[str, int] = {}
        by_date: Dict[str, int] = {}
        recent = []
        for job in jobs:
            by_status[job.status.value] = by_status.get(job.status.value, 0) + 1

            parsed = parse_id(job.job_id)
            created_at = parsed.created_at if parsed else job.created_at
            day = created_at.strftime("%Y-%m-%d")
            by_date[day] = by_date.get(day, 0) + 1

            if created_at >= cutoff:
                recent.append({
                    "job_id": job.job_id,
                    "title": job.title,
                    "status": job.status.value,
                    "created_at": created_at.isoformat()
                })

        return {
            "total": len(jobs),
            "by_status": by_status,
            "by_date": by_date,
            "recent_jobs": recent
        }
