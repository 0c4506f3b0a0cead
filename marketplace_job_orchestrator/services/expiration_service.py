"""
ExpirationService for Marketplace Job Orchestrator

Periodically scans jobs that are still waiting for a bid to be accepted.
Jobs older than the posting time box are cancelled, jobs close to it are
flagged as expiring, and change orders left pending past their own deadline
are expired.
"""

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any, TYPE_CHECKING

from ..models.job import JobStatus, PRE_ACCEPTANCE_STATUSES
from ..models.change_order import ChangeOrderStatus
from ..services.job_manager import JobManager
from ..utils.clock import from_iso
from ..utils.database import JOBS, CHANGE_ORDERS
from ..utils.logger import get_logger, set_log_context, LoggerContext

if TYPE_CHECKING:
    from ..services.change_order_manager import ChangeOrderManager

EXPIRED = "expired"
EXPIRING = "expiring"


@dataclass
class SweepReport:
    """Outcome of one expiration sweep."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    expired_jobs: List[str] = field(default_factory=list)
    expiring_jobs: List[str] = field(default_factory=list)
    expired_change_orders: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "expired_jobs": list(self.expired_jobs),
            "expiring_jobs": list(self.expiring_jobs),
            "expired_change_orders": list(self.expired_change_orders),
            "failures": dict(self.failures)
        }


class ExpirationService:
    """
    Time-based expiration of jobs and change orders.

    Each job is handled as an independent operation under its own lock, so a
    job accepted concurrently is never cancelled and one failing job never
    aborts the rest of the sweep.
    """

    def __init__(self,
                 job_manager: JobManager,
                 change_order_manager: Optional['ChangeOrderManager'] = None,
                 interval_seconds: Optional[float] = None):
        """
        Initialize ExpirationService.

        Args:
            job_manager: Job state machine
            change_order_manager: Optional change order service for deadline expiry
            interval_seconds: Seconds between timed sweeps (defaults to configuration)
        """
        self.jobs = job_manager
        self.change_orders = change_order_manager
        self.store = job_manager.store
        self.notifications = job_manager.notifications
        self.locks = job_manager.locks
        self.clock = job_manager.clock
        self.config = job_manager.config
        self.interval_seconds = interval_seconds or self.config.sweep_interval_seconds

        self.last_report: Optional[SweepReport] = None
        self.sweeps_run = 0

        # Tasks
        self._sweep_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._sweep_lock = asyncio.Lock()

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="expiration_service")

    async def start(self, run_immediately: bool = True):
        """Start the periodic sweep, optionally sweeping once first."""
        self.logger.info("Starting ExpirationService", extra={"interval_seconds": self.interval_seconds})
        self._shutdown_event.clear()

        if run_immediately:
            await self.run_sweep()

        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        """Stop the periodic sweep."""
        self.logger.info("Stopping ExpirationService")

        # Signal shutdown
        self._shutdown_event.set()

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        self.logger.info("ExpirationService stopped")

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def run_sweep(self) -> SweepReport:
        """
        Run one sweep over posted/bidding jobs and pending change orders.

        Returns:
            SweepReport listing expired and flagged entities and per-item failures
        """
        async with self._sweep_lock:
            report = SweepReport(started_at=self.clock())

            candidates = await self.store.list(JOBS, {"status": [s.value for s in PRE_ACCEPTANCE_STATUSES]})
            titles: Dict[str, str] = {}
            for record in candidates:
                job_id = record["job_id"]
                titles[job_id] = record.get("title") or job_id
                try:
                    outcome = await self.expire_job(job_id)
                except Exception as e:
                    report.failures[job_id] = str(e)
                    self.logger.warning("Skipping job in expiration sweep", extra={
                        "job_id": job_id,
                        "error": str(e)
                    })
                    continue

                if outcome == EXPIRED:
                    report.expired_jobs.append(job_id)
                elif outcome == EXPIRING:
                    report.expiring_jobs.append(job_id)

            if self.change_orders:
                await self._expire_change_orders(report)

            self._publish_summary(report, titles)

            report.finished_at = self.clock()
            self.last_report = report
            self.sweeps_run += 1

            self.logger.info("Expiration sweep finished", extra={
                "candidates": len(candidates),
                "expired_jobs": len(report.expired_jobs),
                "expiring_jobs": len(report.expiring_jobs),
                "expired_change_orders": len(report.expired_change_orders),
                "failures": len(report.failures)
            })
            return report

    async def expire_job(self, job_id: str) -> Optional[str]:
        """
        Apply the posting time box to one job under its lock.

        Returns:
            ``"expired"`` if the job was cancelled, ``"expiring"`` if it was
            newly flagged, otherwise None
        """
        ttl = self.config.posting_ttl

        with LoggerContext(job_id=job_id):
            async with self.locks.hold(job_id):
                job = await self.jobs.get_job(job_id)
                if job is None or not job.is_pre_acceptance():
                    return None

                now = self.clock()
                remaining = job.time_remaining(now, ttl)

                if remaining < timedelta(0):
                    job.cancellation_reason = "expired"
                    job.cancelled_at = now
                    self.jobs.apply_transition(
                        job, JobStatus.CANCELLED,
                        f"Job expired after {self.config.posting_ttl_hours:g} hours without progressing past bidding",
                        actor="System", at=now
                    )
                    await self.jobs.save_job(job)
                    self.logger.info("Job expired", extra={"age_hours": round((now - job.created_at) / timedelta(hours=1), 2)})
                    return EXPIRED

                if timedelta(0) < remaining <= self.config.expiring_warning and not job.is_expiring:
                    hours_left = math.ceil(remaining / timedelta(hours=1))
                    job.is_expiring = True
                    job.expiring_at = job.created_at + ttl
                    job.record_progress(job.status.value, f"Job expiring in {hours_left} hours",
                                        actor="System", timestamp=now)
                    await self.jobs.save_job(job)
                    self.logger.info("Job flagged as expiring", extra={"hours_left": hours_left})
                    return EXPIRING

        return None

    async def _expire_change_orders(self, report: SweepReport):
        now = self.clock()
        pending = await self.store.list(CHANGE_ORDERS, {"status": ChangeOrderStatus.PENDING.value})
        for record in pending:
            change_order_id = record["change_order_id"]
            expires_at = record.get("expires_at")
            if not expires_at or from_iso(expires_at) >= now:
                continue
            try:
                expired = await self.change_orders.expire_if_overdue(change_order_id)
            except Exception as e:
                report.failures[change_order_id] = str(e)
                self.logger.warning("Skipping change order in expiration sweep", extra={
                    "change_order_id": change_order_id,
                    "error": str(e)
                })
                continue
            if expired is not None:
                report.expired_change_orders.append(change_order_id)

    def _publish_summary(self, report: SweepReport, titles: Dict[str, str]):
        """Emit at most one UI event per outcome for the whole sweep."""
        if report.expired_jobs:
            count = len(report.expired_jobs)
            message = (f'Job "{titles[report.expired_jobs[0]]}" has expired' if count == 1
                       else f"{count} jobs have expired")
            self.notifications.publish("job_expired", {
                "message": message,
                "count": count,
                "job_ids": list(report.expired_jobs)
            })

        if report.expiring_jobs:
            count = len(report.expiring_jobs)
            message = (f'Job "{titles[report.expiring_jobs[0]]}" is expiring soon!' if count == 1
                       else f"{count} jobs are expiring soon!")
            self.notifications.publish("job_expiring", {
                "message": message,
                "count": count,
                "job_ids": list(report.expiring_jobs)
            })

    async def _sweep_loop(self):
        """Timed sweep loop."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_sweep()

            except asyncio.CancelledError:
                break
            except Exception:
                self.logger.error("Error in expiration sweep loop", exc_info=True)
