"""
Main JobOrchestrator class that coordinates all services

Provides the primary interface for the marketplace job lifecycle: posting,
bidding, scheduling, execution, change orders with escrow, and time-based
expiration. Every command returns an ``OperationResult``; typed failures are
returned to the caller instead of being raised.
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Any, Awaitable

from ..models.job import Job, JobStatus
from ..models.bid import Bid
from ..models.change_order import ChangeOrder
from ..models.result import OperationResult
from ..services.notification_service import NotificationService, NotificationGateway, ConversationGateway
from ..services.job_manager import JobManager
from ..services.bid_manager import BidManager
from ..services.change_order_manager import ChangeOrderManager, COMPLETION_EXPIRY_REASON
from ..services.expiration_service import ExpirationService
from ..utils.clock import Clock
from ..utils.database import DatabaseManager, InMemoryEntityStore, EntityStore
from ..utils.ids import IdGenerator
from ..utils.locks import KeyedLockManager
from ..utils.logger import get_logger, set_log_context
from ..core.config import OrchestratorConfig
from ..core.exceptions import JobOrchestratorError, OrchestratorError, error_registry


class JobOrchestrator:
    """
    Main orchestrator class that coordinates all services.

    Provides a unified interface for:
    - Job posting, scheduling, execution and cancellation
    - Bid submission and acceptance
    - Change orders and escrow payments
    - Expiration sweeps on start, on demand and on a timer
    - Health checks and statistics
    """

    def __init__(
        self,
        store: Optional[EntityStore] = None,
        config: Optional[OrchestratorConfig] = None,
        gateway: Optional[NotificationGateway] = None,
        conversation_gateway: Optional[ConversationGateway] = None,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None
    ):
        """
        Initialize the JobOrchestrator.

        Args:
            store: Entity store adapter; built from ``config.database_url`` when
                omitted, or kept in memory when no URL is configured
            config: Orchestrator configuration
            gateway: Notification delivery channel
            conversation_gateway: Optional messaging collaborator
            clock: Time source, injectable for tests
            id_generator: Sortable id generator
        """
        self.config = config or OrchestratorConfig()

        if store is None:
            if self.config.database_url:
                store = DatabaseManager(self.config.database_url, pool_size=self.config.pool_size)
            else:
                store = InMemoryEntityStore()
        self.store = store

        self.notifications = NotificationService(
            gateway=gateway,
            conversation_gateway=conversation_gateway,
            timeout_seconds=self.config.notification_timeout_seconds
        )
        self.locks = KeyedLockManager()

        # Initialize service managers
        self.job_manager = JobManager(
            store,
            self.notifications,
            locks=self.locks,
            id_generator=id_generator,
            config=self.config,
            clock=clock
        )
        self.bid_manager = BidManager(self.job_manager)
        self.change_order_manager = ChangeOrderManager(self.job_manager)
        self.job_manager.change_order_manager = self.change_order_manager
        self.expiration_service = ExpirationService(self.job_manager, self.change_order_manager)

        # State tracking
        self._is_running = False
        self._shutdown_event = asyncio.Event()

        # Logger
        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="orchestrator")

    async def start(self, enable_sweep_timer: bool = True):
        """
        Start the orchestrator and all services.

        Runs one expiration sweep immediately, then on a timer unless
        ``enable_sweep_timer`` is False.
        """
        self.logger.info("Starting JobOrchestrator", extra={
            "store": type(self.store).__name__,
            "sweep_timer_enabled": enable_sweep_timer
        })

        try:
            # Start store
            await self.store.initialize()

            # Start core services
            await self.notifications.start()
            await self.job_manager.start()

            if enable_sweep_timer:
                await self.expiration_service.start(run_immediately=True)
            else:
                await self.expiration_service.run_sweep()

            self._is_running = True
            self._shutdown_event.clear()

            self.logger.info("JobOrchestrator started successfully")

        except Exception as e:
            self.logger.error("Failed to start JobOrchestrator", exc_info=True)
            await self.stop()
            raise OrchestratorError(f"Failed to start orchestrator: {str(e)}")

    async def stop(self):
        """Stop the orchestrator and all services."""
        self.logger.info("Stopping JobOrchestrator")

        self._shutdown_event.set()

        for service in (self.expiration_service, self.job_manager, self.notifications):
            try:
                await service.stop()
            except Exception:
                self.logger.error(f"Error stopping service {service.__class__.__name__}", exc_info=True)

        try:
            await self.store.close()
        except Exception:
            self.logger.error("Error closing entity store", exc_info=True)

        self._is_running = False
        self.logger.info("JobOrchestrator stopped")

    async def refresh(self) -> OperationResult:
        """Reload hook for clients: runs an expiration sweep."""
        return await self.run_expiration_sweep()

    async def _execute(self, operation: str, call: Awaitable, **details) -> OperationResult:
        """Await a service call and convert its outcome into an OperationResult."""
        try:
            entity = await call
        except JobOrchestratorError as e:
            error_registry.record_error(e)
            self.logger.warning(f"{operation} failed", extra={
                "operation": operation,
                "error_kind": e.error_kind,
                "error": e.message
            })
            return OperationResult.failure(e)
        except Exception as e:
            error = OrchestratorError(f"{operation} failed: {str(e) or type(e).__name__}")
            error_registry.record_error(error)
            self.logger.error(f"{operation} failed unexpectedly", extra={"operation": operation}, exc_info=True)
            return OperationResult.failure(error)

        return OperationResult.success(entity, **details)

    # Job Management Interface
    async def create_job(self, customer_id: str, title: str, description: str, **kwargs) -> OperationResult:
        """Post a new job. See ``JobManager.create_job`` for optional fields."""
        return await self._execute("create_job", self.job_manager.create_job(
            customer_id, title, description, **kwargs
        ))

    async def schedule_job(self, job_id: str, scheduled_date: str, scheduled_time: str,
                           **kwargs) -> OperationResult:
        return await self._execute("schedule_job", self.job_manager.schedule_job(
            job_id, scheduled_date, scheduled_time, **kwargs
        ))

    async def confirm_schedule(self, job_id: str, mechanic_id: str, accept: bool = True) -> OperationResult:
        return await self._execute("confirm_schedule", self.job_manager.confirm_schedule(
            job_id, mechanic_id, accept=accept
        ))

    async def start_job(self, job_id: str, mechanic_id: str) -> OperationResult:
        return await self._execute("start_job", self.job_manager.start_job(job_id, mechanic_id))

    async def complete_job(self, job_id: str, mechanic_id: str, **completion_data) -> OperationResult:
        """Complete a job; ``completion_data`` may carry work_completed, completion_notes and photos."""
        return await self._execute("complete_job", self.job_manager.complete_job(
            job_id, mechanic_id, **completion_data
        ))

    async def cancel_job(self, job_id: str, customer_id: str, reason: Optional[str] = None) -> OperationResult:
        return await self._execute("cancel_job", self.job_manager.cancel_job(job_id, customer_id, reason))

    async def delete_job(self, job_id: str) -> OperationResult:
        return await self._execute("delete_job", self.job_manager.delete_job(job_id))

    async def add_job_note(self, job_id: str, author_id: str, text: Optional[str] = None,
                           photo_url: Optional[str] = None, author_name: Optional[str] = None) -> OperationResult:
        return await self._execute("add_job_note", self.job_manager.add_job_note(
            job_id, author_id, text=text, photo_url=photo_url, author_name=author_name
        ))

    # Bid Interface
    async def submit_bid(self, job_id: str, mechanic_id: str, price: Any, message: Optional[str] = None,
                         **kwargs) -> OperationResult:
        return await self._execute("submit_bid", self.bid_manager.submit_bid(
            job_id, mechanic_id, price, message=message, **kwargs
        ))

    async def accept_bid(self, bid_id: str, customer_id: Optional[str] = None) -> OperationResult:
        """Accept a bid; the result entity is the accepted bid."""
        result = await self._execute("accept_bid", self.bid_manager.accept_bid(bid_id, customer_id))
        if result.ok:
            job, bid = result.entity
            return OperationResult.success(bid, job_id=job.job_id, job_status=job.status.value)
        return result

    async def reject_bid(self, bid_id: str, customer_id: Optional[str] = None,
                         reason: Optional[str] = None) -> OperationResult:
        return await self._execute("reject_bid", self.bid_manager.reject_bid(bid_id, customer_id, reason))

    async def withdraw_bid(self, bid_id: str, mechanic_id: str) -> OperationResult:
        return await self._execute("withdraw_bid", self.bid_manager.withdraw_bid(bid_id, mechanic_id))

    # Change Order Interface
    async def create_change_order(self, job_id: str, mechanic_id: str, title: str, **kwargs) -> OperationResult:
        return await self._execute("create_change_order", self.change_order_manager.create_change_order(
            job_id, mechanic_id, title, **kwargs
        ))

    async def approve_change_order(self, change_order_id: str, customer_id: str) -> OperationResult:
        return await self._execute("approve_change_order", self.change_order_manager.approve_change_order(
            change_order_id, customer_id
        ))

    async def reject_change_order(self, change_order_id: str, customer_id: str,
                                  reason: Optional[str] = None) -> OperationResult:
        return await self._execute("reject_change_order", self.change_order_manager.reject_change_order(
            change_order_id, customer_id, reason
        ))

    async def cancel_change_order(self, change_order_id: str, mechanic_id: str,
                                  reason: Optional[str] = None) -> OperationResult:
        return await self._execute("cancel_change_order", self.change_order_manager.cancel_change_order(
            change_order_id, mechanic_id, reason
        ))

    async def process_change_order_payment(self, change_order_id: str, payment_method: Optional[str] = None,
                                           customer_id: Optional[str] = None) -> OperationResult:
        return await self._execute(
            "process_change_order_payment",
            self.change_order_manager.process_change_order_payment(change_order_id, payment_method, customer_id)
        )

    async def release_escrow_payment(self, change_order_id: str) -> OperationResult:
        return await self._execute("release_escrow_payment",
                                   self.change_order_manager.release_escrow_payment(change_order_id))

    async def expire_pending_change_orders(self, job_id: str,
                                           reason: str = COMPLETION_EXPIRY_REASON) -> OperationResult:
        return await self._execute("expire_pending_change_orders",
                                   self.change_order_manager.expire_pending_for_job(job_id, reason))

    # Expiration Interface
    async def run_expiration_sweep(self) -> OperationResult:
        return await self._execute("run_expiration_sweep", self.expiration_service.run_sweep())

    # Readers
    async def get_job(self, job_id: str) -> Optional[Job]:
        """
        Get a job by ID.

        Returns:
            Job or None if not found
        """
        try:
            return await self.job_manager.get_job(job_id)
        except Exception as e:
            self.logger.error("Error getting job", extra={
                "job_id": job_id,
                "error": str(e)
            })
            return None

    async def list_jobs(self, customer_id: Optional[str] = None, mechanic_id: Optional[str] = None,
                        status: Optional[str] = None, limit: Optional[int] = None,
                        created_from: Optional[datetime] = None,
                        created_to: Optional[datetime] = None) -> List[Job]:
        """
        List jobs, newest first, with optional filtering.

        Args:
            customer_id: Only jobs posted by this customer
            mechanic_id: Only jobs assigned to this mechanic
            status: Optional status value to filter by
            limit: Maximum number of jobs to return
            created_from: Only jobs created at or after this time
            created_to: Only jobs created at or before this time
        """
        try:
            return await self.job_manager.list_jobs(
                customer_id=customer_id,
                mechanic_id=mechanic_id,
                status=JobStatus(status) if status else None,
                limit=limit,
                created_from=created_from,
                created_to=created_to
            )
        except Exception:
            self.logger.error("Error listing jobs", exc_info=True)
            return []

    async def get_bid(self, bid_id: str) -> Optional[Bid]:
        try:
            return await self.bid_manager.get_bid(bid_id)
        except Exception as e:
            self.logger.error("Error getting bid", extra={"bid_id": bid_id, "error": str(e)})
            return None

    async def get_bids_by_job(self, job_id: str) -> List[Bid]:
        try:
            return await self.bid_manager.get_bids_by_job(job_id)
        except Exception as e:
            self.logger.error("Error getting bids", extra={"job_id": job_id, "error": str(e)})
            return []

    async def get_accepted_bid(self, job_id: str) -> Optional[Bid]:
        try:
            return await self.bid_manager.get_accepted_bid(job_id)
        except Exception as e:
            self.logger.error("Error getting accepted bid", extra={"job_id": job_id, "error": str(e)})
            return None

    async def get_change_order(self, change_order_id: str) -> Optional[ChangeOrder]:
        try:
            return await self.change_order_manager.get_change_order(change_order_id)
        except Exception as e:
            self.logger.error("Error getting change order", extra={
                "change_order_id": change_order_id,
                "error": str(e)
            })
            return None

    async def get_change_orders_by_job(self, job_id: str) -> List[ChangeOrder]:
        try:
            return await self.change_order_manager.get_change_orders_by_job(job_id)
        except Exception as e:
            self.logger.error("Error getting change orders", extra={"job_id": job_id, "error": str(e)})
            return []

    async def get_time_remaining(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Hours and minutes until a posted or bidding job expires, or None."""
        try:
            return await self.job_manager.get_time_remaining(job_id)
        except Exception as e:
            self.logger.error("Error getting time remaining", extra={"job_id": job_id, "error": str(e)})
            return None

    async def get_job_stats(self, customer_id: Optional[str] = None,
                            mechanic_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            return await self.job_manager.get_job_stats(customer_id=customer_id, mechanic_id=mechanic_id)
        except Exception as e:
            self.logger.error("Error getting job statistics", exc_info=True)
            return {"error": str(e)}

    async def get_change_order_stats(self, mechanic_id: Optional[str] = None,
                                     customer_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            return await self.change_order_manager.get_change_order_stats(
                mechanic_id=mechanic_id, customer_id=customer_id
            )
        except Exception as e:
            self.logger.error("Error getting change order statistics", exc_info=True)
            return {"error": str(e)}

    # Utility Methods
    def is_running(self) -> bool:
        """Check if orchestrator is running."""
        return self._is_running

    async def wait_for_shutdown(self):
        """Wait for shutdown signal."""
        await self._shutdown_event.wait()

    async def get_system_health(self) -> Dict[str, Any]:
        """
        Get overall system health.

        Returns:
            Dictionary with store, notification, sweep and error status
        """
        try:
            store_healthy = await self.store.is_healthy()
        except Exception:
            store_healthy = False

        last_report = self.expiration_service.last_report
        notification_stats = self.notifications.get_statistics()

        if not store_healthy:
            overall_status = "critical"
        elif notification_stats["failed"] or (last_report and last_report.failures):
            overall_status = "degraded"
        else:
            overall_status = "healthy"

        return {
            "overall_status": overall_status,
            "is_running": self._is_running,
            "store_healthy": store_healthy,
            "notifications": notification_stats,
            "expiration": {
                "timer_running": self.expiration_service.is_running,
                "sweeps_run": self.expiration_service.sweeps_run,
                "last_sweep": last_report.to_dict() if last_report else None
            },
            "active_job_locks": len(self.locks),
            "errors": error_registry.get_error_statistics()
        }

    async def health_check(self) -> bool:
        """
        Perform a health check.

        Returns:
            True if system is healthy
        """
        try:
            if not self._is_running:
                return False

            health = await self.get_system_health()
            return health.get("overall_status") != "critical"

        except Exception:
            return False
