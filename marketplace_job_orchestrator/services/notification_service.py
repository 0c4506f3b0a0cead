"""
NotificationService for Marketplace Job Orchestrator

Delivers lifecycle notifications to customers and mechanics through a
pluggable gateway. Delivery is fire-and-forget: a notification is emitted only
after the state change it describes has been persisted, and a failing gateway
is logged without affecting the outcome of the command.
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Any, Callable, Protocol, Set

from ..utils.logger import get_logger, set_log_context
from ..utils.clock import utc_now

# Recipient used for platform-wide notifications
ADMINS_RECIPIENT = "admins"


class NotificationGateway(Protocol):
    """Delivery channel for push/email/SMS notifications."""

    async def notify(self, recipient_id: str, job_id: str, event_name: str, payload: Dict[str, Any]) -> None:
        ...


class ConversationGateway(Protocol):
    """Messaging collaborator that owns customer/mechanic conversations."""

    async def ensure_conversation(self, job_id: str, participant_ids: List[str],
                                  context: Dict[str, Any]) -> Optional[str]:
        ...


class LoggingNotificationGateway:
    """Gateway that writes each notification to the log; the default when none is supplied."""

    def __init__(self):
        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="notification_gateway")

    async def notify(self, recipient_id: str, job_id: str, event_name: str, payload: Dict[str, Any]) -> None:
        self.logger.info("Notification", extra={
            "recipient_id": recipient_id,
            "job_id": job_id,
            "event_name": event_name,
            "payload": payload
        })


class NotificationService:
    """
    Fan-out of lifecycle notifications and UI events.

    Provides capabilities for:
    - Targeted notifications to customers, mechanics and admins
    - Best-effort conversation setup between bidding parties
    - Batched UI events (e.g. one ``job_expired`` summary per sweep)
    - Delivery statistics
    """

    def __init__(self,
                 gateway: Optional[NotificationGateway] = None,
                 conversation_gateway: Optional[ConversationGateway] = None,
                 timeout_seconds: float = 10.0):
        """
        Initialize NotificationService.

        Args:
            gateway: Delivery channel; logs notifications when omitted
            conversation_gateway: Optional messaging collaborator
            timeout_seconds: Upper bound on a single delivery attempt
        """
        self.gateway = gateway or LoggingNotificationGateway()
        self.conversation_gateway = conversation_gateway
        self.timeout_seconds = timeout_seconds

        self._pending: Set[asyncio.Task] = set()
        self._subscribers: List[Callable[[str, Dict[str, Any]], Any]] = []

        self.stats = {
            "sent": 0,
            "delivered": 0,
            "failed": 0,
            "events_published": 0,
        }
        self.last_failure_at: Optional[datetime] = None

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="notification_service")

    async def start(self):
        """Start the notification service."""
        self.logger.info("Starting NotificationService", extra={
            "gateway": type(self.gateway).__name__,
            "conversation_gateway": type(self.conversation_gateway).__name__ if self.conversation_gateway else None
        })

    async def stop(self):
        """Stop the notification service, waiting for in-flight deliveries."""
        self.logger.info("Stopping NotificationService", extra={"in_flight": len(self._pending)})
        await self.flush()

    def notify(self, recipient_id: Optional[str], job_id: str, event_name: str,
               payload: Optional[Dict[str, Any]] = None) -> None:
        """
        Schedule a notification for delivery.

        Returns immediately; the delivery runs as a background task.
        """
        if not recipient_id:
            self.logger.warning("Notification skipped: no recipient", extra={
                "job_id": job_id,
                "event_name": event_name
            })
            return

        self.stats["sent"] += 1
        self._spawn(self._deliver(recipient_id, job_id, event_name, dict(payload or {})))

    def ensure_conversation(self, job_id: str, participant_ids: List[str], context: Dict[str, Any]) -> None:
        """Ask the messaging collaborator to open a conversation; failures are only logged."""
        if not self.conversation_gateway:
            return

        participants = [p for p in participant_ids if p]
        if len(participants) < 2:
            self.logger.warning("Conversation skipped: missing participants", extra={
                "job_id": job_id,
                "participant_ids": participant_ids
            })
            return

        self._spawn(self._open_conversation(job_id, participants, dict(context)))

    def subscribe(self, callback: Callable[[str, Dict[str, Any]], Any]):
        """Register a listener for UI events."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[str, Dict[str, Any]], Any]):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        """Publish a UI event to all subscribers."""
        self.stats["events_published"] += 1
        self.logger.info("UI event published", extra={"event_name": event_name, "payload": payload})

        for callback in list(self._subscribers):
            try:
                result = callback(event_name, dict(payload))
                if asyncio.iscoroutine(result):
                    self._spawn(self._await_subscriber(callback, result))
            except Exception as e:
                self.logger.error("UI event subscriber failed", extra={
                    "event_name": event_name,
                    "subscriber": repr(callback),
                    "error": str(e)
                })

    async def flush(self):
        """Wait for all scheduled deliveries to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "in_flight": len(self._pending),
            "subscribers": len(self._subscribers),
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None
        }

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, recipient_id: str, job_id: str, event_name: str, payload: Dict[str, Any]):
        try:
            await asyncio.wait_for(
                self.gateway.notify(recipient_id, job_id, event_name, payload),
                timeout=self.timeout_seconds
            )
            self.stats["delivered"] += 1
            self.logger.debug("Notification delivered", extra={
                "recipient_id": recipient_id,
                "job_id": job_id,
                "event_name": event_name
            })
        except Exception as e:
            self.stats["failed"] += 1
            self.last_failure_at = utc_now()
            self.logger.error("Notification delivery failed", extra={
                "recipient_id": recipient_id,
                "job_id": job_id,
                "event_name": event_name,
                "error": str(e) or type(e).__name__
            })

    async def _open_conversation(self, job_id: str, participant_ids: List[str], context: Dict[str, Any]):
        try:
            await asyncio.wait_for(
                self.conversation_gateway.ensure_conversation(job_id, participant_ids, context),
                timeout=self.timeout_seconds
            )
        except Exception as e:
            self.logger.error("Failed to ensure conversation", extra={
                "job_id": job_id,
                "participant_ids": participant_ids,
                "error": str(e) or type(e).__name__
            })

    async def _await_subscriber(self, callback, awaitable):
        try:
            await awaitable
        except Exception as e:
            self.logger.error("UI event subscriber failed", extra={
                "subscriber": repr(callback),
                "error": str(e)
            })
