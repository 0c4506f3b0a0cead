"""
Shared fixtures: an orchestrator on the in-memory store with a controllable
clock and a gateway that records every notification.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from marketplace_job_orchestrator import JobOrchestrator, OrchestratorConfig
from marketplace_job_orchestrator.core.exceptions import DatabaseError, NotificationError, error_registry
from marketplace_job_orchestrator.utils.database import InMemoryEntityStore

CUSTOMER = "CUSTOMER-1"
OTHER_CUSTOMER = "CUSTOMER-2"
MECHANIC = "MECHANIC-7"
OTHER_MECHANIC = "MECHANIC-9"


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingGateway:
    """Notification gateway that keeps every delivered notification."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def notify(self, recipient_id, job_id, event_name, payload):
        self.sent.append({
            "recipient_id": recipient_id,
            "job_id": job_id,
            "event_name": event_name,
            "payload": payload
        })

    def events(self, event_name: Optional[str] = None) -> List[Dict[str, Any]]:
        return [n for n in self.sent if event_name is None or n["event_name"] == event_name]

    def recipients(self, event_name: str) -> List[str]:
        return [n["recipient_id"] for n in self.events(event_name)]


class FailingGateway:
    """Notification gateway whose every delivery fails."""

    def __init__(self):
        self.attempts = 0

    async def notify(self, recipient_id, job_id, event_name, payload):
        self.attempts += 1
        raise NotificationError(event_name, "gateway unavailable", recipient_id=recipient_id)


class RecordingConversationGateway:
    def __init__(self):
        self.conversations: List[Dict[str, Any]] = []

    async def ensure_conversation(self, job_id, participant_ids, context):
        self.conversations.append({"job_id": job_id, "participant_ids": participant_ids, "context": context})
        return f"conversation-{job_id}"


class YieldingStore(InMemoryEntityStore):
    """In-memory store that yields to the event loop before every call, like a real database."""

    async def get(self, kind, entity_id):
        await asyncio.sleep(0)
        return await super().get(kind, entity_id)

    async def list(self, kind, filters=None):
        await asyncio.sleep(0)
        return await super().list(kind, filters)

    async def upsert(self, kind, record):
        await asyncio.sleep(0)
        return await super().upsert(kind, record)

    async def upsert_many(self, kind, records):
        await asyncio.sleep(0)
        return await super().upsert_many(kind, records)


class FlakyStore(InMemoryEntityStore):
    """In-memory store with switchable failures."""

    def __init__(self):
        super().__init__()
        self.poisoned_ids = set()
        self.fail_upsert_kinds = set()
        self.fail_delete_kinds = set()
        self.fail_next_upsert_many = False

    async def get(self, kind, entity_id):
        if entity_id in self.poisoned_ids:
            raise DatabaseError("get", "connection reset by peer", table=kind)
        return await super().get(kind, entity_id)

    async def upsert(self, kind, record):
        if kind in self.fail_upsert_kinds:
            raise DatabaseError("upsert", "connection reset by peer", table=kind)
        return await super().upsert(kind, record)

    async def upsert_many(self, kind, records):
        if self.fail_next_upsert_many:
            self.fail_next_upsert_many = False
            raise DatabaseError("upsert_many", "connection reset by peer", table=kind)
        return await super().upsert_many(kind, records)

    async def delete(self, kind, entity_id):
        if kind in self.fail_delete_kinds:
            raise DatabaseError("delete", "connection reset by peer", table=kind)
        return await super().delete(kind, entity_id)


@pytest.fixture(autouse=True)
def reset_error_registry():
    error_registry.reset()
    yield
    error_registry.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def conversations():
    return RecordingConversationGateway()


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest.fixture
def config():
    return OrchestratorConfig()


@pytest.fixture
def orchestrator(store, gateway, conversations, clock, config):
    return JobOrchestrator(store=store, config=config, gateway=gateway,
                           conversation_gateway=conversations, clock=clock)


@pytest.fixture
def post_job(orchestrator):
    """Post a job and return it."""

    async def _post(customer_id: str = CUSTOMER, title: str = "Replace brake pads", **kwargs):
        kwargs.setdefault("customer_name", "Dana")
        result = await orchestrator.create_job(customer_id, title, "Front pads squeal when braking", **kwargs)
        assert result.ok, result.message
        return result.entity

    return _post


@pytest.fixture
def accepted_job(orchestrator, post_job):
    """Post a job and accept a bid from MECHANIC; returns (job, bid)."""

    async def _accepted(price: str = "150.00", **kwargs):
        job = await post_job(**kwargs)
        bid = (await orchestrator.submit_bid(job.job_id, MECHANIC, price, mechanic_name="Sam")).entity
        result = await orchestrator.accept_bid(bid.bid_id, customer_id=job.customer_id)
        assert result.ok, result.message
        return await orchestrator.get_job(job.job_id), result.entity

    return _accepted


@pytest.fixture
def scheduled_job(orchestrator, accepted_job):
    async def _scheduled(**kwargs):
        job, _ = await accepted_job(**kwargs)
        result = await orchestrator.schedule_job(job.job_id, "2025-03-05", "09:30", customer_id=job.customer_id)
        assert result.ok, result.message
        return result.entity

    return _scheduled


@pytest.fixture
def in_progress_job(orchestrator, scheduled_job):
    async def _in_progress(**kwargs):
        job = await scheduled_job(**kwargs)
        result = await orchestrator.start_job(job.job_id, MECHANIC)
        assert result.ok, result.message
        return result.entity

    return _in_progress
