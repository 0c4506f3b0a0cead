"""Tests for the in-memory entity store and the per-job lock registry."""

import asyncio

import pytest

from marketplace_job_orchestrator.core.exceptions import ConflictError, DatabaseError
from marketplace_job_orchestrator.utils.database import InMemoryEntityStore, JOBS, BIDS
from marketplace_job_orchestrator.utils.locks import KeyedLockManager


@pytest.fixture
def memory_store():
    return InMemoryEntityStore()


class TestInMemoryEntityStore:

    @pytest.mark.asyncio
    async def test_versions_increase_on_each_write(self, memory_store):
        created = await memory_store.upsert(JOBS, {"job_id": "JOB-1", "status": "posted"})
        created["status"] = "bidding"
        updated = await memory_store.upsert(JOBS, created)

        assert created["version"] == 1
        assert updated["version"] == 2
        assert (await memory_store.get(JOBS, "JOB-1"))["status"] == "bidding"

    @pytest.mark.asyncio
    async def test_stale_write_is_a_conflict(self, memory_store):
        first = await memory_store.upsert(JOBS, {"job_id": "JOB-1", "status": "posted"})
        await memory_store.upsert(JOBS, dict(first, status="bidding"))

        with pytest.raises(ConflictError) as exc_info:
            await memory_store.upsert(JOBS, dict(first, status="cancelled"))

        assert exc_info.value.details["expected_version"] == 1
        assert exc_info.value.details["actual_version"] == 2
        assert (await memory_store.get(JOBS, "JOB-1"))["status"] == "bidding"

    @pytest.mark.asyncio
    async def test_creating_an_existing_record_is_a_conflict(self, memory_store):
        await memory_store.upsert(JOBS, {"job_id": "JOB-1"})

        with pytest.raises(ConflictError):
            await memory_store.upsert(JOBS, {"job_id": "JOB-1"})

    @pytest.mark.asyncio
    async def test_upsert_many_is_all_or_nothing(self, memory_store):
        a = await memory_store.upsert(BIDS, {"bid_id": "BID-1", "status": "pending"})
        b = await memory_store.upsert(BIDS, {"bid_id": "BID-2", "status": "pending"})
        await memory_store.upsert(BIDS, dict(b, status="withdrawn"))

        with pytest.raises(ConflictError):
            await memory_store.upsert_many(BIDS, [dict(a, status="accepted"), dict(b, status="declined")])

        assert (await memory_store.get(BIDS, "BID-1"))["status"] == "pending"
        assert (await memory_store.get(BIDS, "BID-2"))["status"] == "withdrawn"

    @pytest.mark.asyncio
    async def test_list_filters_by_value_and_membership(self, memory_store):
        for job_id, status in (("JOB-1", "posted"), ("JOB-2", "bidding"), ("JOB-3", "accepted")):
            await memory_store.upsert(JOBS, {"job_id": job_id, "status": status, "customer_id": "CUSTOMER-1"})

        open_jobs = await memory_store.list(JOBS, {"status": ["posted", "bidding"]})
        accepted = await memory_store.list(JOBS, {"status": "accepted", "customer_id": "CUSTOMER-1"})

        assert [r["job_id"] for r in open_jobs] == ["JOB-1", "JOB-2"]
        assert [r["job_id"] for r in accepted] == ["JOB-3"]
        assert len(await memory_store.list(JOBS)) == 3

    @pytest.mark.asyncio
    async def test_records_are_copied(self, memory_store):
        record = {"job_id": "JOB-1", "notes": []}
        await memory_store.upsert(JOBS, record)
        record["notes"].append("outside")

        fetched = await memory_store.get(JOBS, "JOB-1")
        fetched["notes"].append("also outside")

        assert (await memory_store.get(JOBS, "JOB-1"))["notes"] == []

    @pytest.mark.asyncio
    async def test_delete(self, memory_store):
        await memory_store.upsert(JOBS, {"job_id": "JOB-1"})

        assert await memory_store.delete(JOBS, "JOB-1") is True
        assert await memory_store.delete(JOBS, "JOB-1") is False
        assert await memory_store.get(JOBS, "JOB-1") is None

    @pytest.mark.asyncio
    async def test_unknown_kind_is_rejected(self, memory_store):
        with pytest.raises(DatabaseError):
            await memory_store.get("invoices", "INV-1")


class TestKeyedLockManager:

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLockManager()
        order = []

        async def worker(name):
            async with locks.hold("JOB-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        locks = KeyedLockManager()
        entered = asyncio.Event()

        async def holder():
            async with locks.hold("JOB-1"):
                await entered.wait()

        async def other():
            async with locks.hold("JOB-2"):
                entered.set()

        await asyncio.wait_for(asyncio.gather(holder(), other()), timeout=1)

    @pytest.mark.asyncio
    async def test_unused_locks_are_discarded(self):
        locks = KeyedLockManager()

        async with locks.hold("JOB-1"):
            assert locks.is_locked("JOB-1")
            assert len(locks) == 1

        assert len(locks) == 0
        assert not locks.is_locked("JOB-1")

    @pytest.mark.asyncio
    async def test_lock_is_released_on_error(self):
        locks = KeyedLockManager()

        with pytest.raises(RuntimeError):
            async with locks.hold("JOB-1"):
                raise RuntimeError("boom")

        assert len(locks) == 0
