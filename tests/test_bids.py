"""
Tests for bid submission, acceptance and resolution, including concurrent
acceptance and partial write failures.
"""

import asyncio

import pytest

from marketplace_job_orchestrator import JobOrchestrator, JobStatus, BidStatus
from marketplace_job_orchestrator.core.exceptions import ErrorKind, ConflictError
from marketplace_job_orchestrator.services.bid_manager import DECLINED_REASON

from .conftest import (
    CUSTOMER, OTHER_CUSTOMER, MECHANIC, OTHER_MECHANIC,
    YieldingStore, FlakyStore
)


class TestSubmitBid:

    @pytest.mark.asyncio
    async def test_first_bid_moves_job_to_bidding(self, orchestrator, post_job, gateway):
        job = await post_job()

        result = await orchestrator.submit_bid(job.job_id, MECHANIC, "120.50", message="Can come today",
                                               mechanic_name="Sam")

        bid = result.entity
        assert bid.status == BidStatus.PENDING
        assert bid.customer_id == CUSTOMER
        assert str(bid.price) == "120.50"

        updated = await orchestrator.get_job(job.job_id)
        assert updated.status == JobStatus.BIDDING
        assert updated.progression_timeline[-1].description == "Bid submitted by Sam for $120.50"

        await orchestrator.notifications.flush()
        assert gateway.recipients("new_bid_placed") == [CUSTOMER]

    @pytest.mark.asyncio
    async def test_second_bid_keeps_bidding_and_appends_timeline(self, orchestrator, post_job):
        job = await post_job()
        await orchestrator.submit_bid(job.job_id, MECHANIC, "120")

        await orchestrator.submit_bid(job.job_id, OTHER_MECHANIC, "99.99", mechanic_name="Lee")

        updated = await orchestrator.get_job(job.job_id)
        assert updated.status == JobStatus.BIDDING
        assert [e.status for e in updated.progression_timeline] == ["posted", "bidding", "bidding"]
        assert len(await orchestrator.get_bids_by_job(job.job_id)) == 2

    @pytest.mark.asyncio
    async def test_bid_opens_conversation_between_parties(self, orchestrator, post_job, conversations):
        job = await post_job()

        await orchestrator.submit_bid(job.job_id, MECHANIC, "120")

        await orchestrator.notifications.flush()
        assert conversations.conversations[0]["job_id"] == job.job_id
        assert conversations.conversations[0]["participant_ids"] == [CUSTOMER, MECHANIC]
        assert conversations.conversations[0]["context"]["price"] == "120"

    @pytest.mark.asyncio
    async def test_bid_on_accepted_job_is_invalid_state(self, orchestrator, accepted_job):
        job, _ = await accepted_job()

        result = await orchestrator.submit_bid(job.job_id, OTHER_MECHANIC, "80")

        assert result.error_kind == ErrorKind.INVALID_STATE
        assert len(await orchestrator.get_bids_by_job(job.job_id)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", ["0", "-5", "abc", None, "NaN"])
    async def test_invalid_price_is_rejected(self, orchestrator, post_job, price):
        job = await post_job()

        result = await orchestrator.submit_bid(job.job_id, MECHANIC, price)

        assert result.error_kind == ErrorKind.VALIDATION_ERROR
        assert result.details["field"] == "price"

    @pytest.mark.asyncio
    async def test_bid_on_missing_job_is_not_found(self, orchestrator):
        result = await orchestrator.submit_bid("JOB-missing", MECHANIC, "80")

        assert result.error_kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_explicit_bid_id_makes_submit_idempotent(self, orchestrator, post_job):
        job = await post_job()

        first = await orchestrator.submit_bid(job.job_id, MECHANIC, "80", bid_id="BID-client-1")
        second = await orchestrator.submit_bid(job.job_id, MECHANIC, "80", bid_id="BID-client-1")

        assert first.ok and second.ok
        assert [b.bid_id for b in await orchestrator.get_bids_by_job(job.job_id)] == ["BID-client-1"]


class TestAcceptBid:

    @pytest.mark.asyncio
    async def test_accept_assigns_mechanic_and_declines_siblings(self, orchestrator, post_job, gateway):
        job = await post_job()
        b1 = (await orchestrator.submit_bid(job.job_id, MECHANIC, "150", mechanic_name="Sam")).entity
        b2 = (await orchestrator.submit_bid(job.job_id, OTHER_MECHANIC, "140", mechanic_name="Lee")).entity

        result = await orchestrator.accept_bid(b1.bid_id, customer_id=CUSTOMER)

        assert result.ok
        assert result.entity.bid_id == b1.bid_id
        assert result.entity.status == BidStatus.ACCEPTED
        assert result.details == {"job_id": job.job_id, "job_status": "accepted"}

        accepted_job = await orchestrator.get_job(job.job_id)
        assert accepted_job.status == JobStatus.ACCEPTED
        assert accepted_job.mechanic_id == MECHANIC
        assert accepted_job.accepted_bid_id == b1.bid_id
        assert str(accepted_job.price) == "150"
        assert accepted_job.progression_timeline[-1].description == "Bid accepted from Sam for $150.00"

        sibling = await orchestrator.get_bid(b2.bid_id)
        assert sibling.status == BidStatus.DECLINED
        assert sibling.reason == DECLINED_REASON

        await orchestrator.notifications.flush()
        assert gateway.recipients("bid_accepted") == [MECHANIC]
        assert gateway.recipients("bid_accepted_confirmation") == [CUSTOMER]

    @pytest.mark.asyncio
    async def test_accept_leaves_already_resolved_siblings_alone(self, orchestrator, post_job):
        job = await post_job()
        b1 = (await orchestrator.submit_bid(job.job_id, MECHANIC, "150")).entity
        b2 = (await orchestrator.submit_bid(job.job_id, OTHER_MECHANIC, "140")).entity
        await orchestrator.withdraw_bid(b2.bid_id, OTHER_MECHANIC)

        await orchestrator.accept_bid(b1.bid_id)

        assert (await orchestrator.get_bid(b2.bid_id)).status == BidStatus.WITHDRAWN

    @pytest.mark.asyncio
    async def test_accept_twice_is_already_resolved(self, orchestrator, accepted_job):
        _, bid = await accepted_job()

        result = await orchestrator.accept_bid(bid.bid_id)

        assert result.error_kind == ErrorKind.ALREADY_RESOLVED

    @pytest.mark.asyncio
    async def test_accepting_declined_sibling_is_already_resolved(self, orchestrator, post_job):
        job = await post_job()
        b1 = (await orchestrator.submit_bid(job.job_id, MECHANIC, "150")).entity
        b2 = (await orchestrator.submit_bid(job.job_id, OTHER_MECHANIC, "140")).entity
        await orchestrator.accept_bid(b1.bid_id)

        result = await orchestrator.accept_bid(b2.bid_id)

        assert result.error_kind == ErrorKind.ALREADY_RESOLVED
        assert (await orchestrator.get_job(job.job_id)).mechanic_id == MECHANIC

    @pytest.mark.asyncio
    async def test_accept_by_other_customer_is_unauthorized(self, orchestrator, post_job):
        job = await post_job()
        bid = (await orchestrator.submit_bid(job.job_id, MECHANIC, "150")).entity

        result = await orchestrator.accept_bid(bid.bid_id, customer_id=OTHER_CUSTOMER)

        assert result.error_kind == ErrorKind.UNAUTHORIZED
        assert (await orchestrator.get_bid(bid.bid_id)).status == BidStatus.PENDING

    @pytest.mark.asyncio
    async def test_accept_missing_bid_is_not_found(self, orchestrator):
        result = await orchestrator.accept_bid("BID-missing")

        assert result.error_kind == ErrorKind.NOT_FOUND
        assert result.details["kind"] == "Bid"

    @pytest.mark.asyncio
    async def test_accept_on_cancelled_job_is_invalid_state(self, orchestrator, post_job):
        job = await post_job()
        bid = (await orchestrator.submit_bid(job.job_id, MECHANIC, "150")).entity
        await orchestrator.cancel_job(job.job_id, CUSTOMER)

        result = await orchestrator.accept_bid(bid.bid_id)

        assert result.error_kind == ErrorKind.INVALID_STATE

    @pytest.mark.asyncio
    async def test_concurrent_accepts_pick_exactly_one_winner(self, gateway, clock):
        orchestrator = JobOrchestrator(store=YieldingStore(), gateway=gateway, clock=clock)
        job = (await orchestrator.create_job(CUSTOMER, "Alternator", "Battery light on")).entity
        b1 = (await orchestrator.submit_bid(job.job_id, MECHANIC, "300")).entity
        b2 = (await orchestrator.submit_bid(job.job_id, OTHER_MECHANIC, "280")).entity

        results = await asyncio.gather(
            orchestrator.accept_bid(b1.bid_id),
            orchestrator.accept_bid(b2.bid_id)
        )

        winners = [r for r in results if r.ok]
        losers = [r for r in results if not r.ok]
        assert len(winners) == 1
        assert losers[0].error_kind in (ErrorKind.ALREADY_RESOLVED, ErrorKind.INVALID_STATE)

        final = await orchestrator.get_job(job.job_id)
        winning_bid = winners[0].entity
        assert final.accepted_bid_id == winning_bid.bid_id
        assert final.mechanic_id == winning_bid.mechanic_id

        statuses = sorted(b.status.value for b in await orchestrator.get_bids_by_job(job.job_id))
        assert statuses == ["accepted", "declined"]

    @pytest.mark.asyncio
    async def test_stale_write_from_second_engine_is_a_conflict(self, store, gateway, clock):
        first = JobOrchestrator(store=store, gateway=gateway, clock=clock)
        second = JobOrchestrator(store=store, gateway=gateway, clock=clock)
        job = (await first.create_job(CUSTOMER, "Alternator", "Battery light on")).entity
        bid = (await first.submit_bid(job.job_id, MECHANIC, "300")).entity

        # Second engine works from a snapshot taken before the first accepts
        stale = await second.job_manager.get_job(job.job_id)
        await first.accept_bid(bid.bid_id)

        stale.title = "Alternator and belt"
        with pytest.raises(ConflictError):
            await second.job_manager.save_job(stale)

        assert (await first.get_job(job.job_id)).title == "Alternator"

    @pytest.mark.asyncio
    async def test_failed_bid_batch_is_completed_by_retry(self, gateway, clock):
        store = FlakyStore()
        orchestrator = JobOrchestrator(store=store, gateway=gateway, clock=clock)
        job = (await orchestrator.create_job(CUSTOMER, "Alternator", "Battery light on")).entity
        b1 = (await orchestrator.submit_bid(job.job_id, MECHANIC, "300")).entity
        b2 = (await orchestrator.submit_bid(job.job_id, OTHER_MECHANIC, "280")).entity

        store.fail_next_upsert_many = True
        failed = await orchestrator.accept_bid(b1.bid_id)

        assert failed.error_kind == ErrorKind.DEPENDENCY_FAILURE
        # Job was written first; no bid changed
        assert (await orchestrator.get_job(job.job_id)).accepted_bid_id == b1.bid_id
        assert {b.status for b in await orchestrator.get_bids_by_job(job.job_id)} == {BidStatus.PENDING}

        retried = await orchestrator.accept_bid(b1.bid_id)

        assert retried.ok
        assert (await orchestrator.get_bid(b1.bid_id)).status == BidStatus.ACCEPTED
        assert (await orchestrator.get_bid(b2.bid_id)).status == BidStatus.DECLINED


class TestRejectAndWithdraw:

    @pytest.mark.asyncio
    async def test_reject_leaves_job_untouched(self, orchestrator, post_job, gateway):
        job = await post_job()
        bid = (await orchestrator.submit_bid(job.job_id, MECHANIC, "150", mechanic_name="Sam")).entity
        before = await orchestrator.get_job(job.job_id)

        result = await orchestrator.reject_bid(bid.bid_id, customer_id=CUSTOMER, reason="Too expensive")

        assert result.entity.status == BidStatus.REJECTED
        assert result.entity.reason == "Too expensive"
        after = await orchestrator.get_job(job.job_id)
        assert after.status == JobStatus.BIDDING
        assert after.version == before.version

        await orchestrator.notifications.flush()
        rejected = gateway.events("bid_rejected")
        assert [n["recipient_id"] for n in rejected] == [MECHANIC]
        assert rejected[0]["payload"]["reason"] == "Too expensive"

    @pytest.mark.asyncio
    async def test_reject_twice_is_already_resolved(self, orchestrator, post_job):
        job = await post_job()
        bid = (await orchestrator.submit_bid(job.job_id, MECHANIC, "150")).entity
        await orchestrator.reject_bid(bid.bid_id)

        result = await orchestrator.reject_bid(bid.bid_id)

        assert result.error_kind == ErrorKind.ALREADY_RESOLVED

    @pytest.mark.asyncio
    async def test_reject_by_other_customer_is_unauthorized(self, orchestrator, post_job):
        job = await post_job()
        bid = (await orchestrator.submit_bid(job.job_id, MECHANIC, "150")).entity

        result = await orchestrator.reject_bid(bid.bid_id, customer_id=OTHER_CUSTOMER)

        assert result.error_kind == ErrorKind.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_withdraw_own_bid(self, orchestrator, post_job):
        job = await post_job()
        bid = (await orchestrator.submit_bid(job.job_id, MECHANIC, "150")).entity

        result = await orchestrator.withdraw_bid(bid.bid_id, MECHANIC)

        assert result.entity.status == BidStatus.WITHDRAWN
        assert result.entity.resolved_at is not None

    @pytest.mark.asyncio
    async def test_withdraw_someone_elses_bid_is_unauthorized(self, orchestrator, post_job):
        job = await post_job()
        bid = (await orchestrator.submit_bid(job.job_id, MECHANIC, "150")).entity

        result = await orchestrator.withdraw_bid(bid.bid_id, OTHER_MECHANIC)

        assert result.error_kind == ErrorKind.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_withdraw_accepted_bid_is_already_resolved(self, orchestrator, accepted_job):
        _, bid = await accepted_job()

        result = await orchestrator.withdraw_bid(bid.bid_id, MECHANIC)

        assert result.error_kind == ErrorKind.ALREADY_RESOLVED

    @pytest.mark.asyncio
    async def test_mechanic_bid_stats(self, orchestrator, post_job):
        first = await post_job()
        second = await post_job()
        b1 = (await orchestrator.submit_bid(first.job_id, MECHANIC, "100")).entity
        await orchestrator.submit_bid(second.job_id, MECHANIC, "110")
        await orchestrator.accept_bid(b1.bid_id)

        stats = await orchestrator.bid_manager.get_mechanic_bid_stats(MECHANIC)

        assert stats["total"] == 2
        assert stats["accepted"] == 1
        assert stats["pending"] == 1
