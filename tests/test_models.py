"""
Tests for the data models: serialization, the progression timeline and the
status transition tables.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from marketplace_job_orchestrator.models import (
    Job, JobStatus, ProgressionEntry, Bid, BidStatus, ChangeOrder, ChangeOrderStatus,
    EscrowPayment, LineItem, OperationResult, can_transition_to, get_valid_transitions,
    CHANGE_ORDER_STATUS_TRANSITIONS
)
from marketplace_job_orchestrator.models.job import format_money, TERMINAL_STATUSES
from marketplace_job_orchestrator.core.exceptions import ErrorKind, InvalidStateError

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


def make_job(**kwargs):
    values = dict(job_id="JOB-1", customer_id="CUSTOMER-1", title="Brakes", description="Squeal",
                  created_at=T0, updated_at=T0)
    values.update(kwargs)
    return Job(**values)


class TestJob:

    def test_dict_round_trip_keeps_types(self):
        job = make_job(price=Decimal("150.00"), mechanic_id="MECHANIC-7", status=JobStatus.ACCEPTED,
                       started_at=T0 + timedelta(hours=1), completion_photos=["a.jpg"])
        job.record_progress("posted", "Job posted by customer", actor="Dana", timestamp=T0)

        restored = Job.from_dict(job.to_dict())

        assert restored == job
        assert isinstance(restored.price, Decimal)
        assert restored.status is JobStatus.ACCEPTED
        assert restored.progression_timeline[0].actor == "Dana"

    def test_from_dict_ignores_unknown_fields(self):
        data = make_job().to_dict()
        data["legacy_flag"] = True

        assert Job.from_dict(data).job_id == "JOB-1"

    def test_timeline_is_ordered_by_timestamp(self):
        job = make_job()
        job.record_progress("bidding", "late", timestamp=T0 + timedelta(minutes=5))
        job.record_progress("posted", "early", timestamp=T0)

        assert [e.description for e in job.progression_timeline] == ["early", "late"]

    def test_timeline_keeps_insertion_order_for_equal_timestamps(self):
        job = make_job()
        for description in ("first", "second", "third"):
            job.record_progress("completed", description, timestamp=T0)

        assert [e.description for e in job.progression_timeline] == ["first", "second", "third"]

    def test_progression_entries_are_immutable(self):
        entry = ProgressionEntry(status="posted", timestamp=T0, description="Job posted")

        with pytest.raises(AttributeError):
            entry.description = "edited"

    def test_time_remaining(self):
        job = make_job()

        assert job.time_remaining(T0 + timedelta(hours=3), timedelta(hours=24)) == timedelta(hours=21)
        assert job.time_remaining(T0 + timedelta(hours=25), timedelta(hours=24)) < timedelta(0)


class TestTransitions:

    @pytest.mark.parametrize("current,target", [
        (JobStatus.POSTED, JobStatus.BIDDING),
        (JobStatus.BIDDING, JobStatus.ACCEPTED),
        (JobStatus.ACCEPTED, JobStatus.SCHEDULED),
        (JobStatus.SCHEDULED, JobStatus.IN_PROGRESS),
        (JobStatus.IN_PROGRESS, JobStatus.PENDING),
        (JobStatus.PENDING, JobStatus.IN_PROGRESS),
    ])
    def test_legal_job_transitions(self, current, target):
        assert can_transition_to(current, target)

    @pytest.mark.parametrize("current,target", [
        (JobStatus.ACCEPTED, JobStatus.CANCELLED),
        (JobStatus.PENDING, JobStatus.COMPLETED),
        (JobStatus.POSTED, JobStatus.IN_PROGRESS),
        (JobStatus.BIDDING, JobStatus.POSTED),
    ])
    def test_illegal_job_transitions(self, current, target):
        assert not can_transition_to(current, target)

    def test_terminal_statuses_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert get_valid_transitions(status) == []

    def test_change_order_resolution_is_final(self):
        for status in (ChangeOrderStatus.REJECTED, ChangeOrderStatus.CANCELLED,
                       ChangeOrderStatus.EXPIRED, ChangeOrderStatus.PAID):
            assert CHANGE_ORDER_STATUS_TRANSITIONS[status] == []


class TestBidAndChangeOrder:

    def test_bid_resolves_once(self):
        bid = Bid(bid_id="BID-1", job_id="JOB-1", mechanic_id="MECHANIC-7", customer_id="CUSTOMER-1",
                  price=Decimal("90"))
        assert not bid.is_resolved()

        bid.resolve(BidStatus.DECLINED, reason="Another bid was accepted", at=T0)

        assert bid.is_resolved()
        assert bid.resolved_at == T0
        assert Bid.from_dict(bid.to_dict()) == bid

    def test_line_item_total(self):
        item = LineItem(line_item_id="L1", description="Rotor", quantity=Decimal("2"), unit_price=Decimal("60.25"))

        assert item.total_price == Decimal("120.50")
        assert item.to_dict()["total_price"] == "120.50"

    def test_change_order_deadline(self):
        change_order = ChangeOrder(change_order_id="CO-1", job_id="JOB-1", mechanic_id="MECHANIC-7",
                                   customer_id="CUSTOMER-1", title="Rotors", total_amount=Decimal("50"),
                                   expires_at=T0)

        assert not change_order.is_past_deadline(T0)
        assert change_order.is_past_deadline(T0 + timedelta(seconds=1))

        change_order.status = ChangeOrderStatus.APPROVED
        assert not change_order.is_past_deadline(T0 + timedelta(days=1))

    def test_payment_round_trip(self):
        payment = EscrowPayment(payment_id="PAY-1", change_order_id="CO-1", job_id="JOB-1",
                                customer_id="CUSTOMER-1", mechanic_id="MECHANIC-7", amount=Decimal("50"),
                                escrow_at=T0)

        assert EscrowPayment.from_dict(payment.to_dict()) == payment


class TestOperationResult:

    def test_failure_carries_kind_and_details(self):
        error = InvalidStateError("Job must be accepted before scheduling", entity_id="JOB-1",
                                  current_status="posted")

        result = OperationResult.failure(error)

        assert not result.ok
        assert result.error_kind == ErrorKind.INVALID_STATE
        assert result.details == {"id": "JOB-1", "current_status": "posted"}

    def test_to_dict_serializes_entities(self):
        result = OperationResult.success([make_job(), make_job(job_id="JOB-2")], count=2)

        data = result.to_dict()

        assert data["ok"] is True
        assert [j["job_id"] for j in data["entity"]] == ["JOB-1", "JOB-2"]
        assert data["details"] == {"count": 2}


@pytest.mark.parametrize("value,expected", [
    (Decimal("150"), "$150.00"),
    (Decimal("1234.5"), "$1,234.50"),
    (None, "$0.00"),
])
def test_format_money(value, expected):
    assert format_money(value) == expected
