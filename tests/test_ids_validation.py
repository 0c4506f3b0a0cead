"""Tests for identifier generation and command-boundary validation."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from marketplace_job_orchestrator.core.exceptions import ValidationError
from marketplace_job_orchestrator.utils.ids import IdGenerator, parse_id, sort_by_id, in_date_range
from marketplace_job_orchestrator.utils.validation import validate_id, validate_amount, require_text

from .conftest import FakeClock


class TestIdGenerator:

    def test_ids_embed_creation_time(self):
        clock = FakeClock()
        ids = IdGenerator(clock)

        job_id = ids.job_id()
        parsed = parse_id(job_id)

        assert job_id.startswith("JOB-20250303-090000-000000-")
        assert parsed.prefix == "JOB"
        assert parsed.created_at == clock.now
        assert parsed.date == "2025-03-03"

    def test_ids_are_unique_and_ordered_when_clock_stands_still(self):
        ids = IdGenerator(FakeClock())

        generated = [ids.bid_id() for _ in range(5)]

        assert len(set(generated)) == 5
        assert sorted(generated) == generated
        assert sort_by_id(generated, key=lambda i: i, descending=False) == generated

    def test_prefixes_are_tracked_separately(self):
        ids = IdGenerator(FakeClock())

        assert parse_id(ids.change_order_id()).created_at == parse_id(ids.payment_id()).created_at

    @pytest.mark.parametrize("value", ["JOB-client-42", "JOB-2025-01-01-x-y", "UNKNOWN-20250303-090000-000000-AB", 42])
    def test_foreign_ids_do_not_parse(self, value):
        assert parse_id(value) is None

    def test_unparseable_ids_sort_after_generated_ones_when_descending(self):
        ids = IdGenerator(FakeClock())
        generated = ids.job_id()

        assert sort_by_id(["JOB-client-1", generated], key=lambda i: i) == [generated, "JOB-client-1"]

    def test_in_date_range(self):
        ids = IdGenerator(FakeClock())
        job_id = ids.job_id()

        assert in_date_range(job_id, datetime(2025, 3, 1, tzinfo=timezone.utc),
                             datetime(2025, 3, 4, tzinfo=timezone.utc))
        assert not in_date_range(job_id, datetime(2025, 3, 4, tzinfo=timezone.utc),
                                 datetime(2025, 3, 5, tzinfo=timezone.utc))


class TestValidation:

    def test_valid_id_is_returned(self):
        assert validate_id("job_id", "JOB-1") == "JOB-1"

    @pytest.mark.parametrize("value", ["", None, "has space", "-leading", "x" * 129, 12])
    def test_malformed_ids_are_rejected(self, value):
        with pytest.raises(ValidationError) as exc_info:
            validate_id("job_id", value)

        assert exc_info.value.details["field"] == "job_id"

    def test_prefix_is_enforced_when_given(self):
        assert validate_id("mechanic_id", "MECHANIC-7", "MECHANIC-") == "MECHANIC-7"
        with pytest.raises(ValidationError):
            validate_id("mechanic_id", "CUSTOMER-7", "MECHANIC-")

    @pytest.mark.parametrize("value,expected", [("10", Decimal("10")), (12.5, Decimal("12.5")),
                                                (Decimal("0.01"), Decimal("0.01"))])
    def test_amounts_are_parsed(self, value, expected):
        assert validate_amount("price", value) == expected

    @pytest.mark.parametrize("value", [True, "-1", "0", "Infinity", "ten"])
    def test_bad_amounts_are_rejected(self, value):
        with pytest.raises(ValidationError):
            validate_amount("price", value)

    def test_zero_allowed_when_requested(self):
        assert validate_amount("estimated_cost", "0", allow_zero=True) == Decimal("0")

    def test_require_text_strips(self):
        assert require_text("title", "  Brakes  ") == "Brakes"
        with pytest.raises(ValidationError):
            require_text("title", " \n ")
