"""Tests for the click command-line interface."""

import json
import logging
from datetime import timedelta

import pytest
from click.testing import CliRunner

from marketplace_job_orchestrator.cli.main import cli, _parse_line_item

from .conftest import CUSTOMER, MECHANIC


@pytest.fixture(autouse=True)
def restore_package_logger():
    logger = logging.getLogger("marketplace_job_orchestrator")
    handlers, level = list(logger.handlers), logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)


@pytest.fixture
def invoke(orchestrator):
    runner = CliRunner()

    def _invoke(*args, input=None):
        return runner.invoke(cli, ["--log-level", "CRITICAL", *args], obj={"orchestrator": orchestrator},
                             input=input)

    return _invoke


def invoke_json(invoke, *args):
    result = invoke("--json", *args)
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_job_lifecycle_through_cli(invoke, orchestrator):
    job = invoke_json(invoke, "job", "create", CUSTOMER, "Brake pads", "--description", "Front pads squeal",
                      "--estimated-cost", "120")["entity"]
    assert job["status"] == "posted"

    bid = invoke_json(invoke, "job", "bid", job["job_id"], MECHANIC, "110", "--mechanic-name", "Sam")["entity"]
    accepted = invoke_json(invoke, "job", "accept", bid["bid_id"], "--customer-id", CUSTOMER)
    assert accepted["entity"]["status"] == "accepted"
    assert accepted["details"]["job_status"] == "accepted"

    result = invoke("job", "schedule", job["job_id"], "2025-03-05", "09:30")
    assert result.exit_code == 0, result.output
    assert "Job scheduled!" in result.output
    assert "Scheduled: 2025-03-05 09:30" in result.output

    assert invoke("job", "start", job["job_id"], MECHANIC).exit_code == 0

    co = invoke_json(invoke, "change-order", "create", job["job_id"], MECHANIC, "Rotors",
                     "--item", "Rotor:2:60", "--item", "Labor:1:50")["entity"]
    assert co["total_amount"] == "170"

    assert invoke("change-order", "approve", co["change_order_id"], CUSTOMER).exit_code == 0
    paid = invoke("change-order", "pay", co["change_order_id"], "--method", "card")
    assert "Payment held in escrow!" in paid.output

    completed = invoke("job", "complete", job["job_id"], MECHANIC, "--work", "Pads and rotors replaced")
    assert completed.exit_code == 0, completed.output
    assert "Status: completed" in completed.output

    shown = invoke("job", "show", job["job_id"], "--bids", "--timeline")
    assert "Timeline:" in shown.output
    assert "Additional work payment released: $170.00" in shown.output
    assert bid["bid_id"] in shown.output


def test_failure_exits_non_zero_with_error_kind(invoke):
    result = invoke("job", "accept", "BID-missing")

    assert result.exit_code == 1
    assert "Error (NotFound)" in result.output


def test_json_failure_reports_result(invoke):
    result = invoke("--json", "job", "cancel", "JOB-missing", CUSTOMER)

    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload["ok"] is False
    assert payload["error_kind"] == "NotFound"


def test_show_missing_job(invoke):
    result = invoke("job", "show", "JOB-missing")

    assert result.exit_code == 1
    assert "Job JOB-missing not found" in result.output


def test_list_and_stats(invoke):
    invoke("job", "create", CUSTOMER, "Oil change", "--description", "Synthetic")
    invoke("job", "create", CUSTOMER, "Battery", "--description", "Won't start")

    listed = invoke_json(invoke, "job", "list", "--status", "posted")
    assert sorted(j["title"] for j in listed) == ["Battery", "Oil change"]

    stats = invoke("job", "stats", "--customer-id", CUSTOMER)
    assert "Total jobs: 2" in stats.output
    assert "posted: 2" in stats.output


def test_list_by_creation_window(invoke, clock):
    invoke("job", "create", CUSTOMER, "Oil change", "--description", "Synthetic")
    clock.advance(days=2)
    invoke("job", "create", CUSTOMER, "Battery", "--description", "Won't start")

    since = (clock.now - timedelta(days=1)).strftime("%Y-%m-%d")
    listed = invoke_json(invoke, "job", "list", "--since", since)

    assert [j["title"] for j in listed] == ["Battery"]


def test_delete_requires_confirmation(invoke, orchestrator):
    job = invoke_json(invoke, "job", "create", CUSTOMER, "Oil change", "--description", "Synthetic")["entity"]

    aborted = invoke("job", "delete", job["job_id"], input="n\n")
    assert aborted.exit_code == 1

    deleted = invoke("job", "delete", job["job_id"], "--yes")
    assert deleted.exit_code == 0
    assert "Job deleted!" in deleted.output


def test_sweep_run_expires_old_jobs(invoke, clock):
    job = invoke_json(invoke, "job", "create", CUSTOMER, "Oil change", "--description", "Synthetic")["entity"]
    clock.advance(hours=25)

    report = invoke_json(invoke, "sweep", "run")["entity"]

    assert report["expired_jobs"] == [job["job_id"]]


def test_health(invoke):
    result = invoke("health")

    assert result.exit_code == 0
    assert "Overall Status: HEALTHY" in result.output


def test_invalid_log_level_is_a_usage_error():
    result = CliRunner().invoke(cli, ["--log-level", "LOUD", "health"])

    assert result.exit_code != 0
    assert "log_level" in result.output


def test_parse_line_item_allows_colons_in_description():
    assert _parse_line_item("Belt: serpentine:1:45") == {
        "description": "Belt: serpentine", "quantity": "1", "unit_price": "45"
    }
