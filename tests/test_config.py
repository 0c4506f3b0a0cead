"""Tests for OrchestratorConfig construction and validation."""

from datetime import timedelta

import pytest

from marketplace_job_orchestrator import OrchestratorConfig
from marketplace_job_orchestrator.core.exceptions import ConfigurationError


def test_defaults():
    config = OrchestratorConfig()

    assert config.database_url is None
    assert config.posting_ttl == timedelta(hours=24)
    assert config.expiring_warning == timedelta(hours=2)
    assert config.change_order_ttl == timedelta(hours=24)
    assert config.enforce_id_prefixes is False


def test_from_dict_coerces_strings():
    config = OrchestratorConfig.from_dict({
        "posting_ttl_hours": "12",
        "pool_size": "4",
        "enforce_id_prefixes": "yes",
        "database_url": None
    })

    assert config.posting_ttl_hours == 12.0
    assert config.pool_size == 4
    assert config.enforce_id_prefixes is True


def test_unknown_key_is_rejected():
    with pytest.raises(ConfigurationError) as exc_info:
        OrchestratorConfig.from_dict({"posting_ttl": 24})

    assert exc_info.value.details["config_key"] == "posting_ttl"


@pytest.mark.parametrize("data", [
    {"enforce_id_prefixes": "maybe"},
    {"pool_size": "many"},
    {"pool_size": True},
    {"posting_ttl_hours": 0},
    {"expiring_warning_hours": 24},
    {"log_level": "LOUD"},
])
def test_invalid_values_are_rejected(data):
    with pytest.raises(ConfigurationError):
        OrchestratorConfig.from_dict(data)


def test_from_yaml_reads_nested_section(tmp_path):
    path = tmp_path / "orchestrator.yaml"
    path.write_text(
        "orchestrator:\n"
        "  database_url: postgresql://localhost/jobs\n"
        "  sweep_interval_seconds: 60\n"
        "  structured_logging: false\n"
    )

    config = OrchestratorConfig.from_yaml(str(path))

    assert config.database_url == "postgresql://localhost/jobs"
    assert config.sweep_interval_seconds == 60
    assert config.structured_logging is False


def test_from_yaml_reports_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        OrchestratorConfig.from_yaml(str(tmp_path / "missing.yaml"))


def test_from_yaml_rejects_non_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")

    with pytest.raises(ConfigurationError):
        OrchestratorConfig.from_yaml(str(path))


def test_from_env_maps_prefixed_variables():
    config = OrchestratorConfig.from_env({
        "MJO_DATABASE_URL": "postgresql://db/jobs",
        "MJO_POSTING_TTL_HOURS": "48",
        "MJO_UNRELATED_SETTING": "ignored",
        "HOME": "/root"
    })

    assert config.database_url == "postgresql://db/jobs"
    assert config.posting_ttl == timedelta(hours=48)


def test_to_dict_round_trip():
    config = OrchestratorConfig(pool_size=3, log_level="DEBUG")

    assert OrchestratorConfig.from_dict(config.to_dict()) == config
