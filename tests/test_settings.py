"""Tests for YAML + environment settings loading."""

from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from src.config.settings import (
    Settings,
    deep_merge,
    get_settings,
    load_all_configs,
    reset_settings,
)

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    target = tmp_path / "config"
    (target / "schemas").mkdir(parents=True)
    shutil.copy(REPO_CONFIG / "schemas" / "main.schema.json", target / "schemas")
    return target


def test_repository_yaml_defaults() -> None:
    settings = Settings()

    assert settings.dedup_window_minutes == 1440
    assert settings.max_retries == 3
    assert settings.retry_delay_ms == 1000
    assert settings.timeout_ms == 60000
    assert settings.retention_days == 30
    assert settings.cleanup_run_at_hour == 2
    assert settings.dedup_payload_fields["violation_approved"] == [
        "violation_id",
        "status",
    ]
    assert settings.dedup_window.total_seconds() == 24 * 3600


def test_environment_beats_yaml(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAX_RETRIES", "5")
    monkeypatch.setenv("RETENTION_DAYS", "7")

    settings = Settings()

    assert settings.max_retries == 5
    assert settings.retention_policy().retention_days == 7
    assert settings.retry_delay_ms == 1000


def test_timeout_longer_than_window_rejected() -> None:
    with pytest.raises(ValueError, match="timeout_ms"):
        Settings(dedup_window_minutes=1, timeout_ms=120_000)


def test_backoff_cap_below_base_delay_rejected() -> None:
    with pytest.raises(ValueError, match="max_retry_delay_ms"):
        Settings(retry_delay_ms=5000, max_retry_delay_ms=1000)


def test_yaml_values_override_defaults(
    config_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    (config_dir / "main.yaml").write_text(
        "delivery:\n"
        "  max_retries: 6\n"
        "  payload_fields:\n"
        "    campaign: [campaign_id]\n"
        "cleanup:\n"
        "  run_at_hour: null\n"
        "  interval_minutes: 15\n",
        encoding="utf-8",
    )
    monkeypatch.chdir(config_dir.parent)

    settings = Settings()

    assert settings.max_retries == 6
    assert settings.cleanup_run_at_hour is None
    assert settings.cleanup_interval_minutes == 15
    assert settings.dedup_payload_fields["campaign"] == ["campaign_id"]
    assert "violation_approved" in settings.dedup_payload_fields


def test_invalid_yaml_section_rejected(config_dir: Path) -> None:
    (config_dir / "main.yaml").write_text(
        "delivery:\n  max_retries: lots\n", encoding="utf-8"
    )

    with pytest.raises(ValueError, match="main"):
        load_all_configs(config_dir)


def test_extra_files_merge_over_main(config_dir: Path) -> None:
    (config_dir / "main.yaml").write_text(
        "delivery:\n  max_retries: 3\n  retry_delay_ms: 500\n", encoding="utf-8"
    )
    (config_dir / "local.yaml").write_text(
        "delivery:\n  max_retries: 9\n", encoding="utf-8"
    )

    merged = load_all_configs(config_dir)

    assert merged["delivery"] == {"max_retries": 9, "retry_delay_ms": 500}


def test_extra_file_validated_against_its_schema(config_dir: Path) -> None:
    (config_dir / "schemas" / "local.schema.json").write_text(
        json.dumps({"type": "object", "additionalProperties": False}),
        encoding="utf-8",
    )
    (config_dir / "local.yaml").write_text("unexpected: 1\n", encoding="utf-8")

    with pytest.raises(ValueError, match="local"):
        load_all_configs(config_dir)


def test_deep_merge_keeps_nested_keys() -> None:
    merged = deep_merge(
        {"database": {"type": "sqlite", "postgres": {"host": "a", "port": 1}}},
        {"database": {"postgres": {"host": "b"}}},
    )

    assert merged == {
        "database": {"type": "sqlite", "postgres": {"host": "b", "port": 1}}
    }


def test_get_settings_is_cached() -> None:
    reset_settings()
    try:
        assert get_settings() is get_settings()
    finally:
        reset_settings()
