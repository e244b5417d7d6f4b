from __future__ import annotations

import json
from pathlib import Path

import pytest

from topokeeper.config import LoopConfig, config_from_dict, load_config


def test_defaults() -> None:
    config = load_config()
    assert config == LoopConfig()
    assert config.interval_s == 300.0
    assert config.confidence_threshold == 0.7
    assert config.thresholds.max_resource_increase_pct == 15.0
    assert config.thresholds.min_availability_pct == 99.5
    assert config.thresholds.max_latency_increase_ms == 5.0
    assert config.ledger_size == 1000
    assert config.max_attempts_per_target == 3


def test_json_file_overrides_defaults(tmp_path: Path) -> None:
    path = tmp_path / "topokeeper.json"
    path.write_text(
        json.dumps(
            {
                "interval_s": 60,
                "thresholds": {"min_availability_pct": 99.9},
                "capabilities": {"self_healer": True},
            }
        ),
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.interval_s == 60
    assert config.thresholds.min_availability_pct == 99.9
    assert config.thresholds.max_resource_increase_pct == 15.0
    assert config.capabilities.self_healer is True
    assert config.capabilities.rate_limiter is False


def test_env_overrides_file(monkeypatch, tmp_path: Path) -> None:
    path = tmp_path / "topokeeper.json"
    path.write_text(json.dumps({"confidence_threshold": 0.9}), encoding="utf-8")
    monkeypatch.setenv("TOPOKEEPER_CONFIDENCE_THRESHOLD", "0.6")
    monkeypatch.setenv("TOPOKEEPER_MAX_RESOURCE_INCREASE_PCT", "25")
    monkeypatch.setenv("TOPOKEEPER_RATE_LIMITER", "1")
    monkeypatch.setenv("TOPOKEEPER_LEDGER_SIZE", "not-a-number")

    config = load_config(path)
    assert config.confidence_threshold == 0.6
    assert config.thresholds.max_resource_increase_pct == 25.0
    assert config.capabilities.rate_limiter is True
    assert config.ledger_size == 1000


def test_unknown_keys_are_rejected() -> None:
    with pytest.raises(ValueError, match="interval"):
        config_from_dict({"intervall_s": 10})
    with pytest.raises(ValueError, match="config.thresholds"):
        config_from_dict({"thresholds": {"max_cpu": 1}})


def test_to_dict_is_json_serializable() -> None:
    payload = LoopConfig().to_dict()
    assert json.loads(json.dumps(payload))["thresholds"]["max_error_rate_pct"] == 1.0
