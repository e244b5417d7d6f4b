"""Loop configuration: defaults, then a JSON file, then TOPOKEEPER_* env vars."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

from topokeeper.policy.proposals import DEFAULT_CONFIDENCE_THRESHOLD, Capabilities
from topokeeper.safety.gate import SafetyThresholds

ENV_PREFIX = "TOPOKEEPER_"


@dataclass(frozen=True)
class LoopConfig:
    interval_s: float = 300.0
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    thresholds: SafetyThresholds = field(default_factory=SafetyThresholds)
    stabilization_delay_s: float = 2.0
    restore_delay_s: float = 3.0
    verify_max_error_rate_pct: float = 2.0
    ledger_size: int = 1000
    snapshot_capacity: int = 50
    cooldown_s: float = 60.0
    max_attempts_per_target: int = 3
    min_replicas: int = 2
    error_confidence_scale: float = 0.1
    capabilities: Capabilities = field(default_factory=Capabilities)
    explain_path: str | None = None
    trace_path: str | None = None

    def to_dict(self) -> dict:
        return {
            "interval_s": self.interval_s,
            "confidence_threshold": self.confidence_threshold,
            "thresholds": self.thresholds.to_dict(),
            "stabilization_delay_s": self.stabilization_delay_s,
            "restore_delay_s": self.restore_delay_s,
            "verify_max_error_rate_pct": self.verify_max_error_rate_pct,
            "ledger_size": self.ledger_size,
            "snapshot_capacity": self.snapshot_capacity,
            "cooldown_s": self.cooldown_s,
            "max_attempts_per_target": self.max_attempts_per_target,
            "min_replicas": self.min_replicas,
            "error_confidence_scale": self.error_confidence_scale,
            "capabilities": {
                "rate_limiter": self.capabilities.rate_limiter,
                "self_healer": self.capabilities.self_healer,
                "load_balancer": self.capabilities.load_balancer,
                "resource_optimizer": self.capabilities.resource_optimizer,
            },
            "explain_path": self.explain_path,
            "trace_path": self.trace_path,
        }


def _parse_env_float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _parse_env_int(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _parse_env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _known(cls, data: dict, where: str) -> dict:
    names = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - names)
    if unknown:
        raise ValueError(f"{where}: unknown keys: {', '.join(unknown)}")
    return data


def config_from_dict(data: dict, base: LoopConfig | None = None) -> LoopConfig:
    if not isinstance(data, dict):
        raise ValueError("config must be a JSON object")
    base = base or LoopConfig()
    top = dict(_known(LoopConfig, data, "config"))
    if "thresholds" in top:
        raw = _known(SafetyThresholds, dict(top["thresholds"] or {}), "config.thresholds")
        top["thresholds"] = replace(base.thresholds, **{k: float(v) for k, v in raw.items()})
    if "capabilities" in top:
        raw = _known(Capabilities, dict(top["capabilities"] or {}), "config.capabilities")
        top["capabilities"] = replace(base.capabilities, **{k: bool(v) for k, v in raw.items()})
    return replace(base, **top)


def apply_env_overrides(config: LoopConfig) -> LoopConfig:
    t = config.thresholds
    thresholds = SafetyThresholds(
        max_resource_increase_pct=_parse_env_float(
            f"{ENV_PREFIX}MAX_RESOURCE_INCREASE_PCT", t.max_resource_increase_pct
        ),
        min_availability_pct=_parse_env_float(
            f"{ENV_PREFIX}MIN_AVAILABILITY_PCT", t.min_availability_pct
        ),
        max_latency_increase_ms=_parse_env_float(
            f"{ENV_PREFIX}MAX_LATENCY_INCREASE_MS", t.max_latency_increase_ms
        ),
        max_error_rate_pct=_parse_env_float(f"{ENV_PREFIX}MAX_ERROR_RATE_PCT", t.max_error_rate_pct),
        max_latency_p99_ms=_parse_env_float(f"{ENV_PREFIX}MAX_LATENCY_P99_MS", t.max_latency_p99_ms),
        critical_degradation_pct=_parse_env_float(
            f"{ENV_PREFIX}CRITICAL_DEGRADATION_PCT", t.critical_degradation_pct
        ),
    )
    c = config.capabilities
    capabilities = Capabilities(
        rate_limiter=_parse_env_bool(f"{ENV_PREFIX}RATE_LIMITER", c.rate_limiter),
        self_healer=_parse_env_bool(f"{ENV_PREFIX}SELF_HEALER", c.self_healer),
        load_balancer=_parse_env_bool(f"{ENV_PREFIX}LOAD_BALANCER", c.load_balancer),
        resource_optimizer=_parse_env_bool(f"{ENV_PREFIX}RESOURCE_OPTIMIZER", c.resource_optimizer),
    )
    return replace(
        config,
        interval_s=_parse_env_float(f"{ENV_PREFIX}INTERVAL_S", config.interval_s),
        confidence_threshold=_parse_env_float(
            f"{ENV_PREFIX}CONFIDENCE_THRESHOLD", config.confidence_threshold
        ),
        stabilization_delay_s=_parse_env_float(
            f"{ENV_PREFIX}STABILIZATION_DELAY_S", config.stabilization_delay_s
        ),
        restore_delay_s=_parse_env_float(f"{ENV_PREFIX}RESTORE_DELAY_S", config.restore_delay_s),
        ledger_size=_parse_env_int(f"{ENV_PREFIX}LEDGER_SIZE", config.ledger_size),
        cooldown_s=_parse_env_float(f"{ENV_PREFIX}COOLDOWN_S", config.cooldown_s),
        max_attempts_per_target=_parse_env_int(
            f"{ENV_PREFIX}MAX_ATTEMPTS_PER_TARGET", config.max_attempts_per_target
        ),
        explain_path=os.environ.get(f"{ENV_PREFIX}EXPLAIN_PATH") or config.explain_path,
        thresholds=thresholds,
        capabilities=capabilities,
    )


def load_config(path: Path | None = None) -> LoopConfig:
    config = LoopConfig()
    if path is not None:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        config = config_from_dict(data, config)
    return apply_env_overrides(config)
