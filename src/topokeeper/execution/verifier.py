from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from statistics import mean
from typing import Awaitable, Callable

from topokeeper.adapters.base import MetricsProvider, TopologyProvider, resolve
from topokeeper.safety.explain import ExplainLog, emit_best_effort

Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class VerificationResult:
    ok: bool
    reasons: list[str] = field(default_factory=list)
    error_rate_pct: float | None = None
    pod_count: int | None = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "reasons": list(self.reasons),
            "error_rate_pct": self.error_rate_pct,
            "pod_count": self.pod_count,
        }


class Verifier:
    def __init__(
        self,
        metrics: MetricsProvider,
        topology: TopologyProvider,
        *,
        stabilization_delay_s: float = 2.0,
        max_error_rate_pct: float = 2.0,
        sleep: Sleeper = asyncio.sleep,
        explain: ExplainLog | None = None,
    ) -> None:
        self.metrics = metrics
        self.topology = topology
        self.stabilization_delay_s = stabilization_delay_s
        self.max_error_rate_pct = max_error_rate_pct
        self.sleep = sleep
        self.explain = explain

    async def verify(self, decision_id: str) -> VerificationResult:
        await self.sleep(self.stabilization_delay_s)
        reasons: list[str] = []
        error_rate: float | None = None
        pod_count: int | None = None
        # A failed re-observation counts as a failed verification.
        try:
            topology = await resolve(self.topology.get_current_topology())
            sample = await resolve(self.metrics.fetch_current())
        except Exception as exc:
            reasons.append(f"observe_failed: {exc}")
        else:
            if topology is None or not topology.is_valid():
                reasons.append("invalid_topology")
            else:
                pod_count = topology.pod_count
            if sample is None or sample.is_empty():
                reasons.append("no_metrics")
            else:
                error_rate = mean(p.error_rate_pct for p in sample.pods.values())
                if error_rate > self.max_error_rate_pct:
                    reasons.append("error_rate_above_threshold")
        result = VerificationResult(
            ok=not reasons,
            reasons=reasons,
            error_rate_pct=error_rate,
            pod_count=pod_count,
        )
        emit_best_effort(self.explain, "verified", {"decision_id": decision_id, **result.to_dict()})
        return result
