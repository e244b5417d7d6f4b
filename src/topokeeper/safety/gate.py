from __future__ import annotations

import os
from dataclasses import dataclass, field

from topokeeper.core.models import Proposal, WorkloadProfile
from topokeeper.safety.explain import ExplainLog, emit_best_effort
from topokeeper.topology.models import CRITICAL

KILL_SWITCH_ENV = "TOPOKEEPER_KILL_SWITCH"


@dataclass(frozen=True)
class SafetyThresholds:
    max_resource_increase_pct: float = 15.0
    min_availability_pct: float = 99.5
    max_latency_increase_ms: float = 5.0
    max_error_rate_pct: float = 1.0
    max_latency_p99_ms: float = 500.0
    critical_degradation_pct: float = 5.0

    def to_dict(self) -> dict:
        return {
            "max_resource_increase_pct": self.max_resource_increase_pct,
            "min_availability_pct": self.min_availability_pct,
            "max_latency_increase_ms": self.max_latency_increase_ms,
            "max_error_rate_pct": self.max_error_rate_pct,
            "max_latency_p99_ms": self.max_latency_p99_ms,
            "critical_degradation_pct": self.critical_degradation_pct,
        }


@dataclass
class GateResult:
    allowed: bool
    reasons: list[str] = field(default_factory=list)
    # Unstable system: re-evaluated next cycle rather than rejected.
    deferred: bool = False
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "deferred": self.deferred,
            "reasons": list(self.reasons),
            "details": dict(self.details),
        }


def projected_availability(proposal: Proposal, current_availability_pct: float) -> float:
    return current_availability_pct + proposal.risk_reduction - proposal.risk_increase


class SafetyGate:
    def __init__(self, budget=None, explain: ExplainLog | None = None) -> None:
        self.budget = budget
        self.explain = explain

    def _emit_explain_best_effort(self, event: str, payload: dict) -> None:
        emit_best_effort(self.explain, event, payload)

    def _kill_switch_active(self) -> bool:
        return os.environ.get(KILL_SWITCH_ENV, "").strip() == "1"

    def _check_stability(self, state: WorkloadProfile, t: SafetyThresholds) -> list[str]:
        reasons: list[str] = []
        if state.avg_error_rate_pct >= t.max_error_rate_pct:
            reasons.append("unstable_error_rate")
        if state.peak_latency_ms >= t.max_latency_p99_ms:
            reasons.append("unstable_latency")
        return reasons

    def _check_resource_delta(self, proposal: Proposal, t: SafetyThresholds) -> list[str]:
        reasons: list[str] = []
        if proposal.cpu_increase_pct > t.max_resource_increase_pct:
            reasons.append("cpu_increase_exceeded")
        if proposal.memory_increase_pct > t.max_resource_increase_pct:
            reasons.append("memory_increase_exceeded")
        if proposal.latency_increase_ms > t.max_latency_increase_ms:
            reasons.append("latency_increase_exceeded")
        return reasons

    def _check_availability(
        self, proposal: Proposal, state: WorkloadProfile, t: SafetyThresholds
    ) -> list[str]:
        if projected_availability(proposal, state.availability_pct) < t.min_availability_pct:
            return ["availability_below_minimum"]
        return []

    def _check_critical_services(self, proposal: Proposal, t: SafetyThresholds) -> list[str]:
        degraded = [
            s.name
            for s in proposal.affected_services
            if s.criticality == CRITICAL and s.projected_perf_degradation_pct > t.critical_degradation_pct
        ]
        if degraded:
            return ["critical_service_degradation"]
        return []

    def _check_budget(self, proposal: Proposal) -> list[str]:
        if not proposal.carries_cost:
            return []
        if self.budget is None:
            return []
        if not self.budget.can_afford(proposal.estimated_cost):
            return ["budget_exceeded"]
        return []

    def validate(
        self,
        proposal: Proposal,
        state: WorkloadProfile,
        thresholds: SafetyThresholds,
    ) -> GateResult:
        if self._kill_switch_active():
            result = GateResult(allowed=False, reasons=["kill_switch"])
            self._emit_explain_best_effort(
                "blocked", {"reason": "kill_switch", "proposal": proposal.to_dict()}
            )
            return result

        stability = self._check_stability(state, thresholds)
        reasons = list(stability)
        reasons.extend(self._check_resource_delta(proposal, thresholds))
        reasons.extend(self._check_availability(proposal, state, thresholds))
        reasons.extend(self._check_critical_services(proposal, thresholds))
        reasons.extend(self._check_budget(proposal))

        details = {
            "error_rate_pct": state.avg_error_rate_pct,
            "latency_p99_ms": state.peak_latency_ms,
            "projected_availability_pct": projected_availability(proposal, state.availability_pct),
            "cpu_increase_pct": proposal.cpu_increase_pct,
            "memory_increase_pct": proposal.memory_increase_pct,
        }
        if not reasons:
            return GateResult(allowed=True, details=details)

        # Deferral applies only when instability is the sole blocker.
        deferred = bool(stability) and len(stability) == len(reasons)
        self._emit_explain_best_effort(
            "blocked",
            {
                "reasons": reasons,
                "deferred": deferred,
                "proposal": proposal.to_dict(),
                **details,
            },
        )
        return GateResult(allowed=False, reasons=reasons, deferred=deferred, details=details)
