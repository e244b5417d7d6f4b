"""Opportunity -> Proposal generation with confidence and budget filtering."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace

from topokeeper.core.models import (
    AffectedService,
    Opportunity,
    OpportunityType,
    Proposal,
    ProposalType,
    Severity,
    WorkloadProfile,
)
from topokeeper.topology.models import CRITICAL

DEFAULT_CONFIDENCE_THRESHOLD = 0.7
# Priority offset for cost-bearing proposals kept while the budget is constrained.
CRITICAL_ONLY_PRIORITY_OFFSET = 100

OPPORTUNITY_PROPOSAL_TYPES: dict[OpportunityType, ProposalType] = {
    OpportunityType.OVER_PROVISION_CPU: ProposalType.SCALE_DOWN,
    OpportunityType.INSUFFICIENT_SCALING: ProposalType.SCALE_UP,
    OpportunityType.NODE_AFFINITY: ProposalType.REBALANCE,
    OpportunityType.MEMORY_CONTENTION: ProposalType.OPTIMIZE,
    OpportunityType.CASCADE_PREVENTION: ProposalType.RATE_LIMIT,
}


@dataclass(frozen=True)
class Capabilities:
    """Optional collaborators whose presence enables extra candidates."""

    rate_limiter: bool = False
    self_healer: bool = False
    load_balancer: bool = False
    resource_optimizer: bool = False


def _clamp01(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


def _pct_change(new: float, old: float) -> float:
    if old <= 0:
        return 0.0
    return round((new - old) / old * 100.0, 6)


@dataclass
class DecisionEngine:
    capabilities: Capabilities = field(default_factory=Capabilities)
    error_confidence_scale: float = 0.1
    replica_cost: float = 50.0

    # --- opportunity mapping ---

    def _scale_down(
        self, opp: Opportunity, profile: WorkloadProfile, critical: tuple[str, ...]
    ) -> Proposal:
        current = profile.current_replicas
        target = min(current, profile.recommended_replicas)
        projected_cpu = profile.avg_cpu_pct * current / max(1, target)
        return Proposal(
            type=ProposalType.SCALE_DOWN,
            target="underutilized-services",
            action="decrease-replicas",
            confidence=_clamp01(0.7 + (30.0 - profile.avg_cpu_pct) / 100.0),
            priority=opp.priority,
            severity=opp.severity,
            source=opp.type.value,
            estimated_savings=round((current - target) * self.replica_cost, 6),
            cpu_increase_pct=_pct_change(target, current),
            affected_services=tuple(
                AffectedService(name, CRITICAL, max(0.0, round(projected_cpu - 70.0, 6)))
                for name in critical
            ),
            changes={"deployment": {"replicas": target, "previous_replicas": current}},
        )

    def _scale_up(
        self, opp: Opportunity, profile: WorkloadProfile, critical: tuple[str, ...]
    ) -> Proposal:
        current = profile.current_replicas
        previous = profile.max_replicas or current
        ceiling = max(profile.recommended_max_replicas, previous + 1)
        # Worst case is every new slot above the old ceiling filling up.
        headroom = _pct_change(ceiling, previous)
        return Proposal(
            type=ProposalType.SCALE_UP,
            target="cpu-intensive-services",
            action="increase-max-replicas",
            confidence=_clamp01(opp.metric / 100.0),
            priority=opp.priority,
            severity=opp.severity,
            source=opp.type.value,
            estimated_cost=round(max(0, ceiling - max(previous, current)) * self.replica_cost, 6),
            cpu_increase_pct=headroom,
            memory_increase_pct=headroom,
            risk_reduction=0.5,
            affected_services=tuple(AffectedService(name, CRITICAL, 0.0) for name in critical),
            changes={
                "hpa": {
                    "min_replicas": max(2, math.ceil(current * 0.8)),
                    "max_replicas": ceiling,
                    "previous_max_replicas": previous,
                    "target_cpu_utilization_pct": 70,
                }
            },
        )

    def _rebalance(self, opp: Opportunity, profile: WorkloadProfile) -> Proposal:
        return Proposal(
            type=ProposalType.REBALANCE,
            target="pod-placement",
            action="rebalance-pods",
            confidence=_clamp01(0.6 + opp.metric / 100.0),
            priority=opp.priority,
            severity=opp.severity,
            source=opp.type.value,
            estimated_savings=round(opp.metric / 100.0 * self.replica_cost, 6),
            risk_reduction=1.2,
            changes={"affinity": {"pod_anti_affinity": "kubernetes.io/hostname", "weight": 100}},
        )

    def _memory(self, opp: Opportunity, profile: WorkloadProfile) -> Proposal:
        current = profile.memory_request_mi
        target = profile.recommended_memory_request_mi
        increase = _pct_change(target, current)
        return Proposal(
            type=ProposalType.OPTIMIZE,
            target="memory-requests",
            action="increase-memory-request",
            confidence=_clamp01(opp.metric / 100.0 + 0.1),
            priority=opp.priority,
            severity=opp.severity,
            source=opp.type.value,
            estimated_cost=round(max(0.0, increase) / 10.0, 6),
            memory_increase_pct=increase,
            risk_reduction=60.0 if opp.prevents_cascade else 0.0,
            changes={"resources": {"memory_request_mi": target, "previous_memory_request_mi": current}},
        )

    def _cascade(self, opp: Opportunity, profile: WorkloadProfile) -> Proposal:
        return Proposal(
            type=ProposalType.RATE_LIMIT,
            target="service-mesh",
            action="enable-circuit-breakers",
            confidence=_clamp01(opp.metric / 100.0 + 0.2),
            priority=opp.priority,
            severity=opp.severity,
            source=opp.type.value,
            # Sidecar proxies.
            memory_increase_pct=5.0,
            risk_reduction=80.0,
            changes={
                "retries": {"attempts": 3, "per_try_timeout_s": 2},
                "outlier_detection": {
                    "consecutive_5xx_errors": 5,
                    "interval_s": 30,
                    "max_ejection_pct": 50,
                },
            },
        )

    def _from_opportunity(
        self, opp: Opportunity, profile: WorkloadProfile, critical: tuple[str, ...]
    ) -> Proposal:
        kind = OPPORTUNITY_PROPOSAL_TYPES[opp.type]
        if kind == ProposalType.SCALE_DOWN:
            return self._scale_down(opp, profile, critical)
        if kind == ProposalType.SCALE_UP:
            return self._scale_up(opp, profile, critical)
        if kind == ProposalType.REBALANCE:
            return self._rebalance(opp, profile)
        if kind == ProposalType.OPTIMIZE:
            return self._memory(opp, profile)
        return self._cascade(opp, profile)

    # --- independent triggers ---

    def _independent(self, profile: WorkloadProfile) -> list[Proposal]:
        proposals: list[Proposal] = []
        caps = self.capabilities
        error_rate = profile.avg_error_rate_pct
        if error_rate > 5.0:
            confidence = _clamp01(error_rate * self.error_confidence_scale)
            if caps.rate_limiter:
                proposals.append(
                    Proposal(
                        type=ProposalType.RATE_LIMIT,
                        target="high-error-services",
                        action="enable-rate-limiting",
                        confidence=confidence,
                        priority=2,
                        severity=Severity.HIGH,
                        source="error_rate",
                        estimated_savings=30.0,
                        changes={"rate_limit": {"enabled": True, "strategy": "adaptive"}},
                    )
                )
            if caps.self_healer:
                proposals.append(
                    Proposal(
                        type=ProposalType.HEAL,
                        target="failed-pods",
                        action="trigger-repair",
                        confidence=confidence,
                        priority=2,
                        severity=Severity.HIGH,
                        source="error_rate",
                        changes={"repair": {"scope": "failed-pods"}},
                    )
                )
        if caps.load_balancer:
            proposals.append(
                Proposal(
                    type=ProposalType.REBALANCE,
                    target="traffic-distribution",
                    action="optimize-load-balancing",
                    confidence=0.75,
                    priority=5,
                    severity=Severity.LOW,
                    changes={"traffic": {"strategy": "least-latency"}},
                )
            )
        if caps.resource_optimizer:
            proposals.append(
                Proposal(
                    type=ProposalType.OPTIMIZE,
                    target="resource-requests",
                    action="rightsize-resources",
                    confidence=0.8,
                    priority=4,
                    severity=Severity.MEDIUM,
                    estimated_savings=200.0,
                    changes={"rightsize": {"basis": "observed_utilization"}},
                )
            )
        return proposals

    def _apply_budget(self, proposals: list[Proposal], budget_allowed: bool) -> list[Proposal]:
        if budget_allowed:
            return proposals
        kept: list[Proposal] = []
        for proposal in proposals:
            if not proposal.carries_cost:
                kept.append(proposal)
            elif proposal.severity == Severity.CRITICAL:
                kept.append(
                    replace(
                        proposal,
                        critical_only=True,
                        priority=proposal.priority + CRITICAL_ONLY_PRIORITY_OFFSET,
                    )
                )
        return kept

    def generate(
        self,
        opportunities: list[Opportunity],
        profile: WorkloadProfile,
        *,
        budget_allowed: bool = True,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        critical_services: tuple[str, ...] = (),
    ) -> list[Proposal]:
        proposals = [self._from_opportunity(o, profile, critical_services) for o in opportunities]
        proposals.extend(self._independent(profile))
        proposals = [p for p in proposals if p.confidence >= confidence_threshold]
        proposals = self._apply_budget(proposals, budget_allowed)
        return sorted(proposals, key=lambda p: p.priority)
