from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from topokeeper.core.models import Opportunity, OpportunityType, Severity, WorkloadProfile

Rule = Callable[[WorkloadProfile], "Opportunity | None"]


def over_provisioned_cpu(profile: WorkloadProfile) -> Opportunity | None:
    if profile.avg_cpu_pct >= 30.0:
        return None
    # Already at the replica floor.
    if profile.recommended_replicas >= profile.current_replicas:
        return None
    target = profile.recommended_replicas
    return Opportunity(
        type=OpportunityType.OVER_PROVISION_CPU,
        severity=Severity.HIGH,
        description=f"CPU utilization {profile.avg_cpu_pct:.1f}% is below 30%",
        recommendation=f"Scale down to {target} replicas",
        estimated_impact="cost_reduction",
        priority=1,
        metric=profile.avg_cpu_pct,
    )


def insufficient_scaling(profile: WorkloadProfile) -> Opportunity | None:
    if profile.peak_traffic_surge_pct <= 85.0:
        return None
    return Opportunity(
        type=OpportunityType.INSUFFICIENT_SCALING,
        severity=Severity.CRITICAL,
        description=(
            f"Traffic peak reaches {profile.peak_traffic_surge_pct:.1f}% of the scaling ceiling"
        ),
        recommendation=f"Increase HPA max to {profile.recommended_max_replicas}",
        estimated_impact="latency_reduction",
        priority=2,
        metric=profile.peak_traffic_surge_pct,
    )


def node_affinity(profile: WorkloadProfile) -> Opportunity | None:
    if profile.node_affinity_inefficiency <= 20.0:
        return None
    return Opportunity(
        type=OpportunityType.NODE_AFFINITY,
        severity=Severity.MEDIUM,
        description=(
            f"{profile.node_affinity_inefficiency:.0f}% of pods sit above their balanced node share"
        ),
        recommendation="Rebalance pod distribution across nodes",
        estimated_impact="network_reduction",
        priority=3,
        metric=profile.node_affinity_inefficiency,
    )


def memory_contention(profile: WorkloadProfile) -> Opportunity | None:
    if profile.avg_memory_pct <= 75.0:
        return None
    return Opportunity(
        type=OpportunityType.MEMORY_CONTENTION,
        severity=Severity.HIGH,
        description=f"Memory utilization {profile.avg_memory_pct:.1f}% indicates contention",
        recommendation=f"Request {profile.recommended_memory_request_mi}Mi per pod",
        estimated_impact="oom_prevention",
        priority=2,
        prevents_cascade=True,
        metric=profile.avg_memory_pct,
    )


def cascade_prevention(profile: WorkloadProfile) -> Opportunity | None:
    if profile.cascade_risk <= 60.0:
        return None
    return Opportunity(
        type=OpportunityType.CASCADE_PREVENTION,
        severity=Severity.CRITICAL,
        description=f"Cascade risk score {profile.cascade_risk:.0f} exceeds 60",
        recommendation="Add circuit breakers and bulkheads",
        estimated_impact="cascade_prevention",
        priority=1,
        prevents_cascade=True,
        metric=profile.cascade_risk,
    )


DEFAULT_RULES: tuple[Rule, ...] = (
    over_provisioned_cpu,
    insufficient_scaling,
    node_affinity,
    memory_contention,
    cascade_prevention,
)


@dataclass
class OpportunityDetector:
    rules: tuple[Rule, ...] = DEFAULT_RULES

    def detect(self, profile: WorkloadProfile) -> list[Opportunity]:
        found: list[Opportunity] = []
        for rule in self.rules:
            opportunity = rule(profile)
            if opportunity is not None:
                found.append(opportunity)
        # sorted() is stable: equal priorities keep rule order.
        return sorted(found, key=lambda o: o.priority)
