from __future__ import annotations

import pytest

from topokeeper.core.models import OpportunityType, ProposalType, Severity
from topokeeper.policy.opportunities import OpportunityDetector
from topokeeper.policy.proposals import CRITICAL_ONLY_PRIORITY_OFFSET, Capabilities, DecisionEngine

ALL_CAPABILITIES = Capabilities(
    rate_limiter=True,
    self_healer=True,
    load_balancer=True,
    resource_optimizer=True,
)


def test_steady_profile_has_no_opportunities(make_profile) -> None:
    assert OpportunityDetector().detect(make_profile()) == []


def test_rules_fire_independently_and_sort_by_priority(make_profile) -> None:
    profile = make_profile(
        avg_cpu_pct=20.0,
        recommended_replicas=3,
        node_affinity_inefficiency=40.0,
        avg_memory_pct=80.0,
        cascade_risk=70.0,
        peak_traffic_surge_pct=90.0,
    )
    found = OpportunityDetector().detect(profile)

    assert [o.type for o in found] == [
        OpportunityType.OVER_PROVISION_CPU,
        OpportunityType.CASCADE_PREVENTION,
        OpportunityType.INSUFFICIENT_SCALING,
        OpportunityType.MEMORY_CONTENTION,
        OpportunityType.NODE_AFFINITY,
    ]
    assert [o.priority for o in found] == [1, 1, 2, 2, 3]
    assert found[2].severity == Severity.CRITICAL
    assert found[3].prevents_cascade is True


def test_scale_down_recommendation_uses_two_thirds_of_replicas(make_profile) -> None:
    found = OpportunityDetector().detect(make_profile(avg_cpu_pct=20.0, current_replicas=5))
    assert len(found) == 1
    assert found[0].recommendation == "Scale down to 4 replicas"


def test_scale_down_proposal_for_underutilized_profile(make_profile) -> None:
    profile = make_profile(avg_cpu_pct=20.0, current_replicas=5, recommended_replicas=4)
    opportunities = OpportunityDetector().detect(profile)
    proposals = DecisionEngine().generate(opportunities, profile)

    assert len(proposals) == 1
    p = proposals[0]
    assert p.type == ProposalType.SCALE_DOWN
    assert p.confidence == pytest.approx(0.8)
    assert p.priority == 1
    assert p.estimated_savings == 50.0
    assert p.cpu_increase_pct == -20.0
    assert p.changes == {"deployment": {"replicas": 4, "previous_replicas": 5}}


def test_error_rate_yields_heal_and_rate_limit_candidates(make_profile) -> None:
    profile = make_profile(avg_error_rate_pct=8.0, peak_error_rate_pct=8.0)
    engine = DecisionEngine(capabilities=Capabilities(rate_limiter=True, self_healer=True))
    proposals = engine.generate([], profile)

    assert [p.type for p in proposals] == [ProposalType.RATE_LIMIT, ProposalType.HEAL]
    for p in proposals:
        assert p.confidence == pytest.approx(0.8)
        assert p.source == "error_rate"


def test_error_candidates_need_their_capability(make_profile) -> None:
    profile = make_profile(avg_error_rate_pct=8.0)
    proposals = DecisionEngine(capabilities=Capabilities(self_healer=True)).generate([], profile)
    assert [p.type for p in proposals] == [ProposalType.HEAL]


def test_confidence_below_threshold_is_excluded(make_profile) -> None:
    profile = make_profile(avg_error_rate_pct=6.0)
    engine = DecisionEngine(capabilities=ALL_CAPABILITIES)

    proposals = engine.generate([], profile, confidence_threshold=0.7)
    assert all(p.confidence >= 0.7 for p in proposals)
    assert ProposalType.HEAL not in {p.type for p in proposals}

    lowered = engine.generate([], profile, confidence_threshold=0.5)
    assert ProposalType.HEAL in {p.type for p in lowered}


def test_unconditional_candidates_follow_capabilities(make_profile) -> None:
    proposals = DecisionEngine(capabilities=ALL_CAPABILITIES).generate([], make_profile())
    assert [(p.type, p.target) for p in proposals] == [
        (ProposalType.OPTIMIZE, "resource-requests"),
        (ProposalType.REBALANCE, "traffic-distribution"),
    ]
    assert DecisionEngine().generate([], make_profile()) == []


def test_scale_up_raises_ceiling_above_the_current_one(make_profile) -> None:
    # A doubled replica count (8) would sit below the HPA max already in place.
    profile = make_profile(peak_traffic_surge_pct=90.0, max_replicas=10, recommended_max_replicas=8)
    opportunities = OpportunityDetector().detect(profile)
    (p,) = DecisionEngine().generate(opportunities, profile)

    assert p.type == ProposalType.SCALE_UP
    assert p.confidence == pytest.approx(0.9)
    assert p.changes["hpa"]["max_replicas"] == 11
    assert p.changes["hpa"]["previous_max_replicas"] == 10
    assert p.changes["hpa"]["min_replicas"] == 4
    assert p.cpu_increase_pct == pytest.approx(10.0)
    assert p.memory_increase_pct == pytest.approx(10.0)
    assert p.estimated_cost == 50.0
    assert p.carries_cost is True


def test_scale_up_keeps_a_larger_recommended_ceiling(make_profile) -> None:
    profile = make_profile(peak_traffic_surge_pct=95.0, max_replicas=6, recommended_max_replicas=12)
    (p,) = DecisionEngine().generate(OpportunityDetector().detect(profile), profile)
    assert p.changes["hpa"]["max_replicas"] == 12
    assert p.cpu_increase_pct == pytest.approx(100.0)
    assert p.estimated_cost == 300.0


def test_no_scale_down_at_the_replica_floor(make_profile) -> None:
    profile = make_profile(avg_cpu_pct=20.0, current_replicas=2, recommended_replicas=2)
    assert OpportunityDetector().detect(profile) == []
    assert DecisionEngine().generate(OpportunityDetector().detect(profile), profile) == []


def test_budget_disallowed_drops_costly_and_demotes_critical(make_profile) -> None:
    profile = make_profile(
        peak_traffic_surge_pct=90.0,
        avg_memory_pct=82.0,
        recommended_memory_request_mi=666,
        avg_cpu_pct=20.0,
        current_replicas=5,
        recommended_replicas=4,
    )
    opportunities = OpportunityDetector().detect(profile)
    engine = DecisionEngine()

    allowed = engine.generate(opportunities, profile, budget_allowed=True)
    assert {p.type for p in allowed} == {
        ProposalType.SCALE_DOWN,
        ProposalType.SCALE_UP,
        ProposalType.OPTIMIZE,
    }

    constrained = engine.generate(opportunities, profile, budget_allowed=False)
    assert [p.type for p in constrained] == [ProposalType.SCALE_DOWN, ProposalType.SCALE_UP]
    scale_up = constrained[1]
    assert scale_up.critical_only is True
    assert scale_up.priority == 2 + CRITICAL_ONLY_PRIORITY_OFFSET
    assert constrained[0].critical_only is False


def test_scale_down_reports_projected_critical_service_degradation(make_profile) -> None:
    profile = make_profile(avg_cpu_pct=28.0, current_replicas=10, recommended_replicas=2)
    opportunities = OpportunityDetector().detect(profile)
    (p,) = DecisionEngine().generate(opportunities, profile, critical_services=("checkout",))

    (affected,) = p.affected_services
    assert affected.name == "checkout"
    # 28% over 10 replicas lands on 2: 140% projected, 70 points above target.
    assert affected.projected_perf_degradation_pct == pytest.approx(70.0)


def test_cascade_prevention_maps_to_circuit_breakers(make_profile) -> None:
    profile = make_profile(cascade_risk=75.0)
    (p,) = DecisionEngine().generate(OpportunityDetector().detect(profile), profile)
    assert p.type == ProposalType.RATE_LIMIT
    assert p.target == "service-mesh"
    assert p.confidence == pytest.approx(0.95)
    assert p.risk_reduction == 80.0
