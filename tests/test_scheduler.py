from __future__ import annotations

import asyncio

import pytest

from topokeeper.adapters.memory import RecordingEventSink, StaticBudget, build_scenario, build_uniform_cluster
from topokeeper.audit.ledger import DecisionLedger
from topokeeper.config import LoopConfig
from topokeeper.core.models import Outcome, ProposalType
from topokeeper.core.state_machine import Phase
from topokeeper.errors import MissingCollaboratorError
from topokeeper.policy.proposals import Capabilities
from topokeeper.safety.explain import ExplainLog
from topokeeper.safety.gate import KILL_SWITCH_ENV, SafetyThresholds
from topokeeper.scheduler import Scheduler


class Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _scheduler(cluster, *, sleep, events=None, budget=None, clock=None, **config):
    return Scheduler(
        metrics=cluster,
        topology=cluster,
        mutator=cluster,
        budget=budget or StaticBudget(),
        events=events,
        config=LoopConfig(**config),
        sleep=sleep,
        clock=clock or Clock(),
    )


def test_underutilized_cluster_scales_down(fake_sleep) -> None:
    cluster = build_scenario("underutilized")
    events = RecordingEventSink()
    scheduler = _scheduler(cluster, sleep=fake_sleep, events=events)

    decision = asyncio.run(scheduler.trigger_cycle())

    assert decision.outcome == Outcome.SUCCESS
    assert decision.executed is True
    assert decision.rolled_back is False
    assert decision.proposal.type == ProposalType.SCALE_DOWN
    assert decision.proposal.changes["deployment"]["replicas"] == 4
    assert decision.snapshot_id == decision.id
    assert cluster.topology.pod_count == 4
    assert fake_sleep.calls == [2.0]
    assert events.topics() == ["analysis", "opportunity-found", "optimization-applied"]
    assert scheduler.get_decision_history(10) == [decision]
    assert scheduler.get_statistics()["cumulative_estimated_savings"] == 50.0
    assert scheduler.machine.phase == Phase.IDLE


def test_repeated_cycles_converge_then_idle(fake_sleep) -> None:
    cluster = build_scenario("underutilized")
    scheduler = _scheduler(cluster, sleep=fake_sleep)

    async def run():
        return [await scheduler.trigger_cycle() for _ in range(3)]

    decisions = asyncio.run(run())
    assert [d.outcome for d in decisions] == [Outcome.SUCCESS, Outcome.SUCCESS, Outcome.IDLE]
    assert cluster.topology.pod_count == 3
    assert decisions[2].reasons == ("no_proposals",)
    assert [d.id for d in scheduler.get_decision_history(None)] == [d.id for d in decisions]


def test_error_spike_generates_heal_and_rate_limit_but_defers(fake_sleep) -> None:
    cluster = build_scenario("error-spike")
    scheduler = _scheduler(
        cluster,
        sleep=fake_sleep,
        capabilities=Capabilities(rate_limiter=True, self_healer=True),
    )

    decision = asyncio.run(scheduler.trigger_cycle())

    (event,) = scheduler.explain.events("proposals")
    kinds = [(p["type"], p["confidence"]) for p in event["payload"]["items"]]
    assert kinds == [("rate-limit", 0.8), ("heal", 0.8)]
    assert decision.outcome == Outcome.DEFERRED
    assert "unstable_error_rate" in decision.reasons
    assert cluster.applied == []


def test_mutator_failure_rolls_back_to_snapshot(fake_sleep) -> None:
    cluster = build_scenario("underutilized")
    cluster.fail_apply = True
    events = RecordingEventSink()
    scheduler = _scheduler(cluster, sleep=fake_sleep, events=events)

    decision = asyncio.run(scheduler.trigger_cycle())

    assert decision.outcome == Outcome.ROLLED_BACK
    assert decision.rolled_back is True
    assert decision.reasons == ("execution_failed",)
    snapshot = scheduler.executor.snapshots.get(decision.id)
    current = cluster.get_current_topology()
    assert current.pod_count == snapshot.topology.pod_count == 5
    assert current.service_count == snapshot.topology.service_count
    assert "rollback-completed" in events.topics()
    assert scheduler.get_statistics()["rolled_back"] == 1


def test_failed_verification_rolls_back(fake_sleep) -> None:
    cluster = build_scenario("underutilized")
    cluster.post_apply_error_rate_pct = 4.0
    scheduler = _scheduler(cluster, sleep=fake_sleep)

    decision = asyncio.run(scheduler.trigger_cycle())

    assert decision.outcome == Outcome.ROLLED_BACK
    assert decision.reasons == ("verification_failed",)
    assert decision.result["verification"]["reasons"] == ["error_rate_above_threshold"]
    assert cluster.topology.pod_count == 5
    assert fake_sleep.calls == [2.0, 3.0]


def test_failed_rollback_is_critical_and_recorded(fake_sleep) -> None:
    cluster = build_scenario("underutilized")
    cluster.fail_apply = True
    cluster.fail_restore = True
    events = RecordingEventSink()
    scheduler = _scheduler(cluster, sleep=fake_sleep, events=events)

    decision = asyncio.run(scheduler.trigger_cycle())

    assert decision.outcome == Outcome.ROLLBACK_FAILED
    assert decision.rolled_back is False
    errors = [payload for topic, payload in events.events if topic == "error"]
    assert errors[0]["severity"] == "CRITICAL"
    assert errors[0]["kind"] == "rollback_failed"
    assert scheduler.machine.phase == Phase.IDLE
    assert scheduler.get_status()["cycle_in_progress"] is False


def test_gate_blocked_proposal_never_reaches_mutator(fake_sleep) -> None:
    cluster = build_scenario("memory-pressure")
    before = cluster.get_current_topology().to_dict()
    events = RecordingEventSink()
    scheduler = _scheduler(cluster, sleep=fake_sleep, events=events)

    decision = asyncio.run(scheduler.trigger_cycle())

    assert decision.outcome == Outcome.BLOCKED
    assert decision.proposal.type == ProposalType.OPTIMIZE
    assert decision.reasons == ("memory_increase_exceeded",)
    assert cluster.applied == []
    assert cluster.get_current_topology().to_dict() == before
    assert "optimization-blocked" in events.topics()
    assert fake_sleep.calls == []


def test_kill_switch_blocks_cycle(monkeypatch, fake_sleep) -> None:
    monkeypatch.setenv(KILL_SWITCH_ENV, "1")
    cluster = build_scenario("underutilized")
    decision = asyncio.run(_scheduler(cluster, sleep=fake_sleep).trigger_cycle())
    assert decision.outcome == Outcome.BLOCKED
    assert decision.reasons == ("kill_switch",)
    assert cluster.topology.pod_count == 5


def test_constrained_budget_drops_costly_proposals(fake_sleep) -> None:
    cluster = build_scenario("memory-pressure")
    scheduler = _scheduler(cluster, sleep=fake_sleep, budget=StaticBudget(status="warning"))
    decision = asyncio.run(scheduler.trigger_cycle())
    assert decision.outcome == Outcome.IDLE
    assert decision.reasons == ("no_proposals",)


def test_concurrent_trigger_is_skipped() -> None:
    cluster = build_scenario("underutilized")
    release = asyncio.Event()

    async def blocking_sleep(delay: float) -> None:
        await release.wait()

    scheduler = _scheduler(cluster, sleep=blocking_sleep)

    async def run():
        first = asyncio.create_task(scheduler.trigger_cycle())
        await asyncio.sleep(0)
        second = await scheduler.trigger_cycle()
        status = scheduler.get_status()
        with pytest.raises(RuntimeError):
            scheduler.update_thresholds(SafetyThresholds(max_resource_increase_pct=50.0))
        release.set()
        return await first, second, status

    first, second, status = asyncio.run(run())

    assert status["cycle_in_progress"] is True
    assert second.outcome == Outcome.SKIPPED
    assert second.reasons == ("already_running",)
    assert first.outcome == Outcome.SUCCESS
    assert len(scheduler.ledger) == 1
    assert scheduler.get_decision_history(10) == [first]


def test_cooldown_limits_attempts_per_target(fake_sleep) -> None:
    cluster = build_scenario("steady")
    clock = Clock()
    scheduler = _scheduler(
        cluster,
        sleep=fake_sleep,
        clock=clock,
        capabilities=Capabilities(load_balancer=True),
    )

    async def run(n: int):
        return [await scheduler.trigger_cycle() for _ in range(n)]

    decisions = asyncio.run(run(4))
    assert [d.outcome for d in decisions] == [Outcome.SUCCESS] * 3 + [Outcome.IDLE]
    assert decisions[3].reasons == ("cooldown",)

    clock.now += 60.0
    (again,) = asyncio.run(run(1))
    assert again.outcome == Outcome.SUCCESS
    assert again.proposal.target == "traffic-distribution"


def test_transient_provider_error_aborts_cycle(fake_sleep) -> None:
    cluster = build_scenario("underutilized")
    cluster.fetch_failures = 1
    events = RecordingEventSink()
    scheduler = _scheduler(cluster, sleep=fake_sleep, events=events)

    async def run():
        return [await scheduler.trigger_cycle() for _ in range(2)]

    failed, recovered = asyncio.run(run())
    assert failed.outcome == Outcome.ERROR
    assert failed.reasons == ("provider_unavailable",)
    assert events.topics()[0] == "error"
    assert recovered.outcome == Outcome.SUCCESS


def test_empty_cluster_defers(fake_sleep) -> None:
    cluster = build_uniform_cluster(pods=0, cpu_pct=10.0)
    decision = asyncio.run(_scheduler(cluster, sleep=fake_sleep).trigger_cycle())
    assert decision.outcome == Outcome.DEFERRED
    assert decision.reasons == ("insufficient_data",)


def test_event_sink_failures_do_not_break_the_cycle(fake_sleep) -> None:
    class BrokenSink:
        def publish(self, topic, payload):
            raise ConnectionError("bus down")

    cluster = build_scenario("underutilized")
    scheduler = _scheduler(cluster, sleep=fake_sleep, events=BrokenSink())
    decision = asyncio.run(scheduler.trigger_cycle())

    assert decision.outcome == Outcome.SUCCESS
    errors = scheduler.explain.events("event_sink_error")
    assert {e["payload"]["topic"] for e in errors} == {"analysis", "opportunity-found", "optimization-applied"}


def test_missing_collaborator_fails_fast(fake_sleep) -> None:
    cluster = build_scenario("steady")
    with pytest.raises(MissingCollaboratorError, match="budget"):
        Scheduler(metrics=cluster, topology=cluster, mutator=cluster, budget=None, sleep=fake_sleep)
    with pytest.raises(MissingCollaboratorError, match="mutator"):
        Scheduler(metrics=cluster, topology=cluster, mutator=object(), budget=StaticBudget())


def test_partial_collaborators_are_rejected_at_construction(fake_sleep) -> None:
    class ApplyOnly:
        def apply_proposal(self, proposal):
            return {}

    class StatusOnly:
        def get_status(self):
            return {"status": "ok"}

    cluster = build_scenario("steady")
    with pytest.raises(MissingCollaboratorError, match=r"mutator\.restore_topology"):
        Scheduler(metrics=cluster, topology=cluster, mutator=ApplyOnly(), budget=StaticBudget(), sleep=fake_sleep)
    with pytest.raises(MissingCollaboratorError, match=r"budget\.can_afford"):
        Scheduler(metrics=cluster, topology=cluster, mutator=cluster, budget=StatusOnly(), sleep=fake_sleep)


def test_status_and_threshold_updates(fake_sleep) -> None:
    cluster = build_scenario("underutilized")
    scheduler = _scheduler(cluster, sleep=fake_sleep)
    decision = asyncio.run(scheduler.trigger_cycle())

    status = scheduler.get_status()
    assert status["running"] is False
    assert status["cycle_in_progress"] is False
    assert status["phase"] == "IDLE"
    assert status["cycles"] == 1
    assert status["last_cycle"]["decision_id"] == decision.id
    assert status["last_cycle"]["outcome"] == "success"
    assert status["stability"]["stable"] is True

    tightened = SafetyThresholds(min_availability_pct=99.95)
    scheduler.update_thresholds(tightened)
    assert scheduler.get_status()["thresholds"]["min_availability_pct"] == 99.95

    blocked = asyncio.run(scheduler.trigger_cycle())
    assert blocked.outcome == Outcome.BLOCKED
    assert blocked.reasons == ("availability_below_minimum",)


def test_timer_runs_cycles_and_stop_leaves_inflight_cycle() -> None:
    cluster = build_scenario("underutilized")
    waits: list[float] = []

    async def sleep(delay: float) -> None:
        waits.append(delay)
        if delay >= 300.0:
            # Interval wait: park until the timer is cancelled.
            await asyncio.Event().wait()
        await asyncio.sleep(0)

    scheduler = _scheduler(cluster, sleep=sleep)

    async def run():
        scheduler.start()
        assert scheduler.get_status()["running"] is True
        await asyncio.sleep(0)
        assert scheduler.get_status()["cycle_in_progress"] is True
        scheduler.stop()
        assert scheduler.get_status()["running"] is False
        await scheduler.wait_idle()

    asyncio.run(run())

    (decision,) = scheduler.get_decision_history(10)
    assert decision.outcome == Outcome.SUCCESS
    assert waits[0] == 300.0
    assert cluster.topology.pod_count == 4
    assert scheduler.explain.events("scheduler_stopped")[0]["payload"]["cycle_in_progress"] is True


def test_external_ledger_is_used(fake_sleep) -> None:
    cluster = build_scenario("underutilized")
    ledger = DecisionLedger(max_entries=2)
    scheduler = Scheduler(
        metrics=cluster,
        topology=cluster,
        mutator=cluster,
        budget=StaticBudget(),
        ledger=ledger,
        sleep=fake_sleep,
    )
    decision = asyncio.run(scheduler.trigger_cycle())
    assert ledger.last() is decision


def test_surge_raises_the_scaling_ceiling(fake_sleep) -> None:
    cluster = build_scenario("surge")
    events = RecordingEventSink()
    scheduler = _scheduler(cluster, sleep=fake_sleep, events=events)

    decision = asyncio.run(scheduler.trigger_cycle())

    assert decision.outcome == Outcome.SUCCESS
    assert decision.proposal.type == ProposalType.SCALE_UP
    assert decision.proposal.changes["hpa"]["max_replicas"] == 11
    assert cluster.topology.max_replicas == 11
    assert "optimization-applied" in events.topics()


def test_single_slow_pod_defers_scale_down(fake_sleep) -> None:
    cluster = build_uniform_cluster(pods=5, cpu_pct=20.0, nodes=5, latency_p99_ms=100.0)
    cluster.metrics.pods["api-0"].latency_p99_ms = 2000.0
    scheduler = _scheduler(cluster, sleep=fake_sleep)

    decision = asyncio.run(scheduler.trigger_cycle())

    assert decision.outcome == Outcome.DEFERRED
    assert decision.reasons == ("unstable_latency",)
    assert cluster.applied == []
    stability = scheduler.get_status()["stability"]
    assert stability["latency_p99_ms"] == 2000.0
    assert stability["stable"] is False


def test_cluster_at_replica_floor_stays_idle(fake_sleep) -> None:
    cluster = build_uniform_cluster(pods=2, cpu_pct=20.0)
    scheduler = _scheduler(cluster, sleep=fake_sleep)

    decision = asyncio.run(scheduler.trigger_cycle())

    assert decision.outcome == Outcome.IDLE
    assert decision.reasons == ("no_proposals",)
    assert cluster.applied == []
    assert scheduler.get_statistics()["executed"] == 0


def test_unwritable_explain_log_still_records_one_decision(tmp_path, fake_sleep) -> None:
    cluster = build_scenario("underutilized")
    # A directory cannot be opened for append.
    explain = ExplainLog(path=tmp_path)
    scheduler = Scheduler(
        metrics=cluster,
        topology=cluster,
        mutator=cluster,
        budget=StaticBudget(),
        explain=explain,
        sleep=fake_sleep,
        clock=Clock(),
    )

    decision = asyncio.run(scheduler.trigger_cycle())

    assert decision.outcome == Outcome.SUCCESS
    assert len(scheduler.ledger) == 1
    assert [e["event"] for e in explain.events()][0] == "cycle_start"
    assert explain.events("cycle_end")[0]["payload"]["decision_id"] == decision.id
