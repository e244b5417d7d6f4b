"""Serialized optimization cycles on a timer.

One cycle runs at a time. The ``running`` flag is set synchronously before
the cycle's first suspension point, so a trigger arriving while a cycle is
suspended (fetching, applying, or waiting for stabilization) is skipped.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict, deque
from typing import Callable

from topokeeper.adapters.base import REQUIRED_COLLABORATORS, resolve
from topokeeper.analysis.workload import WorkloadAnalyzer
from topokeeper.audit.ledger import DecisionLedger
from topokeeper.config import LoopConfig
from topokeeper.core.models import Decision, Outcome, Proposal, Snapshot
from topokeeper.core.state_machine import CycleStateMachine, Phase
from topokeeper.errors import (
    ExecutionError,
    InsufficientDataError,
    MissingCollaboratorError,
    RollbackError,
    TransientProviderError,
)
from topokeeper.execution.executor import Executor, SnapshotStore, generate_decision_id
from topokeeper.execution.verifier import Sleeper, Verifier
from topokeeper.policy.opportunities import OpportunityDetector
from topokeeper.policy.proposals import DecisionEngine
from topokeeper.safety.explain import ExplainLog, emit_best_effort
from topokeeper.safety.gate import SafetyGate, SafetyThresholds
from topokeeper.safety.rollback import RollbackManager


def _validate_collaborators(collaborators: dict) -> None:
    missing = []
    for name, methods in REQUIRED_COLLABORATORS.items():
        obj = collaborators.get(name)
        for method in methods:
            if obj is None or not callable(getattr(obj, method, None)):
                missing.append(f"{name}.{method}")
    if missing:
        raise MissingCollaboratorError(f"missing collaborators: {', '.join(missing)}")


class Scheduler:
    def __init__(
        self,
        *,
        metrics,
        topology,
        mutator,
        budget,
        events=None,
        config: LoopConfig | None = None,
        ledger: DecisionLedger | None = None,
        explain: ExplainLog | None = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        _validate_collaborators(
            {"metrics": metrics, "topology": topology, "mutator": mutator, "budget": budget}
        )
        self.config = config or LoopConfig()
        self.metrics = metrics
        self.topology = topology
        self.mutator = mutator
        self.budget = budget
        self.events = events
        self.explain = explain if explain is not None else ExplainLog()
        self.ledger = ledger if ledger is not None else DecisionLedger(self.config.ledger_size)
        self.sleep = sleep
        self.clock = clock

        cfg = self.config
        self.analyzer = WorkloadAnalyzer(min_replicas=cfg.min_replicas)
        self.detector = OpportunityDetector()
        self.engine = DecisionEngine(
            capabilities=cfg.capabilities,
            error_confidence_scale=cfg.error_confidence_scale,
        )
        self.gate = SafetyGate(budget=budget, explain=self.explain)
        self.executor = Executor(
            mutator, snapshots=SnapshotStore(cfg.snapshot_capacity), explain=self.explain
        )
        self.verifier = Verifier(
            metrics,
            topology,
            stabilization_delay_s=cfg.stabilization_delay_s,
            max_error_rate_pct=cfg.verify_max_error_rate_pct,
            sleep=sleep,
            explain=self.explain,
        )
        self.rollback = RollbackManager(
            mutator,
            topology,
            restore_delay_s=cfg.restore_delay_s,
            sleep=sleep,
            explain=self.explain,
        )

        self.machine = CycleStateMachine()
        self._thresholds = cfg.thresholds
        self._running = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._timer: asyncio.Task | None = None
        self._cycle_task: asyncio.Task | None = None
        self._cycles = 0
        self._last_cycle: dict | None = None
        self._stability: dict | None = None
        self._attempts: dict[str, deque[float]] = defaultdict(deque)

    # --- exposed surface ---

    @property
    def thresholds(self) -> SafetyThresholds:
        return self._thresholds

    @property
    def timer_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> None:
        """Run a cycle now and then every ``interval_s``. Requires a running loop."""
        if self.timer_running:
            return
        self._timer = asyncio.get_running_loop().create_task(self._timer_loop())
        self._emit("scheduler_started", {"interval_s": self.config.interval_s})

    def stop(self) -> None:
        """Stop scheduling cycles. An in-flight cycle is left to complete."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        self._emit("scheduler_stopped", {"cycle_in_progress": self._running})

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def trigger_cycle(self) -> Decision:
        task = self._launch()
        if task is None:
            return Decision(
                id=generate_decision_id(),
                outcome=Outcome.SKIPPED,
                reasons=("already_running",),
            )
        return await asyncio.shield(task)

    def get_status(self) -> dict:
        return {
            "running": self.timer_running,
            "cycle_in_progress": self._running,
            "phase": self.machine.phase.value,
            "last_cycle": dict(self._last_cycle) if self._last_cycle else None,
            "stability": dict(self._stability) if self._stability else None,
            "cycles": self._cycles,
            "thresholds": self._thresholds.to_dict(),
        }

    def get_decision_history(self, limit: int | None = 50) -> list[Decision]:
        return self.ledger.get_decisions(limit)

    def get_statistics(self) -> dict:
        return self.ledger.get_statistics()

    def update_thresholds(self, thresholds: SafetyThresholds) -> None:
        if self._running:
            raise RuntimeError("thresholds can only change between cycles")
        self._thresholds = thresholds
        self._emit("thresholds_updated", thresholds.to_dict())

    # --- timer and guard ---

    async def _timer_loop(self) -> None:
        while True:
            if self._launch() is None:
                self._emit("cycle_skipped", {"reason": "already_running"})
            await self.sleep(self.config.interval_s)

    def _launch(self) -> asyncio.Task | None:
        if self._running:
            return None
        self._running = True
        self._idle.clear()
        task = asyncio.get_running_loop().create_task(self._guarded_cycle())
        self._cycle_task = task
        return task

    async def _guarded_cycle(self) -> Decision:
        try:
            return await self._cycle()
        finally:
            self.machine.reset()
            self._running = False
            self._idle.set()

    # --- one cycle ---

    def _emit(self, event: str, payload: dict) -> None:
        emit_best_effort(self.explain, event, payload)

    def _publish(self, topic: str, payload: dict) -> None:
        if self.events is None:
            return
        try:
            self.events.publish(topic, payload)
        except Exception as exc:
            self._emit(
                "event_sink_error",
                {"topic": topic, "error": str(exc), "type": type(exc).__name__},
            )

    async def _cycle(self) -> Decision:
        decision_id = generate_decision_id()
        self._cycles += 1
        started = self.clock()
        self._emit("cycle_start", {"decision_id": decision_id, "cycle": self._cycles})
        observed: dict = {}
        try:
            decision = await self._run_phases(decision_id, observed)
        except InsufficientDataError as exc:
            decision = Decision(
                id=decision_id,
                outcome=Outcome.DEFERRED,
                reasons=("insufficient_data",),
                result={"error": str(exc)},
            )
        except TransientProviderError as exc:
            decision = Decision(
                id=decision_id,
                outcome=Outcome.ERROR,
                reasons=("provider_unavailable",),
                result={"error": str(exc)},
                observed=observed,
            )
            self._publish(
                "error",
                {
                    "decision_id": decision_id,
                    "severity": "WARNING",
                    "kind": "provider_unavailable",
                    "error": str(exc),
                },
            )
        except Exception as exc:
            decision = Decision(
                id=decision_id,
                outcome=Outcome.ERROR,
                reasons=("unexpected_error",),
                result={"error": str(exc), "type": type(exc).__name__},
                observed=observed,
            )
            self._publish(
                "error",
                {
                    "decision_id": decision_id,
                    "severity": "ERROR",
                    "kind": "unexpected_error",
                    "error": str(exc),
                },
            )
        self.machine.transition(Phase.IDLE)
        self.ledger.append(decision)
        self._last_cycle = {
            "decision_id": decision.id,
            "outcome": decision.outcome.value,
            "timestamp": decision.timestamp.isoformat(),
            "duration_s": round(self.clock() - started, 6),
        }
        self._emit("cycle_end", {**self._last_cycle, "reasons": list(decision.reasons)})
        return decision

    def _cooling_down(self, target: str, now: float) -> bool:
        window = self._attempts[target]
        while window and now - window[0] >= self.config.cooldown_s:
            window.popleft()
        return len(window) >= self.config.max_attempts_per_target

    async def _run_phases(self, decision_id: str, observed: dict) -> Decision:
        self.machine.transition(Phase.ANALYZING)
        metrics = await resolve(self.metrics.fetch_current())
        topology = await resolve(self.topology.get_current_topology())
        profile = self.analyzer.analyze(metrics, topology, history=self.ledger.get_decisions(limit=None))
        observed.update(profile.observed())
        self._stability = {
            "error_rate_pct": profile.avg_error_rate_pct,
            "latency_p99_ms": profile.peak_latency_ms,
            "stable": profile.avg_error_rate_pct < self._thresholds.max_error_rate_pct
            and profile.peak_latency_ms < self._thresholds.max_latency_p99_ms,
        }
        self._emit("analysis", {"decision_id": decision_id, "profile": profile.to_dict()})
        self._publish("analysis", {"decision_id": decision_id, "profile": profile.to_dict()})

        self.machine.transition(Phase.PROPOSING)
        opportunities = self.detector.detect(profile)
        self._emit("opportunities", {"decision_id": decision_id, "items": [o.to_dict() for o in opportunities]})
        for opportunity in opportunities:
            self._publish("opportunity-found", {"decision_id": decision_id, **opportunity.to_dict()})

        budget_status = await resolve(self.budget.get_status()) or {}
        budget_allowed = str(budget_status.get("status", "ok")) == "ok"
        proposals = self.engine.generate(
            opportunities,
            profile,
            budget_allowed=budget_allowed,
            confidence_threshold=self.config.confidence_threshold,
            critical_services=tuple(s.name for s in topology.critical_services()),
        )
        now = self.clock()
        candidates = [p for p in proposals if not self._cooling_down(p.target, now)]
        self._emit(
            "proposals",
            {
                "decision_id": decision_id,
                "budget_allowed": budget_allowed,
                "items": [p.to_dict() for p in proposals],
                "cooling_down": sorted({p.target for p in proposals} - {p.target for p in candidates}),
            },
        )
        if not candidates:
            return Decision(
                id=decision_id,
                outcome=Outcome.IDLE,
                reasons=("cooldown",) if proposals else ("no_proposals",),
                observed=observed,
            )
        proposal = candidates[0]

        self.machine.transition(Phase.GATING)
        gate = self.gate.validate(proposal, profile, self._thresholds)
        if not gate.allowed:
            self._publish(
                "optimization-blocked",
                {"decision_id": decision_id, "proposal": proposal.to_dict(), **gate.to_dict()},
            )
            return Decision(
                id=decision_id,
                outcome=Outcome.DEFERRED if gate.deferred else Outcome.BLOCKED,
                proposal=proposal,
                reasons=tuple(gate.reasons),
                result={"gate": gate.to_dict()},
                observed=observed,
            )

        self.machine.transition(Phase.EXECUTING)
        self._attempts[proposal.target].append(now)
        try:
            execution = await self.executor.execute(proposal, topology, metrics, decision_id=decision_id)
        except ExecutionError as exc:
            self.machine.transition(Phase.ROLLING_BACK)
            return await self._roll_back(
                decision_id,
                proposal,
                self.executor.snapshots.get(decision_id),
                reason="execution_failed",
                result={"error": str(exc)},
                observed=observed,
            )

        self.machine.transition(Phase.VERIFYING)
        verification = await self.verifier.verify(decision_id)
        result = {"apply": execution.apply_result, "verification": verification.to_dict()}
        if verification.ok:
            self._publish(
                "optimization-applied",
                {"decision_id": decision_id, "proposal": proposal.to_dict(), **result},
            )
            return Decision(
                id=decision_id,
                outcome=Outcome.SUCCESS,
                proposal=proposal,
                executed=True,
                snapshot_id=execution.snapshot.id,
                result=result,
                observed=observed,
            )

        self.machine.transition(Phase.ROLLING_BACK)
        return await self._roll_back(
            decision_id,
            proposal,
            execution.snapshot,
            reason="verification_failed",
            result=result,
            observed=observed,
        )

    async def _roll_back(
        self,
        decision_id: str,
        proposal: Proposal,
        snapshot: Snapshot | None,
        *,
        reason: str,
        result: dict,
        observed: dict,
    ) -> Decision:
        try:
            if snapshot is None:
                raise RollbackError(f"no snapshot for {decision_id}", decision_id=decision_id)
            restored = await self.rollback.rollback(snapshot, reason=reason)
        except RollbackError as exc:
            self._publish(
                "error",
                {
                    "decision_id": decision_id,
                    "severity": exc.severity,
                    "kind": "rollback_failed",
                    "error": str(exc),
                },
            )
            return Decision(
                id=decision_id,
                outcome=Outcome.ROLLBACK_FAILED,
                proposal=proposal,
                executed=True,
                snapshot_id=snapshot.id if snapshot is not None else None,
                result={**result, "rollback_error": str(exc)},
                reasons=(reason, "rollback_failed"),
                observed=observed,
            )
        self._publish(
            "rollback-completed",
            {"decision_id": decision_id, "reason": reason, **restored.to_dict()},
        )
        return Decision(
            id=decision_id,
            outcome=Outcome.ROLLED_BACK,
            proposal=proposal,
            executed=True,
            snapshot_id=snapshot.id,
            result={**result, "rollback": restored.to_dict()},
            rolled_back=True,
            reasons=(reason,),
            observed=observed,
        )
