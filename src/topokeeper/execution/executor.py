from __future__ import annotations

import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass

from topokeeper.adapters.base import TopologyMutator, resolve
from topokeeper.core.models import Proposal, Snapshot
from topokeeper.errors import ExecutionError
from topokeeper.safety.explain import ExplainLog, emit_best_effort
from topokeeper.telemetry.models import MetricsSample
from topokeeper.topology.models import Topology


def generate_decision_id() -> str:
    return f"dec_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class SnapshotStore:
    """Snapshots keyed by decision id; the oldest is evicted past capacity."""

    def __init__(self, capacity: int = 50) -> None:
        self.capacity = max(1, int(capacity))
        self._items: OrderedDict[str, Snapshot] = OrderedDict()

    def put(self, snapshot: Snapshot) -> None:
        self._items[snapshot.id] = snapshot
        self._items.move_to_end(snapshot.id)
        while len(self._items) > self.capacity:
            self._items.popitem(last=False)

    def get(self, snapshot_id: str) -> Snapshot | None:
        return self._items.get(snapshot_id)

    def latest(self) -> Snapshot | None:
        if not self._items:
            return None
        return next(reversed(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class ExecutionResult:
    decision_id: str
    snapshot: Snapshot
    apply_result: dict


class Executor:
    def __init__(
        self,
        mutator: TopologyMutator,
        snapshots: SnapshotStore | None = None,
        explain: ExplainLog | None = None,
    ) -> None:
        self.mutator = mutator
        self.snapshots = snapshots if snapshots is not None else SnapshotStore()
        self.explain = explain

    def capture(self, decision_id: str, topology: Topology, metrics: MetricsSample) -> Snapshot:
        snapshot = Snapshot.capture(decision_id, topology, metrics)
        self.snapshots.put(snapshot)
        return snapshot

    async def execute(
        self,
        proposal: Proposal,
        topology: Topology,
        metrics: MetricsSample,
        *,
        decision_id: str | None = None,
    ) -> ExecutionResult:
        decision_id = decision_id or generate_decision_id()
        snapshot = self.capture(decision_id, topology, metrics)
        try:
            result = await resolve(self.mutator.apply_proposal(proposal))
        except Exception as exc:
            emit_best_effort(
                self.explain,
                "apply_failed",
                {"decision_id": decision_id, "error": str(exc), "proposal": proposal.to_dict()},
            )
            raise ExecutionError(str(exc), decision_id=decision_id) from exc
        apply_result = result if isinstance(result, dict) else {"result": result}
        emit_best_effort(
            self.explain,
            "applied",
            {
                "decision_id": decision_id,
                "snapshot_id": snapshot.id,
                "proposal": proposal.to_dict(),
                "result": apply_result,
            },
        )
        return ExecutionResult(decision_id=decision_id, snapshot=snapshot, apply_result=apply_result)
