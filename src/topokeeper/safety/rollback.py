from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

from topokeeper.adapters.base import TopologyMutator, TopologyProvider, resolve
from topokeeper.core.models import Snapshot
from topokeeper.errors import RollbackError
from topokeeper.safety.explain import ExplainLog, emit_best_effort
from topokeeper.topology.models import topologies_match


@dataclass
class RollbackResult:
    ok: bool
    snapshot_id: str
    restore_result: dict
    pod_count: int
    service_count: int

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "snapshot_id": self.snapshot_id,
            "restore_result": dict(self.restore_result),
            "pod_count": self.pod_count,
            "service_count": self.service_count,
        }


class RollbackManager:
    """Restores a snapshot once; a failed restore is never retried."""

    def __init__(
        self,
        mutator: TopologyMutator,
        topology: TopologyProvider,
        *,
        restore_delay_s: float = 3.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        explain: ExplainLog | None = None,
    ) -> None:
        self.mutator = mutator
        self.topology = topology
        self.restore_delay_s = restore_delay_s
        self.sleep = sleep
        self.explain = explain

    def _emit(self, payload: dict) -> None:
        emit_best_effort(self.explain, "rollback", payload)

    async def rollback(self, snapshot: Snapshot, *, reason: str) -> RollbackResult:
        try:
            restored = await resolve(self.mutator.restore_topology(snapshot))
            await self.sleep(self.restore_delay_s)
            current = await resolve(self.topology.get_current_topology())
        except Exception as exc:
            self._emit({"snapshot_id": snapshot.id, "reason": reason, "ok": False, "error": str(exc)})
            raise RollbackError(
                f"restore of {snapshot.id} failed: {exc}", decision_id=snapshot.id
            ) from exc

        if not topologies_match(current, snapshot.topology):
            self._emit(
                {
                    "snapshot_id": snapshot.id,
                    "reason": reason,
                    "ok": False,
                    "error": "restoration_unconfirmed",
                    "expected": {
                        "pods": snapshot.topology.pod_count,
                        "services": snapshot.topology.service_count,
                    },
                    "observed": {
                        "pods": current.pod_count if current is not None else None,
                        "services": current.service_count if current is not None else None,
                    },
                }
            )
            raise RollbackError(
                f"restore of {snapshot.id} could not be confirmed", decision_id=snapshot.id
            )

        result = RollbackResult(
            ok=True,
            snapshot_id=snapshot.id,
            restore_result=restored if isinstance(restored, dict) else {"result": restored},
            pod_count=current.pod_count,
            service_count=current.service_count,
        )
        self._emit({"reason": reason, **result.to_dict()})
        return result
