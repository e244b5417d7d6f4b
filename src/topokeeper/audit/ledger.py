from __future__ import annotations

from collections import Counter, deque
from pathlib import Path
from typing import Iterator

from topokeeper.audit.decision_trace import DecisionTraceWriter
from topokeeper.core.models import Decision, Outcome


class DecisionLedger:
    """Bounded append-only audit log; the oldest entry is evicted first.

    Statistics are cumulative over every appended decision, including evicted ones.
    """

    def __init__(self, max_entries: int = 1000, trace: DecisionTraceWriter | None = None) -> None:
        if int(max_entries) < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = int(max_entries)
        self.trace = trace
        self._entries: deque[Decision] = deque()
        self._ids: set[str] = set()
        self._by_outcome: Counter[str] = Counter()
        self._executed = 0
        self._rolled_back = 0
        self._savings = 0.0
        self._evicted = 0

    def append(self, decision: Decision) -> None:
        if decision.skipped:
            raise ValueError("skipped results are not cycle outcomes")
        if decision.id in self._ids:
            raise ValueError(f"decision already recorded: {decision.id}")
        self._entries.append(decision)
        self._ids.add(decision.id)
        while len(self._entries) > self.max_entries:
            evicted = self._entries.popleft()
            self._ids.discard(evicted.id)
            self._evicted += 1

        self._by_outcome[decision.outcome.value] += 1
        if decision.executed:
            self._executed += 1
        if decision.rolled_back:
            self._rolled_back += 1
        if decision.outcome == Outcome.SUCCESS and decision.proposal is not None:
            self._savings += decision.proposal.estimated_savings

        if self.trace is not None:
            self.trace.emit(decision.to_dict())

    def get_decisions(self, limit: int | None = 50) -> list[Decision]:
        if limit is None:
            return list(self._entries)
        if limit <= 0:
            return []
        return list(self._entries)[-limit:]

    def get(self, decision_id: str) -> Decision | None:
        for decision in self._entries:
            if decision.id == decision_id:
                return decision
        return None

    def last(self) -> Decision | None:
        return self._entries[-1] if self._entries else None

    def get_statistics(self) -> dict:
        total = sum(self._by_outcome.values())
        return {
            "total": total,
            "retained": len(self._entries),
            "evicted": self._evicted,
            "by_outcome": dict(sorted(self._by_outcome.items())),
            "executed": self._executed,
            "rolled_back": self._rolled_back,
            "rollback_rate": round(self._rolled_back / self._executed, 6) if self._executed else 0.0,
            "cumulative_estimated_savings": round(self._savings, 6),
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Decision]:
        return iter(list(self._entries))

    @classmethod
    def from_trace(cls, path: Path, max_entries: int = 1000) -> "DecisionLedger":
        """Rebuild a ledger by replaying a decision trace file."""
        ledger = cls(max_entries=max_entries)
        for record in DecisionTraceWriter(path).read():
            ledger.append(Decision.from_dict(record))
        return ledger
