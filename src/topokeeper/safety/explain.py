from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path


def _recent() -> deque:
    return deque(maxlen=200)


@dataclass
class ExplainLog:
    """JSONL explain trail; keeps the most recent records in memory as well."""

    path: Path | None = None
    records: deque = field(default_factory=_recent)

    def emit(self, event: str, payload: dict) -> None:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "payload": payload,
        }
        self.records.append(record)
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")

    def events(self, name: str | None = None) -> list[dict]:
        if name is None:
            return list(self.records)
        return [r for r in self.records if r["event"] == name]


def emit_best_effort(explain: ExplainLog | None, event: str, payload: dict) -> None:
    """Emit unless the log is absent; a write failure never aborts the caller."""
    if explain is None:
        return
    try:
        explain.emit(event, payload)
    except OSError:
        return
