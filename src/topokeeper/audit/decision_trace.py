"""Append-only JSONL trace of ledger decisions, one canonical line each."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

SCHEMA_VERSION = "decision_trace_event.v1"


def canonical_json_bytes(obj: dict) -> bytes:
    """Sorted keys and compact separators; also the byte form that exports are signed over."""
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


@dataclass
class DecisionTraceWriter:
    path: Path

    def emit(self, event: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        record = {"schema_version": SCHEMA_VERSION, **event}
        with self.path.open("a", encoding="utf-8") as f:
            f.write(canonical_json_bytes(record).decode("utf-8"))
            f.write("\n")

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        return [
            json.loads(line)
            for line in self.path.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]
