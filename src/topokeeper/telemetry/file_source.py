"""Metrics read from a JSON file that an external exporter keeps current."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from topokeeper.adapters.base import MetricsProvider
from topokeeper.errors import TransientProviderError
from topokeeper.telemetry.models import MetricsSample


@dataclass
class FileMetricsProvider(MetricsProvider):
    """Re-reads ``path`` on every fetch; the file holds one MetricsSample object."""

    path: Path
    reads: int = 0

    def fetch_current(self) -> MetricsSample:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise TransientProviderError(f"metrics file unreadable: {self.path}: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise TransientProviderError(f"metrics file is not valid JSON: {self.path}") from exc
        if not isinstance(data, dict):
            raise TransientProviderError(f"metrics file must hold a JSON object: {self.path}")
        self.reads += 1
        return MetricsSample.from_dict(data)
