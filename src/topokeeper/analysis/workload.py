"""Workload profiling: metrics + topology + recent decisions -> WorkloadProfile."""

from __future__ import annotations

import math
from dataclasses import dataclass
from statistics import mean
from typing import Iterable

from topokeeper.core.models import Decision, WorkloadProfile
from topokeeper.errors import InsufficientDataError
from topokeeper.telemetry.models import MetricsSample
from topokeeper.topology.models import Topology

_TREND_WINDOW = 20
_FANOUT_LIMIT = 3
_LOW_REDUNDANCY_PODS = 3


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = math.ceil(len(ordered) * percentile) - 1
    return float(ordered[max(0, index)])


def _trend(values: list[float]) -> float:
    """Least-squares slope of values over their index."""
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = sum(range(n))
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    sum_x2 = sum(i * i for i in range(n))
    denom = n * sum_x2 - sum_x * sum_x
    if denom == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denom


def node_affinity_inefficiency(topology: Topology) -> float:
    """Percent of pods placed above the balanced per-node share."""
    if not topology.pods or not topology.nodes:
        return 0.0
    counts = {node: 0 for node in topology.nodes}
    misplaced = 0
    for pod in topology.pods:
        if pod.node in counts:
            counts[pod.node] += 1
        else:
            misplaced += 1
    share = math.ceil(len(topology.pods) / len(topology.nodes))
    misplaced += sum(max(0, count - share) for count in counts.values())
    return min(100.0, misplaced / len(topology.pods) * 100.0)


def max_fanout(topology: Topology) -> int:
    return max((len(s.dependencies) for s in topology.services), default=0)


@dataclass
class WorkloadAnalyzer:
    min_replicas: int = 2
    history_limit: int = 100
    history_window_s: float = 7 * 24 * 3600.0

    def _history_points(self, history: Iterable[Decision], now_ms: int) -> list[dict]:
        recent = list(history)[-self.history_limit :]
        window_ms = self.history_window_s * 1000.0
        points: list[dict] = []
        for decision in recent:
            if not decision.observed:
                continue
            ts_ms = decision.timestamp.timestamp() * 1000.0
            if now_ms - ts_ms >= window_ms:
                continue
            points.append(decision.observed)
        return points

    def _cascade_risk(
        self,
        *,
        error_series: list[float],
        avg_latency_ms: float,
        topology: Topology,
    ) -> tuple[float, float]:
        error_trend = _trend(error_series[-_TREND_WINDOW:])
        score = 0.0
        if error_trend > 0.1:
            score += 25
        if max(error_series, default=0.0) > 5.0:
            score += 25
        if avg_latency_ms > 500.0:
            score += 20
        if max_fanout(topology) > _FANOUT_LIMIT:
            score += 15
        if topology.pod_count < _LOW_REDUNDANCY_PODS:
            score += 15
        return min(100.0, score), error_trend

    def _recommended_replicas(self, current: int, avg_cpu: float, peak_cpu: float) -> int:
        if avg_cpu < 30.0:
            return max(self.min_replicas, math.ceil(current * 0.67))
        if peak_cpu > 85.0:
            return math.ceil(current * 1.5)
        return current

    def analyze(
        self,
        metrics: MetricsSample,
        topology: Topology,
        history: Iterable[Decision] = (),
    ) -> WorkloadProfile:
        if metrics is None or metrics.is_empty():
            raise InsufficientDataError("no pod metrics sampled")
        if topology is None or not topology.is_valid():
            raise InsufficientDataError("topology has no pods")

        pods = [metrics.pods[name] for name in sorted(metrics.pods)]
        cpu = [p.cpu_pct for p in pods]
        memory = [p.memory_pct for p in pods]
        latency = [p.latency_p99_ms for p in pods]
        errors = [p.error_rate_pct for p in pods]

        avg_cpu = mean(cpu)
        avg_memory = mean(memory)
        avg_latency = mean(latency)
        avg_error = mean(errors)

        points = self._history_points(history, metrics.timestamp_ms)
        # Oldest first, current observation last.
        error_series = [float(p.get("error_rate_pct", 0.0)) for p in points] + [avg_error]
        request_series = [float(p.get("request_rate_rps", 0.0)) for p in points] + [
            metrics.request_rate_rps
        ]

        cascade_risk, error_trend = self._cascade_risk(
            error_series=error_series,
            avg_latency_ms=avg_latency,
            topology=topology,
        )

        ceiling_rps = topology.max_replicas * topology.replica_capacity_rps
        peak_surge = max(request_series) / ceiling_rps * 100.0 if ceiling_rps > 0 else 0.0

        current = topology.pod_count
        peak_cpu = _percentile(cpu, 0.99)
        recommended = self._recommended_replicas(current, avg_cpu, peak_cpu)

        peak_memory = _percentile(memory, 0.99)
        peak_latency = _percentile(latency, 0.99)
        memory_request = topology.pods[0].memory_request_mi
        if peak_memory > 90.0 or avg_memory > 75.0:
            recommended_memory = round(memory_request * 1.3)
        else:
            recommended_memory = memory_request

        return WorkloadProfile(
            avg_cpu_pct=avg_cpu,
            avg_memory_pct=avg_memory,
            avg_latency_ms=avg_latency,
            avg_error_rate_pct=avg_error,
            peak_error_rate_pct=max(error_series),
            error_trend=error_trend,
            peak_cpu_pct=peak_cpu,
            peak_memory_pct=peak_memory,
            peak_latency_ms=peak_latency,
            peak_traffic_surge_pct=peak_surge,
            node_affinity_inefficiency=node_affinity_inefficiency(topology),
            cascade_risk=cascade_risk,
            current_replicas=current,
            max_replicas=topology.max_replicas,
            recommended_replicas=recommended,
            # A raised ceiling is always above the one in place.
            recommended_max_replicas=max(topology.max_replicas + 1, recommended * 2),
            memory_request_mi=memory_request,
            recommended_memory_request_mi=recommended_memory,
            availability_pct=metrics.availability_pct,
            request_rate_rps=metrics.request_rate_rps,
            sample_count=len(pods),
        )
