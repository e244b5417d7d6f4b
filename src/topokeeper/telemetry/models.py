from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class PodMetrics:
    cpu_pct: float
    memory_pct: float
    latency_p99_ms: float
    error_rate_pct: float

    def to_dict(self) -> dict:
        return {
            "cpu_pct": self.cpu_pct,
            "memory_pct": self.memory_pct,
            "latency_p99_ms": self.latency_p99_ms,
            "error_rate_pct": self.error_rate_pct,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PodMetrics":
        return cls(
            cpu_pct=float(data.get("cpu_pct", 0.0)),
            memory_pct=float(data.get("memory_pct", 0.0)),
            latency_p99_ms=float(data.get("latency_p99_ms", 0.0)),
            error_rate_pct=float(data.get("error_rate_pct", 0.0)),
        )


@dataclass
class MetricsSample:
    timestamp_ms: int
    pods: dict[str, PodMetrics] = field(default_factory=dict)
    # Percent; 99.9 when the backend does not report availability.
    availability_pct: float = 99.9
    request_rate_rps: float = 0.0

    def is_empty(self) -> bool:
        return not self.pods

    def to_dict(self) -> dict:
        return {
            "timestamp_ms": self.timestamp_ms,
            "pods": {name: pod.to_dict() for name, pod in sorted(self.pods.items())},
            "availability_pct": self.availability_pct,
            "request_rate_rps": self.request_rate_rps,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MetricsSample":
        pods_raw = data.get("pods")
        pods: dict[str, PodMetrics] = {}
        if isinstance(pods_raw, dict):
            for name, value in pods_raw.items():
                if isinstance(name, str) and isinstance(value, dict):
                    pods[name] = PodMetrics.from_dict(value)
        return cls(
            timestamp_ms=int(data.get("timestamp_ms", 0)),
            pods=pods,
            availability_pct=float(data.get("availability_pct", 99.9)),
            request_rate_rps=float(data.get("request_rate_rps", 0.0)),
        )
