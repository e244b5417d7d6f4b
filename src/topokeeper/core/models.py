from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from topokeeper.telemetry.models import MetricsSample
from topokeeper.topology.models import Topology


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class OpportunityType(str, Enum):
    OVER_PROVISION_CPU = "OVER_PROVISION_CPU"
    INSUFFICIENT_SCALING = "INSUFFICIENT_SCALING"
    NODE_AFFINITY = "NODE_AFFINITY"
    MEMORY_CONTENTION = "MEMORY_CONTENTION"
    CASCADE_PREVENTION = "CASCADE_PREVENTION"


class ProposalType(str, Enum):
    SCALE_UP = "scale-up"
    SCALE_DOWN = "scale-down"
    RATE_LIMIT = "rate-limit"
    REBALANCE = "rebalance"
    HEAL = "heal"
    OPTIMIZE = "optimize"


class Outcome(str, Enum):
    SUCCESS = "success"
    BLOCKED = "blocked"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    IDLE = "idle"
    DEFERRED = "deferred"
    ERROR = "error"
    SKIPPED = "skipped"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WorkloadProfile:
    avg_cpu_pct: float
    avg_memory_pct: float
    avg_latency_ms: float
    avg_error_rate_pct: float
    peak_error_rate_pct: float
    error_trend: float
    peak_cpu_pct: float
    peak_memory_pct: float
    peak_latency_ms: float
    peak_traffic_surge_pct: float
    node_affinity_inefficiency: float
    cascade_risk: float
    current_replicas: int
    max_replicas: int
    recommended_replicas: int
    recommended_max_replicas: int
    memory_request_mi: int
    recommended_memory_request_mi: int
    availability_pct: float
    request_rate_rps: float
    sample_count: int

    def observed(self) -> dict:
        """Aggregates recorded on each Decision and replayed as history."""
        return {
            "cpu_pct": round(self.avg_cpu_pct, 6),
            "memory_pct": round(self.avg_memory_pct, 6),
            "latency_p99_ms": round(self.avg_latency_ms, 6),
            "error_rate_pct": round(self.avg_error_rate_pct, 6),
            "request_rate_rps": round(self.request_rate_rps, 6),
            "availability_pct": round(self.availability_pct, 6),
        }

    def to_dict(self) -> dict:
        return {
            "avg_cpu_pct": self.avg_cpu_pct,
            "avg_memory_pct": self.avg_memory_pct,
            "avg_latency_ms": self.avg_latency_ms,
            "avg_error_rate_pct": self.avg_error_rate_pct,
            "peak_error_rate_pct": self.peak_error_rate_pct,
            "error_trend": self.error_trend,
            "peak_cpu_pct": self.peak_cpu_pct,
            "peak_memory_pct": self.peak_memory_pct,
            "peak_latency_ms": self.peak_latency_ms,
            "peak_traffic_surge_pct": self.peak_traffic_surge_pct,
            "node_affinity_inefficiency": self.node_affinity_inefficiency,
            "cascade_risk": self.cascade_risk,
            "current_replicas": self.current_replicas,
            "max_replicas": self.max_replicas,
            "recommended_replicas": self.recommended_replicas,
            "recommended_max_replicas": self.recommended_max_replicas,
            "memory_request_mi": self.memory_request_mi,
            "recommended_memory_request_mi": self.recommended_memory_request_mi,
            "availability_pct": self.availability_pct,
            "request_rate_rps": self.request_rate_rps,
            "sample_count": self.sample_count,
        }


@dataclass(frozen=True)
class Opportunity:
    type: OpportunityType
    severity: Severity
    description: str
    recommendation: str
    estimated_impact: str
    priority: int
    prevents_cascade: bool = False
    # Magnitude of the measurement that fired the rule.
    metric: float = 0.0

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "recommendation": self.recommendation,
            "estimated_impact": self.estimated_impact,
            "priority": self.priority,
            "prevents_cascade": self.prevents_cascade,
            "metric": self.metric,
        }


@dataclass(frozen=True)
class AffectedService:
    name: str
    criticality: str
    projected_perf_degradation_pct: float = 0.0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "criticality": self.criticality,
            "projected_perf_degradation_pct": self.projected_perf_degradation_pct,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AffectedService":
        return cls(
            name=str(data["name"]),
            criticality=str(data.get("criticality", "STANDARD")),
            projected_perf_degradation_pct=float(data.get("projected_perf_degradation_pct", 0.0)),
        )


@dataclass(frozen=True)
class Proposal:
    type: ProposalType
    target: str
    action: str
    confidence: float
    priority: int
    severity: Severity = Severity.MEDIUM
    source: str = "unconditional"
    estimated_cost: float = 0.0
    estimated_savings: float = 0.0
    critical_only: bool = False
    cpu_increase_pct: float = 0.0
    memory_increase_pct: float = 0.0
    latency_increase_ms: float = 0.0
    risk_reduction: float = 0.0
    risk_increase: float = 0.0
    affected_services: tuple[AffectedService, ...] = ()
    changes: dict = field(default_factory=dict)

    @property
    def carries_cost(self) -> bool:
        return self.estimated_cost > 0

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "target": self.target,
            "action": self.action,
            "confidence": round(self.confidence, 6),
            "priority": self.priority,
            "severity": self.severity.value,
            "source": self.source,
            "estimated_cost": self.estimated_cost,
            "estimated_savings": self.estimated_savings,
            "critical_only": self.critical_only,
            "resource_delta": {
                "cpu_increase_pct": self.cpu_increase_pct,
                "memory_increase_pct": self.memory_increase_pct,
                "latency_increase_ms": self.latency_increase_ms,
            },
            "risk_reduction": self.risk_reduction,
            "risk_increase": self.risk_increase,
            "affected_services": [s.to_dict() for s in self.affected_services],
            "changes": copy.deepcopy(self.changes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Proposal":
        delta = data.get("resource_delta") or {}
        return cls(
            type=ProposalType(data["type"]),
            target=str(data["target"]),
            action=str(data["action"]),
            confidence=float(data["confidence"]),
            priority=int(data["priority"]),
            severity=Severity(data.get("severity", Severity.MEDIUM.value)),
            source=str(data.get("source", "unconditional")),
            estimated_cost=float(data.get("estimated_cost", 0.0)),
            estimated_savings=float(data.get("estimated_savings", 0.0)),
            critical_only=bool(data.get("critical_only", False)),
            cpu_increase_pct=float(delta.get("cpu_increase_pct", 0.0)),
            memory_increase_pct=float(delta.get("memory_increase_pct", 0.0)),
            latency_increase_ms=float(delta.get("latency_increase_ms", 0.0)),
            risk_reduction=float(data.get("risk_reduction", 0.0)),
            risk_increase=float(data.get("risk_increase", 0.0)),
            affected_services=tuple(
                AffectedService.from_dict(s) for s in data.get("affected_services") or []
            ),
            changes=copy.deepcopy(data.get("changes") or {}),
        )


@dataclass(frozen=True)
class Snapshot:
    id: str
    timestamp: datetime
    topology: Topology
    metrics: MetricsSample

    @classmethod
    def capture(cls, snapshot_id: str, topology: Topology, metrics: MetricsSample) -> "Snapshot":
        return cls(
            id=snapshot_id,
            timestamp=_utc_now(),
            topology=copy.deepcopy(topology),
            metrics=copy.deepcopy(metrics),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "topology": self.topology.to_dict(),
            "metrics": self.metrics.to_dict(),
        }


@dataclass(frozen=True)
class Decision:
    id: str
    outcome: Outcome
    proposal: Proposal | None = None
    executed: bool = False
    snapshot_id: str | None = None
    result: dict = field(default_factory=dict)
    rolled_back: bool = False
    reasons: tuple[str, ...] = ()
    observed: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utc_now)

    @property
    def skipped(self) -> bool:
        return self.outcome == Outcome.SKIPPED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "outcome": self.outcome.value,
            "proposal": self.proposal.to_dict() if self.proposal is not None else None,
            "executed": self.executed,
            "snapshot_id": self.snapshot_id,
            "result": copy.deepcopy(self.result),
            "rolled_back": self.rolled_back,
            "reasons": list(self.reasons),
            "observed": dict(self.observed),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Decision":
        proposal = data.get("proposal")
        return cls(
            id=str(data["id"]),
            outcome=Outcome(data["outcome"]),
            proposal=Proposal.from_dict(proposal) if proposal else None,
            executed=bool(data.get("executed", False)),
            snapshot_id=data.get("snapshot_id"),
            result=copy.deepcopy(data.get("result") or {}),
            rolled_back=bool(data.get("rolled_back", False)),
            reasons=tuple(data.get("reasons") or ()),
            observed=dict(data.get("observed") or {}),
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else _utc_now(),
        )
