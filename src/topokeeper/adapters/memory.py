"""In-memory cluster used for simulation runs and tests."""

from __future__ import annotations

import copy
import json
import math
from dataclasses import dataclass, field
from pathlib import Path

from topokeeper.adapters.base import (
    BudgetProvider,
    EventSink,
    MetricsProvider,
    TopologyMutator,
    TopologyProvider,
)
from topokeeper.core.models import Proposal, ProposalType, Snapshot
from topokeeper.errors import TransientProviderError
from topokeeper.safety.explain import ExplainLog
from topokeeper.telemetry.models import MetricsSample, PodMetrics
from topokeeper.topology.models import Pod, Service, Topology


@dataclass
class InMemoryCluster(MetricsProvider, TopologyProvider, TopologyMutator):
    topology: Topology
    metrics: MetricsSample
    # Scripted failures.
    fail_apply: bool = False
    fail_restore: bool = False
    restore_drops_pods: int = 0
    fetch_failures: int = 0
    post_apply_error_rate_pct: float | None = None
    applied: list[dict] = field(default_factory=list)
    restored: list[str] = field(default_factory=list)

    def fetch_current(self) -> MetricsSample:
        if self.fetch_failures > 0:
            self.fetch_failures -= 1
            raise TransientProviderError("metrics backend unavailable")
        return copy.deepcopy(self.metrics)

    def get_current_topology(self) -> Topology:
        return copy.deepcopy(self.topology)

    def _set_replicas(self, target: int) -> None:
        pods = self.topology.pods
        current = len(pods)
        target = max(1, int(target))
        if target == current:
            return
        old_cpu = {name: m.cpu_pct for name, m in self.metrics.pods.items()}
        if target < current:
            for pod in pods[target:]:
                self.metrics.pods.pop(pod.name, None)
            del pods[target:]
        else:
            template = copy.deepcopy(pods[-1]) if pods else Pod(name="pod-0")
            nodes = self.topology.nodes or [template.node]
            base = next(iter(self.metrics.pods.values()), PodMetrics(50.0, 50.0, 100.0, 0.1))
            for i in range(current, target):
                name = f"{template.service or 'pod'}-{i}"
                pods.append(
                    Pod(
                        name=name,
                        node=nodes[i % len(nodes)],
                        service=template.service,
                        memory_request_mi=template.memory_request_mi,
                        memory_limit_mi=template.memory_limit_mi,
                    )
                )
                self.metrics.pods[name] = copy.deepcopy(base)
        # Same total load spread over the new replica count.
        factor = current / target
        for name, metrics in self.metrics.pods.items():
            metrics.cpu_pct = min(100.0, old_cpu.get(name, metrics.cpu_pct) * factor)

    def _rebalance(self) -> None:
        if not self.topology.nodes:
            return
        for i, pod in enumerate(self.topology.pods):
            pod.node = self.topology.nodes[i % len(self.topology.nodes)]

    def apply_proposal(self, proposal: Proposal) -> dict:
        if self.fail_apply:
            raise RuntimeError(f"mutation rejected: {proposal.action}")
        changes = proposal.changes
        if proposal.type in (ProposalType.SCALE_DOWN, ProposalType.SCALE_UP):
            deployment = changes.get("deployment", {})
            if "replicas" in deployment:
                self._set_replicas(deployment["replicas"])
            hpa = changes.get("hpa", {})
            if "max_replicas" in hpa:
                self.topology.max_replicas = int(hpa["max_replicas"])
        elif proposal.type == ProposalType.REBALANCE and "affinity" in changes:
            self._rebalance()
        elif proposal.type == ProposalType.OPTIMIZE and "resources" in changes:
            request = int(changes["resources"]["memory_request_mi"])
            for pod in self.topology.pods:
                pod.memory_request_mi = request
        if self.post_apply_error_rate_pct is not None:
            for metrics in self.metrics.pods.values():
                metrics.error_rate_pct = self.post_apply_error_rate_pct
        record = {"type": proposal.type.value, "action": proposal.action, "pods": self.topology.pod_count}
        self.applied.append(record)
        return {"applied": True, **record}

    def restore_topology(self, snapshot: Snapshot) -> dict:
        if self.fail_restore:
            raise RuntimeError("restore rejected by cluster")
        self.topology = copy.deepcopy(snapshot.topology)
        self.metrics = copy.deepcopy(snapshot.metrics)
        if self.restore_drops_pods:
            dropped = self.topology.pods[-self.restore_drops_pods :]
            del self.topology.pods[-self.restore_drops_pods :]
            for pod in dropped:
                self.metrics.pods.pop(pod.name, None)
        self.restored.append(snapshot.id)
        return {"restored": True, "snapshot_id": snapshot.id, "pods": self.topology.pod_count}

    @classmethod
    def from_dict(cls, data: dict) -> "InMemoryCluster":
        return cls(
            topology=Topology.from_dict(data.get("topology", {})),
            metrics=MetricsSample.from_dict(data.get("metrics", {})),
        )


def load_cluster_state(path: Path) -> InMemoryCluster:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"cluster state must be a JSON object: {path}")
    return InMemoryCluster.from_dict(data)


def build_uniform_cluster(
    *,
    pods: int,
    cpu_pct: float,
    memory_pct: float = 50.0,
    latency_p99_ms: float = 120.0,
    error_rate_pct: float = 0.2,
    nodes: int = 0,
    services: list[Service] | None = None,
    request_rate_rps: float = 0.0,
    replica_capacity_rps: float = 0.0,
    max_replicas: int = 10,
    timestamp_ms: int = 0,
) -> InMemoryCluster:
    node_names = [f"node-{i}" for i in range(nodes)]
    service = services[0].name if services else "api"
    pod_list = [
        Pod(name=f"{service}-{i}", node=node_names[i % nodes] if nodes else None, service=service)
        for i in range(pods)
    ]
    metrics = MetricsSample(
        timestamp_ms=timestamp_ms,
        pods={
            p.name: PodMetrics(
                cpu_pct=cpu_pct,
                memory_pct=memory_pct,
                latency_p99_ms=latency_p99_ms,
                error_rate_pct=error_rate_pct,
            )
            for p in pod_list
        },
        request_rate_rps=request_rate_rps,
    )
    topology = Topology(
        pods=pod_list,
        services=list(services) if services else [Service(name=service)],
        nodes=node_names,
        max_replicas=max_replicas,
        replica_capacity_rps=replica_capacity_rps,
    )
    return InMemoryCluster(topology=topology, metrics=metrics)


SCENARIOS = ("underutilized", "error-spike", "memory-pressure", "surge", "steady")


def build_scenario(name: str) -> InMemoryCluster:
    if name == "underutilized":
        return build_uniform_cluster(pods=5, cpu_pct=20.0, nodes=5)
    if name == "error-spike":
        return build_uniform_cluster(pods=4, cpu_pct=55.0, nodes=4, error_rate_pct=8.0)
    if name == "memory-pressure":
        return build_uniform_cluster(pods=4, cpu_pct=55.0, memory_pct=82.0, nodes=4)
    if name == "surge":
        return build_uniform_cluster(
            pods=4,
            cpu_pct=70.0,
            nodes=4,
            request_rate_rps=900.0,
            replica_capacity_rps=100.0,
            max_replicas=10,
        )
    if name == "steady":
        return build_uniform_cluster(pods=4, cpu_pct=55.0, nodes=4)
    raise ValueError(f"unknown scenario: {name!r} (expected one of {', '.join(SCENARIOS)})")


@dataclass
class StaticBudget(BudgetProvider):
    status: str = "ok"
    limit: float = math.inf
    spent: float = 0.0

    def get_status(self) -> dict:
        return {"status": self.status, "spent": self.spent, "limit": self.limit}

    def can_afford(self, cost: float) -> bool:
        if self.status == "critical":
            return False
        return self.spent + float(cost) <= self.limit


@dataclass
class RecordingEventSink(EventSink):
    events: list[tuple[str, dict]] = field(default_factory=list)

    def publish(self, topic: str, payload: dict) -> None:
        self.events.append((topic, payload))

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.events]


@dataclass
class ExplainEventSink(EventSink):
    """Mirrors published events into an explain log."""

    explain: ExplainLog

    def publish(self, topic: str, payload: dict) -> None:
        self.explain.emit(f"event:{topic}", payload)
