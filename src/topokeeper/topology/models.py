from __future__ import annotations

from dataclasses import dataclass, field

CRITICAL = "CRITICAL"
STANDARD = "STANDARD"


@dataclass
class Pod:
    name: str
    node: str | None = None
    service: str | None = None
    memory_request_mi: int = 512
    memory_limit_mi: int = 1024

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "node": self.node,
            "service": self.service,
            "memory_request_mi": self.memory_request_mi,
            "memory_limit_mi": self.memory_limit_mi,
        }


@dataclass
class Service:
    name: str
    criticality: str = STANDARD
    dependencies: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "criticality": self.criticality,
            "dependencies": list(self.dependencies),
        }


@dataclass
class Topology:
    pods: list[Pod] = field(default_factory=list)
    services: list[Service] = field(default_factory=list)
    nodes: list[str] = field(default_factory=list)
    # Scaling ceiling (HPA max replicas).
    max_replicas: int = 10
    # Requests per second one replica can serve; 0 means unknown.
    replica_capacity_rps: float = 0.0

    @property
    def pod_count(self) -> int:
        return len(self.pods)

    @property
    def service_count(self) -> int:
        return len(self.services)

    def is_valid(self) -> bool:
        return bool(self.pods)

    def critical_services(self) -> list[Service]:
        return [s for s in self.services if s.criticality == CRITICAL]

    def to_dict(self) -> dict:
        return {
            "pods": [p.to_dict() for p in self.pods],
            "services": [s.to_dict() for s in self.services],
            "nodes": list(self.nodes),
            "max_replicas": self.max_replicas,
            "replica_capacity_rps": self.replica_capacity_rps,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Topology":
        pods = [
            Pod(
                name=str(item["name"]),
                node=item.get("node"),
                service=item.get("service"),
                memory_request_mi=int(item.get("memory_request_mi", 512)),
                memory_limit_mi=int(item.get("memory_limit_mi", 1024)),
            )
            for item in data.get("pods", [])
            if isinstance(item, dict) and item.get("name")
        ]
        services = [
            Service(
                name=str(item["name"]),
                criticality=str(item.get("criticality", STANDARD)).upper(),
                dependencies=[str(d) for d in item.get("dependencies", [])],
            )
            for item in data.get("services", [])
            if isinstance(item, dict) and item.get("name")
        ]
        nodes = [str(n) for n in data.get("nodes", []) if n]
        return cls(
            pods=pods,
            services=services,
            nodes=nodes,
            max_replicas=int(data.get("max_replicas", 10)),
            replica_capacity_rps=float(data.get("replica_capacity_rps", 0.0)),
        )


def topologies_match(current: Topology | None, expected: Topology | None) -> bool:
    """Compare pod and service counts, the granularity restore is verified at."""
    if current is None or expected is None:
        return False
    return (
        current.pod_count == expected.pod_count
        and current.service_count == expected.service_count
    )
