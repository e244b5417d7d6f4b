"""Collaborator contracts consumed by the control loop.

Request/response collaborators (metrics, topology, mutation, budget) are
called directly; only one-to-many notifications go through an EventSink.
Provider and mutator methods may be plain or ``async``.
"""

from __future__ import annotations

import inspect
from typing import Any

from topokeeper.telemetry.models import MetricsSample
from topokeeper.topology.models import Topology


async def resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class MetricsProvider:
    def fetch_current(self) -> MetricsSample:
        """Idempotent read; raise TransientProviderError on failure."""
        raise NotImplementedError


class TopologyProvider:
    def get_current_topology(self) -> Topology:
        raise NotImplementedError


class TopologyMutator:
    def apply_proposal(self, proposal) -> dict:
        raise NotImplementedError

    def restore_topology(self, snapshot) -> dict:
        raise NotImplementedError


class BudgetProvider:
    def get_status(self) -> dict:
        raise NotImplementedError

    def can_afford(self, cost: float) -> bool:
        raise NotImplementedError


class EventSink:
    def publish(self, topic: str, payload: dict) -> None:
        raise NotImplementedError


EVENT_TOPICS = (
    "analysis",
    "opportunity-found",
    "optimization-applied",
    "optimization-blocked",
    "rollback-completed",
    "error",
)

# Attributes the Scheduler requires at construction, with the methods each must expose.
REQUIRED_COLLABORATORS: dict[str, tuple[str, ...]] = {
    "metrics": ("fetch_current",),
    "topology": ("get_current_topology",),
    "mutator": ("apply_proposal", "restore_topology"),
    "budget": ("get_status", "can_afford"),
}
