"""kubectl-backed topology provider and mutator.

``tk run --kubectl`` pairs them with a file-backed metrics source.
"""

from __future__ import annotations

import json
import os
import subprocess
from datetime import datetime, timezone

from topokeeper.adapters.base import TopologyMutator, TopologyProvider
from topokeeper.core.models import Proposal, ProposalType, Snapshot
from topokeeper.errors import ExecutionError, TransientProviderError
from topokeeper.topology.models import CRITICAL, STANDARD, Pod, Service, Topology

ANNOTATION_PREFIX = "topokeeper/"
CRITICALITY_LABEL = "topokeeper/criticality"
DEPENDENCIES_ANNOTATION = "topokeeper/dependencies"

_MEMORY_UNITS_MI = {
    "Ki": 1 / 1024,
    "Mi": 1.0,
    "Gi": 1024.0,
    "Ti": 1024.0 * 1024.0,
    "K": 1000 / 1024 / 1024,
    "M": 1000 * 1000 / 1024 / 1024,
    "G": 1000 ** 3 / 1024 / 1024,
}


def _run_cmd(argv: list[str], timeout_s: float = 20.0) -> dict:
    """Run command capturing stdout/stderr. Never raises; returns a dict."""
    try:
        cp = subprocess.run(argv, capture_output=True, text=True, timeout=timeout_s)
        return {
            "argv": argv,
            "ok": cp.returncode == 0,
            "rc": cp.returncode,
            "stdout": cp.stdout,
            "stderr": cp.stderr,
            "error": None,
        }
    except FileNotFoundError as e:
        return {
            "argv": argv,
            "ok": False,
            "rc": 127,
            "stdout": "",
            "stderr": str(e),
            "error": "not_found",
        }
    except subprocess.TimeoutExpired as e:
        return {
            "argv": argv,
            "ok": False,
            "rc": 124,
            "stdout": e.stdout or "",
            "stderr": e.stderr or "",
            "error": "timeout",
        }


def _kubectl(args: list[str], timeout_s: float = 20.0) -> dict:
    kubectl_bin = os.environ.get("KUBECTL", "kubectl")
    return _run_cmd([kubectl_bin, *args], timeout_s=timeout_s)


def _parse_memory_mi(value: object, default: int) -> int:
    text = str(value or "").strip()
    if not text:
        return default
    for suffix in sorted(_MEMORY_UNITS_MI, key=len, reverse=True):
        if text.endswith(suffix):
            try:
                return round(float(text[: -len(suffix)]) * _MEMORY_UNITS_MI[suffix])
            except ValueError:
                return default
    try:
        # Plain bytes.
        return round(float(text) / 1024 / 1024)
    except ValueError:
        return default


def _deployment_item(namespace: str, deployment: str, patch: dict, reason: str) -> dict:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "namespace": namespace,
        "name": deployment,
        "reason": reason,
        "patch": patch,
    }


def build_k8s_patch(
    proposal: Proposal,
    *,
    namespace: str,
    deployment: str,
    container: str | None = None,
) -> list[dict]:
    """Render a proposal as Deployment/HPA patch items.

    Changes with no native Kubernetes field (rate limiting, traffic strategy,
    rightsizing hints) are carried as annotations for the mesh or controller
    that owns them.
    """
    changes = proposal.changes
    annotations = {
        f"{ANNOTATION_PREFIX}proposal.type": proposal.type.value,
        f"{ANNOTATION_PREFIX}proposal.action": proposal.action,
    }
    spec: dict = {}
    template_spec: dict = {}
    template_annotations: dict = {}
    items: list[dict] = []

    deployment_changes = changes.get("deployment", {})
    if "replicas" in deployment_changes:
        spec["replicas"] = int(deployment_changes["replicas"])

    hpa = changes.get("hpa")
    if hpa:
        items.append(
            {
                "apiVersion": "autoscaling/v2",
                "kind": "HorizontalPodAutoscaler",
                "namespace": namespace,
                "name": deployment,
                "reason": proposal.action,
                "patch": {
                    "spec": {
                        "minReplicas": int(hpa["min_replicas"]),
                        "maxReplicas": int(hpa["max_replicas"]),
                        "metrics": [
                            {
                                "type": "Resource",
                                "resource": {
                                    "name": "cpu",
                                    "target": {
                                        "type": "Utilization",
                                        "averageUtilization": int(hpa["target_cpu_utilization_pct"]),
                                    },
                                },
                            }
                        ],
                    }
                },
            }
        )

    affinity = changes.get("affinity")
    if affinity:
        template_spec["affinity"] = {
            "podAntiAffinity": {
                "preferredDuringSchedulingIgnoredDuringExecution": [
                    {
                        "weight": int(affinity.get("weight", 100)),
                        "podAffinityTerm": {
                            "topologyKey": affinity.get("pod_anti_affinity", "kubernetes.io/hostname"),
                            "labelSelector": {"matchLabels": {"app": deployment}},
                        },
                    }
                ]
            }
        }

    resources = changes.get("resources")
    if resources and "memory_request_mi" in resources:
        template_spec["containers"] = [
            {
                "name": container or deployment,
                "resources": {"requests": {"memory": f"{int(resources['memory_request_mi'])}Mi"}},
            }
        ]

    if proposal.type == ProposalType.HEAL:
        # Rolling restart of the pod template.
        template_annotations[f"{ANNOTATION_PREFIX}restarted-at"] = datetime.now(
            timezone.utc
        ).isoformat(timespec="seconds")

    carried = {k: v for k, v in changes.items() if k not in {"deployment", "hpa", "affinity", "resources"}}
    if carried:
        annotations[f"{ANNOTATION_PREFIX}changes"] = json.dumps(carried, sort_keys=True)

    patch: dict = {"metadata": {"annotations": annotations}}
    if spec:
        patch["spec"] = spec
    if template_spec or template_annotations:
        template: dict = {}
        if template_annotations:
            template["metadata"] = {"annotations": template_annotations}
        if template_spec:
            template["spec"] = template_spec
        patch.setdefault("spec", {})["template"] = template

    return [_deployment_item(namespace, deployment, patch, proposal.action), *items]


class KubectlTopologyProvider(TopologyProvider):
    def __init__(
        self,
        *,
        namespace: str = "default",
        selector: str | None = None,
        deployment: str | None = None,
        timeout_s: float = 20.0,
    ) -> None:
        self.namespace = namespace
        self.selector = selector
        self.deployment = deployment
        self.timeout_s = timeout_s

    def _get_json(self, args: list[str]) -> dict:
        res = _kubectl(args, timeout_s=self.timeout_s)
        if not res["ok"]:
            detail = (res["stderr"] or "").strip() or res["error"] or f"rc={res['rc']}"
            raise TransientProviderError(f"kubectl {' '.join(args)} failed: {detail}")
        try:
            payload = json.loads(res["stdout"] or "{}")
        except json.JSONDecodeError as exc:
            raise TransientProviderError(f"kubectl {' '.join(args)} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise TransientProviderError(f"kubectl {' '.join(args)} returned a non-object")
        return payload

    def _pods(self) -> list[Pod]:
        args = ["-n", self.namespace, "get", "pods", "-o", "json"]
        if self.selector:
            args.extend(["-l", self.selector])
        pods: list[Pod] = []
        for item in self._get_json(args).get("items") or []:
            meta = item.get("metadata") or {}
            spec = item.get("spec") or {}
            labels = meta.get("labels") or {}
            containers = spec.get("containers") or [{}]
            resources = containers[0].get("resources") or {}
            pods.append(
                Pod(
                    name=str(meta.get("name", "")),
                    node=spec.get("nodeName"),
                    service=labels.get("app"),
                    memory_request_mi=_parse_memory_mi((resources.get("requests") or {}).get("memory"), 512),
                    memory_limit_mi=_parse_memory_mi((resources.get("limits") or {}).get("memory"), 1024),
                )
            )
        return pods

    def _services(self) -> list[Service]:
        services: list[Service] = []
        for item in self._get_json(["-n", self.namespace, "get", "services", "-o", "json"]).get("items") or []:
            meta = item.get("metadata") or {}
            labels = meta.get("labels") or {}
            annotations = meta.get("annotations") or {}
            raw_deps = str(annotations.get(DEPENDENCIES_ANNOTATION, ""))
            criticality = CRITICAL if str(labels.get(CRITICALITY_LABEL, "")).upper() == CRITICAL else STANDARD
            services.append(
                Service(
                    name=str(meta.get("name", "")),
                    criticality=criticality,
                    dependencies=[d.strip() for d in raw_deps.split(",") if d.strip()],
                )
            )
        return services

    def _nodes(self) -> list[str]:
        items = self._get_json(["get", "nodes", "-o", "json"]).get("items") or []
        return [str((item.get("metadata") or {}).get("name", "")) for item in items]

    def _max_replicas(self, default: int) -> int:
        if not self.deployment:
            return default
        res = _kubectl(
            ["-n", self.namespace, "get", f"hpa/{self.deployment}", "-o", "json"],
            timeout_s=self.timeout_s,
        )
        if not res["ok"]:
            return default
        try:
            spec = json.loads(res["stdout"] or "{}").get("spec") or {}
            return int(spec.get("maxReplicas", default))
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError):
            return default

    def get_current_topology(self) -> Topology:
        return Topology(
            pods=self._pods(),
            services=self._services(),
            nodes=self._nodes(),
            max_replicas=self._max_replicas(10),
        )


class KubectlTopologyMutator(TopologyMutator):
    """Applies proposals with ``kubectl patch``; restores replicas, memory and HPA ceiling."""

    def __init__(
        self,
        *,
        namespace: str = "default",
        deployment: str,
        container: str | None = None,
        dry_run: bool = False,
        timeout_s: float = 20.0,
    ) -> None:
        self.namespace = namespace
        self.deployment = deployment
        self.container = container
        self.dry_run = dry_run
        self.timeout_s = timeout_s
        self.touched_hpa = False

    def _patch(self, item: dict) -> dict:
        kind = "hpa" if item["kind"] == "HorizontalPodAutoscaler" else "deployment"
        args = [
            "-n",
            item["namespace"],
            "patch",
            f"{kind}/{item['name']}",
            "--type",
            "merge" if kind == "hpa" else "strategic",
            "-p",
            json.dumps(item["patch"], sort_keys=True),
        ]
        if self.dry_run:
            args.append("--dry-run=server")
        res = _kubectl(args, timeout_s=self.timeout_s)
        if not res["ok"]:
            detail = (res["stderr"] or "").strip() or res["error"] or f"rc={res['rc']}"
            raise ExecutionError(f"kubectl patch {kind}/{item['name']} failed: {detail}")
        return {"kind": item["kind"], "name": item["name"], "rc": res["rc"]}

    def apply_proposal(self, proposal: Proposal) -> dict:
        items = build_k8s_patch(
            proposal,
            namespace=self.namespace,
            deployment=self.deployment,
            container=self.container,
        )
        applied = []
        for item in items:
            applied.append(self._patch(item))
            if item["kind"] == "HorizontalPodAutoscaler":
                self.touched_hpa = True
        return {"applied": True, "dry_run": self.dry_run, "items": applied}

    def restore_topology(self, snapshot: Snapshot) -> dict:
        topology = snapshot.topology
        pods = [p for p in topology.pods if p.service in (None, self.deployment)] or topology.pods
        patch: dict = {
            "metadata": {"annotations": {f"{ANNOTATION_PREFIX}restored-from": snapshot.id}},
            "spec": {"replicas": len(pods)},
        }
        if pods:
            patch["spec"]["template"] = {
                "spec": {
                    "containers": [
                        {
                            "name": self.container or self.deployment,
                            "resources": {"requests": {"memory": f"{pods[0].memory_request_mi}Mi"}},
                        }
                    ]
                }
            }
        restored = [self._patch(_deployment_item(self.namespace, self.deployment, patch, "restore"))]
        if self.touched_hpa:
            restored.append(
                self._patch(
                    {
                        "kind": "HorizontalPodAutoscaler",
                        "namespace": self.namespace,
                        "name": self.deployment,
                        "patch": {"spec": {"maxReplicas": int(topology.max_replicas)}},
                    }
                )
            )
            self.touched_hpa = False
        return {"restored": True, "snapshot_id": snapshot.id, "items": restored}
