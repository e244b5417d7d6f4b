"""Command-line interface for TopoKeeper."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from topokeeper import __version__ as TK_VERSION
from topokeeper.adapters.kubernetes import KubectlTopologyMutator, KubectlTopologyProvider
from topokeeper.adapters.memory import (
    SCENARIOS,
    ExplainEventSink,
    InMemoryCluster,
    StaticBudget,
    build_scenario,
    load_cluster_state,
)
from topokeeper.audit.decision_trace import DecisionTraceWriter
from topokeeper.audit.ledger import DecisionLedger
from topokeeper.audit.signing import (
    build_ledger_export,
    load_private_key,
    public_key_b64,
    verify_ledger_export,
    write_private_key,
)
from topokeeper.config import LoopConfig, load_config
from topokeeper.core.models import Outcome
from topokeeper.errors import TransientProviderError
from topokeeper.safety.explain import ExplainLog
from topokeeper.scheduler import Scheduler
from topokeeper.telemetry.file_source import FileMetricsProvider

_TRACE_LATEST = "decision_trace_latest.jsonl"
_CAPABILITIES = ("rate_limiter", "self_healer", "load_balancer", "resource_optimizer")


def _ensure_out_dir(out_dir: str) -> Path:
    path = Path(out_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _report_ts() -> str:
    return _utc_now().strftime("%Y%m%d_%H%M%S")


def _write_json_report(path: Path, payload: dict) -> None:
    path.write_text(
        json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True) + "\n",
        encoding="utf-8",
    )


def _write_latest_with_timestamp(
    out_dir: Path,
    *,
    latest_name: str,
    prefix: str,
    payload: dict,
) -> tuple[Path, Path]:
    ts_path = out_dir / f"{prefix}_{_report_ts()}.json"
    latest_path = out_dir / latest_name
    _write_json_report(ts_path, payload)
    _write_json_report(latest_path, payload)
    return latest_path, ts_path


def _error(message: str) -> int:
    print(f"ERROR: {message}", file=sys.stderr)
    return 2


class _SimulatedClock:
    """Advances only through the scheduler's waits, so runs finish instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.waits: list[float] = []

    async def sleep(self, delay: float) -> None:
        self.waits.append(float(delay))
        self.now += float(delay)
        await asyncio.sleep(0)

    def __call__(self) -> float:
        return self.now


def _resolve_config(args: argparse.Namespace) -> LoopConfig:
    config = load_config(Path(args.config) if args.config else None)
    if args.confidence_threshold is not None:
        config = replace(config, confidence_threshold=args.confidence_threshold)
    thresholds = config.thresholds
    if args.max_resource_increase_pct is not None:
        thresholds = replace(thresholds, max_resource_increase_pct=args.max_resource_increase_pct)
    if args.min_availability_pct is not None:
        thresholds = replace(thresholds, min_availability_pct=args.min_availability_pct)
    if args.capability:
        enabled = {name.replace("-", "_") for name in args.capability}
        config = replace(
            config,
            capabilities=replace(config.capabilities, **{name: True for name in enabled}),
        )
    return replace(config, thresholds=thresholds)


def _build_cluster(args: argparse.Namespace) -> InMemoryCluster:
    cluster = load_cluster_state(Path(args.state)) if args.state else build_scenario(args.scenario)
    cluster.fail_apply = bool(args.fail_apply)
    if args.post_apply_error_rate is not None:
        cluster.post_apply_error_rate_pct = args.post_apply_error_rate
    return cluster


def _build_collaborators(args: argparse.Namespace) -> tuple:
    """(metrics, topology provider, mutator) for the selected source."""
    if not args.kubectl:
        cluster = _build_cluster(args)
        return cluster, cluster, cluster
    if not args.deployment:
        raise ValueError("--kubectl requires --deployment")
    if not args.metrics_file:
        raise ValueError("--kubectl requires --metrics-file")
    if args.fail_apply or args.post_apply_error_rate is not None:
        raise ValueError("--fail-apply and --post-apply-error-rate only apply to in-memory runs")
    provider = KubectlTopologyProvider(
        namespace=args.namespace,
        selector=args.selector,
        deployment=args.deployment,
    )
    mutator = KubectlTopologyMutator(
        namespace=args.namespace,
        deployment=args.deployment,
        container=args.container,
        dry_run=args.dry_run,
    )
    return FileMetricsProvider(Path(args.metrics_file)), provider, mutator


def _topology_report(provider) -> dict | None:
    try:
        return provider.get_current_topology().to_dict()
    except TransientProviderError:
        return None


async def _run_cycles(scheduler: Scheduler, cycles: int) -> list:
    return [await scheduler.trigger_cycle() for _ in range(cycles)]


def cmd_run(args: argparse.Namespace) -> int:
    if args.cycles < 1:
        return _error("--cycles must be >= 1")
    try:
        config = _resolve_config(args)
        metrics, topology, mutator = _build_collaborators(args)
    except (OSError, ValueError, KeyError, TypeError) as exc:
        return _error(str(exc))

    out_dir = _ensure_out_dir(args.out)
    trace_path = out_dir / _TRACE_LATEST
    if trace_path.exists():
        trace_path.unlink()
    explain = ExplainLog(Path(config.explain_path) if config.explain_path else out_dir / "explain.jsonl")
    ledger = DecisionLedger(config.ledger_size, trace=DecisionTraceWriter(trace_path))
    clock = _SimulatedClock()
    scheduler = Scheduler(
        metrics=metrics,
        topology=topology,
        mutator=mutator,
        budget=StaticBudget(status=args.budget_status),
        events=ExplainEventSink(explain),
        config=config,
        ledger=ledger,
        explain=explain,
        sleep=asyncio.sleep if args.realtime else clock.sleep,
        clock=clock,
    )
    decisions = asyncio.run(_run_cycles(scheduler, args.cycles))

    report = {
        "version": TK_VERSION,
        "created_at": _utc_now().isoformat(timespec="seconds"),
        "config": config.to_dict(),
        "decisions": [d.to_dict() for d in decisions],
        "statistics": scheduler.get_statistics(),
        "status": scheduler.get_status(),
        "topology": _topology_report(topology),
        "simulated_wait_s": round(sum(clock.waits), 6),
        "trace_path": str(trace_path),
    }
    latest, _ = _write_latest_with_timestamp(out_dir, latest_name="run_latest.json", prefix="run", payload=report)
    for decision in decisions:
        reasons = ",".join(decision.reasons) or "-"
        action = decision.proposal.action if decision.proposal is not None else "-"
        print(f"{decision.id} outcome={decision.outcome.value} action={action} reasons={reasons}")
    print(f"report: {latest}")
    if any(d.outcome == Outcome.ROLLBACK_FAILED for d in decisions):
        return 1
    return 0


def _load_ledger(trace: str) -> DecisionLedger:
    path = Path(trace)
    if not path.exists():
        raise FileNotFoundError(f"trace not found: {path}")
    return DecisionLedger.from_trace(path)


def cmd_ledger_show(args: argparse.Namespace) -> int:
    try:
        ledger = _load_ledger(args.trace)
    except (OSError, ValueError, KeyError) as exc:
        return _error(str(exc))
    decisions = ledger.get_decisions(args.limit)
    if args.outcome:
        decisions = [d for d in decisions if d.outcome.value == args.outcome]
    payload = {
        "statistics": ledger.get_statistics(),
        "decisions": [d.to_dict() for d in decisions],
    }
    print(json.dumps(payload, indent=2, sort_keys=True))
    return 0


def cmd_ledger_keygen(args: argparse.Namespace) -> int:
    path = Path(args.out)
    if path.exists() and not args.force:
        return _error(f"refusing to overwrite {path} (use --force)")
    key = Ed25519PrivateKey.generate()
    write_private_key(path, key)
    print(json.dumps({"private_key_path": str(path), "public_key": public_key_b64(key)}))
    return 0


def cmd_ledger_export(args: argparse.Namespace) -> int:
    try:
        ledger = _load_ledger(args.trace)
        key = load_private_key(Path(args.key))
    except (OSError, ValueError, KeyError) as exc:
        return _error(str(exc))
    export = build_ledger_export(ledger, key)
    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    _write_json_report(out, export)
    print(f"export: {out} decisions={len(export['decisions'])}")
    return 0


def cmd_ledger_verify(args: argparse.Namespace) -> int:
    try:
        export = json.loads(Path(args.export).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        return _error(str(exc))
    ok, reason = verify_ledger_export(export, args.public_key)
    print(json.dumps({"ok": ok, "reason": reason}, sort_keys=True))
    return 0 if ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tk")
    parser.add_argument("--version", action="version", version=f"topokeeper {TK_VERSION}")

    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run optimization cycles against an in-memory or kubectl-backed cluster")
    source = run.add_mutually_exclusive_group()
    source.add_argument("--scenario", default="underutilized", choices=list(SCENARIOS), help="Built-in cluster scenario")
    source.add_argument("--state", help="Path to a cluster state JSON file (topology + metrics)")
    source.add_argument("--kubectl", action="store_true", help="Read and patch a live cluster through kubectl ($KUBECTL)")
    run.add_argument("--cycles", type=int, default=1, help="Number of cycles to trigger")
    run.add_argument("--out", default="report", help="Output directory")
    run.add_argument("--config", help="Path to a loop config JSON file")
    run.add_argument("--confidence-threshold", type=float, help="Minimum proposal confidence")
    run.add_argument("--max-resource-increase-pct", type=float, help="Safety threshold override")
    run.add_argument("--min-availability-pct", type=float, help="Safety threshold override")
    run.add_argument(
        "--capability",
        action="append",
        choices=[c.replace("_", "-") for c in _CAPABILITIES],
        help="Enable an optional capability (repeatable)",
    )
    run.add_argument(
        "--budget-status",
        default="ok",
        choices=["ok", "warning", "critical"],
        help="Static budget status reported to the loop",
    )
    run.add_argument("--fail-apply", action="store_true", help="Make the cluster reject every mutation")
    run.add_argument("--post-apply-error-rate", type=float, help="Error rate (%%) observed after a change")
    run.add_argument("--realtime", action="store_true", help="Really wait for stabilization delays")

    k8s = run.add_argument_group("kubectl")
    k8s.add_argument("--namespace", default="default", help="Kubernetes namespace")
    k8s.add_argument("--deployment", help="Deployment to optimize (required with --kubectl)")
    k8s.add_argument("--selector", help="Label selector for the deployment's pods")
    k8s.add_argument("--container", help="Container whose resources are patched (default: deployment name)")
    k8s.add_argument("--metrics-file", help="JSON metrics sample, re-read every cycle (required with --kubectl)")
    k8s.add_argument("--dry-run", action="store_true", help="Send patches with --dry-run=server")
    run.set_defaults(func=cmd_run)

    ledger = sub.add_parser("ledger", help="Inspect, export and verify decision ledgers")
    ledger_sub = ledger.add_subparsers(dest="subcommand", required=True)

    show = ledger_sub.add_parser("show", help="Print statistics and recent decisions from a trace")
    show.add_argument("--trace", required=True, help="Decision trace JSONL")
    show.add_argument("--limit", type=int, default=50, help="Most recent decisions to show")
    show.add_argument("--outcome", choices=[o.value for o in Outcome], help="Filter by outcome")
    show.set_defaults(func=cmd_ledger_show)

    keygen = ledger_sub.add_parser("keygen", help="Generate an Ed25519 signing key (PEM)")
    keygen.add_argument("--out", required=True, help="Private key path")
    keygen.add_argument("--force", action="store_true", help="Overwrite an existing key")
    keygen.set_defaults(func=cmd_ledger_keygen)

    export = ledger_sub.add_parser("export", help="Write a signed ledger export")
    export.add_argument("--trace", required=True, help="Decision trace JSONL")
    export.add_argument("--key", required=True, help="Ed25519 private key (PEM)")
    export.add_argument("--out", required=True, help="Export JSON path")
    export.set_defaults(func=cmd_ledger_export)

    verify = ledger_sub.add_parser("verify", help="Verify a signed ledger export")
    verify.add_argument("--export", required=True, help="Export JSON path")
    verify.add_argument("--public-key", help="Trusted base64 public key (default: embedded key)")
    verify.set_defaults(func=cmd_ledger_verify)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
