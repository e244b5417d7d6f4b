# --- test import path bootstrap (src/ layout) ---
import sys as _sys
from pathlib import Path as _Path

_SRC = _Path(__file__).resolve().parents[1] / "src"
if _SRC.is_dir():
    _p = str(_SRC)
    if _p not in _sys.path:
        _sys.path.insert(0, _p)
# --- end bootstrap ---

import asyncio
import sys
import tempfile
from pathlib import Path

import pytest


@pytest.fixture
def tk_path() -> Path:
    repo_root = Path(__file__).resolve().parents[1]
    local = repo_root / ".venv" / "bin" / "tk"
    if local.exists():
        return local

    # Run the CLI from the source tree when no installed entrypoint exists.
    shim_dir = Path(tempfile.mkdtemp(prefix="tk-shim-"))
    shim = shim_dir / "tk"
    shim.write_text(
        f"""#!/usr/bin/env bash
set -Eeuo pipefail
export PYTHONPATH=\"{repo_root}/src${{PYTHONPATH:+:${{PYTHONPATH}}}}\"
exec \"{sys.executable}\" -c 'import sys; from topokeeper.cli import main; raise SystemExit(main())' \"$@\"
""",
        encoding="utf-8",
    )
    shim.chmod(0o755)
    return shim


@pytest.fixture(autouse=True)
def _no_kill_switch(monkeypatch):
    monkeypatch.delenv("TOPOKEEPER_KILL_SWITCH", raising=False)


class FakeSleep:
    """Records requested waits and returns immediately."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


def _make_profile(**overrides):
    from dataclasses import replace

    from topokeeper.core.models import WorkloadProfile

    base = WorkloadProfile(
        avg_cpu_pct=55.0,
        avg_memory_pct=50.0,
        avg_latency_ms=120.0,
        avg_error_rate_pct=0.2,
        peak_error_rate_pct=0.2,
        error_trend=0.0,
        peak_cpu_pct=55.0,
        peak_memory_pct=50.0,
        peak_latency_ms=120.0,
        peak_traffic_surge_pct=0.0,
        node_affinity_inefficiency=0.0,
        cascade_risk=0.0,
        current_replicas=4,
        max_replicas=10,
        recommended_replicas=4,
        recommended_max_replicas=11,
        memory_request_mi=512,
        recommended_memory_request_mi=512,
        availability_pct=99.9,
        request_rate_rps=0.0,
        sample_count=4,
    )
    return replace(base, **overrides)


@pytest.fixture
def make_profile():
    """Steady 4-replica profile; keyword overrides replace single fields."""
    return _make_profile
