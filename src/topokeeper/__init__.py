"""TopoKeeper: a safety-gated control loop for cluster topology optimization."""

from importlib.metadata import PackageNotFoundError, version as _dist_version

try:
    __version__ = _dist_version("topokeeper")
except PackageNotFoundError:
    __version__ = "0.0.0"

from topokeeper.config import LoopConfig, load_config
from topokeeper.core.models import Decision, Outcome, Proposal
from topokeeper.safety.gate import SafetyThresholds
from topokeeper.scheduler import Scheduler

__all__ = [
    "Decision",
    "LoopConfig",
    "Outcome",
    "Proposal",
    "SafetyThresholds",
    "Scheduler",
    "__version__",
    "load_config",
]
