"""Error taxonomy for the optimization loop."""

from __future__ import annotations


class TopoKeeperError(Exception):
    """Base class for every error raised by topokeeper."""


class InsufficientDataError(TopoKeeperError):
    """Metrics or topology are empty; the cycle is deferred, not failed."""


class TransientProviderError(TopoKeeperError):
    """A metrics or topology fetch failed; retried on the next interval."""


class ExecutionError(TopoKeeperError):
    """The topology mutator failed while applying a proposal."""

    def __init__(self, message: str, *, decision_id: str | None = None) -> None:
        super().__init__(message)
        self.decision_id = decision_id


class RollbackError(TopoKeeperError):
    """Snapshot restoration failed or could not be confirmed.

    Requires operator intervention: the loop never retries a rollback.
    """

    severity = "CRITICAL"

    def __init__(self, message: str, *, decision_id: str | None = None) -> None:
        super().__init__(message)
        self.decision_id = decision_id


class MissingCollaboratorError(TopoKeeperError):
    """A required collaborator was not supplied at construction time."""
