from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Phase(str, Enum):
    IDLE = "IDLE"
    ANALYZING = "ANALYZING"
    PROPOSING = "PROPOSING"
    GATING = "GATING"
    EXECUTING = "EXECUTING"
    VERIFYING = "VERIFYING"
    ROLLING_BACK = "ROLLING_BACK"


_FORWARD = {
    Phase.IDLE: {Phase.ANALYZING},
    Phase.ANALYZING: {Phase.PROPOSING},
    Phase.PROPOSING: {Phase.GATING},
    Phase.GATING: {Phase.EXECUTING},
    Phase.EXECUTING: {Phase.VERIFYING, Phase.ROLLING_BACK},
    Phase.VERIFYING: {Phase.ROLLING_BACK},
    Phase.ROLLING_BACK: set(),
}


@dataclass
class CycleStateMachine:
    phase: Phase = Phase.IDLE
    history: list[Phase] = field(default_factory=list)

    def transition(self, target: Phase) -> None:
        if self.phase == target:
            return
        # Every phase may terminate back at IDLE.
        if target == Phase.IDLE or target in _FORWARD.get(self.phase, set()):
            self.history.append(self.phase)
            self.phase = target
            return
        raise ValueError(f"Invalid transition: {self.phase} -> {target}")

    def reset(self) -> None:
        self.history.clear()
        self.phase = Phase.IDLE

    @property
    def idle(self) -> bool:
        return self.phase == Phase.IDLE
