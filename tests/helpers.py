"""Shared test doubles for the strategos test suites.

Dataclass-based rollout policies and task handlers used across test files.
These are plain test doubles, not unittest.mock.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

from strategos.core.actions import Action, DecisionState
from strategos.planning.executor import ExecutionContext
from strategos.planning.task import TaskResult

# ============================================================================
# Rollout policies
# ============================================================================


@dataclass
class ConstantPolicy:
    """Returns the same reward from every state."""

    reward: float = 0.5
    calls: int = 0

    def simulate(self, state: DecisionState) -> float:
        self.calls += 1
        return self.reward


@dataclass
class TablePolicy:
    """Reward looked up by the first action below the root (deterministic)."""

    rewards: dict = field(default_factory=dict)
    default: float = 0.0

    async def simulate(self, state: DecisionState) -> float:
        first = state.id.split("/")[1] if "/" in state.id else None
        return self.rewards.get(first, self.default)


@dataclass
class FailingPolicy:
    """Raises on every rollout."""

    calls: int = 0

    async def simulate(self, state: DecisionState) -> float:
        self.calls += 1
        raise RuntimeError("rollout exploded")


@dataclass
class SlowPolicy:
    """Sleeps before returning a reward, to exercise the time budget."""

    delay_s: float = 0.01
    reward: float = 0.0

    async def simulate(self, state: DecisionState) -> float:
        await asyncio.sleep(self.delay_s)
        return self.reward


@dataclass
class BrokenEvaluator:
    """Raises from both the value estimate and the prior lookup."""

    calls: int = 0

    async def evaluate(self, state: DecisionState) -> float:
        self.calls += 1
        raise RuntimeError("value head crashed")

    def prior_probability(self, state: DecisionState, action: Action) -> float:
        self.calls += 1
        raise RuntimeError("policy head crashed")


def make_actions(*ids: str, priors: dict | None = None) -> list[Action]:
    """Plain actions with optional prior probabilities."""
    priors = priors or {}
    return [Action(id=action_id, prior_probability=priors.get(action_id)) for action_id in ids]


# ============================================================================
# Task handlers
# ============================================================================


@dataclass
class RecordingHandler:
    """Records call order and timing; succeeds after an optional delay."""

    name: str
    log: list = field(default_factory=list)
    delay_s: float = 0.0
    calls: int = 0
    started: list = field(default_factory=list)
    finished: list = field(default_factory=list)

    async def __call__(self, context: ExecutionContext) -> TaskResult:
        self.calls += 1
        self.started.append(time.monotonic())
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        self.log.append(self.name)
        self.finished.append(time.monotonic())
        return TaskResult(success=True, data=self.name)


@dataclass
class FlakyHandler:
    """Fails the first ``failures`` calls, then succeeds."""

    failures: int = 1
    calls: int = 0
    error: str = "transient error"

    def __call__(self, context: ExecutionContext) -> dict:
        self.calls += 1
        if self.calls <= self.failures:
            return {"success": False, "error": self.error}
        return {"success": True, "data": self.calls}


@dataclass
class FailingHandler:
    """Always fails; records its name in ``log`` when given one."""

    calls: int = 0
    error: str = "permanent error"
    name: str = "failing"
    log: list | None = None

    async def __call__(self, context: ExecutionContext) -> TaskResult:
        self.calls += 1
        if self.log is not None:
            self.log.append(self.name)
        return TaskResult(success=False, error=self.error)


@dataclass
class RaisingHandler:
    """Raises instead of returning a result."""

    calls: int = 0

    def __call__(self, context: ExecutionContext) -> None:
        self.calls += 1
        raise ValueError("handler crashed")
