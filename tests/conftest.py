"""Shared test fixtures for the strategos test suite."""

from __future__ import annotations

import pytest

from strategos.config import ExecutorConfig, MCTSConfig, PlannerConfig
from strategos.core.actions import Action, DecisionState
from strategos.core.world_state import Effect, WorldState
from strategos.planning.executor import ExecutionContext, PlanExecutor
from strategos.planning.planner import HTNPlanner
from strategos.planning.task import CompoundTask, Method, PrimitiveTask
from tests.helpers import RecordingHandler


@pytest.fixture
def mcts_config() -> MCTSConfig:
    """Small seeded config for fast, reproducible searches."""
    return MCTSConfig(max_iterations=200, max_time_ms=10000.0, seed=42)


@pytest.fixture
def root_state() -> DecisionState:
    """Root decision state with an empty world."""
    return DecisionState.initial({"step": 0})


@pytest.fixture
def three_actions() -> list[Action]:
    """Actions a, b and c with no preconditions."""
    return [Action("a"), Action("b"), Action("c")]


@pytest.fixture
def counter_catalog() -> list[Action]:
    """Actions that bump counters, for multi-ply trees."""
    return [
        Action("inc", effects=(Effect.increment("count"),)),
        Action("dec", effects=(Effect.increment("count", -1),)),
        Action("noop"),
    ]


@pytest.fixture
def planner_config() -> PlannerConfig:
    return PlannerConfig(max_depth=10, max_backtracks=100)


@pytest.fixture
def planner(planner_config: PlannerConfig) -> HTNPlanner:
    """Planner with fast retry backoff and a short step timeout."""
    return HTNPlanner(
        config=planner_config,
        executor_config=ExecutorConfig(default_step_timeout_s=5.0, retry_backoff_cap_s=0.05),
    )


@pytest.fixture
def executor() -> PlanExecutor:
    return PlanExecutor(ExecutorConfig(default_step_timeout_s=5.0, retry_backoff_cap_s=0.05))


@pytest.fixture
def context() -> ExecutionContext:
    return ExecutionContext(world_state=WorldState())


@pytest.fixture
def call_log() -> list:
    """Shared list recording the order handlers ran in."""
    return []


@pytest.fixture
def sequential_task(call_log: list) -> CompoundTask:
    """Compound task with three strictly ordered primitives a -> b -> c."""
    a = PrimitiveTask("a", execute=RecordingHandler("a", call_log), effects=(Effect.set("a_done", True),))
    b = PrimitiveTask(
        "b",
        precondition=lambda s: s.get("a_done", False),
        execute=RecordingHandler("b", call_log),
        effects=(Effect.set("b_done", True),),
    )
    c = PrimitiveTask(
        "c",
        precondition=lambda s: s.get("b_done", False),
        execute=RecordingHandler("c", call_log),
    )
    return CompoundTask("root", methods=(Method("in-order", subtasks=(a, b, c)),))
