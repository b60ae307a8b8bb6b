"""Search-and-planning core: MCTS decisions and HTN plans under partial failure."""

from __future__ import annotations

from strategos.config import ExecutorConfig, MCTSConfig, PlannerConfig
from strategos.core import Action, DecisionState, Effect, WorldState
from strategos.errors import ErrorCode, StrategosError
from strategos.planning import (
    CompoundTask,
    ExecutionContext,
    HierarchicalPlannerFactory,
    HTNPlanner,
    Method,
    PrimitiveTask,
    RecoveryPolicy,
    Subtask,
)
from strategos.search import MCTSDecisionEngine, MCTSFactory

__version__ = "0.1.0"

__all__ = [
    "Action",
    "CompoundTask",
    "DecisionState",
    "Effect",
    "ErrorCode",
    "ExecutionContext",
    "ExecutorConfig",
    "HTNPlanner",
    "HierarchicalPlannerFactory",
    "MCTSConfig",
    "MCTSDecisionEngine",
    "MCTSFactory",
    "Method",
    "PlannerConfig",
    "PrimitiveTask",
    "RecoveryPolicy",
    "StrategosError",
    "Subtask",
    "WorldState",
]
