"""Hierarchical task network planning, execution and repair.

This package implements:
- Primitive and compound tasks with prioritised, partially ordered methods
- Depth-first decomposition with backtracking into a step DAG
- Concurrent plan execution with per-step recovery policies
- Plan repair of the unexecuted subtree around a failed step
"""

from __future__ import annotations

from strategos.planning.executor import (
    ExecutionContext,
    ExecutionResult,
    HistoryEntry,
    PlanExecutor,
)
from strategos.planning.factory import HierarchicalPlannerFactory
from strategos.planning.monitor import PlanMonitor, RecoveryDecision, StepFailure
from strategos.planning.plan import DecompositionNode, Plan, PlanStep, StepStatus
from strategos.planning.planner import HTNPlanner, PlanningResult, PlanningStatistics
from strategos.planning.replanner import Replanner
from strategos.planning.selection import (
    FirstMethodSelector,
    MCTSMethodSelector,
    MethodSelector,
    estimate_method_cost,
)
from strategos.planning.task import (
    CompoundTask,
    Method,
    PrimitiveTask,
    RecoveryPolicy,
    Subtask,
    Task,
    TaskResult,
)

__all__ = [
    "CompoundTask",
    "DecompositionNode",
    "ExecutionContext",
    "ExecutionResult",
    "FirstMethodSelector",
    "HTNPlanner",
    "HierarchicalPlannerFactory",
    "HistoryEntry",
    "MCTSMethodSelector",
    "Method",
    "MethodSelector",
    "Plan",
    "PlanExecutor",
    "PlanMonitor",
    "PlanStep",
    "PlanningResult",
    "PlanningStatistics",
    "PrimitiveTask",
    "RecoveryDecision",
    "RecoveryPolicy",
    "Replanner",
    "StepFailure",
    "StepStatus",
    "Subtask",
    "Task",
    "TaskResult",
    "estimate_method_cost",
]
