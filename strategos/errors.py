"""Structured error hierarchy for strategos."""

from __future__ import annotations

import enum


class ErrorCode(enum.Enum):
    """Failure taxonomy shared by the search and planning engines."""

    NO_ACTIONS = "no_actions"
    SIMULATION_FAULT = "simulation_fault"
    DECOMPOSITION_FAILURE = "decomposition_failure"
    CYCLIC_ORDERING = "cyclic_ordering"
    STEP_EXECUTION_FAILURE = "step_execution_failure"
    REPLAN_EXHAUSTED = "replan_exhausted"


class StrategosError(Exception):
    """Base for all strategos errors."""

    code: ErrorCode | None = None


class SearchError(StrategosError):
    """Tree search could not produce a decision."""

    pass


class NoActionsError(SearchError):
    """decide() was called with an empty action set."""

    code = ErrorCode.NO_ACTIONS


class SimulationFault(SearchError):
    """A rollout policy or state evaluator raised. Absorbed by the engine."""

    code = ErrorCode.SIMULATION_FAULT

    def __init__(self, state_id: str, cause: BaseException):
        self.state_id = state_id
        self.cause = cause
        super().__init__(f"Simulation from state '{state_id}' failed: {cause!r}")


class PlanningError(StrategosError):
    """Task decomposition failed."""

    pass


class DecompositionError(PlanningError):
    """No method chain decomposes the task within the configured limits."""

    code = ErrorCode.DECOMPOSITION_FAILURE


class CyclicOrderingError(PlanningError):
    """Ordering constraints of a method (or a merged plan) contain a cycle."""

    code = ErrorCode.CYCLIC_ORDERING

    def __init__(self, message: str, cycle: tuple[str, ...] = ()):
        self.cycle = cycle
        super().__init__(message)


class ExecutionError(StrategosError):
    """Plan execution failed."""

    pass


class StepExecutionError(ExecutionError):
    """A primitive step failed and its recovery policy did not absorb it."""

    code = ErrorCode.STEP_EXECUTION_FAILURE

    def __init__(self, step_id: str, message: str):
        self.step_id = step_id
        super().__init__(f"Step '{step_id}' failed: {message}")


class ReplanExhaustedError(ExecutionError):
    """Plan repair could not find an alternative for the failed subtree."""

    code = ErrorCode.REPLAN_EXHAUSTED


class ConfigurationError(StrategosError):
    """Engine or planner constructed with invalid settings."""

    pass
