"""Plan execution monitoring: recovery decisions and metrics tracking."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from strategos.planning.task import RecoveryPolicy, TaskResult

if TYPE_CHECKING:
    from strategos.planning.plan import Plan, PlanStep

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryDecision:
    """What to do about a failed step."""

    action: RecoveryPolicy
    delay_s: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class StepFailure:
    """One entry of the failure trail attached to an ExecutionResult."""

    step_id: str
    task_id: str
    attempt: int
    error: str | None
    recovery: RecoveryPolicy

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "task_id": self.task_id,
            "attempt": self.attempt,
            "error": self.error,
            "recovery": self.recovery.value,
        }


class PlanMonitor:
    """Observes step failures, picks a recovery, and tracks plan metrics.

    Retries come first: an idempotent task with attempts left is retried with
    exponential backoff whatever its recovery policy. Non-idempotent tasks are
    never retried. Once retries are out of the question the task's own policy
    applies, with an exhausted RETRY falling back to ABORT.
    """

    def __init__(self, backoff_cap_s: float = 10.0):
        self.backoff_cap_s = backoff_cap_s
        self._plan_history: list[dict] = []
        self._failures: list[StepFailure] = []
        self._replanning_count: int = 0
        self._retry_count: int = 0
        self._skip_count: int = 0
        self._completed_plans: int = 0
        self._failed_plans: int = 0

    def decide_recovery(self, step: PlanStep, result: TaskResult) -> RecoveryDecision:
        """Choose how to handle ``step`` having failed with ``result``."""
        task = step.task
        wants_retry = task.max_retries > 0 or task.recovery == RecoveryPolicy.RETRY

        if wants_retry and not task.idempotent:
            logger.warning(
                f"Step '{step.id}' failed ({result.error}); not retrying non-idempotent task '{task.id}'"
            )
        elif wants_retry and step.attempts <= task.max_retries:
            delay = min(self.backoff_cap_s, task.retry_backoff_s * 2 ** (step.attempts - 1))
            self._retry_count += 1
            logger.info(
                f"Retrying step '{step.id}' (attempt {step.attempts + 1}/{task.max_retries + 1}) "
                f"in {delay:.2f}s"
            )
            decision = RecoveryDecision(RecoveryPolicy.RETRY, delay, f"attempt {step.attempts} failed")
            self._record_failure(step, result, decision)
            return decision

        match task.recovery:
            case RecoveryPolicy.SKIP:
                self._skip_count += 1
                decision = RecoveryDecision(RecoveryPolicy.SKIP, reason="skip on failure")
            case RecoveryPolicy.REPLAN:
                decision = RecoveryDecision(RecoveryPolicy.REPLAN, reason="repair requested")
            case RecoveryPolicy.RETRY:
                decision = RecoveryDecision(RecoveryPolicy.ABORT, reason="retries exhausted")
            case _:
                decision = RecoveryDecision(RecoveryPolicy.ABORT, reason="abort on failure")

        logger.warning(f"Step '{step.id}' failed ({result.error}); {decision.action.value}")
        self._record_failure(step, result, decision)
        return decision

    def _record_failure(self, step: PlanStep, result: TaskResult, decision: RecoveryDecision) -> None:
        self._failures.append(
            StepFailure(
                step_id=step.id,
                task_id=step.task_id,
                attempt=step.attempts,
                error=result.error,
                recovery=decision.action,
            )
        )

    def failures_since(self, index: int) -> list[StepFailure]:
        """Failure trail entries recorded after position ``index``."""
        return self._failures[index:]

    @property
    def failure_count(self) -> int:
        return len(self._failures)

    def record_plan_outcome(self, plan: Plan, success: bool) -> None:
        """Record a completed or failed plan for analysis."""
        self._plan_history.append(
            {
                "root_task_id": plan.root_task_id,
                "plan_steps": len(plan.steps),
                "plan_progress": plan.progress,
                "plan_revisions": plan.revision_count,
                "plan_status": plan.status,
            }
        )
        if success:
            self._completed_plans += 1
        else:
            self._failed_plans += 1

    def record_replan(self, old_plan: Plan, new_plan: Plan, reason: str) -> None:
        """Record when replanning occurred."""
        self._replanning_count += 1
        logger.info(
            f"Replanned '{old_plan.root_task_id}' (revision {new_plan.revision_count}): {reason}"
        )

    @property
    def planning_stats(self) -> dict:
        """Summary stats across all monitored executions."""
        total_plans = self._completed_plans + self._failed_plans
        completion_rate = self._completed_plans / total_plans if total_plans > 0 else 0.0

        return {
            "total_plans": len(self._plan_history),
            "completion_rate": completion_rate,
            "replan_count": self._replanning_count,
            "retry_count": self._retry_count,
            "skip_count": self._skip_count,
            "failure_count": len(self._failures),
            "completed_plans": self._completed_plans,
            "failed_plans": self._failed_plans,
        }
