"""Plan executor: runs ready steps concurrently and applies recovery policies.

Independent branches of the step DAG run concurrently up to the concurrency
limit; dependency chains run in order. A failed step is handed to the
PlanMonitor, which decides between retry, skip, replan and abort.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from strategos.config import ExecutorConfig, build_config
from strategos.core.awaitables import resolve
from strategos.core.world_state import WorldState
from strategos.errors import ConfigurationError, ErrorCode, ReplanExhaustedError, StepExecutionError
from strategos.planning.monitor import PlanMonitor, StepFailure
from strategos.planning.plan import Plan, PlanStep, StepStatus
from strategos.planning.task import RecoveryPolicy, TaskResult

if TYPE_CHECKING:
    from strategos.planning.replanner import Replanner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryEntry:
    """One attempt of one step. ``started_at``/``finished_at`` are monotonic."""

    step_id: str
    task_id: str
    result: TaskResult
    attempt: int
    started_at: float
    finished_at: float
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "task_id": self.task_id,
            "result": self.result.to_dict(),
            "attempt": self.attempt,
            "duration_s": self.finished_at - self.started_at,
            "timestamp": self.timestamp,
        }


@dataclass
class ExecutionContext:
    """Mutable execution state shared with task handlers.

    ``available_resources["concurrency"]`` bounds the number of steps running
    at once. ``history`` is append-only.
    """

    world_state: WorldState = field(default_factory=WorldState)
    history: list[HistoryEntry] = field(default_factory=list)
    available_resources: dict[str, Any] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)

    def record(self, entry: HistoryEntry) -> None:
        self.history.append(entry)

    def results_for(self, task_id: str) -> list[TaskResult]:
        return [entry.result for entry in self.history if entry.task_id == task_id]


@dataclass
class ExecutionResult:
    """Outcome of executing a plan, with the full step-level trail."""

    success: bool
    plan: Plan
    history: list[HistoryEntry] = field(default_factory=list)
    completed_steps: list[str] = field(default_factory=list)  # completion order
    failed_steps: list[str] = field(default_factory=list)
    skipped_steps: list[str] = field(default_factory=list)
    failures: list[StepFailure] = field(default_factory=list)
    error_code: ErrorCode | None = None
    failure_reason: str | None = None
    replans: int = 0
    elapsed_s: float = 0.0
    final_state: WorldState | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "plan": self.plan.to_dict(),
            "history": [entry.to_dict() for entry in self.history],
            "completed_steps": list(self.completed_steps),
            "failed_steps": list(self.failed_steps),
            "skipped_steps": list(self.skipped_steps),
            "failures": [failure.to_dict() for failure in self.failures],
            "error_code": self.error_code.value if self.error_code else None,
            "failure_reason": self.failure_reason,
            "replans": self.replans,
            "elapsed_s": self.elapsed_s,
        }


class PlanExecutor:
    """Executes a Plan against an ExecutionContext.

    Args:
        config: ExecutorConfig (concurrency default, timeouts, replan behaviour)
        monitor: PlanMonitor deciding recoveries; one is created if omitted
        replanner: Replanner used for REPLAN recoveries; without one a REPLAN
            ends execution with REPLAN_EXHAUSTED
    """

    def __init__(
        self,
        config: ExecutorConfig | None = None,
        monitor: PlanMonitor | None = None,
        replanner: Replanner | None = None,
    ):
        self._config = build_config(ExecutorConfig, config)
        self.monitor = monitor or PlanMonitor(self._config.retry_backoff_cap_s)
        self.replanner = replanner

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    async def execute(self, plan: Plan, context: ExecutionContext) -> ExecutionResult:
        """Run ``plan`` to completion, failure, or exhausted repair.

        Never raises for step failures; they are reported in the result.

        Raises:
            ConfigurationError: If the context's concurrency limit is below 1
        """
        limit = int(context.available_resources.get("concurrency", self._config.max_concurrency))
        if limit < 1:
            raise ConfigurationError(f"Concurrency limit must be >= 1, got {limit}")

        started = time.monotonic()
        failure_mark = self.monitor.failure_count
        completed_order: list[str] = []
        tolerated: set[str] = set()
        replan_queue: list[str] = []
        replans = 0
        error_code: ErrorCode | None = None
        failure_reason: str | None = None
        halted = False
        running: dict[asyncio.Task, PlanStep] = {}
        plan.status = "running"

        logger.info(f"Executing plan for '{plan.root_task_id}' ({len(plan)} steps, concurrency={limit})")

        try:
            while True:
                if not halted and not replan_queue:
                    self._promote(plan)
                    for step in plan.ready_steps():
                        if len(running) >= limit:
                            break
                        running[self._dispatch(step, context)] = step

                if not running:
                    if replan_queue and not halted:
                        try:
                            plan, replans = await self._repair(plan, replan_queue, context, replans)
                        except ReplanExhaustedError as err:
                            error_code = ErrorCode.REPLAN_EXHAUSTED
                            failure_reason = str(err)
                            halted = True
                            logger.warning(f"Plan repair failed: {err}")
                            break
                        tolerated &= set(plan.steps)
                        continue
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                cancel_requested = False
                for finished in sorted(done, key=lambda t: running[t].order):
                    step = running.pop(finished)
                    result = finished.result()
                    step.result = result
                    context.record(
                        HistoryEntry(
                            step_id=step.id,
                            task_id=step.task_id,
                            result=result,
                            attempt=step.attempts,
                            started_at=step.started_at or 0.0,
                            finished_at=step.finished_at or 0.0,
                        )
                    )

                    if result.success:
                        step.status = StepStatus.COMPLETED
                        completed_order.append(step.id)
                        if result.world_state is not None:
                            context.world_state = result.world_state
                        else:
                            context.world_state = step.task.apply_effects(context.world_state)
                        logger.debug(f"Step '{step.id}' completed (attempt {step.attempts})")
                        continue

                    decision = self.monitor.decide_recovery(step, result)
                    match decision.action:
                        case RecoveryPolicy.RETRY:
                            running[self._dispatch(step, context, decision.delay_s)] = step
                        case RecoveryPolicy.SKIP:
                            step.status = StepStatus.FAILED
                            tolerated.add(step.id)
                            self._skip_dependents(plan, step)
                        case RecoveryPolicy.REPLAN:
                            step.status = StepStatus.FAILED
                            replan_queue.append(step.id)
                            cancel_requested = self._config.cancel_on_replan
                        case RecoveryPolicy.ABORT:
                            step.status = StepStatus.FAILED
                            if error_code is None:
                                error_code = StepExecutionError.code
                                failure_reason = str(StepExecutionError(step.id, result.error or "unknown error"))
                            halted = True

                if cancel_requested and running:
                    await self._cancel_running(running)
        finally:
            for pending in running:
                pending.cancel()

        success, outcome_code, outcome_reason = self._outcome(plan, tolerated)
        if error_code is None and not success:
            error_code, failure_reason = outcome_code, outcome_reason
        success = success and error_code is None

        plan.status = "completed" if success else "failed"
        self.monitor.record_plan_outcome(plan, success)
        elapsed = time.monotonic() - started

        if success:
            logger.info(f"Plan for '{plan.root_task_id}' completed in {elapsed:.3f}s")
        else:
            logger.warning(f"Plan for '{plan.root_task_id}' failed: {failure_reason}")

        return ExecutionResult(
            success=success,
            plan=plan,
            history=list(context.history),
            completed_steps=completed_order,
            failed_steps=[s.id for s in plan.steps_with_status(StepStatus.FAILED)],
            skipped_steps=[s.id for s in plan.steps_with_status(StepStatus.SKIPPED)],
            failures=self.monitor.failures_since(failure_mark),
            error_code=error_code,
            failure_reason=failure_reason,
            replans=replans,
            elapsed_s=elapsed,
            final_state=context.world_state,
        )

    # ------------------------------------------------------------------
    # Step lifecycle
    # ------------------------------------------------------------------

    @staticmethod
    def _promote(plan: Plan) -> None:
        """PENDING -> READY once every predecessor is COMPLETED."""
        for step in plan.steps.values():
            if step.status != StepStatus.PENDING:
                continue
            if all(plan.steps[p].status == StepStatus.COMPLETED for p in step.predecessors):
                step.status = StepStatus.READY

    def _dispatch(self, step: PlanStep, context: ExecutionContext, delay_s: float = 0.0) -> asyncio.Task:
        step.status = StepStatus.RUNNING
        step.attempts += 1
        return asyncio.create_task(self._run_step(step, context, delay_s), name=f"step:{step.id}")

    async def _run_step(self, step: PlanStep, context: ExecutionContext, delay_s: float) -> TaskResult:
        if delay_s > 0:
            await asyncio.sleep(delay_s)

        task = step.task
        timeout = task.timeout_s if task.timeout_s is not None else self._config.default_step_timeout_s
        step.started_at = time.monotonic()
        try:
            if task.execute is None:
                result = TaskResult(success=False, error=f"Task '{task.id}' has no execute function")
            elif not task.is_applicable(context.world_state):
                result = TaskResult(success=False, error=f"Precondition of '{task.id}' no longer holds")
            else:
                raw = await asyncio.wait_for(resolve(task.execute(context)), timeout)
                result = TaskResult.normalize(raw)
        except asyncio.TimeoutError:
            result = TaskResult(success=False, error=f"Timed out after {timeout}s")
        except Exception as err:
            logger.debug(f"Step '{step.id}' raised {err!r}")
            result = TaskResult(success=False, error=f"{type(err).__name__}: {err}")
        step.finished_at = time.monotonic()
        return result

    @staticmethod
    def _skip_dependents(plan: Plan, step: PlanStep) -> None:
        for dep_id in plan.dependents(step.id):
            dependent = plan.steps[dep_id]
            if dependent.status in (StepStatus.PENDING, StepStatus.READY):
                dependent.status = StepStatus.SKIPPED
                logger.debug(f"Skipping '{dep_id}' after failure of '{step.id}'")

    @staticmethod
    async def _cancel_running(running: dict[asyncio.Task, PlanStep]) -> None:
        """Cancel in-flight steps for replanning (RUNNING -> PENDING)."""
        for pending in running:
            pending.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        for step in running.values():
            step.status = StepStatus.PENDING
            step.attempts -= 1
            step.started_at = None
            step.finished_at = None
            logger.debug(f"Cancelled '{step.id}' for replanning")
        running.clear()

    # ------------------------------------------------------------------
    # Repair and outcome
    # ------------------------------------------------------------------

    async def _repair(
        self, plan: Plan, replan_queue: list[str], context: ExecutionContext, replans: int
    ) -> tuple[Plan, int]:
        """Repair every queued failure; returns the new plan and replan count.

        Raises:
            ReplanExhaustedError: If no replanner is set, the replan budget is
                spent, or no alternative decomposition exists
        """
        while replan_queue:
            step_id = replan_queue.pop(0)
            if step_id not in plan.steps:
                continue
            if self.replanner is None:
                raise ReplanExhaustedError(f"No replanner available to repair step '{step_id}'")
            if replans >= self.replanner.max_replans:
                raise ReplanExhaustedError(
                    f"Replan budget of {self.replanner.max_replans} spent before repairing '{step_id}'"
                )
            new_plan = await self.replanner.repair(plan, step_id, context.world_state)
            self.monitor.record_replan(plan, new_plan, f"step '{step_id}' failed")
            plan = new_plan
            plan.status = "running"
            replans += 1
        return plan, replans

    @staticmethod
    def _outcome(plan: Plan, tolerated: set[str]) -> tuple[bool, ErrorCode | None, str | None]:
        for step in sorted(plan.steps.values(), key=lambda s: s.order):
            match step.status:
                case StepStatus.COMPLETED | StepStatus.SKIPPED:
                    continue
                case StepStatus.FAILED if step.id in tolerated:
                    continue
                case StepStatus.FAILED:
                    return False, ErrorCode.STEP_EXECUTION_FAILURE, f"Step '{step.id}' failed"
                case _:
                    return False, ErrorCode.STEP_EXECUTION_FAILURE, f"Step '{step.id}' never ran"
        return True, None, None
