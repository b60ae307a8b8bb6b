"""Tests for plan execution, recovery policies and plan repair."""

from __future__ import annotations

import asyncio

import pytest

from strategos.config import ExecutorConfig, PlannerConfig
from strategos.core.world_state import Effect, WorldState
from strategos.errors import ConfigurationError, ErrorCode
from strategos.planning.executor import ExecutionContext, PlanExecutor
from strategos.planning.monitor import PlanMonitor
from strategos.planning.plan import PlanStep, StepStatus
from strategos.planning.planner import HTNPlanner
from strategos.planning.task import (
    CompoundTask,
    Method,
    PrimitiveTask,
    RecoveryPolicy,
    Subtask,
    TaskResult,
)
from tests.helpers import FailingHandler, FlakyHandler, RaisingHandler, RecordingHandler


async def plan_for(planner: HTNPlanner, task, state=None):
    result = await planner.plan(task, state)
    assert result.success, result.failure_reason
    return result.plan


def publish_task(upload_handler, mirror_handler, with_mirror: bool = True) -> CompoundTask:
    """Publish via a registry upload (REPLAN on failure), falling back to a mirror."""
    methods = [
        Method(
            "via-registry",
            subtasks=(PrimitiveTask("upload", execute=upload_handler, recovery=RecoveryPolicy.REPLAN),),
            priority=1,
        )
    ]
    if with_mirror:
        methods.append(Method("via-mirror", subtasks=(PrimitiveTask("mirror", execute=mirror_handler),)))
    return CompoundTask("publish", methods=tuple(methods))


class TestExecution:
    """Ordering, concurrency and effects."""

    @pytest.mark.asyncio
    async def test_sequential_plan_runs_in_order(self, planner, sequential_task, call_log, context):
        """Three ordered primitives complete in declared order."""
        plan = await plan_for(planner, sequential_task)
        result = await planner.execute_plan(plan, context)
        assert result.success
        assert call_log == ["a", "b", "c"]
        assert result.completed_steps == ["root/a", "root/b", "root/c"]
        assert result.final_state.to_dict() == {"a_done": True, "b_done": True}
        assert len(context.history) == 3
        assert plan.status == "completed"
        assert plan.is_complete

    @pytest.mark.asyncio
    async def test_parallel_siblings_overlap_and_gate_successor(self, planner, call_log):
        """Unordered siblings run concurrently; their successor waits for both."""
        a = RecordingHandler("a", call_log, delay_s=0.05)
        b = RecordingHandler("b", call_log, delay_s=0.05)
        c = RecordingHandler("c", call_log)
        task = CompoundTask(
            "root",
            methods=(
                Method(
                    "m",
                    subtasks=(
                        PrimitiveTask("a", execute=a),
                        Subtask(PrimitiveTask("b", execute=b), parallel_with=("a",)),
                        PrimitiveTask("c", execute=c),
                    ),
                ),
            ),
        )
        result = await planner.execute_plan(await plan_for(planner, task))
        assert result.success
        assert a.started[0] < b.finished[0]
        assert b.started[0] < a.finished[0]
        assert c.started[0] >= max(a.finished[0], b.finished[0])
        assert call_log[-1] == "c"

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, planner, call_log):
        """With a limit of 1, independent steps run one after another."""
        a = RecordingHandler("a", call_log, delay_s=0.02)
        b = RecordingHandler("b", call_log, delay_s=0.02)
        task = CompoundTask(
            "root",
            methods=(
                Method(
                    "m",
                    subtasks=(
                        PrimitiveTask("a", execute=a),
                        Subtask(PrimitiveTask("b", execute=b), parallel_with=("a",)),
                    ),
                ),
            ),
        )
        context = ExecutionContext(available_resources={"concurrency": 1})
        result = await planner.execute_plan(await plan_for(planner, task), context)
        assert result.success
        assert b.started[0] >= a.finished[0]

    @pytest.mark.asyncio
    async def test_invalid_concurrency(self, executor, planner, sequential_task):
        plan = await plan_for(planner, sequential_task)
        with pytest.raises(ConfigurationError):
            await executor.execute(plan, ExecutionContext(available_resources={"concurrency": 0}))

    @pytest.mark.asyncio
    async def test_handler_world_state_replaces_context(self, planner):
        def handler(context):
            return TaskResult(success=True, world_state=WorldState({"replaced": 1}))

        task = PrimitiveTask("swap", execute=handler, effects=(Effect.set("ignored", True),))
        result = await planner.execute_plan(await plan_for(planner, task))
        assert result.final_state.to_dict() == {"replaced": 1}

    @pytest.mark.asyncio
    async def test_results_are_visible_to_later_steps(self, planner):
        seen = []

        def produce(context):
            return {"success": True, "data": "payload"}

        def consume(context):
            seen.extend(r.data for r in context.results_for("produce"))
            return True

        task = CompoundTask(
            "root",
            methods=(
                Method(
                    "m",
                    subtasks=(PrimitiveTask("produce", execute=produce), PrimitiveTask("consume", execute=consume)),
                ),
            ),
        )
        result = await planner.execute_plan(await plan_for(planner, task))
        assert result.success
        assert seen == ["payload"]

    @pytest.mark.asyncio
    async def test_result_to_dict(self, planner, sequential_task):
        result = await planner.execute_plan(await plan_for(planner, sequential_task))
        data = result.to_dict()
        assert data["success"] is True
        assert data["error_code"] is None
        assert len(data["history"]) == 3
        assert data["history"][0]["step_id"] == "root/a"


class TestStepFailures:
    """Failure handling per step."""

    @pytest.mark.asyncio
    async def test_non_idempotent_task_is_not_retried(self, executor, planner):
        """max_retries is ignored for non-idempotent tasks."""
        handler = FailingHandler()
        task = PrimitiveTask("charge", execute=handler, max_retries=3, retry_backoff_s=0.001)
        result = await executor.execute(await plan_for(planner, task), ExecutionContext())
        assert handler.calls == 1
        assert not result.success
        assert result.error_code == ErrorCode.STEP_EXECUTION_FAILURE
        assert result.failed_steps == ["charge"]
        assert result.failures[0].recovery == RecoveryPolicy.ABORT

    @pytest.mark.asyncio
    async def test_idempotent_task_is_retried(self, executor, planner):
        handler = FlakyHandler(failures=2)
        task = PrimitiveTask(
            "fetch", execute=handler, idempotent=True, max_retries=2, retry_backoff_s=0.001
        )
        plan = await plan_for(planner, task)
        result = await executor.execute(plan, ExecutionContext())
        assert result.success
        assert handler.calls == 3
        assert plan.steps["fetch"].attempts == 3
        assert [f.recovery for f in result.failures] == [RecoveryPolicy.RETRY, RecoveryPolicy.RETRY]
        assert [h.attempt for h in result.history] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_exhausted_retries_abort(self, executor, planner):
        handler = FlakyHandler(failures=5)
        task = PrimitiveTask(
            "fetch",
            execute=handler,
            idempotent=True,
            max_retries=1,
            retry_backoff_s=0.001,
            recovery=RecoveryPolicy.RETRY,
        )
        result = await executor.execute(await plan_for(planner, task), ExecutionContext())
        assert handler.calls == 2
        assert result.error_code == ErrorCode.STEP_EXECUTION_FAILURE
        assert result.failures[-1].recovery == RecoveryPolicy.ABORT

    @pytest.mark.asyncio
    async def test_skip_marks_dependents_skipped(self, executor, planner):
        """A skipped failure prunes its dependents; independent work completes."""
        c_handler = RecordingHandler("c")
        d_handler = RecordingHandler("d")
        task = CompoundTask(
            "root",
            methods=(
                Method(
                    "m",
                    subtasks=(
                        PrimitiveTask("b", execute=FailingHandler(), recovery=RecoveryPolicy.SKIP),
                        PrimitiveTask("c", execute=c_handler),
                        Subtask(PrimitiveTask("d", execute=d_handler), parallel_with=("b", "c")),
                    ),
                ),
            ),
        )
        plan = await plan_for(planner, task)
        result = await executor.execute(plan, ExecutionContext())
        assert result.success
        assert result.failed_steps == ["root/b"]
        assert result.skipped_steps == ["root/c"]
        assert result.completed_steps == ["root/d"]
        assert c_handler.calls == 0
        assert d_handler.calls == 1
        assert plan.steps["root/c"].status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_abort_stops_dispatch(self, executor, planner):
        later = RecordingHandler("later")
        task = CompoundTask(
            "root",
            methods=(
                Method(
                    "m",
                    subtasks=(
                        PrimitiveTask("first", execute=FailingHandler()),
                        PrimitiveTask("later", execute=later),
                    ),
                ),
            ),
        )
        plan = await plan_for(planner, task)
        result = await executor.execute(plan, ExecutionContext())
        assert not result.success
        assert later.calls == 0
        assert plan.steps["root/later"].status == StepStatus.PENDING
        assert "root/first" in result.failure_reason
        assert plan.status == "failed"

    @pytest.mark.asyncio
    async def test_timeout_is_a_failure(self, executor, planner):
        async def hang(context):
            await asyncio.sleep(1.0)

        task = PrimitiveTask("hang", execute=hang, timeout_s=0.01)
        result = await executor.execute(await plan_for(planner, task), ExecutionContext())
        assert not result.success
        assert result.failures[0].error.startswith("Timed out")

    @pytest.mark.asyncio
    async def test_handler_exception_is_a_failure(self, executor, planner):
        handler = RaisingHandler()
        result = await executor.execute(
            await plan_for(planner, PrimitiveTask("boom", execute=handler)), ExecutionContext()
        )
        assert not result.success
        assert "ValueError" in result.failures[0].error

    @pytest.mark.asyncio
    async def test_missing_execute_function(self, executor, planner):
        result = await executor.execute(await plan_for(planner, PrimitiveTask("bare")), ExecutionContext())
        assert not result.success
        assert "no execute function" in result.failures[0].error

    @pytest.mark.asyncio
    async def test_preconditions_are_rechecked_at_runtime(self, executor, planner):
        handler = RecordingHandler("guarded")
        task = PrimitiveTask("guarded", precondition=lambda s: s.get("ok", False), execute=handler)
        plan = await plan_for(planner, task, {"ok": True})
        result = await executor.execute(plan, ExecutionContext(world_state=WorldState()))
        assert not result.success
        assert handler.calls == 0
        assert "no longer holds" in result.failures[0].error


class TestReplanning:
    """REPLAN recovery through the planner."""

    @pytest.mark.asyncio
    async def test_replan_uses_alternative_method(self, planner, call_log):
        mirror = RecordingHandler("mirror", call_log)
        task = CompoundTask(
            "root",
            methods=(
                Method(
                    "m",
                    subtasks=(
                        PrimitiveTask("prepare", execute=RecordingHandler("prepare", call_log)),
                        publish_task(FailingHandler(), mirror),
                    ),
                ),
            ),
        )
        plan = await plan_for(planner, task)
        result = await planner.execute_plan(plan)
        assert result.success
        assert result.replans == 1
        assert result.plan.revision_count == 1
        assert "root/publish~r1/mirror" in result.completed_steps
        assert result.plan.steps["root/publish~r1/mirror"].predecessors == {"root/prepare"}
        assert result.failures[0].step_id == "root/publish/upload"
        assert result.failures[0].recovery == RecoveryPolicy.REPLAN
        assert result.plan.decomposition.find("root/publish~r1").method_id == "via-mirror"
        assert call_log == ["prepare", "mirror"]
        assert planner.monitor.planning_stats["replan_count"] == 1

    @pytest.mark.asyncio
    async def test_replan_exhausted(self, planner):
        task = CompoundTask(
            "root",
            methods=(
                Method(
                    "m",
                    subtasks=(
                        PrimitiveTask("prepare", execute=RecordingHandler("prepare")),
                        publish_task(FailingHandler(), None, with_mirror=False),
                    ),
                ),
            ),
        )
        result = await planner.execute_plan(await plan_for(planner, task))
        assert not result.success
        assert result.error_code == ErrorCode.REPLAN_EXHAUSTED
        assert result.failures[0].step_id == "root/publish/upload"

    @pytest.mark.asyncio
    async def test_failed_methods_are_never_retried(self, call_log):
        """A second repair excludes every method that already failed for the task."""
        planner = HTNPlanner(PlannerConfig(max_replans=5))
        upload = FailingHandler(name="upload", log=call_log)
        mirror = FailingHandler(name="mirror", log=call_log)
        task = CompoundTask(
            "publish",
            methods=(
                Method(
                    "via-registry",
                    subtasks=(PrimitiveTask("upload", execute=upload, recovery=RecoveryPolicy.REPLAN),),
                    priority=1,
                ),
                Method(
                    "via-mirror",
                    subtasks=(PrimitiveTask("mirror", execute=mirror, recovery=RecoveryPolicy.REPLAN),),
                ),
            ),
        )
        plan = await plan_for(planner, task)
        statistics = planner.statistics
        result = await planner.execute_plan(plan)
        assert not result.success
        assert result.error_code == ErrorCode.REPLAN_EXHAUSTED
        assert result.replans == 1
        assert call_log == ["upload", "mirror"]
        assert result.plan.decomposition.failed_methods == {"via-registry"}
        # Repairs do not replace the statistics of the caller's plan() run
        assert planner.statistics is statistics

    @pytest.mark.asyncio
    async def test_replan_budget(self, call_log):
        planner = HTNPlanner(PlannerConfig(max_replans=0))
        task = publish_task(FailingHandler(), RecordingHandler("mirror", call_log))
        result = await planner.execute_plan(await plan_for(planner, task))
        assert result.error_code == ErrorCode.REPLAN_EXHAUSTED
        assert call_log == []

    @pytest.mark.asyncio
    async def test_executor_without_replanner(self, executor, planner):
        task = publish_task(FailingHandler(), RecordingHandler("mirror"))
        result = await executor.execute(await plan_for(planner, task), ExecutionContext())
        assert result.error_code == ErrorCode.REPLAN_EXHAUSTED

    @pytest.mark.asyncio
    async def test_cancel_on_replan_restarts_running_steps(self):
        """Running steps are cancelled back to PENDING and re-run after repair."""
        planner = HTNPlanner(executor_config=ExecutorConfig(cancel_on_replan=True))
        slow = RecordingHandler("slow", delay_s=0.2)
        task = CompoundTask(
            "root",
            methods=(
                Method(
                    "m",
                    subtasks=(
                        PrimitiveTask("slow", execute=slow),
                        Subtask(publish_task(FailingHandler(), RecordingHandler("mirror")), parallel_with=("slow",)),
                    ),
                ),
            ),
        )
        result = await planner.execute_plan(await plan_for(planner, task))
        assert result.success
        assert slow.calls == 2
        assert len(slow.finished) == 1
        assert [h.step_id for h in result.history].count("root/slow") == 1

    @pytest.mark.asyncio
    async def test_running_steps_finish_before_repair(self):
        planner = HTNPlanner()
        slow = RecordingHandler("slow", delay_s=0.05)
        task = CompoundTask(
            "root",
            methods=(
                Method(
                    "m",
                    subtasks=(
                        PrimitiveTask("slow", execute=slow),
                        Subtask(publish_task(FailingHandler(), RecordingHandler("mirror")), parallel_with=("slow",)),
                    ),
                ),
            ),
        )
        result = await planner.execute_plan(await plan_for(planner, task))
        assert result.success
        assert slow.calls == 1


class TestPlanMonitor:
    """Recovery decisions and metrics."""

    def _step(self, attempts: int, **task_kwargs) -> PlanStep:
        return PlanStep("s", PrimitiveTask("s", **task_kwargs), attempts=attempts)

    def test_backoff_doubles(self):
        monitor = PlanMonitor(backoff_cap_s=10.0)
        failed = TaskResult(success=False, error="x")
        first = monitor.decide_recovery(self._step(1, idempotent=True, max_retries=3), failed)
        second = monitor.decide_recovery(self._step(2, idempotent=True, max_retries=3), failed)
        assert first.action == RecoveryPolicy.RETRY
        assert first.delay_s == 1.0
        assert second.delay_s == 2.0

    def test_backoff_is_capped(self):
        monitor = PlanMonitor(backoff_cap_s=1.5)
        decision = monitor.decide_recovery(
            self._step(3, idempotent=True, max_retries=5), TaskResult(success=False)
        )
        assert decision.delay_s == 1.5

    def test_policy_applies_after_retries(self):
        monitor = PlanMonitor()
        decision = monitor.decide_recovery(
            self._step(3, idempotent=True, max_retries=2, recovery=RecoveryPolicy.SKIP),
            TaskResult(success=False),
        )
        assert decision.action == RecoveryPolicy.SKIP
        assert monitor.planning_stats["skip_count"] == 1
        assert monitor.failure_count == 1

    @pytest.mark.asyncio
    async def test_plan_outcomes_are_tracked(self, planner, sequential_task):
        await planner.execute_plan(await plan_for(planner, sequential_task))
        stats = planner.monitor.planning_stats
        assert stats["total_plans"] == 1
        assert stats["completed_plans"] == 1
        assert stats["completion_rate"] == 1.0
