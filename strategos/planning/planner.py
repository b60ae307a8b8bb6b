"""Hierarchical Task Network planner.

Decomposition is depth-first with full backtracking. Each task yields its
alternative plan fragments lazily from an async generator, so a failure deep
in the tree resumes the nearest ancestor that still has an alternative
(another method, or another decomposition of an earlier sibling).

A hypothetical WorldState is threaded through the subtasks of a method in
execution order, so later siblings see the planning-time effects of earlier
ones. Real effects are only applied by the executor.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Collection, Mapping, Sequence
from contextlib import aclosing
from dataclasses import asdict, dataclass, field
from typing import Any

from strategos.config import ExecutorConfig, MCTSConfig, PlannerConfig, build_config
from strategos.core.awaitables import resolve
from strategos.core.world_state import WorldState
from strategos.errors import CyclicOrderingError, DecompositionError, ErrorCode
from strategos.planning.executor import ExecutionContext, ExecutionResult, PlanExecutor
from strategos.planning.monitor import PlanMonitor
from strategos.planning.ordering import topological_sort, transitive_reduction
from strategos.planning.plan import DecompositionNode, Plan, PlanStep
from strategos.planning.replanner import Replanner
from strategos.planning.selection import MCTSMethodSelector, MethodSelector
from strategos.planning.task import CompoundTask, Method, PrimitiveTask, Subtask, Task

logger = logging.getLogger(__name__)


@dataclass
class PlanningStatistics:
    """Search effort of one plan() call."""

    nodes_explored: int = 0
    max_depth_reached: int = 0
    backtracks: int = 0
    methods_tried: int = 0
    planning_time_s: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PlanningResult:
    """Outcome of plan(). Failures are reported here, never raised."""

    success: bool
    plan: Plan | None = None
    failure_reason: str | None = None
    error_code: ErrorCode | None = None
    statistics: PlanningStatistics = field(default_factory=PlanningStatistics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "plan": self.plan.to_dict() if self.plan else None,
            "failure_reason": self.failure_reason,
            "error_code": self.error_code.value if self.error_code else None,
            "statistics": self.statistics.to_dict(),
        }


@dataclass(frozen=True)
class _Fragment:
    """A partial plan for one task: steps, internal edges, resulting state."""

    steps: tuple[tuple[str, PrimitiveTask], ...]  # (step id, task) in declaration order
    edges: frozenset[tuple[str, str]]
    node: DecompositionNode
    state: WorldState

    @property
    def entries(self) -> list[str]:
        targets = {b for _, b in self.edges}
        return [step_id for step_id, _ in self.steps if step_id not in targets]

    @property
    def exits(self) -> list[str]:
        sources = {a for a, _ in self.edges}
        return [step_id for step_id, _ in self.steps if step_id not in sources]


class _BacktrackBudgetExceeded(Exception):
    pass


class HTNPlanner:
    """Decomposes compound tasks into partial-order plans and executes them.

    Args:
        config: PlannerConfig (depth limit, backtrack budget, method selection)
        method_selector: Picks among equal-priority methods. When omitted and
            ``search_method_selection`` is on, an MCTSMethodSelector over the
            registered tasks is used
        executor_config: ExecutorConfig for execute_plan()
        mcts_config: MCTSConfig for the default MCTSMethodSelector

    Raises:
        ConfigurationError: If any config is invalid
    """

    def __init__(
        self,
        config: PlannerConfig | None = None,
        method_selector: MethodSelector | None = None,
        executor_config: ExecutorConfig | None = None,
        mcts_config: MCTSConfig | None = None,
    ):
        self._config = build_config(PlannerConfig, config)
        self.executor_config = build_config(ExecutorConfig, executor_config)
        self._tasks: dict[str, Task] = {}
        self._mcts_config = mcts_config
        self.method_selector = method_selector
        if self.method_selector is None and self._config.search_method_selection:
            self.method_selector = MCTSMethodSelector(self._tasks, mcts_config)
        self.monitor = PlanMonitor(self.executor_config.retry_backoff_cap_s)
        self.statistics = PlanningStatistics()
        self._stats = PlanningStatistics()
        self._failure_reason: str | None = None
        self._cycle: CyclicOrderingError | None = None

    @property
    def config(self) -> PlannerConfig:
        return self._config

    @property
    def tasks(self) -> Mapping[str, Task]:
        return self._tasks

    def update_config(self, **overrides: Any) -> PlannerConfig:
        """Re-validate the config with ``overrides`` applied.

        Raises:
            ConfigurationError: If the resulting config is invalid
        """
        self._config = build_config(PlannerConfig, self._config, **overrides)
        if self.method_selector is None and self._config.search_method_selection:
            self.method_selector = MCTSMethodSelector(self._tasks, self._mcts_config)
        return self._config

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register_task(self, task: Task) -> None:
        """Register ``task`` so methods can refer to it by id."""
        if task.id in self._tasks and self._tasks[task.id] is not task:
            logger.warning(f"Replacing registered task '{task.id}'")
        self._tasks[task.id] = task

    def register_tasks(self, *tasks: Task) -> None:
        for task in tasks:
            self.register_task(task)

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def _resolve(self, item: Task | str | Subtask) -> Task:
        if isinstance(item, Subtask):
            item = item.task
        if isinstance(item, str):
            task = self._tasks.get(item)
            if task is None:
                raise DecompositionError(f"Unknown task id '{item}'")
            return task
        return item

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def plan(
        self,
        root_task: Task | str,
        initial_state: WorldState | Mapping[str, Any] | None = None,
        *,
        excluded_methods: Collection[str] = (),
        id_prefix: str | None = None,
        record_statistics: bool = True,
    ) -> PlanningResult:
        """Decompose ``root_task`` into a Plan.

        Args:
            root_task: Task or registered task id
            initial_state: Facts the decomposition starts from
            excluded_methods: Method ids not to use for the root task
            id_prefix: Root of the generated step ids (defaults to the task id)
            record_statistics: Publish this run as ``self.statistics``. Plan
                repairs pass False so the caller's last plan() stays visible

        Returns:
            PlanningResult; DECOMPOSITION_FAILURE and CYCLIC_ORDERING are
            reported there rather than raised
        """
        started = time.perf_counter()
        self._stats = PlanningStatistics()
        self._failure_reason = None
        self._cycle = None

        if initial_state is None:
            state = WorldState()
        elif isinstance(initial_state, WorldState):
            state = initial_state
        else:
            state = WorldState(initial_state)

        try:
            task = self._resolve(root_task)
        except DecompositionError as err:
            return self._finish(
                started, record_statistics, None, str(err), ErrorCode.DECOMPOSITION_FAILURE
            )

        fragment: _Fragment | None = None
        try:
            async with aclosing(
                self._decompose(task, state, 0, id_prefix or task.id, set(excluded_methods))
            ) as alternatives:
                async for candidate in alternatives:
                    fragment = candidate
                    break
        except _BacktrackBudgetExceeded:
            self._failure_reason = (
                f"Backtrack budget of {self._config.max_backtracks} exhausted planning '{task.id}'"
            )

        if fragment is None:
            if self._cycle is not None:
                return self._finish(
                    started, record_statistics, None, str(self._cycle), ErrorCode.CYCLIC_ORDERING
                )
            reason = self._failure_reason or f"No decomposition found for '{task.id}'"
            return self._finish(
                started, record_statistics, None, reason, ErrorCode.DECOMPOSITION_FAILURE
            )

        plan = self._build_plan(task, fragment)
        try:
            plan.validate()
        except CyclicOrderingError as err:
            return self._finish(
                started, record_statistics, None, str(err), ErrorCode.CYCLIC_ORDERING
            )
        return self._finish(started, record_statistics, plan, None, None)

    def _finish(
        self,
        started: float,
        record: bool,
        plan: Plan | None,
        reason: str | None,
        code: ErrorCode | None,
    ) -> PlanningResult:
        self._stats.planning_time_s = time.perf_counter() - started
        if record:
            self.statistics = self._stats
        if plan is not None:
            logger.info(
                f"Planned '{plan.root_task_id}' into {len(plan)} steps "
                f"(nodes={self._stats.nodes_explored}, backtracks={self._stats.backtracks}, "
                f"{self._stats.planning_time_s * 1000:.1f}ms)"
            )
        else:
            logger.warning(f"Planning failed ({code.value if code else 'unknown'}): {reason}")
        return PlanningResult(
            success=plan is not None,
            plan=plan,
            failure_reason=reason,
            error_code=code,
            statistics=self._stats,
        )

    @staticmethod
    def _build_plan(task: Task, fragment: _Fragment) -> Plan:
        paths: dict[str, tuple[str, ...]] = {}
        stack: list[tuple[DecompositionNode, tuple[str, ...]]] = [(fragment.node, ())]
        while stack:
            node, prefix = stack.pop()
            path = prefix + (node.id,)
            if node.step_id is not None:
                paths[node.step_id] = path
            stack.extend((child, path) for child in node.children)

        steps: dict[str, PlanStep] = {}
        for order, (step_id, primitive) in enumerate(fragment.steps):
            steps[step_id] = PlanStep(id=step_id, task=primitive, order=order, path=paths[step_id])
        for before, after in fragment.edges:
            steps[before].successors.add(after)
            steps[after].predecessors.add(before)
        return Plan(root_task_id=task.id, steps=steps, decomposition=fragment.node)

    def _note_failure(self, reason: str) -> None:
        self._failure_reason = reason
        logger.debug(reason)

    def _note_backtrack(self) -> None:
        self._stats.backtracks += 1
        if self._stats.backtracks > self._config.max_backtracks:
            raise _BacktrackBudgetExceeded()

    async def _decompose(
        self,
        task: Task,
        state: WorldState,
        depth: int,
        node_id: str,
        excluded: Collection[str] = (),
    ) -> AsyncIterator[_Fragment]:
        """Yield every decomposition of ``task`` from ``state``, best first."""
        self._stats.nodes_explored += 1
        self._stats.max_depth_reached = max(self._stats.max_depth_reached, depth)

        if depth > self._config.max_depth:
            self._note_failure(f"Depth limit {self._config.max_depth} reached at '{task.id}'")
            return
        if not task.is_applicable(state):
            self._note_failure(f"Precondition of '{task.id}' does not hold")
            return

        match task:
            case PrimitiveTask():
                yield _Fragment(
                    steps=((node_id, task),),
                    edges=frozenset(),
                    node=DecompositionNode(id=node_id, task=task, depth=depth, step_id=node_id),
                    state=task.apply_effects(state),
                )

            case CompoundTask():
                methods = await self._order_methods(task, state, excluded)
                if not methods:
                    self._note_failure(f"No applicable method for '{task.id}'")
                    return

                for index, method in enumerate(methods):
                    if index > 0:
                        self._note_backtrack()
                    self._stats.methods_tried += 1
                    try:
                        keyed = method.keyed_subtasks()
                        edges = method.ordering_graph()
                        subtasks = {key: self._resolve(sub) for key, sub in keyed}
                    except CyclicOrderingError as err:
                        self._cycle = err
                        logger.warning(f"Method '{method.id}' of '{task.id}' rejected: {err}")
                        continue
                    except DecompositionError as err:
                        self._note_failure(str(err))
                        continue

                    declared = [key for key, _ in keyed]
                    order = topological_sort(declared, edges)
                    async with aclosing(
                        self._sequence(order, subtasks, state, depth, node_id, ())
                    ) as sequences:
                        async for children, after in sequences:
                            yield self._merge(
                                task, method, declared, order, edges, dict(children), after, depth, node_id
                            )

            case _:
                raise TypeError(f"Unknown task type: {type(task).__name__}")

    async def _sequence(
        self,
        order: Sequence[str],
        subtasks: Mapping[str, Task],
        state: WorldState,
        depth: int,
        node_id: str,
        acc: tuple[tuple[str, _Fragment], ...],
    ) -> AsyncIterator[tuple[tuple[tuple[str, _Fragment], ...], WorldState]]:
        """Yield decompositions of ``order[len(acc):]`` given those in ``acc``."""
        if len(acc) == len(order):
            yield acc, state
            return

        key = order[len(acc)]
        first = True
        async with aclosing(
            self._decompose(subtasks[key], state, depth + 1, f"{node_id}/{key}")
        ) as alternatives:
            async for fragment in alternatives:
                if not first:
                    self._note_backtrack()
                first = False
                async with aclosing(
                    self._sequence(order, subtasks, fragment.state, depth, node_id, acc + ((key, fragment),))
                ) as rest:
                    async for result in rest:
                        yield result

    async def _order_methods(
        self, task: CompoundTask, state: WorldState, excluded: Collection[str]
    ) -> list[Method]:
        """Applicable methods, highest priority first (stable on declaration order)."""
        applicable = [m for m in task.methods if m.id not in excluded and m.is_applicable(state)]
        ordered = sorted(applicable, key=lambda m: -m.priority)
        if self._config.first_applicable_only:
            return ordered[:1]

        if len(ordered) > 1 and self._config.search_method_selection and self.method_selector:
            top = [m for m in ordered if m.priority == ordered[0].priority]
            if len(top) > 1:
                chosen = await resolve(self.method_selector.select(task, top, state))
                ordered.remove(chosen)
                ordered.insert(0, chosen)
        return ordered

    @staticmethod
    def _merge(
        task: CompoundTask,
        method: Method,
        declared: list[str],
        order: list[str],
        edges: Mapping[str, set[str]],
        children: Mapping[str, _Fragment],
        after: WorldState,
        depth: int,
        node_id: str,
    ) -> _Fragment:
        """Combine child fragments along the method's ordering graph.

        Exits of each non-empty fragment connect to the entries of the nearest
        non-empty fragments after it; empty fragments are bridged.
        """
        reduced = transitive_reduction(order, edges)
        merged_edges: set[tuple[str, str]] = set()
        for fragment in children.values():
            merged_edges |= fragment.edges

        for key in declared:
            source = children[key]
            if not source.steps:
                continue
            exits = source.exits
            stack = list(reduced[key])
            seen: set[str] = set()
            while stack:
                nxt = stack.pop()
                if nxt in seen:
                    continue
                seen.add(nxt)
                target = children[nxt]
                if target.steps:
                    merged_edges |= {(x, y) for x in exits for y in target.entries}
                else:
                    stack.extend(reduced[nxt])

        steps = tuple(step for key in declared for step in children[key].steps)
        node = DecompositionNode(
            id=node_id,
            task=task,
            method_id=method.id,
            depth=depth,
            children=tuple(children[key].node for key in declared),
        )
        return _Fragment(
            steps=steps,
            edges=frozenset(merged_edges),
            node=node,
            state=task.apply_effects(after),
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_plan(
        self, plan: Plan, context: ExecutionContext | None = None
    ) -> ExecutionResult:
        """Execute ``plan`` with monitoring and plan repair.

        Failures, including REPLAN_EXHAUSTED, are reported in the result.
        """
        executor = PlanExecutor(
            config=self.executor_config,
            monitor=self.monitor,
            replanner=Replanner(self, max_replans=self._config.max_replans),
        )
        return await executor.execute(plan, context or ExecutionContext())
