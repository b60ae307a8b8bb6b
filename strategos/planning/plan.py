"""Plan representation: a DAG of primitive steps plus its decomposition tree."""

from __future__ import annotations

import enum
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from strategos.planning.ordering import topological_sort
from strategos.planning.task import PrimitiveTask, Task, TaskResult


class StepStatus(enum.Enum):
    """Execution state of a plan step.

    PENDING -> READY (all predecessors COMPLETED) -> RUNNING -> COMPLETED | FAILED.
    SKIPPED marks steps made unreachable by a tolerated failure.
    """

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED})


@dataclass
class PlanStep:
    """A single primitive step in a plan."""

    id: str
    task: PrimitiveTask
    predecessors: set[str] = field(default_factory=set)
    successors: set[str] = field(default_factory=set)
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    started_at: float | None = None
    finished_at: float | None = None
    result: TaskResult | None = None
    order: int = 0  # declaration index, tie-break for linearization
    path: tuple[str, ...] = ()  # decomposition node ids from the root down to this step

    @property
    def task_id(self) -> str:
        return self.task.id

    @property
    def is_done(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def copy(self) -> PlanStep:
        return PlanStep(
            id=self.id,
            task=self.task,
            predecessors=set(self.predecessors),
            successors=set(self.successors),
            status=self.status,
            attempts=self.attempts,
            started_at=self.started_at,
            finished_at=self.finished_at,
            result=self.result,
            order=self.order,
            path=self.path,
        )


@dataclass(frozen=True)
class DecompositionNode:
    """One task in the decomposition tree, with the method chosen for it."""

    id: str
    task: Task
    method_id: str | None = None
    depth: int = 0
    children: tuple[DecompositionNode, ...] = ()
    step_id: str | None = None  # set for primitive leaves
    failed_methods: frozenset[str] = frozenset()  # methods a repair already replaced here

    def iter_nodes(self) -> Iterator[DecompositionNode]:
        """Pre-order walk of this subtree."""
        yield self
        for child in self.children:
            yield from child.iter_nodes()

    def step_ids(self) -> list[str]:
        return [n.step_id for n in self.iter_nodes() if n.step_id is not None]

    def find(self, node_id: str) -> DecompositionNode | None:
        for node in self.iter_nodes():
            if node.id == node_id:
                return node
        return None

    def replace(self, node_id: str, new_node: DecompositionNode) -> DecompositionNode:
        """Copy of this tree with ``node_id`` swapped for ``new_node``."""
        if self.id == node_id:
            return new_node
        return DecompositionNode(
            id=self.id,
            task=self.task,
            method_id=self.method_id,
            depth=self.depth,
            children=tuple(child.replace(node_id, new_node) for child in self.children),
            step_id=self.step_id,
            failed_methods=self.failed_methods,
        )


@dataclass
class Plan:
    """A partial-order plan for a root task."""

    root_task_id: str
    steps: dict[str, PlanStep] = field(default_factory=dict)
    decomposition: DecompositionNode | None = None
    revision_count: int = 0
    status: str = "pending"  # "pending", "running", "completed", "failed"

    def __len__(self) -> int:
        return len(self.steps)

    def linearize(self) -> list[PlanStep]:
        """Steps in topological order, ties broken by declaration order.

        Raises:
            CyclicOrderingError: If the step graph contains a cycle
        """
        order = topological_sort(
            self.steps,
            {step_id: step.successors for step_id, step in self.steps.items()},
            {step_id: step.order for step_id, step in self.steps.items()},
        )
        return [self.steps[step_id] for step_id in order]

    def validate(self) -> None:
        """Check edge symmetry and acyclicity.

        Raises:
            CyclicOrderingError: If the step graph contains a cycle
            ValueError: If an edge references an unknown step
        """
        for step in self.steps.values():
            for pred in step.predecessors:
                if pred not in self.steps or step.id not in self.steps[pred].successors:
                    raise ValueError(f"Step '{step.id}' has dangling predecessor '{pred}'")
            for succ in step.successors:
                if succ not in self.steps or step.id not in self.steps[succ].predecessors:
                    raise ValueError(f"Step '{step.id}' has dangling successor '{succ}'")
        self.linearize()

    def ready_steps(self) -> list[PlanStep]:
        """Steps whose status is READY, in declaration order."""
        return sorted(
            (s for s in self.steps.values() if s.status == StepStatus.READY), key=lambda s: s.order
        )

    def dependents(self, step_id: str) -> set[str]:
        """All steps transitively after ``step_id``."""
        seen: set[str] = set()
        stack = list(self.steps[step_id].successors)
        while stack:
            current = stack.pop()
            if current not in seen:
                seen.add(current)
                stack.extend(self.steps[current].successors)
        return seen

    def steps_with_status(self, *statuses: StepStatus) -> list[PlanStep]:
        return sorted(
            (s for s in self.steps.values() if s.status in statuses), key=lambda s: s.order
        )

    @property
    def total_cost(self) -> float:
        return sum(step.task.cost for step in self.steps.values())

    def estimated_duration_s(self, default_timeout_s: float = 1.0) -> float:
        """Sum of step timeouts (``default_timeout_s`` for steps without one)."""
        return sum(
            step.task.timeout_s if step.task.timeout_s is not None else default_timeout_s
            for step in self.steps.values()
        )

    @property
    def progress(self) -> float:
        """Fraction of steps in a terminal status (0.0 to 1.0)."""
        if not self.steps:
            return 1.0
        done = sum(1 for step in self.steps.values() if step.is_done)
        return done / len(self.steps)

    @property
    def is_complete(self) -> bool:
        return all(step.status == StepStatus.COMPLETED for step in self.steps.values())

    def copy(self) -> Plan:
        return Plan(
            root_task_id=self.root_task_id,
            steps={step_id: step.copy() for step_id, step in self.steps.items()},
            decomposition=self.decomposition,
            revision_count=self.revision_count,
            status=self.status,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "root_task_id": self.root_task_id,
            "status": self.status,
            "revision_count": self.revision_count,
            "total_cost": self.total_cost,
            "steps": [
                {
                    "id": step.id,
                    "task_id": step.task_id,
                    "status": step.status.value,
                    "attempts": step.attempts,
                    "predecessors": sorted(step.predecessors),
                }
                for step in sorted(self.steps.values(), key=lambda s: s.order)
            ],
        }
