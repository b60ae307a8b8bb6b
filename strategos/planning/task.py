"""HTN task model: primitive and compound tasks, methods and ordering.

``Task`` is the tagged union ``PrimitiveTask | CompoundTask``; decomposition
and execution sites dispatch on it with ``match``.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from strategos.core.actions import Predicate
from strategos.core.world_state import EffectLike, WorldState, apply_effects
from strategos.errors import CyclicOrderingError, DecompositionError
from strategos.planning.ordering import topological_sort

if TYPE_CHECKING:
    from strategos.planning.executor import ExecutionContext


class RecoveryPolicy(enum.Enum):
    """What the monitor does when a step fails (after any permitted retries)."""

    ABORT = "abort"
    RETRY = "retry"
    SKIP = "skip"
    REPLAN = "replan"


@dataclass
class TaskResult:
    """Normalised outcome of ``PrimitiveTask.execute``.

    ``world_state``, when set, replaces the context's WorldState; otherwise the
    task's declared effects are applied on success.
    """

    success: bool
    data: Any = None
    error: str | None = None
    world_state: WorldState | None = None

    @classmethod
    def normalize(cls, value: Any) -> TaskResult:
        """Coerce a handler return value (TaskResult, bool, dict or data)."""
        match value:
            case TaskResult():
                return value
            case bool():
                return cls(success=value)
            case dict():
                error = value.get("error")
                return cls(
                    success=bool(value.get("success", error is None)),
                    data=value.get("data"),
                    error=str(error) if error is not None else None,
                    world_state=value.get("world_state"),
                )
            case None:
                return cls(success=True)
            case _:
                return cls(success=True, data=value)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "data": self.data, "error": self.error}


ExecuteFn = Callable[["ExecutionContext"], Any]


@dataclass(frozen=True, eq=False)
class PrimitiveTask:
    """Leaf task bound to an execution handler (a skill or tool call).

    Attributes:
        execute: Handler called with the ExecutionContext; may be async.
            Returns a TaskResult, a bool, a ``{"success", "data", "error"}``
            dict, or any other value (treated as successful data)
        effects: Planning-time effects, also applied at execution time when
            the handler does not return a new WorldState
        idempotent: Only idempotent tasks are retried automatically
        max_retries: Extra attempts allowed for idempotent tasks
        retry_backoff_s: Base delay, doubled per attempt
        timeout_s: Per-attempt timeout (executor default when None)
        recovery: Policy applied once retries are exhausted
    """

    id: str
    name: str = ""
    precondition: Predicate | None = None
    effects: tuple[EffectLike, ...] = ()
    cost: float = 1.0
    execute: ExecuteFn | None = None
    idempotent: bool = False
    max_retries: int = 0
    retry_backoff_s: float = 1.0
    timeout_s: float | None = None
    recovery: RecoveryPolicy = RecoveryPolicy.ABORT
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            object.__setattr__(self, "name", self.id)

    def is_applicable(self, state: WorldState) -> bool:
        return self.precondition is None or bool(self.precondition(state))

    def apply_effects(self, state: WorldState) -> WorldState:
        return apply_effects(state, self.effects)


@dataclass(frozen=True, eq=False)
class Subtask:
    """A method subtask with an ordering key and parallel annotations.

    ``task`` is a Task or the id of a registered task. ``key`` defaults to the
    task id. Subtasks are ordered by declaration unless one lists the other's
    key in ``parallel_with``.
    """

    task: Task | str
    key: str | None = None
    parallel_with: tuple[str, ...] = ()

    @property
    def task_id(self) -> str:
        return self.task if isinstance(self.task, str) else self.task.id


@dataclass(frozen=True, eq=False)
class Method:
    """One way of decomposing a compound task.

    Attributes:
        applicability: Predicate over the hypothetical WorldState
        subtasks: Tasks, registered task ids or Subtask wrappers
        ordering: Extra ``(before_key, after_key)`` constraints
        priority: Higher priorities are tried first
    """

    id: str
    name: str = ""
    applicability: Predicate | None = None
    subtasks: tuple[Task | str | Subtask, ...] = ()
    ordering: tuple[tuple[str, str], ...] = ()
    priority: int = 0

    def __post_init__(self):
        if not self.name:
            object.__setattr__(self, "name", self.id)

    def is_applicable(self, state: WorldState) -> bool:
        return self.applicability is None or bool(self.applicability(state))

    def keyed_subtasks(self) -> list[tuple[str, Subtask]]:
        """Subtasks with unique keys, in declaration order.

        Repeated task ids without an explicit key get ``#n`` suffixes.
        """
        keyed: list[tuple[str, Subtask]] = []
        seen: dict[str, int] = {}
        for item in self.subtasks:
            sub = item if isinstance(item, Subtask) else Subtask(task=item)
            key = sub.key or sub.task_id
            if key in seen:
                if sub.key is not None:
                    raise DecompositionError(f"Method '{self.id}': duplicate subtask key '{key}'")
                seen[key] += 1
                key = f"{key}#{seen[key]}"
            seen.setdefault(key, 0)
            keyed.append((key, sub))
        return keyed

    def ordering_graph(self) -> dict[str, set[str]]:
        """Key-level ordering edges (key -> keys that must come after it).

        Raises:
            CyclicOrderingError: If a subtask is parallel with itself or the
                constraints form a cycle
            DecompositionError: If an annotation names an unknown key
        """
        keyed = self.keyed_subtasks()
        keys = [key for key, _ in keyed]
        known = set(keys)

        parallel: set[frozenset[str]] = set()
        for key, sub in keyed:
            for other in sub.parallel_with:
                if other == key:
                    raise CyclicOrderingError(
                        f"Method '{self.id}': subtask '{key}' is declared parallel with itself",
                        (key, key),
                    )
                if other not in known:
                    raise DecompositionError(
                        f"Method '{self.id}': '{key}' is parallel with unknown key '{other}'"
                    )
                parallel.add(frozenset((key, other)))

        edges: dict[str, set[str]] = {key: set() for key in keys}
        for i, before in enumerate(keys):
            for after in keys[i + 1 :]:
                if frozenset((before, after)) not in parallel:
                    edges[before].add(after)
        for before, after in self.ordering:
            if before not in known or after not in known:
                raise DecompositionError(
                    f"Method '{self.id}': ordering ({before!r}, {after!r}) names an unknown key"
                )
            if before == after:
                raise CyclicOrderingError(
                    f"Method '{self.id}': '{before}' is ordered before itself", (before, before)
                )
            edges[before].add(after)

        # Validates acyclicity
        topological_sort(keys, edges)
        return edges

    def topological_keys(self) -> list[str]:
        """Subtask keys in execution order, ties broken by declaration."""
        return topological_sort([k for k, _ in self.keyed_subtasks()], self.ordering_graph())


@dataclass(frozen=True, eq=False)
class CompoundTask:
    """Task decomposed through one of its methods.

    ``effects`` are applied to the hypothetical state after the chosen
    method's subtasks.
    """

    id: str
    name: str = ""
    precondition: Predicate | None = None
    effects: tuple[EffectLike, ...] = ()
    cost: float = 0.0
    methods: tuple[Method, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            object.__setattr__(self, "name", self.id)

    def is_applicable(self, state: WorldState) -> bool:
        return self.precondition is None or bool(self.precondition(state))

    def apply_effects(self, state: WorldState) -> WorldState:
        return apply_effects(state, self.effects)


Task = Union[PrimitiveTask, CompoundTask]
