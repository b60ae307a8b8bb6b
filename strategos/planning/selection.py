"""Method selection for ambiguous HTN decompositions.

When several applicable methods share the top priority, the planner asks an
injected MethodSelector which one to try first. The MCTS-backed selector
scores each candidate by its estimated primitive cost.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from typing import Protocol, runtime_checkable

from strategos.config import MCTSConfig, build_config
from strategos.core.actions import Action, DecisionState
from strategos.core.world_state import WorldState
from strategos.planning.task import CompoundTask, Method, PrimitiveTask, Subtask, Task
from strategos.search.engine import MCTSDecisionEngine

logger = logging.getLogger(__name__)


@runtime_checkable
class MethodSelector(Protocol):
    """Picks which of several equally-ranked methods to try first."""

    def select(self, task: CompoundTask, candidates: Sequence[Method], state: WorldState) -> Method:
        ...


class FirstMethodSelector:
    """Declaration order: always the first candidate."""

    def select(self, task: CompoundTask, candidates: Sequence[Method], state: WorldState) -> Method:
        return candidates[0]


def estimate_method_cost(
    method: Method,
    state: WorldState,
    registry: Mapping[str, Task] | None = None,
    max_depth: int = 10,
) -> float:
    """Sum of primitive costs along a first-applicable decomposition.

    Subtasks are costed in declaration order with the hypothetical state
    propagated through their effects. Returns ``math.inf`` when the
    decomposition dead-ends or exceeds ``max_depth``.
    """
    registry = registry or {}

    def resolve_task(item: Task | str | Subtask) -> Task | None:
        if isinstance(item, Subtask):
            item = item.task
        if isinstance(item, str):
            return registry.get(item)
        return item

    def cost_of(task: Task, current: WorldState, depth: int) -> tuple[float, WorldState]:
        if depth > max_depth or not task.is_applicable(current):
            return math.inf, current
        match task:
            case PrimitiveTask():
                return task.cost, task.apply_effects(current)
            case CompoundTask():
                for candidate in sorted(task.methods, key=lambda m: -m.priority):
                    if candidate.is_applicable(current):
                        total, after = cost_of_method(candidate, current, depth)
                        if total != math.inf:
                            return total + task.cost, task.apply_effects(after)
                return math.inf, current
        raise TypeError(f"Unknown task type: {type(task).__name__}")

    def cost_of_method(candidate: Method, current: WorldState, depth: int) -> tuple[float, WorldState]:
        total = 0.0
        for item in candidate.subtasks:
            sub = resolve_task(item)
            if sub is None:
                return math.inf, current
            cost, current = cost_of(sub, current, depth + 1)
            if cost == math.inf:
                return math.inf, current
            total += cost
        return total, current

    cost, _ = cost_of_method(method, state, 0)
    return cost


class _MethodChoiceModel:
    """One-ply transition model: choosing a method ends the episode."""

    def __init__(self, rewards: Mapping[str, float]):
        self.rewards = rewards

    def legal_actions(self, state: DecisionState) -> list[Action]:
        return []

    def apply(self, state: DecisionState, action: Action) -> DecisionState:
        return state.child(action, is_terminal=True, terminal_reward=self.rewards[action.id])


class MCTSMethodSelector:
    """Chooses among tied methods with an MCTS search over estimated costs.

    Each candidate is an action whose terminal reward is ``1 / (1 + cost)``,
    with cost from ``estimate_method_cost``.

    Args:
        registry: Registered tasks, used to resolve subtask ids
        config: MCTSConfig for the search (seeded for determinism by default)
    """

    def __init__(self, registry: Mapping[str, Task] | None = None, config: MCTSConfig | None = None):
        self.registry = registry if registry is not None else {}
        if config is None:
            config = build_config(MCTSConfig, max_iterations=100, seed=0)
        self.config = config

    async def select(
        self, task: CompoundTask, candidates: Sequence[Method], state: WorldState
    ) -> Method:
        if len(candidates) == 1:
            return candidates[0]

        rewards: dict[str, float] = {}
        actions = []
        for method in candidates:
            cost = estimate_method_cost(method, state, self.registry)
            rewards[method.id] = 0.0 if cost == math.inf else 1.0 / (1.0 + cost)
            actions.append(Action(id=method.id, name=method.name, cost=cost))

        engine = MCTSDecisionEngine(
            simulation_policy=None,
            config=self.config,
            transition_model=_MethodChoiceModel(rewards),
        )
        decision = await engine.decide(DecisionState.initial(state, state_id=task.id), actions)
        chosen = decision.selected_action.id
        logger.debug(f"Method selection for '{task.id}': {rewards} -> '{chosen}'")
        return next(m for m in candidates if m.id == chosen)
