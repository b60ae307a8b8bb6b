"""Pluggable collaborators for the MCTS engine.

The engine never knows the problem domain. Callers inject:
- a TransitionModel (which actions are legal in a state, and what they do)
- a SimulationPolicy (rollout from a leaf to a terminal state or depth cutoff)
- optionally a StateEvaluator (value estimate blended into rollout rewards)
- optionally a PriorKnowledge source (action priors for expansion/selection)

Any of these may be implemented with plain or ``async`` methods.
"""

from __future__ import annotations

import random
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from strategos.core.actions import Action, DecisionState
from strategos.core.awaitables import resolve


@dataclass(frozen=True)
class SimulationResult:
    """Outcome of one rollout."""

    reward: float
    actions: tuple[str, ...] = ()  # action ids taken during the rollout
    depth: int = 0
    is_terminal: bool = False
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)


@runtime_checkable
class TransitionModel(Protocol):
    """Domain dynamics: legal actions and successor states."""

    def legal_actions(self, state: DecisionState) -> Sequence[Action]:
        """Actions available in ``state`` (empty for dead ends)."""
        ...

    def apply(self, state: DecisionState, action: Action) -> DecisionState:
        """Successor of ``state`` under ``action``."""
        ...


@runtime_checkable
class SimulationPolicy(Protocol):
    """Rollout logic. May be async and stochastic."""

    def simulate(self, state: DecisionState) -> float | SimulationResult:
        """Play out from ``state`` and return a scalar reward or a SimulationResult."""
        ...


@runtime_checkable
class StateEvaluator(Protocol):
    """Value estimate for a state, in [-1, 1]."""

    def evaluate(self, state: DecisionState) -> float:
        ...


@runtime_checkable
class PriorKnowledge(Protocol):
    """Prior probability that ``action`` is good in ``state``."""

    def prior_probability(self, state: DecisionState, action: Action) -> float:
        ...


# ============================================================================
# Transition models
# ============================================================================


class EffectTransitionModel:
    """Applies action effects to the WorldState.

    Legal actions are drawn from a fixed catalog filtered by precondition.
    Without a catalog every successor is a dead end, so the tree is one level
    deep and rewards come from the evaluator or ``reward_fn``.

    Args:
        catalog: Actions that may be legal in any state
        max_depth: States at this depth are terminal
        is_terminal: Optional predicate over the WorldState
        reward_fn: Optional terminal reward over the WorldState
        allow_repeats: Whether an action may appear twice on one path
    """

    def __init__(
        self,
        catalog: Sequence[Action] = (),
        max_depth: int | None = None,
        is_terminal: Callable[[Any], bool] | None = None,
        reward_fn: Callable[[Any], float] | None = None,
        allow_repeats: bool = True,
    ):
        self.catalog = list(catalog)
        self.max_depth = max_depth
        self.is_terminal = is_terminal
        self.reward_fn = reward_fn
        self.allow_repeats = allow_repeats

    def legal_actions(self, state: DecisionState) -> Sequence[Action]:
        if state.is_terminal:
            return []
        taken = set(state.id.split("/")[1:]) if not self.allow_repeats else set()
        return [a for a in self.catalog if a.id not in taken and a.is_applicable(state.world)]

    def apply(self, state: DecisionState, action: Action) -> DecisionState:
        world = action.apply(state.world)
        depth = state.depth + 1
        terminal = (self.max_depth is not None and depth >= self.max_depth) or (
            self.is_terminal is not None and bool(self.is_terminal(world))
        )
        reward = self.reward_fn(world) if (terminal and self.reward_fn is not None) else None
        return state.child(action, world=world, is_terminal=terminal, terminal_reward=reward)


# ============================================================================
# Rollout policies
# ============================================================================


class RandomRolloutPolicy:
    """Uniform random playout with per-step discounting.

    Walks the transition model until a terminal state, a dead end, or
    ``max_depth``. Intermediate terminal rewards are discounted by
    ``discount ** depth``; the final state is scored by its terminal reward or
    by ``leaf_value`` (0 by default).
    """

    def __init__(
        self,
        model: TransitionModel | None = None,
        max_depth: int = 50,
        discount: float = 0.99,
        rng: random.Random | None = None,
        leaf_value: Callable[[DecisionState], float] | None = None,
    ):
        self.model = model
        self.max_depth = max_depth
        self.discount = discount
        self.rng = rng or random.Random()
        self.leaf_value = leaf_value

    def choose(self, state: DecisionState, actions: Sequence[Action]) -> Action:
        return self.rng.choice(list(actions))

    async def simulate(self, state: DecisionState) -> SimulationResult:
        current = state
        depth = 0
        taken: list[str] = []
        total = 0.0
        while self.model is not None and depth < self.max_depth and not current.is_terminal:
            actions = await resolve(self.model.legal_actions(current))
            if not actions:
                break
            action = self.choose(current, actions)
            current = await resolve(self.model.apply(current, action))
            taken.append(action.id)
            if current.terminal_reward is not None and not current.is_terminal:
                total += current.terminal_reward * self.discount**depth
            depth += 1

        if current.terminal_reward is not None:
            final = current.terminal_reward
        elif self.leaf_value is not None:
            final = await resolve(self.leaf_value(current))
        else:
            final = 0.0
        total += final * self.discount**depth

        return SimulationResult(
            reward=total, actions=tuple(taken), depth=depth, is_terminal=current.is_terminal
        )


class HeuristicRolloutPolicy(RandomRolloutPolicy):
    """Greedy playout: always takes the action with the best heuristic score."""

    def __init__(
        self,
        heuristic: Callable[[DecisionState, Action], float],
        model: TransitionModel | None = None,
        max_depth: int = 50,
        discount: float = 0.99,
        leaf_value: Callable[[DecisionState], float] | None = None,
    ):
        super().__init__(model=model, max_depth=max_depth, discount=discount, leaf_value=leaf_value)
        self.heuristic = heuristic

    def choose(self, state: DecisionState, actions: Sequence[Action]) -> Action:
        # max() keeps the first of equal scores, so ties follow declaration order
        return max(actions, key=lambda action: self.heuristic(state, action))


# ============================================================================
# Evaluators
# ============================================================================


class CallableEvaluator:
    """Adapts plain value/prior functions to StateEvaluator and PriorKnowledge.

    Hook point for externally trained value and policy networks.
    """

    def __init__(
        self,
        value_fn: Callable[[DecisionState], float] | None = None,
        prior_fn: Callable[[DecisionState, Action], float] | None = None,
    ):
        self.value_fn = value_fn
        self.prior_fn = prior_fn

    async def evaluate(self, state: DecisionState) -> float:
        if self.value_fn is None:
            return 0.0
        value = float(await resolve(self.value_fn(state)))
        return max(-1.0, min(1.0, value))

    async def prior_probability(self, state: DecisionState, action: Action) -> float:
        if self.prior_fn is None:
            return action.prior_probability or 0.0
        return float(await resolve(self.prior_fn(state, action)))
