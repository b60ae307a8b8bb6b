"""Action and decision-state value types shared by search and planning."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from strategos.core.world_state import EffectLike, WorldState

Predicate = Callable[[WorldState], bool]


@dataclass(frozen=True)
class Action:
    """Something the agent can do.

    ``precondition`` is evaluated against a WorldState; ``effects`` describe how
    the WorldState changes when the action is applied.
    """

    id: str
    name: str = ""
    precondition: Predicate | None = field(default=None, compare=False)
    effects: tuple[EffectLike, ...] = field(default=(), compare=False)
    cost: float = 1.0
    prior_probability: float | None = None
    parameters: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    description: str = ""

    def __post_init__(self):
        if not self.name:
            object.__setattr__(self, "name", self.id)

    def is_applicable(self, state: WorldState) -> bool:
        """Check the precondition (always true when none is declared)."""
        return self.precondition is None or bool(self.precondition(state))

    def apply(self, state: WorldState) -> WorldState:
        """Apply this action's effects to ``state``."""
        return state.apply(self.effects)

    def with_prior(self, prior: float) -> Action:
        """Copy of this action carrying a prior probability."""
        return replace(self, prior_probability=prior)


@dataclass(frozen=True)
class DecisionState:
    """A node-level state in the search.

    Wraps the WorldState plus search bookkeeping. Terminal states may carry a
    reward that rollouts return directly.
    """

    id: str
    world: WorldState = field(default_factory=WorldState, compare=False)
    depth: int = 0
    is_terminal: bool = False
    terminal_reward: float | None = None
    action_id: str | None = None
    parent_id: str | None = None
    description: str = ""

    @classmethod
    def initial(cls, world: WorldState | dict | None = None, state_id: str = "root") -> DecisionState:
        """Build a root decision state from facts."""
        if world is None:
            world = WorldState()
        elif not isinstance(world, WorldState):
            world = WorldState(world)
        return cls(id=state_id, world=world)

    def child(
        self,
        action: Action,
        world: WorldState | None = None,
        is_terminal: bool = False,
        terminal_reward: float | None = None,
    ) -> DecisionState:
        """Successor state reached by ``action``."""
        return DecisionState(
            id=f"{self.id}/{action.id}",
            world=action.apply(self.world) if world is None else world,
            depth=self.depth + 1,
            is_terminal=is_terminal,
            terminal_reward=terminal_reward,
            action_id=action.id,
            parent_id=self.id,
        )
