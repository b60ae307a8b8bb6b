"""Immutable state and action model shared by the search and planning engines."""

from __future__ import annotations

from strategos.core.actions import Action, DecisionState, Predicate
from strategos.core.world_state import Effect, EffectKind, EffectLike, WorldState, apply_effects

__all__ = [
    "Action",
    "DecisionState",
    "Predicate",
    "Effect",
    "EffectKind",
    "EffectLike",
    "WorldState",
    "apply_effects",
]
