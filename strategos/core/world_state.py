"""Persistent world state with structural sharing.

A WorldState is an immutable mapping of fact names to values. Every update
returns a new WorldState that stores only its delta and points at the state it
was derived from, so "what-if" propagation during search and planning never
copies the full fact store. Chains are flattened once they grow past
``MAX_CHAIN_DEPTH`` to keep lookups bounded.
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Union

MAX_CHAIN_DEPTH = 32

# Sentinel marking a key deleted in a delta layer
_DELETED = object()


class WorldState(Mapping[str, Any]):
    """Immutable fact store. Never mutated in place."""

    __slots__ = ("_parent", "_delta", "_depth", "_flat", "_hash")

    def __init__(self, facts: Mapping[str, Any] | None = None):
        self._parent: WorldState | None = None
        self._delta: dict[str, Any] = dict(facts or {})
        self._depth = 0
        self._flat: dict[str, Any] | None = dict(self._delta)
        self._hash: int | None = None

    @classmethod
    def _derive(cls, parent: WorldState, delta: dict[str, Any]) -> WorldState:
        """Create a child layer sharing ``parent``'s structure."""
        state = cls.__new__(cls)
        state._parent = parent
        state._delta = delta
        state._depth = parent._depth + 1
        state._flat = None
        state._hash = None
        if state._depth > MAX_CHAIN_DEPTH:
            flat = state._materialize()
            state._parent = None
            state._delta = dict(flat)
            state._depth = 0
        return state

    # ------------------------------------------------------------------
    # Mapping protocol
    # ------------------------------------------------------------------

    def __getitem__(self, key: str) -> Any:
        if self._flat is not None:
            return self._flat[key]
        node: WorldState | None = self
        while node is not None:
            if key in node._delta:
                value = node._delta[key]
                if value is _DELETED:
                    raise KeyError(key)
                return value
            node = node._parent
        raise KeyError(key)

    def __contains__(self, key: object) -> bool:
        try:
            self[key]  # type: ignore[index]
        except KeyError:
            return False
        return True

    def __iter__(self) -> Iterator[str]:
        return iter(self._materialize())

    def __len__(self) -> int:
        return len(self._materialize())

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self._materialize().items()))
        return self._hash

    def __eq__(self, other: object) -> bool:
        if isinstance(other, WorldState):
            return self is other or self._materialize() == other._materialize()
        if isinstance(other, Mapping):
            return self._materialize() == dict(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"WorldState({self._materialize()!r})"

    def _materialize(self) -> dict[str, Any]:
        """Flatten the layer chain (cached per layer)."""
        if self._flat is None:
            layers = []
            node: WorldState | None = self
            while node is not None:
                if node._flat is not None:
                    layers.append(node._flat)
                    break
                layers.append(node._delta)
                node = node._parent
            flat: dict[str, Any] = {}
            for layer in reversed(layers):
                for key, value in layer.items():
                    if value is _DELETED:
                        flat.pop(key, None)
                    else:
                        flat[key] = value
            self._flat = flat
        return self._flat

    # ------------------------------------------------------------------
    # Persistent updates
    # ------------------------------------------------------------------

    def set(self, key: str, value: Any) -> WorldState:
        """Return a new state with ``key`` bound to ``value``."""
        return WorldState._derive(self, {key: value})

    def update(self, facts: Mapping[str, Any] | None = None, **kwargs: Any) -> WorldState:
        """Return a new state with several facts replaced."""
        delta = dict(facts or {})
        delta.update(kwargs)
        if not delta:
            return self
        return WorldState._derive(self, delta)

    def remove(self, key: str) -> WorldState:
        """Return a new state without ``key`` (no-op if absent)."""
        if key not in self:
            return self
        return WorldState._derive(self, {key: _DELETED})

    def apply(self, effects: Iterable[EffectLike]) -> WorldState:
        """Apply effects in order and return the resulting state."""
        return apply_effects(self, effects)

    def to_dict(self) -> dict[str, Any]:
        """Plain dict copy of all facts."""
        return dict(self._materialize())

    @property
    def depth(self) -> int:
        """Number of delta layers above the last flattened base."""
        return self._depth


class EffectKind(enum.Enum):
    """How an effect changes its target fact."""

    SET = "set"
    DELETE = "delete"
    INCREMENT = "increment"


@dataclass(frozen=True)
class Effect:
    """Declarative effect on a single fact."""

    target: str
    value: Any = None
    kind: EffectKind = EffectKind.SET

    def apply(self, state: WorldState) -> WorldState:
        """Apply this effect to ``state``, returning a new state."""
        match self.kind:
            case EffectKind.SET:
                return state.set(self.target, self.value)
            case EffectKind.DELETE:
                return state.remove(self.target)
            case EffectKind.INCREMENT:
                return state.set(self.target, state.get(self.target, 0) + self.value)
        raise ValueError(f"Unknown effect kind: {self.kind}")

    @classmethod
    def set(cls, target: str, value: Any) -> Effect:
        return cls(target=target, value=value, kind=EffectKind.SET)

    @classmethod
    def delete(cls, target: str) -> Effect:
        return cls(target=target, kind=EffectKind.DELETE)

    @classmethod
    def increment(cls, target: str, amount: float = 1) -> Effect:
        return cls(target=target, value=amount, kind=EffectKind.INCREMENT)


EffectLike = Union[Effect, Callable[[WorldState], WorldState]]


def apply_effects(state: WorldState, effects: Iterable[EffectLike]) -> WorldState:
    """Apply declarative or callable effects in order."""
    for effect in effects:
        if isinstance(effect, Effect):
            state = effect.apply(state)
        else:
            state = effect(state)
            if not isinstance(state, WorldState):
                raise TypeError(f"Effect {effect!r} must return a WorldState, got {type(state)}")
    return state
