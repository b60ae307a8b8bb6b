"""Preset constructors for MCTSDecisionEngine."""

from __future__ import annotations

import math
from collections.abc import Callable
from typing import Any

from strategos.config import MCTSConfig, build_config
from strategos.core.actions import Action, DecisionState
from strategos.search.engine import MCTSDecisionEngine
from strategos.search.policies import (
    CallableEvaluator,
    HeuristicRolloutPolicy,
    SimulationPolicy,
    TransitionModel,
)

# Preset parameters are part of the public contract; change with care.
PRESETS: dict[str, dict[str, Any]] = {
    "fast": {
        "max_iterations": 100,
        "max_time_ms": 1000.0,
        "exploration_constant": math.sqrt(2),
        "parallel_simulations": 1,
        "use_rave": False,
    },
    "balanced": {
        "max_iterations": 1000,
        "parallel_simulations": 4,
        "use_rave": True,
    },
    "thorough": {
        "max_iterations": 5000,
        "max_time_ms": 30000.0,
        "parallel_simulations": 8,
        "use_rave": True,
        "use_prior_knowledge": True,
    },
}


class MCTSFactory:
    """Builds engines from named presets.

    Every constructor accepts the engine collaborators plus config field
    overrides, applied on top of the preset.
    """

    @staticmethod
    def preset_config(name: str, **overrides: Any) -> MCTSConfig:
        """Validated config for preset ``name`` ("fast", "balanced", "thorough")."""
        if name not in PRESETS:
            raise KeyError(f"Unknown MCTS preset '{name}'. Available: {sorted(PRESETS)}")
        return build_config(MCTSConfig, **{**PRESETS[name], **overrides})

    @staticmethod
    def _build(
        name: str | None,
        simulation_policy: SimulationPolicy | None = None,
        transition_model: TransitionModel | None = None,
        evaluator: Any = None,
        prior_knowledge: Any = None,
        **overrides: Any,
    ) -> MCTSDecisionEngine:
        if name is None:
            config = build_config(MCTSConfig, **overrides)
        else:
            config = MCTSFactory.preset_config(name, **overrides)
        return MCTSDecisionEngine(
            simulation_policy=simulation_policy,
            config=config,
            transition_model=transition_model,
            evaluator=evaluator,
            prior_knowledge=prior_knowledge,
        )

    @staticmethod
    def create_default(**kwargs: Any) -> MCTSDecisionEngine:
        """Engine with MCTSConfig defaults and a random rollout policy."""
        return MCTSFactory._build(None, **kwargs)

    @staticmethod
    def create_fast(**kwargs: Any) -> MCTSDecisionEngine:
        """100 iterations, c=sqrt(2), one rollout per iteration, no RAVE."""
        return MCTSFactory._build("fast", **kwargs)

    @staticmethod
    def create_balanced(**kwargs: Any) -> MCTSDecisionEngine:
        """1000 iterations, 4 rollouts per iteration, RAVE on."""
        return MCTSFactory._build("balanced", **kwargs)

    @staticmethod
    def create_thorough(**kwargs: Any) -> MCTSDecisionEngine:
        """5000 iterations, 8 rollouts per iteration, RAVE and priors on."""
        return MCTSFactory._build("thorough", **kwargs)

    @staticmethod
    def create_with_heuristic(
        heuristic: Callable[[DecisionState, Action], float],
        transition_model: TransitionModel | None = None,
        **overrides: Any,
    ) -> MCTSDecisionEngine:
        """Engine whose rollouts greedily follow ``heuristic``."""
        config = build_config(MCTSConfig, **overrides)
        policy = HeuristicRolloutPolicy(
            heuristic,
            model=transition_model,
            max_depth=config.max_simulation_depth,
            discount=config.discount,
        )
        return MCTSDecisionEngine(
            simulation_policy=policy, config=config, transition_model=transition_model
        )

    @staticmethod
    def create_with_evaluator(
        value_fn: Callable[[DecisionState], float] | None = None,
        prior_fn: Callable[[DecisionState, Action], float] | None = None,
        simulation_policy: SimulationPolicy | None = None,
        transition_model: TransitionModel | None = None,
        **overrides: Any,
    ) -> MCTSDecisionEngine:
        """Engine driven by external value/prior functions (e.g. trained networks)."""
        evaluator = CallableEvaluator(value_fn, prior_fn)
        settings = {
            "use_prior_knowledge": True,
            "max_iterations": 800,
            "parallel_simulations": 4,
            **overrides,
        }
        return MCTSDecisionEngine(
            simulation_policy=simulation_policy,
            config=build_config(MCTSConfig, **settings),
            transition_model=transition_model,
            evaluator=evaluator if value_fn is not None else None,
            prior_knowledge=evaluator,
        )
