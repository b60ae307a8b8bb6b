"""Configuration settings for the search and planning engines.

Uses Pydantic Settings for validation and environment variable support.
Settings can be overridden via STRATEGOS_MCTS_*, STRATEGOS_PLANNER_* and
STRATEGOS_EXECUTOR_* environment variables.
"""

from __future__ import annotations

import math
from typing import Any, TypeVar

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

from strategos.errors import ConfigurationError

SettingsT = TypeVar("SettingsT", bound=BaseSettings)


class MCTSConfig(BaseSettings):
    """Monte-Carlo Tree Search parameters."""

    # UCB1
    exploration_constant: float = Field(default=math.sqrt(2), ge=0.0)

    # Budget
    max_iterations: int = Field(default=1000, gt=0)
    max_time_ms: float = Field(default=5000.0, gt=0.0)
    max_simulation_depth: int = Field(default=50, ge=0)

    # Leaf parallelization: k rollouts per macro-iteration
    parallel_simulations: int = Field(default=1, ge=1)

    # RAVE
    use_rave: bool = False
    rave_equivalence: float = Field(default=250.0, gt=0.0)

    # Progressive widening (None = disabled)
    progressive_widening_threshold: int | None = Field(default=None, ge=0)
    widening_exponent: float = Field(default=0.5, gt=0.0, le=1.0)

    # Priors
    use_prior_knowledge: bool = False
    prior_weight: float = Field(default=0.5, ge=0.0)

    # Simulation
    discount: float = Field(default=0.99, gt=0.0, le=1.0)
    evaluator_weight: float = Field(default=0.5, ge=0.0, le=1.0)
    failure_penalty: float = -1.0

    # Tree reuse across sequential decide() calls
    reuse_tree: bool = False

    seed: int | None = None

    model_config = {"env_prefix": "STRATEGOS_MCTS_"}


class PlannerConfig(BaseSettings):
    """HTN decomposition parameters."""

    max_depth: int = Field(default=10, gt=0)
    max_backtracks: int = Field(default=1000, ge=0)
    first_applicable_only: bool = False
    search_method_selection: bool = False
    max_replans: int = Field(default=3, ge=0)

    model_config = {"env_prefix": "STRATEGOS_PLANNER_"}


class ExecutorConfig(BaseSettings):
    """Plan execution parameters."""

    max_concurrency: int = Field(default=4, ge=1)
    default_step_timeout_s: float = Field(default=30.0, gt=0.0)
    cancel_on_replan: bool = False
    retry_backoff_cap_s: float = Field(default=10.0, ge=0.0)

    model_config = {"env_prefix": "STRATEGOS_EXECUTOR_"}


def build_config(
    config_cls: type[SettingsT], config: SettingsT | None = None, **overrides: Any
) -> SettingsT:
    """Validate a settings object (plus overrides) or fail fast.

    Args:
        config_cls: Settings class to build
        config: Existing settings to start from (re-validated)
        **overrides: Field values that replace those of ``config``

    Returns:
        A freshly validated settings instance

    Raises:
        ConfigurationError: If any field is invalid
    """
    values: dict[str, Any] = {}
    if config is not None:
        values.update(config.model_dump())
    values.update(overrides)
    try:
        return config_cls(**values)
    except ValidationError as err:
        raise ConfigurationError(f"Invalid {config_cls.__name__}: {err}") from err
