"""Preset constructors for HTNPlanner."""

from __future__ import annotations

from typing import Any

from strategos.config import ExecutorConfig, PlannerConfig, build_config
from strategos.planning.planner import HTNPlanner
from strategos.planning.selection import MCTSMethodSelector
from strategos.search.factory import MCTSFactory


class HierarchicalPlannerFactory:
    """Builds planners tuned for latency or plan quality."""

    @staticmethod
    def create_for_real_time(
        executor_config: ExecutorConfig | None = None, **overrides: Any
    ) -> HTNPlanner:
        """Shallow, first-applicable decomposition with no backtracking."""
        settings = {
            "max_depth": 5,
            "max_backtracks": 0,
            "first_applicable_only": True,
            "search_method_selection": False,
            "max_replans": 1,
            **overrides,
        }
        return HTNPlanner(
            config=build_config(PlannerConfig, **settings), executor_config=executor_config
        )

    @staticmethod
    def create_fast(executor_config: ExecutorConfig | None = None, **overrides: Any) -> HTNPlanner:
        """Small backtracking budget, priority order only."""
        settings = {
            "max_depth": 8,
            "max_backtracks": 50,
            "first_applicable_only": False,
            "search_method_selection": False,
            **overrides,
        }
        return HTNPlanner(
            config=build_config(PlannerConfig, **settings), executor_config=executor_config
        )

    @staticmethod
    def create_thorough(
        executor_config: ExecutorConfig | None = None, mcts_preset: str = "fast", **overrides: Any
    ) -> HTNPlanner:
        """Deep search, large backtracking budget, MCTS-assisted method choice."""
        settings = {
            "max_depth": 20,
            "max_backtracks": 10000,
            "first_applicable_only": False,
            "search_method_selection": True,
            **overrides,
        }
        planner = HTNPlanner(
            config=build_config(PlannerConfig, **settings), executor_config=executor_config
        )
        # Seeded so that repeated planning of the same problem is reproducible
        mcts_config = MCTSFactory.preset_config(mcts_preset, seed=0)
        planner.method_selector = MCTSMethodSelector(planner.tasks, mcts_config)
        return planner
