"""Monte-Carlo Tree Search decision engine."""

from __future__ import annotations

from strategos.search.arena import NodeArena, TreeNode, TreeStats
from strategos.search.engine import ActionStats, DecisionResult, MCTSDecisionEngine
from strategos.search.factory import MCTSFactory
from strategos.search.policies import (
    CallableEvaluator,
    EffectTransitionModel,
    HeuristicRolloutPolicy,
    PriorKnowledge,
    RandomRolloutPolicy,
    SimulationPolicy,
    SimulationResult,
    StateEvaluator,
    TransitionModel,
)
from strategos.search.tool_selector import MCTSToolSelector, Tool, ToolConstraints, ToolSelectionResult

__all__ = [
    "ActionStats",
    "CallableEvaluator",
    "DecisionResult",
    "EffectTransitionModel",
    "HeuristicRolloutPolicy",
    "MCTSDecisionEngine",
    "MCTSFactory",
    "MCTSToolSelector",
    "NodeArena",
    "PriorKnowledge",
    "RandomRolloutPolicy",
    "SimulationPolicy",
    "SimulationResult",
    "StateEvaluator",
    "Tool",
    "ToolConstraints",
    "ToolSelectionResult",
    "TransitionModel",
    "TreeNode",
    "TreeStats",
]
