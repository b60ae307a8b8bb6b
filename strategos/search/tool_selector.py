"""Tool-sequence selection with MCTS.

Chooses which tools to call for a query, and in what order, under a budget of
tool count, estimated cost and estimated time. Search scores sequences with
estimates only; no tool is executed while searching.
"""

from __future__ import annotations

import json
import logging
import random
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from strategos.config import MCTSConfig, build_config
from strategos.core.actions import Action, DecisionState
from strategos.core.world_state import WorldState
from strategos.search.engine import MCTSDecisionEngine
from strategos.search.policies import RandomRolloutPolicy, StateEvaluator

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\S+")

STOP = "__stop__"


@dataclass(frozen=True)
class Tool:
    """A callable capability described for selection purposes."""

    id: str
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    estimated_cost: float | None = None
    success_rate: float | None = None
    average_execution_time_ms: float | None = None


@dataclass(frozen=True)
class ToolConstraints:
    """Budget for one selection."""

    max_tools: int = 5
    max_cost: float = 100.0
    max_time_ms: float = 30000.0


@dataclass(frozen=True)
class ToolChoice:
    tool: Tool
    confidence: float
    expected_outcome: str = ""


@dataclass
class ToolSelectionResult:
    """Chosen tool sequence plus estimates and runner-up alternatives."""

    selected_tools: list[ToolChoice] = field(default_factory=list)
    execution_plan: list[str] = field(default_factory=list)
    total_estimated_cost: float = 0.0
    total_estimated_time_ms: float = 0.0
    success_probability: float = 0.0
    alternative_plans: list[tuple[list[str], float]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "selected_tools": [
                {"tool": c.tool.id, "confidence": c.confidence, "expected_outcome": c.expected_outcome}
                for c in self.selected_tools
            ],
            "execution_plan": list(self.execution_plan),
            "total_estimated_cost": self.total_estimated_cost,
            "total_estimated_time_ms": self.total_estimated_time_ms,
            "success_probability": self.success_probability,
            "alternative_plans": [
                {"tools": tools, "probability": p} for tools, p in self.alternative_plans
            ],
        }


class ToolCostEstimator:
    """Default cost/time estimates from tool metadata and parameter size."""

    default_cost = 10.0
    default_time_ms = 1000.0

    def estimate_cost(self, tool: Tool) -> float:
        cost = tool.estimated_cost if tool.estimated_cost is not None else self.default_cost
        if tool.parameters:
            cost += len(json.dumps(tool.parameters, default=str)) * 0.01
        return cost

    def estimate_time(self, tool: Tool) -> float:
        time_ms = (
            tool.average_execution_time_ms
            if tool.average_execution_time_ms is not None
            else self.default_time_ms
        )
        return time_ms + len(tool.parameters) * 100.0


def tool_relevance(
    tool: Tool, query: str, previous_results: Mapping[str, bool] | None = None
) -> float:
    """Prior relevance of ``tool`` for ``query``, clamped to [0.1, 0.95].

    Base 0.5, plus up to 0.3 for keyword overlap between the query and the
    tool's name/description, plus 0.2 * success_rate. A previous success adds
    0.1 and a previous failure subtracts 0.2.
    """
    relevance = 0.5
    query_words = [w.lower() for w in _WORD.findall(query)]
    tool_words = [w.lower() for w in _WORD.findall(f"{tool.description} {tool.name}")]
    if query_words:
        matching = [
            word for word in query_words if any(tw in word or word in tw for tw in tool_words)
        ]
        relevance += len(matching) / len(query_words) * 0.3
    if tool.success_rate is not None:
        relevance += tool.success_rate * 0.2
    if previous_results and tool.id in previous_results:
        relevance += 0.1 if previous_results[tool.id] else -0.2
    return max(0.1, min(0.95, relevance))


class ToolTransitionModel:
    """Tool-selection dynamics over a WorldState of remaining budget.

    Facts: ``selected`` (tuple of tool ids), ``tools_left``, ``cost_left``,
    ``time_left``. A state is terminal once any budget is exhausted or the
    stop action is taken; stopping is legal once one tool is selected.
    """

    def __init__(
        self,
        query: str,
        tools: Sequence[Tool],
        constraints: ToolConstraints,
        estimator: ToolCostEstimator,
        previous_results: Mapping[str, bool] | None = None,
    ):
        self.query = query
        self.tools = {tool.id: tool for tool in tools}
        self.constraints = constraints
        self.estimator = estimator
        self.relevance = {
            tool.id: tool_relevance(tool, query, previous_results) for tool in tools
        }

    def initial_state(self) -> DecisionState:
        world = WorldState(
            {
                "selected": (),
                "tools_left": self.constraints.max_tools,
                "cost_left": self.constraints.max_cost,
                "time_left": self.constraints.max_time_ms,
            }
        )
        return DecisionState(id="tools", world=world, description=f"Selecting tools for: {self.query}")

    def is_exhausted(self, world: WorldState) -> bool:
        return world["tools_left"] <= 0 or world["cost_left"] <= 0 or world["time_left"] <= 0

    def action_for(self, tool: Tool) -> Action:
        return Action(
            id=tool.id,
            name=tool.name,
            description=tool.description,
            cost=self.estimator.estimate_cost(tool),
            prior_probability=self.relevance[tool.id],
            parameters={"time_ms": self.estimator.estimate_time(tool)},
        )

    def legal_actions(self, state: DecisionState) -> list[Action]:
        world = state.world
        if state.is_terminal or self.is_exhausted(world):
            return []
        selected = set(world["selected"])
        actions = []
        for tool in self.tools.values():
            if tool.id in selected:
                continue
            if self.estimator.estimate_cost(tool) > world["cost_left"]:
                continue
            if self.estimator.estimate_time(tool) > world["time_left"]:
                continue
            actions.append(self.action_for(tool))
        if selected:
            actions.append(Action(id=STOP, name="stop", cost=0.0, parameters={"time_ms": 0.0}))
        return actions

    def apply(self, state: DecisionState, action: Action) -> DecisionState:
        if action.id == STOP:
            return state.child(
                action, world=state.world, is_terminal=True, terminal_reward=self.score(state.world)
            )
        world = state.world.update(
            selected=state.world["selected"] + (action.id,),
            tools_left=state.world["tools_left"] - 1,
            cost_left=state.world["cost_left"] - action.cost,
            time_left=state.world["time_left"] - action.parameters["time_ms"],
        )
        terminal = self.is_exhausted(world)
        return state.child(
            action,
            world=world,
            is_terminal=terminal,
            terminal_reward=self.score(world) if terminal else None,
        )

    def score(self, world: WorldState) -> float:
        """Quality of a selection in [0, 1]: query coverage times joint success."""
        selected = [self.tools[tool_id] for tool_id in world["selected"]]
        if not selected:
            return 0.0
        query_words = {w.lower() for w in _WORD.findall(self.query)}
        covered = set()
        success = 1.0
        for tool in selected:
            tool_words = [w.lower() for w in _WORD.findall(f"{tool.description} {tool.name}")]
            covered |= {w for w in query_words if any(tw in w or w in tw for tw in tool_words)}
            success *= tool.success_rate if tool.success_rate is not None else 0.9
        coverage = len(covered) / len(query_words) if query_words else 1.0
        return coverage * success


class MCTSToolSelector:
    """Selects a tool sequence for a query with an MCTS search per call.

    Args:
        config: MCTSConfig; defaults to 500 iterations, 4 rollouts per
            iteration, RAVE and priors on
        estimator: Cost/time estimator for tools
        evaluator: Optional StateEvaluator (e.g. an LLM judge) for partial
            selections
    """

    DEFAULTS: dict[str, Any] = {
        "max_iterations": 500,
        "max_time_ms": 10000.0,
        "parallel_simulations": 4,
        "exploration_constant": 1.414,
        "use_rave": True,
        "use_prior_knowledge": True,
    }

    def __init__(
        self,
        config: MCTSConfig | None = None,
        estimator: ToolCostEstimator | None = None,
        evaluator: StateEvaluator | None = None,
    ):
        if config is None:
            self.config = build_config(MCTSConfig, **self.DEFAULTS)
        else:
            self.config = build_config(MCTSConfig, config)
        self.estimator = estimator or ToolCostEstimator()
        self.evaluator = evaluator

    async def select_tools(
        self,
        query: str,
        tools: Sequence[Tool],
        constraints: ToolConstraints | None = None,
        previous_results: Mapping[str, bool] | None = None,
    ) -> ToolSelectionResult:
        """Choose an ordered tool sequence for ``query``.

        Returns an empty result when no tool fits the budget.
        """
        constraints = constraints or ToolConstraints()
        model = ToolTransitionModel(query, tools, constraints, self.estimator, previous_results)
        initial = model.initial_state()
        actions = model.legal_actions(initial)
        if not actions:
            logger.info(f"No affordable tools for query '{query}'")
            return ToolSelectionResult()

        policy = RandomRolloutPolicy(
            model=model,
            max_depth=self.config.max_simulation_depth,
            discount=self.config.discount,
            rng=random.Random(self.config.seed),
            leaf_value=lambda state: model.score(state.world),
        )
        engine = MCTSDecisionEngine(
            simulation_policy=policy,
            config=self.config,
            transition_model=model,
            evaluator=self.evaluator,
        )
        decision = await engine.decide(initial, actions)

        plan = list(decision.principal_variation)
        if not plan or plan[0] != decision.selected_action.id:
            plan = [decision.selected_action.id]
        if STOP in plan:
            plan = plan[: plan.index(STOP)]
        plan = plan[: constraints.max_tools]

        choices = []
        total_cost = 0.0
        total_time = 0.0
        for position, tool_id in enumerate(plan):
            tool = model.tools[tool_id]
            confidence = decision.confidence if position == 0 else model.relevance[tool_id]
            choices.append(
                ToolChoice(
                    tool=tool,
                    confidence=confidence,
                    expected_outcome=f"Execute {tool.name} to help answer: {query}",
                )
            )
            total_cost += self.estimator.estimate_cost(tool)
            total_time += self.estimator.estimate_time(tool)

        root_visits = max(1, decision.visit_count)
        runners_up = sorted(
            (s for s in decision.visit_stats.values() if s.action_id != decision.selected_action.id),
            key=lambda s: s.visits,
            reverse=True,
        )[:3]
        alternatives = [([s.action_id], s.visits / root_visits) for s in runners_up]

        logger.info(f"Selected tools {plan} for query '{query}' (confidence={decision.confidence:.3f})")
        return ToolSelectionResult(
            selected_tools=choices,
            execution_plan=plan,
            total_estimated_cost=total_cost,
            total_estimated_time_ms=total_time,
            success_probability=decision.confidence,
            alternative_plans=alternatives,
        )
