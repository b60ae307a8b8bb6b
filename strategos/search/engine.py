"""Monte-Carlo Tree Search decision engine.

Each macro-iteration performs:
1. Selection: descend from the root by UCB1 (optionally RAVE-blended,
   prior-boosted and restricted by progressive widening)
2. Expansion: materialise one untried action as a new child
3. Simulation: k rollouts from the new leaf, run concurrently
4. Backpropagation: the mean rollout reward is pushed up the path once
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from strategos.config import MCTSConfig, build_config
from strategos.core.actions import Action, DecisionState
from strategos.core.awaitables import resolve
from strategos.errors import NoActionsError, SimulationFault
from strategos.search.arena import NO_PARENT, NodeArena, TreeNode, TreeStats, ucb1
from strategos.search.policies import (
    EffectTransitionModel,
    PriorKnowledge,
    RandomRolloutPolicy,
    SimulationPolicy,
    SimulationResult,
    StateEvaluator,
    TransitionModel,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionStats:
    """Search statistics for one root action."""

    action_id: str
    visits: int
    value: float  # Q = W / N
    total_value: float  # W
    prior: float = 0.0
    rave_visits: int = 0
    rave_value: float | None = None


@dataclass
class DecisionResult:
    """Outcome of one decide() call."""

    selected_action: Action
    visit_stats: dict[str, ActionStats]
    confidence: float
    estimated_value: float = 0.0
    visit_count: int = 0
    principal_variation: list[str] = field(default_factory=list)
    tree_stats: TreeStats | None = None
    iterations: int = 0
    simulation_faults: int = 0
    elapsed_ms: float = 0.0
    stopped_by: str = "iterations"  # "iterations" or "time"

    def to_dict(self) -> dict[str, Any]:
        return {
            "selected_action": self.selected_action.id,
            "confidence": self.confidence,
            "estimated_value": self.estimated_value,
            "visit_count": self.visit_count,
            "visit_stats": {k: asdict(v) for k, v in self.visit_stats.items()},
            "principal_variation": list(self.principal_variation),
            "tree_stats": asdict(self.tree_stats) if self.tree_stats else None,
            "iterations": self.iterations,
            "simulation_faults": self.simulation_faults,
            "elapsed_ms": self.elapsed_ms,
            "stopped_by": self.stopped_by,
        }


class MCTSDecisionEngine:
    """Chooses an action by Monte-Carlo Tree Search.

    Collaborators are injected at construction; any of them may be sync or
    async. ``decide()`` must not be awaited concurrently on the same instance:
    backpropagation assumes a single writer per tree.

    Args:
        simulation_policy: Rollout logic. Defaults to a RandomRolloutPolicy
            over ``transition_model``
        config: MCTSConfig, validated at construction
        transition_model: Legal actions and successor states. Defaults to an
            EffectTransitionModel with no catalog (one-ply search)
        evaluator: Optional StateEvaluator blended into rollout rewards
        prior_knowledge: Optional PriorKnowledge used when
            ``config.use_prior_knowledge`` is set

    Raises:
        ConfigurationError: If the config is invalid
    """

    def __init__(
        self,
        simulation_policy: SimulationPolicy | None = None,
        config: MCTSConfig | None = None,
        transition_model: TransitionModel | None = None,
        evaluator: StateEvaluator | None = None,
        prior_knowledge: PriorKnowledge | None = None,
    ):
        self._config = build_config(MCTSConfig, config)
        self._rng = random.Random(self._config.seed)
        self.transition_model = transition_model or EffectTransitionModel()
        self._owns_policy = simulation_policy is None
        self.simulation_policy = simulation_policy or self._default_policy()
        self.evaluator = evaluator
        self.prior_knowledge = prior_knowledge
        self._arena: NodeArena | None = None
        self._faults = 0

    @property
    def config(self) -> MCTSConfig:
        return self._config

    @property
    def tree(self) -> NodeArena | None:
        """Tree of the last decide() call, kept only with ``reuse_tree``."""
        return self._arena

    def update_config(self, **overrides: Any) -> MCTSConfig:
        """Re-validate the config with ``overrides`` applied.

        Raises:
            ConfigurationError: If the resulting config is invalid
        """
        self._config = build_config(MCTSConfig, self._config, **overrides)
        if "seed" in overrides:
            self._rng = random.Random(self._config.seed)
        if self._owns_policy:
            self.simulation_policy = self._default_policy()
        if not self._config.reuse_tree:
            self._arena = None
        return self._config

    def reset(self) -> None:
        """Drop the persisted tree, including its RAVE tables."""
        self._arena = None
        self._rng = random.Random(self._config.seed)
        if self._owns_policy:
            self.simulation_policy = self._default_policy()

    def _default_policy(self) -> RandomRolloutPolicy:
        return RandomRolloutPolicy(
            model=self.transition_model,
            max_depth=self._config.max_simulation_depth,
            discount=self._config.discount,
            rng=self._rng,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def decide(
        self, initial_state: DecisionState, available_actions: Sequence[Action]
    ) -> DecisionResult:
        """Search from ``initial_state`` and return the robust root child.

        Raises:
            NoActionsError: If ``available_actions`` is empty
        """
        if not available_actions:
            raise NoActionsError(f"No actions available in state '{initial_state.id}'")

        cfg = self._config
        started = time.monotonic()
        deadline = started + cfg.max_time_ms / 1000.0
        self._faults = 0

        actions: list[Action] = []
        seen: set[str] = set()
        for action in available_actions:
            if action.id not in seen:
                seen.add(action.id)
                actions.append(action)
        arena = await self._prepare_tree(initial_state, actions)

        iterations = 0
        stopped_by = "iterations"
        while iterations < cfg.max_iterations:
            # At least one iteration always runs so the result carries statistics
            if iterations > 0 and time.monotonic() >= deadline:
                stopped_by = "time"
                break
            await self._iterate(arena)
            iterations += 1

        result = self._build_result(arena, actions, iterations, stopped_by, started)
        self._arena = arena if cfg.reuse_tree else None

        logger.info(
            f"MCTS chose '{result.selected_action.id}' after {iterations} iterations "
            f"(confidence={result.confidence:.3f}, value={result.estimated_value:.3f}, "
            f"faults={result.simulation_faults}, stopped_by={stopped_by})"
        )
        return result

    # ------------------------------------------------------------------
    # Tree setup
    # ------------------------------------------------------------------

    async def _prepare_tree(
        self, initial_state: DecisionState, actions: list[Action]
    ) -> NodeArena:
        if self._config.reuse_tree and self._arena is not None:
            reused = self._reuse_subtree(self._arena, initial_state, actions)
            if reused is not None:
                return reused

        arena = NodeArena()
        root = TreeNode(state=initial_state, actions=list(actions), untried=list(actions))
        root.priors = await self._priors(initial_state, actions)
        arena.add(root)
        return arena

    def _reuse_subtree(
        self, previous: NodeArena, initial_state: DecisionState, actions: list[Action]
    ) -> NodeArena | None:
        index = previous.find_state(initial_state.id)
        if index is None:
            return None
        node = previous[index]
        action_ids = {a.id for a in actions}
        if not set(node.children) <= action_ids:
            logger.debug(f"Discarding reused subtree for '{initial_state.id}': action set changed")
            return None

        arena = previous.extract_subtree(index)
        root = arena.root
        root.state = initial_state
        root.actions = list(actions)
        root.untried = [a for a in actions if a.id not in root.children]
        # A root never simulates on its own: drop the rollouts it ran as a leaf
        children = [arena[i] for i in root.children.values()]
        root.visits = sum(child.visits for child in children)
        root.value_sum = sum(child.value_sum for child in children)
        root.self_visits = 0
        for action in actions:
            root.priors.setdefault(action.id, self._static_prior(action, len(actions)))
        logger.debug(f"Reusing subtree for '{initial_state.id}' with {len(arena)} nodes")
        return arena

    async def _priors(self, state: DecisionState, actions: Sequence[Action]) -> dict[str, float]:
        if not self._config.use_prior_knowledge or not actions:
            return {}
        priors = {}
        for action in actions:
            priors[action.id] = self._static_prior(action, len(actions))
            if self.prior_knowledge is None:
                continue
            try:
                priors[action.id] = float(
                    await resolve(self.prior_knowledge.prior_probability(state, action))
                )
            except Exception as err:
                logger.warning(
                    f"Prior lookup for '{action.id}' in '{state.id}' failed ({err!r}); "
                    f"using {priors[action.id]:.3f}"
                )
        return priors

    @staticmethod
    def _static_prior(action: Action, count: int) -> float:
        if action.prior_probability is not None:
            return action.prior_probability
        return 1.0 / count

    # ------------------------------------------------------------------
    # One macro-iteration
    # ------------------------------------------------------------------

    async def _iterate(self, arena: NodeArena) -> None:
        index = self._select(arena)
        node = arena[index]
        if node.untried and self._can_expand(index, node):
            index = await self._expand(arena, index)

        leaf = arena[index]
        rollouts = await self._simulate(leaf.state)
        self._backpropagate(arena, index, rollouts)

    def _can_expand(self, index: int, node: TreeNode) -> bool:
        if index != 0 and node.is_terminal:
            return False
        return len(node.children) < self._child_limit(node)

    def _child_limit(self, node: TreeNode) -> int:
        threshold = self._config.progressive_widening_threshold
        if threshold is None or len(node.actions) <= threshold:
            return len(node.actions)
        return max(1, math.floor(node.visits ** self._config.widening_exponent))

    def _select(self, arena: NodeArena) -> int:
        """Descend until a node that should be expanded, or a leaf."""
        index = 0
        while True:
            node = arena[index]
            if index != 0 and node.is_terminal:
                return index
            if node.untried and self._can_expand(index, node):
                return index
            if not node.children:
                return index
            index = self._select_child(arena, node)

    def _eligible_children(self, arena: NodeArena, node: TreeNode) -> list[tuple[str, int]]:
        children = list(node.children.items())
        limit = self._child_limit(node)
        if limit >= len(children):
            return children
        # Progressive widening: only the best-ranked children compete
        ranked = sorted(
            children,
            key=lambda item: (arena[item[1]].Q, node.priors.get(item[0], 0.0)),
            reverse=True,
        )
        return ranked[:limit]

    def _select_child(self, arena: NodeArena, node: TreeNode) -> int:
        cfg = self._config
        best_index = -1
        best_score = -math.inf
        for action_id, child_index in self._eligible_children(arena, node):
            child = arena[child_index]
            q = child.Q
            if cfg.use_rave:
                rave = node.rave_value(action_id)
                if rave is not None:
                    k = cfg.rave_equivalence
                    beta = math.sqrt(k / (3 * child.visits + k))
                    q = (1 - beta) * q + beta * rave
            score = ucb1(q, child.visits, node.visits, cfg.exploration_constant)
            if cfg.use_prior_knowledge:
                score += (
                    cfg.prior_weight
                    * node.priors.get(action_id, 0.0)
                    * math.sqrt(node.visits)
                    / (1 + child.visits)
                )
            if score > best_score or best_index == -1:
                best_score = score
                best_index = child_index
        return best_index

    async def _expand(self, arena: NodeArena, index: int) -> int:
        node = arena[index]
        if self._config.use_prior_knowledge:
            action = max(node.untried, key=lambda a: node.priors.get(a.id, 0.0))
        else:
            action = self._rng.choice(node.untried)
        node.untried.remove(action)

        child_state = await resolve(self.transition_model.apply(node.state, action))
        child_actions: list[Action] = []
        if not child_state.is_terminal:
            child_actions = list(await resolve(self.transition_model.legal_actions(child_state)))

        child = TreeNode(
            state=child_state,
            parent=index,
            action_id=action.id,
            prior=node.priors.get(action.id, 0.0),
            actions=child_actions,
            untried=list(child_actions),
            priors=await self._priors(child_state, child_actions),
        )
        child_index = arena.add(child)
        logger.debug(f"Expanded '{action.id}' under '{node.state.id}' -> node {child_index}")
        return child_index

    async def _simulate(self, state: DecisionState) -> list[tuple[float, tuple[str, ...]]]:
        """Run k rollouts from ``state`` concurrently (leaf parallelization)."""
        if state.is_terminal and state.terminal_reward is not None:
            return [(state.terminal_reward, ())]

        estimate = None
        if self.evaluator is not None:
            try:
                estimate = float(await resolve(self.evaluator.evaluate(state)))
            except Exception as err:
                fault = SimulationFault(state.id, err)
                self._faults += 1
                logger.warning(f"{fault}; using plain rollout rewards")

        rollouts = await asyncio.gather(
            *(self._rollout(state) for _ in range(self._config.parallel_simulations))
        )
        if estimate is None:
            return [(reward, taken) for reward, taken, _ in rollouts]
        w = self._config.evaluator_weight
        return [
            (reward if faulted else (1 - w) * reward + w * estimate, taken)
            for reward, taken, faulted in rollouts
        ]

    async def _rollout(self, state: DecisionState) -> tuple[float, tuple[str, ...], bool]:
        try:
            raw = await resolve(self.simulation_policy.simulate(state))
        except Exception as err:
            fault = SimulationFault(state.id, err)
            self._faults += 1
            logger.warning(f"{fault}; scoring {self._config.failure_penalty}")
            return self._config.failure_penalty, (), True

        if isinstance(raw, SimulationResult):
            return float(raw.reward), tuple(raw.actions), False
        return float(raw), (), False

    def _backpropagate(
        self, arena: NodeArena, index: int, rollouts: list[tuple[float, tuple[str, ...]]]
    ) -> None:
        mean = sum(reward for reward, _ in rollouts) / len(rollouts)
        arena[index].self_visits += 1

        if self._config.use_rave:
            for reward, taken in rollouts:
                below = list(taken)
                current = index
                while current != NO_PARENT:
                    node = arena[current]
                    for action_id in dict.fromkeys(below):
                        node.update_amaf(action_id, reward)
                    if node.action_id is not None:
                        below.insert(0, node.action_id)
                    current = node.parent

        current = index
        while current != NO_PARENT:
            node = arena[current]
            node.update(mean)
            current = node.parent

    # ------------------------------------------------------------------
    # Result
    # ------------------------------------------------------------------

    def _build_result(
        self,
        arena: NodeArena,
        actions: list[Action],
        iterations: int,
        stopped_by: str,
        started: float,
    ) -> DecisionResult:
        root = arena.root
        visit_stats: dict[str, ActionStats] = {}
        for action in actions:
            child_index = root.children.get(action.id)
            child = arena[child_index] if child_index is not None else None
            visits = child.visits if child else 0
            q = child.Q if child else 0.0
            visit_stats[action.id] = ActionStats(
                action_id=action.id,
                visits=visits,
                value=q,
                total_value=child.value_sum if child else 0.0,
                prior=root.priors.get(action.id, 0.0),
                rave_visits=root.amaf_visits.get(action.id, 0),
                rave_value=root.rave_value(action.id),
            )

        # Robust child: most visits, then higher Q, then declaration order
        best = max(actions, key=lambda a: (visit_stats[a.id].visits, visit_stats[a.id].value))
        chosen = visit_stats[best.id]
        confidence = chosen.visits / root.visits if root.visits else 0.0

        return DecisionResult(
            selected_action=best,
            visit_stats=visit_stats,
            confidence=confidence,
            estimated_value=chosen.value,
            visit_count=root.visits,
            principal_variation=arena.principal_variation(),
            tree_stats=arena.stats(),
            iterations=iterations,
            simulation_faults=self._faults,
            elapsed_ms=(time.monotonic() - started) * 1000.0,
            stopped_by=stopped_by,
        )
