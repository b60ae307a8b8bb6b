"""Search-tree storage: an arena of nodes addressed by integer index.

Each node stores only search statistics plus the DecisionState it represents.
Parent and children are indices into the arena, so the tree holds no object
back-references and can be re-rooted by copying a subtree into a new arena.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from strategos.core.actions import Action, DecisionState

NO_PARENT = -1


@dataclass(slots=True)
class TreeNode:
    """Tree node with UCB1 and RAVE statistics.

    Attributes:
        state: DecisionState this node represents
        parent: Arena index of the parent (NO_PARENT for the root)
        action_id: Id of the action that led here from the parent
        prior: Prior probability of ``action_id`` at the parent
        children: Mapping action id -> arena index
        actions: All legal actions at this node, in declaration order
        untried: Legal actions not yet materialised as children
        visits: N, number of backpropagations through this node
        value_sum: W, cumulative backed-up reward
        self_visits: Backpropagations whose simulation started here
        amaf_visits: RAVE visit count per action id seen below this node
        amaf_value: RAVE cumulative reward per action id seen below this node
        priors: Prior probability per legal action id
    """

    state: DecisionState
    parent: int = NO_PARENT
    action_id: str | None = None
    prior: float = 0.0
    children: dict[str, int] = field(default_factory=dict)
    actions: list[Action] = field(default_factory=list)
    untried: list[Action] = field(default_factory=list)
    visits: int = 0
    value_sum: float = 0.0
    self_visits: int = 0
    amaf_visits: dict[str, int] = field(default_factory=dict)
    amaf_value: dict[str, float] = field(default_factory=dict)
    priors: dict[str, float] = field(default_factory=dict)

    @property
    def N(self) -> int:
        """Alias for visits (standard MCTS notation)."""
        return self.visits

    @property
    def W(self) -> float:
        """Alias for value_sum (standard MCTS notation)."""
        return self.value_sum

    @property
    def Q(self) -> float:
        """Mean value W/N, 0 for unvisited nodes."""
        if self.visits == 0:
            return 0.0
        return self.value_sum / self.visits

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def is_fully_expanded(self) -> bool:
        return not self.untried

    def rave_value(self, action_id: str) -> float | None:
        """All-moves-as-first mean for ``action_id``, None if never seen."""
        visits = self.amaf_visits.get(action_id, 0)
        if visits == 0:
            return None
        return self.amaf_value[action_id] / visits

    def update(self, value: float) -> None:
        """N <- N + 1, W <- W + value."""
        self.visits += 1
        self.value_sum += value

    def update_amaf(self, action_id: str, value: float) -> None:
        self.amaf_visits[action_id] = self.amaf_visits.get(action_id, 0) + 1
        self.amaf_value[action_id] = self.amaf_value.get(action_id, 0.0) + value


class NodeArena:
    """Flat storage for the nodes of one search tree. Index 0 is the root."""

    def __init__(self):
        self._nodes: list[TreeNode] = []
        self._by_state: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __getitem__(self, index: int) -> TreeNode:
        return self._nodes[index]

    def __iter__(self):
        return iter(self._nodes)

    @property
    def root(self) -> TreeNode:
        return self._nodes[0]

    def add(self, node: TreeNode) -> int:
        """Store ``node`` and return its index."""
        index = len(self._nodes)
        self._nodes.append(node)
        self._by_state.setdefault(node.state.id, index)
        if node.parent != NO_PARENT:
            self._nodes[node.parent].children[node.action_id] = index  # type: ignore[index]
        return index

    def find_state(self, state_id: str) -> int | None:
        """Index of the first node representing ``state_id``."""
        return self._by_state.get(state_id)

    def path_to_root(self, index: int) -> list[int]:
        """Indices from ``index`` up to the root (inclusive)."""
        path = []
        while index != NO_PARENT:
            path.append(index)
            index = self._nodes[index].parent
        return path

    def depth_of(self, index: int) -> int:
        return len(self.path_to_root(index)) - 1

    def extract_subtree(self, index: int) -> NodeArena:
        """Copy the subtree rooted at ``index`` into a new arena.

        The copied root becomes index 0 with no parent; indices are compacted.
        """
        new_arena = NodeArena()
        remap: dict[int, int] = {}
        stack = [index]
        while stack:
            old = stack.pop()
            src = self._nodes[old]
            parent = NO_PARENT if old == index else remap[src.parent]
            copy = TreeNode(
                state=src.state,
                parent=parent,
                action_id=None if old == index else src.action_id,
                prior=src.prior,
                actions=list(src.actions),
                untried=list(src.untried),
                visits=src.visits,
                value_sum=src.value_sum,
                self_visits=src.self_visits,
                amaf_visits=dict(src.amaf_visits),
                amaf_value=dict(src.amaf_value),
                priors=dict(src.priors),
            )
            remap[old] = new_arena.add(copy)
            # Reverse so children are copied in declaration order
            stack.extend(reversed(list(src.children.values())))
        return new_arena

    def principal_variation(self, max_length: int | None = None) -> list[str]:
        """Action ids along the most-visited path from the root."""
        actions: list[str] = []
        node = self.root
        while node.children and (max_length is None or len(actions) < max_length):
            best_id, best_index = max(
                node.children.items(),
                key=lambda item: (self._nodes[item[1]].visits, self._nodes[item[1]].Q),
            )
            if self._nodes[best_index].visits == 0:
                break
            actions.append(best_id)
            node = self._nodes[best_index]
        return actions

    def stats(self) -> TreeStats:
        """Aggregate statistics over the whole tree."""
        total_visits = 0
        max_depth = 0
        depth_sum = 0
        leaves = 0
        depths = [0] * len(self._nodes)
        for index, node in enumerate(self._nodes):
            if node.parent != NO_PARENT:
                depths[index] = depths[node.parent] + 1
            total_visits += node.visits
            max_depth = max(max_depth, depths[index])
            depth_sum += depths[index]
            if node.is_leaf:
                leaves += 1
        count = len(self._nodes)
        return TreeStats(
            total_nodes=count,
            total_visits=total_visits,
            max_depth=max_depth,
            average_depth=depth_sum / count if count else 0.0,
            leaf_nodes=leaves,
        )


@dataclass(frozen=True)
class TreeStats:
    """Search-tree shape summary."""

    total_nodes: int
    total_visits: int
    max_depth: int
    average_depth: float
    leaf_nodes: int


def ucb1(q: float, child_visits: int, parent_visits: int, c: float) -> float:
    """Q + c * sqrt(ln(N_parent) / N_child); unvisited children score +inf."""
    if child_visits == 0:
        return math.inf
    return q + c * math.sqrt(math.log(max(parent_visits, 1)) / child_visits)
