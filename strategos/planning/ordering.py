"""Deterministic topological ordering over string-keyed DAGs."""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Mapping

from strategos.errors import CyclicOrderingError


def topological_sort(
    nodes: Iterable[str],
    edges: Mapping[str, Iterable[str]],
    rank: Mapping[str, int] | None = None,
) -> list[str]:
    """Kahn's algorithm; among ready nodes the lowest ``rank`` goes first.

    Args:
        nodes: All node ids
        edges: Mapping node -> successors (each must be in ``nodes``)
        rank: Tie-break rank per node (defaults to iteration order of ``nodes``)

    Returns:
        Node ids in topological order

    Raises:
        CyclicOrderingError: If the graph has a cycle (``cycle`` lists the
            nodes that could not be ordered)
    """
    order = list(nodes)
    if rank is None:
        rank = {node: i for i, node in enumerate(order)}

    in_degree = {node: 0 for node in order}
    for node in order:
        for succ in edges.get(node, ()):
            in_degree[succ] += 1

    heap = [(rank[node], node) for node in order if in_degree[node] == 0]
    heapq.heapify(heap)
    result: list[str] = []
    while heap:
        _, node = heapq.heappop(heap)
        result.append(node)
        for succ in edges.get(node, ()):
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                heapq.heappush(heap, (rank[succ], succ))

    if len(result) != len(order):
        stuck = tuple(sorted((n for n in order if in_degree[n] > 0), key=lambda n: rank[n]))
        raise CyclicOrderingError(f"Ordering constraints contain a cycle among {list(stuck)}", stuck)
    return result


def transitive_reduction(
    order: list[str], edges: Mapping[str, Iterable[str]]
) -> dict[str, set[str]]:
    """Drop edges implied by longer paths. ``order`` must be topological."""
    reachable: dict[str, set[str]] = {}
    for node in reversed(order):
        reach: set[str] = set()
        for succ in edges.get(node, ()):
            reach.add(succ)
            reach |= reachable[succ]
        reachable[node] = reach

    reduced: dict[str, set[str]] = {}
    for node in order:
        succs = set(edges.get(node, ()))
        reduced[node] = {
            v for v in succs if not any(v in reachable[w] for w in succs if w != v)
        }
    return reduced
