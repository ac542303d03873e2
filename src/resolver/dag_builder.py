# src/resolver/dag_builder.py — v1
"""Dependency resolver — manifests to graph to waves.

Builds the local dependency graph from declared dependency names, detects
cycles with a three-color depth-first traversal, and computes topological
waves with Kahn's algorithm. Pure: no I/O, no concurrency.

A declared dependency becomes an edge only when it textually matches the
id or name of another scanned package. Anything else is an external crate.
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from sorodeploy.core.errors import DependencyCycleError, InvalidGraphError
from sorodeploy.core.models import BatchItem, ManifestNode
from sorodeploy.resolver.models import DependencyGraph, ResolutionResult

logger = logging.getLogger(__name__)

_WHITE, _GRAY, _BLACK = 0, 1, 2


def build_graph(nodes: Sequence[ManifestNode]) -> DependencyGraph:
    """Build the local dependency graph from scanned manifests.

    Raises:
        InvalidGraphError: If two manifests share an id.
    """
    ids = [n.id for n in nodes]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise InvalidGraphError(f"Duplicate manifest ids: {dupes}")

    position = {node_id: idx for idx, node_id in enumerate(ids)}
    lookup: dict[str, str] = {}
    for node in nodes:
        lookup.setdefault(node.id, node.id)
    for node in nodes:
        if node.name in lookup and lookup[node.name] != node.id:
            logger.warning(
                "Package name '%s' is ambiguous; keeping %s, ignoring %s",
                node.name, lookup[node.name], node.id,
            )
            continue
        lookup.setdefault(node.name, node.id)

    edges: list[tuple[str, str]] = []
    for node in nodes:
        targets: set[str] = set()
        for dep_name in node.declared_dependency_names:
            target = lookup.get(dep_name)
            if target is None or target == node.id:
                continue
            targets.add(target)
        for target in sorted(targets, key=position.__getitem__):
            edges.append((node.id, target))

    return DependencyGraph(nodes=ids, edges=edges)


def find_cycles(graph: DependencyGraph) -> list[list[str]]:
    """Find cycles via iterative three-color DFS in scan order.

    Each back-edge to an in-progress node yields one cycle, read off the
    current DFS path from the back-edge target to the top, with the target
    repeated at the end. Rotations of an already reported cycle are dropped.
    """
    adjacency: dict[str, list[str]] = {n: [] for n in graph.nodes}
    for src, dst in graph.edges:
        adjacency[src].append(dst)

    color = {n: _WHITE for n in graph.nodes}
    cycles: list[list[str]] = []
    seen: set[tuple[str, ...]] = set()

    for root in graph.nodes:
        if color[root] != _WHITE:
            continue
        path: list[str] = [root]
        stack = [iter(adjacency[root])]
        color[root] = _GRAY

        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                color[path.pop()] = _BLACK
                continue
            if color[nxt] == _WHITE:
                color[nxt] = _GRAY
                path.append(nxt)
                stack.append(iter(adjacency[nxt]))
            elif color[nxt] == _GRAY:
                members = path[path.index(nxt):]
                key = _canonical(members)
                if key not in seen:
                    seen.add(key)
                    cycles.append(members + [nxt])

    return cycles


def compute_waves(graph: DependencyGraph) -> list[list[str]]:
    """Kahn's algorithm with level tracking.

    Each wave holds the nodes whose remaining requirement count reached
    zero, in scan order.

    Raises:
        DependencyCycleError: If the graph is not acyclic.
    """
    remaining = {n: 0 for n in graph.nodes}
    dependents: dict[str, list[str]] = {n: [] for n in graph.nodes}
    for src, dst in graph.edges:
        remaining[src] += 1
        dependents[dst].append(src)

    waves: list[list[str]] = []
    current = [n for n in graph.nodes if remaining[n] == 0]
    processed = 0

    while current:
        waves.append(current)
        processed += len(current)
        ready: set[str] = set()
        for node in current:
            for dependent in dependents[node]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    ready.add(dependent)
        current = [n for n in graph.nodes if n in ready]

    if processed != len(graph.nodes):
        raise DependencyCycleError(find_cycles(graph))
    return waves


def resolve_dependencies(nodes: Sequence[ManifestNode]) -> ResolutionResult:
    """Resolve scanned manifests into a deployment order.

    Fails closed: when any cycle exists, all cycles are returned and
    order/waves stay empty.

    Raises:
        InvalidGraphError: If the manifests themselves are malformed.
    """
    graph = build_graph(nodes)
    cycles = find_cycles(graph)
    if cycles:
        logger.error(
            "Dependency resolution failed: %d cycle(s) %s",
            len(cycles), [" -> ".join(c) for c in cycles],
        )
        return ResolutionResult(graph=graph, cycles=cycles)

    waves = compute_waves(graph)
    result = ResolutionResult(
        graph=graph,
        order=[n for wave in waves for n in wave],
        waves=waves,
    )
    logger.info(
        "Dependency graph resolved: %d packages, %d edges, %d waves → %s",
        len(graph.nodes), len(graph.edges), len(waves), result.order,
    )
    return result


def item_graph(items: Iterable[BatchItem]) -> DependencyGraph:
    """Build a DependencyGraph from batch items' depends_on sets.

    Raises:
        InvalidGraphError: On duplicate ids, self-dependencies, or
            dependencies on ids that are not part of the batch.
    """
    items = list(items)
    ids = [i.id for i in items]
    known = set(ids)
    position = {item_id: idx for idx, item_id in enumerate(ids)}
    edges: list[tuple[str, str]] = []
    for item in items:
        for dep in item.depends_on:
            if dep == item.id:
                raise InvalidGraphError(f"Item '{item.id}' depends on itself")
            if dep not in known:
                raise InvalidGraphError(
                    f"Item '{item.id}' depends on '{dep}' which is not part of the batch"
                )
        for dep in sorted(item.depends_on, key=position.__getitem__):
            edges.append((item.id, dep))
    return DependencyGraph(nodes=ids, edges=edges)


def compute_item_waves(items: Sequence[BatchItem]) -> list[list[str]]:
    """Recompute waves of item ids from depends_on.

    Raises:
        InvalidGraphError: If the item graph is malformed.
        DependencyCycleError: If the item graph has cycles.
    """
    graph = item_graph(items)
    cycles = find_cycles(graph)
    if cycles:
        raise DependencyCycleError(cycles)
    return compute_waves(graph)


def _canonical(members: list[str]) -> tuple[str, ...]:
    """Rotation-invariant key for a cycle."""
    pivot = members.index(min(members))
    return tuple(members[pivot:] + members[:pivot])
