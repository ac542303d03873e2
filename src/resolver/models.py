# src/resolver/models.py — v1
"""Resolver types: DependencyGraph and ResolutionResult."""

from __future__ import annotations

from dataclasses import dataclass, field

import networkx as nx

from sorodeploy.core.errors import DependencyCycleError, InvalidGraphError


@dataclass
class DependencyGraph:
    """Directed graph of local package dependencies.

    An edge (a, b) means "a requires b to complete first". Node order is
    the original scan order and is used for every deterministic tie-break.
    """

    nodes: list[str] = field(default_factory=list)
    edges: list[tuple[str, str]] = field(default_factory=list)

    def __post_init__(self) -> None:
        known = set(self.nodes)
        if len(known) != len(self.nodes):
            dupes = sorted({n for n in self.nodes if self.nodes.count(n) > 1})
            raise InvalidGraphError(f"Duplicate node ids: {dupes}")
        for src, dst in self.edges:
            if src == dst:
                raise InvalidGraphError(f"Self-dependency on '{src}' is not allowed")
            if src not in known or dst not in known:
                raise InvalidGraphError(
                    f"Edge {src!r} -> {dst!r} references a node not in the graph"
                )

    def requirements(self, node: str) -> list[str]:
        """Nodes that `node` requires, in scan order."""
        return [dst for src, dst in self.edges if src == node]

    def dependents(self, node: str) -> list[str]:
        """Nodes that require `node`, in scan order."""
        return [src for src, dst in self.edges if dst == node]

    def to_networkx(self) -> nx.DiGraph:
        """Return the graph as a networkx DiGraph (edge = requires)."""
        graph = nx.DiGraph()
        for position, node in enumerate(self.nodes):
            graph.add_node(node, position=position)
        graph.add_edges_from(self.edges, relation="requires")
        return graph


@dataclass
class ResolutionResult:
    """Outcome of dependency resolution.

    waves is a list of "levels": every member of a wave has all its
    requirements satisfied by strictly earlier waves. order and waves are
    only populated when cycles is empty.
    """

    graph: DependencyGraph = field(default_factory=DependencyGraph)
    order: list[str] = field(default_factory=list)
    waves: list[list[str]] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)

    def wave_index(self, node: str) -> int:
        """Index of the wave containing node."""
        for idx, wave in enumerate(self.waves):
            if node in wave:
                return idx
        raise KeyError(node)

    def raise_for_cycles(self) -> None:
        """Raise DependencyCycleError if resolution failed closed."""
        if self.cycles:
            raise DependencyCycleError(self.cycles)
