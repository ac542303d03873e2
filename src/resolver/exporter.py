# src/resolver/exporter.py — v1
"""Export a resolved dependency graph to GraphML or node-link JSON.

Nodes carry their scan position and, when resolution succeeded, their
wave index, so the deployment plan can be inspected in graph tooling.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

import networkx as nx

from sorodeploy.resolver.models import ResolutionResult

ExportFormat = Literal["graphml", "json"]


def to_annotated_graph(result: ResolutionResult) -> nx.DiGraph:
    """Return the resolution graph with wave/cycle annotations on nodes."""
    graph = result.graph.to_networkx()
    for idx, wave in enumerate(result.waves):
        for node in wave:
            graph.nodes[node]["wave"] = idx
    in_cycle = {n for cycle in result.cycles for n in cycle}
    for node in graph.nodes:
        graph.nodes[node]["in_cycle"] = node in in_cycle
    return graph


def export_graph(
    result: ResolutionResult,
    output_path: str | Path,
    fmt: ExportFormat = "graphml",
) -> str:
    """Write the annotated graph to output_path.

    Returns:
        The path written to, as a string.

    Raises:
        ValueError: If fmt is not a supported format.
    """
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    graph = to_annotated_graph(result)

    if fmt == "graphml":
        nx.write_graphml(graph, str(path))
    elif fmt == "json":
        data = nx.node_link_data(graph)
        path.write_text(json.dumps(data, ensure_ascii=False, indent=2, default=str))
    else:
        raise ValueError(f"Unsupported graph export format: {fmt!r}")
    return str(path)
