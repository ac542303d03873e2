# src/batch/planner.py — v1
"""Turn a resolved dependency graph into executable batch items."""

from __future__ import annotations

import logging
import os
from typing import Sequence

from sorodeploy.core.errors import InvalidGraphError
from sorodeploy.core.models import BatchItem, DirectorySource, ManifestNode
from sorodeploy.resolver.models import ResolutionResult

logger = logging.getLogger(__name__)


def build_batch_items(
    result: ResolutionResult, nodes: Sequence[ManifestNode],
) -> list[BatchItem]:
    """Create one BatchItem per node, in resolution order.

    Each item deploys its manifest directory and depends on the nodes its
    manifest requires.

    Raises:
        DependencyCycleError: If resolution failed on cycles.
        InvalidGraphError: If a node in the result is missing from nodes.
    """
    result.raise_for_cycles()
    by_id = {node.id: node for node in nodes}

    items: list[BatchItem] = []
    for node_id in result.order:
        node = by_id.get(node_id)
        if node is None:
            raise InvalidGraphError(f"Resolved node '{node_id}' has no manifest")
        directory = node.manifest_dir or os.path.dirname(node.id) or "."
        items.append(BatchItem(
            id=node.id,
            name=node.name,
            source=DirectorySource(path=directory),
            depends_on=frozenset(result.graph.requirements(node_id)),
        ))
    logger.debug("Planned %d batch item(s)", len(items))
    return items
