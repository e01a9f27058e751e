from __future__ import annotations

import math
from typing import Dict, List, Sequence

from stemflow.core.models import GraphEdge, GraphNode, NodeSuggestionContext

MAX_ANCESTRY_DEPTH = 50
DEFAULT_GRADE = 3
EMPTY_CONTENT_FALLBACK = "No content provided."


def get_ancestry(node_id: str, nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]) -> List[GraphNode]:
    """
    Return the lineage of ``node_id``: most distant ancestor first, the node itself last.

    Parents are found breadth-first along incoming edges. Within one layer, newly found
    parents are ordered by ascending x position. Cycles end the walk once every reachable
    node has been visited; they are not reported.
    """
    node_map: Dict[str, GraphNode] = {node.id: node for node in nodes}
    start = node_map.get(node_id)
    if start is None:
        return []

    incoming: Dict[str, List[str]] = {}
    for edge in edges:
        incoming.setdefault(edge.target, []).append(edge.source)

    visited = {node_id}
    ancestry: List[GraphNode] = []
    layer = [start]
    depth = 0

    while layer and depth < MAX_ANCESTRY_DEPTH:
        next_layer: List[GraphNode] = []
        for layer_node in layer:
            parents = [node_map[source] for source in incoming.get(layer_node.id, ()) if source in node_map]
            for parent in sorted(parents, key=lambda node: node.position.x):
                if parent.id in visited:
                    continue
                visited.add(parent.id)
                ancestry.append(parent)
                next_layer.append(parent)
        layer = next_layer
        depth += 1

    ancestry.reverse()
    ancestry.append(start)
    return ancestry


def format_ancestry_for_prompt(nodes: Sequence[GraphNode]) -> str:
    return "".join(
        f"[{node.type}] Node #{index}:\n{node.text.strip()}\n\n" for index, node in enumerate(nodes, 1)
    )


def _normalize_grade(value: float) -> int:
    if not isinstance(value, (int, float)) or not math.isfinite(value) or value == 0:
        return DEFAULT_GRADE
    return min(5, max(1, math.floor(value + 0.5)))


def build_node_suggestion_context(nodes: Sequence[GraphNode]) -> List[NodeSuggestionContext]:
    return [
        NodeSuggestionContext(
            id=node.id,
            type=node.type,
            grade=_normalize_grade(node.grade),
            content=node.text.strip() or EMPTY_CONTENT_FALLBACK,
        )
        for node in nodes
        if node.grade is not None
    ]
