from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Protocol, Sequence

from stemflow.core.models import (
    Citation,
    Direction,
    GenerationError,
    GhostProposal,
    GraphEdge,
    GraphNode,
    Position,
)

logger = logging.getLogger(__name__)

SchemaVersion = 1


@dataclass(frozen=True, slots=True)
class GraphState:
    nodes: tuple[GraphNode, ...] = ()
    edges: tuple[GraphEdge, ...] = ()
    ghosts: tuple[GhostProposal, ...] = ()


class GraphStore(Protocol):
    """
    The only mutation surface the generation pipeline needs.

    Every mutation replaces the whole state in one assignment, so readers never see a
    partially applied batch.
    """

    def snapshot(self) -> GraphState:
        ...

    def add_node(self, node: GraphNode) -> None:
        ...

    def add_edge(self, edge: GraphEdge) -> None:
        ...

    def set_ghost_proposals(self, proposals: Sequence[GhostProposal]) -> None:
        ...

    def update_ghost(self, proposal: GhostProposal) -> bool:
        ...

    def promote_ghost(self, ghost_id: str, node: GraphNode, edge: GraphEdge) -> bool:
        ...

    def remove_ghost(self, ghost_id: str) -> bool:
        ...


class InMemoryGraphStore:
    def __init__(self, state: Optional[GraphState] = None) -> None:
        self._state = state or GraphState()

    def snapshot(self) -> GraphState:
        return self._state

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        return next((node for node in self._state.nodes if node.id == node_id), None)

    def get_ghost(self, ghost_id: str) -> Optional[GhostProposal]:
        return next((ghost for ghost in self._state.ghosts if ghost.id == ghost_id), None)

    def add_node(self, node: GraphNode) -> None:
        if self.get_node(node.id) is not None:
            raise ValueError(f"Node already exists: {node.id}")
        self._commit(replace(self._state, nodes=(*self._state.nodes, node)))

    def add_edge(self, edge: GraphEdge) -> None:
        known = {node.id for node in self._state.nodes}
        if edge.source not in known or edge.target not in known:
            raise ValueError(f"Edge endpoints must exist. source={edge.source} target={edge.target}")
        self._commit(replace(self._state, edges=(*self._state.edges, edge)))

    def set_ghost_proposals(self, proposals: Sequence[GhostProposal]) -> None:
        known = {node.id for node in self._state.nodes}
        for proposal in proposals:
            if proposal.parent_id not in known:
                raise ValueError(f"Ghost proposal parent does not exist: {proposal.parent_id}")
        self._commit(replace(self._state, ghosts=tuple(proposals)))

    def update_ghost(self, proposal: GhostProposal) -> bool:
        if self.get_ghost(proposal.id) is None:
            return False
        ghosts = tuple(proposal if ghost.id == proposal.id else ghost for ghost in self._state.ghosts)
        self._commit(replace(self._state, ghosts=ghosts))
        return True

    def promote_ghost(self, ghost_id: str, node: GraphNode, edge: GraphEdge) -> bool:
        if self.get_ghost(ghost_id) is None:
            return False
        self._commit(
            GraphState(
                nodes=(*self._state.nodes, node),
                edges=(*self._state.edges, edge),
                ghosts=tuple(ghost for ghost in self._state.ghosts if ghost.id != ghost_id),
            )
        )
        return True

    def remove_ghost(self, ghost_id: str) -> bool:
        if self.get_ghost(ghost_id) is None:
            return False
        self._commit(replace(self._state, ghosts=tuple(g for g in self._state.ghosts if g.id != ghost_id)))
        return True

    def _commit(self, state: GraphState) -> None:
        self._state = state


class JsonFileGraphStore(InMemoryGraphStore):
    """In-memory store that writes the full state to a JSON file after every mutation."""

    def __init__(self, path: Path) -> None:
        self._path = path
        super().__init__(_load_state(path))

    def _commit(self, state: GraphState) -> None:
        _atomic_write_json(self._path, _encode_state(state))
        super()._commit(state)
        logger.debug(
            "Graph persisted. path=%s nodes=%s edges=%s ghosts=%s",
            self._path,
            len(state.nodes),
            len(state.edges),
            len(state.ghosts),
        )


def _atomic_write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    tmp_path.replace(path)


def _load_state(path: Path) -> GraphState:
    if not path.exists():
        return GraphState()
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Graph file must contain a JSON object: {path}")
    return _decode_state(payload)


def _encode_citation(citation: Citation) -> dict:
    return {
        "index": citation.index,
        "title": citation.title,
        "url": citation.url,
        "published_date": citation.published_date,
        "snippet": citation.snippet,
    }


def _decode_citation(payload: dict) -> Citation:
    return Citation(
        index=int(payload["index"]),
        title=payload.get("title", ""),
        url=payload.get("url", ""),
        published_date=payload.get("published_date"),
        snippet=payload.get("snippet"),
    )


def _encode_node(node: GraphNode) -> dict:
    return {
        "id": node.id,
        "type": node.type,
        "text": node.text,
        "position": {"x": node.position.x, "y": node.position.y},
        "summary_title": node.summary_title,
        "grade": node.grade,
        "citations": [_encode_citation(citation) for citation in node.citations],
        "source_ghost_id": node.source_ghost_id,
    }


def _decode_position(payload: Optional[dict]) -> Position:
    if not payload:
        return Position()
    return Position(x=float(payload.get("x", 0)), y=float(payload.get("y", 0)))


def _decode_node(payload: dict) -> GraphNode:
    return GraphNode(
        id=payload["id"],
        type=payload["type"],
        text=payload.get("text", ""),
        position=_decode_position(payload.get("position")),
        summary_title=payload.get("summary_title"),
        grade=payload.get("grade"),
        citations=tuple(_decode_citation(item) for item in payload.get("citations", [])),
        source_ghost_id=payload.get("source_ghost_id"),
    )


def _encode_ghost(ghost: GhostProposal) -> dict:
    direction = ghost.planner_direction
    payload = {
        "id": ghost.id,
        "parent_id": ghost.parent_id,
        "suggested_type": ghost.suggested_type,
        "status": ghost.status,
        "position": {"x": ghost.position.x, "y": ghost.position.y},
        "planner_direction": {
            "id": direction.id,
            "summary_title": direction.summary_title,
            "suggested_type": direction.suggested_type,
            "search_query": direction.search_query,
            "source_node_id": direction.source_node_id,
        },
    }
    if ghost.error:
        payload["error"] = {
            "message": ghost.error.message,
            "retryable": ghost.error.retryable,
            "code": ghost.error.code,
            "provider": ghost.error.provider,
        }
    return payload


def _decode_ghost(payload: dict) -> GhostProposal:
    direction = payload["planner_direction"]
    error = payload.get("error")
    status = payload.get("status", "proposed")
    # An in-flight generation does not survive a restart.
    if status == "pending":
        status = "proposed"
    return GhostProposal(
        id=payload["id"],
        parent_id=payload["parent_id"],
        suggested_type=payload["suggested_type"],
        status=status,
        position=_decode_position(payload.get("position")),
        planner_direction=Direction(
            id=direction["id"],
            summary_title=direction["summary_title"],
            suggested_type=direction["suggested_type"],
            search_query=direction["search_query"],
            source_node_id=direction["source_node_id"],
        ),
        error=GenerationError(**error) if error else None,
    )


def _encode_state(state: GraphState) -> dict:
    return {
        "schema_version": SchemaVersion,
        "nodes": [_encode_node(node) for node in state.nodes],
        "edges": [{"id": edge.id, "source": edge.source, "target": edge.target} for edge in state.edges],
        "ghosts": [_encode_ghost(ghost) for ghost in state.ghosts],
    }


def _decode_state(payload: dict) -> GraphState:
    return GraphState(
        nodes=tuple(_decode_node(item) for item in payload.get("nodes", [])),
        edges=tuple(
            GraphEdge(id=item["id"], source=item["source"], target=item["target"])
            for item in payload.get("edges", [])
        ),
        ghosts=tuple(_decode_ghost(item) for item in payload.get("ghosts", [])),
    )
