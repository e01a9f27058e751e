from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any, Dict, List, Optional, Sequence

from stemflow.core.models import (
    NODE_TYPES,
    Citation,
    Direction,
    GeneratedStep,
    NodeType,
    SearchResult,
)
from stemflow.llm.errors import PARSE_FAILURE_MESSAGE, MalformedOutputError

logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 80
_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_FENCED_ANY = re.compile(r"```\s*([\s\S]*?)```")
_ARRAY_SPAN = re.compile(r"\[[\s\S]*\]")
_CITATION_MARKER = re.compile(r"\[\[\s*exa:(\d+)\s*\]\]", re.IGNORECASE)
_CITATION_ID = re.compile(r"exa:(\d+)", re.IGNORECASE)

_NEXT_TYPE: Dict[str, NodeType] = {
    "OBSERVATION": "MECHANISM",
    "MECHANISM": "VALIDATION",
    "VALIDATION": "OBSERVATION",
}


def expected_next_type(current: Optional[str]) -> Optional[NodeType]:
    if current is None:
        return None
    return _NEXT_TYPE.get(current)


def extract_json_payload(content: str) -> str:
    fenced = _FENCED_JSON.search(content) or _FENCED_ANY.search(content)
    if fenced:
        return fenced.group(1).strip()
    array = _ARRAY_SPAN.search(content)
    if array:
        return array.group(0).strip()
    return content.strip()


def load_json_list(content: str, *, list_key: str) -> List[Any]:
    """Parse model output into a non-empty list; accepts a bare array or ``{list_key: [...]}``."""
    try:
        payload = json.loads(extract_json_payload(content))
    except ValueError as exc:
        logger.error("AI response parsing failed. raw=%s", content[:500])
        raise MalformedOutputError(PARSE_FAILURE_MESSAGE) from exc

    if isinstance(payload, dict) and isinstance(payload.get(list_key), list):
        payload = payload[list_key]
    if not isinstance(payload, list) or not payload:
        logger.error("AI response has no items. payload_type=%s", type(payload).__name__)
        raise MalformedOutputError(PARSE_FAILURE_MESSAGE)
    return payload


def normalize_summary_title(value: object, text: str) -> str:
    if isinstance(value, str):
        cleaned = " ".join(value.split())
        if cleaned:
            return _truncate_title(cleaned)
    fallback = " ".join(text.split())
    if not fallback:
        return "Untitled"
    return _truncate_title(" ".join(fallback.split(" ")[:8]))


def _truncate_title(value: str) -> str:
    if len(value) <= MAX_TITLE_CHARS:
        return value
    return f"{value[: MAX_TITLE_CHARS - 3].rstrip()}..."


def _first_str(item: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str):
            return value
    return None


def parse_directions(
    content: str,
    *,
    source_node_id: str,
    suggested_type: Optional[NodeType],
) -> List[Direction]:
    directions: List[Direction] = []
    for index, item in enumerate(load_json_list(content, list_key="directions")):
        if not isinstance(item, dict):
            logger.error("Planner item is not an object. index=%s", index)
            raise MalformedOutputError(PARSE_FAILURE_MESSAGE)

        title = _first_str(item, "summary_title", "title", "summary")
        query = _first_str(item, "search_query", "searchQuery", "query")
        item_type = item.get("type") if item.get("type") in NODE_TYPES else None
        node_type = suggested_type or item_type
        if node_type is None or not (title or query):
            logger.error("Planner item has invalid fields. index=%s type=%s", index, item.get("type"))
            raise MalformedOutputError(PARSE_FAILURE_MESSAGE)

        summary_title = normalize_summary_title(title, query or "")
        directions.append(
            Direction(
                id=f"planner-{uuid.uuid4().hex[:12]}",
                summary_title=summary_title,
                suggested_type=node_type,
                search_query=(query or summary_title).strip(),
                source_node_id=source_node_id,
            )
        )
    return directions


def _cited_indices(text: str, declared: object) -> List[int]:
    order: List[int] = []
    for match in _CITATION_MARKER.finditer(text):
        order.append(int(match.group(1)))
    if isinstance(declared, list):
        for value in declared:
            match = _CITATION_ID.search(str(value))
            if match:
                order.append(int(match.group(1)))
    unique: List[int] = []
    for index in order:
        if index not in unique:
            unique.append(index)
    return unique


def map_citations(text: str, declared: object, sources: Sequence[SearchResult]) -> tuple[str, List[Citation]]:
    """
    Turn ``[[exa:N]]`` markers into ``[k]`` where k numbers the cited sources in order of
    first reference. Markers pointing at unknown sources are removed.
    """
    renumbered: Dict[int, int] = {}
    citations: List[Citation] = []
    for source_index in _cited_indices(text, declared):
        if not 1 <= source_index <= len(sources):
            continue
        source = sources[source_index - 1]
        renumbered[source_index] = len(citations) + 1
        citations.append(
            Citation(
                index=len(citations) + 1,
                title=source.title,
                url=source.url,
                published_date=source.published_date,
                snippet=source.text[:280] or None,
            )
        )

    def _replace(match: re.Match) -> str:
        local = renumbered.get(int(match.group(1)))
        return f"[{local}]" if local else ""

    return _CITATION_MARKER.sub(_replace, text).strip(), citations


def parse_generated_step(
    content: str,
    *,
    expected_type: NodeType,
    sources: Sequence[SearchResult],
) -> GeneratedStep:
    item = load_json_list(content, list_key="steps")[0]
    if not isinstance(item, dict):
        raise MalformedOutputError(PARSE_FAILURE_MESSAGE)
    text = _first_str(item, "text_content", "text_", "text")
    if text is None:
        logger.error("Generated step has no text. keys=%s", sorted(item))
        raise MalformedOutputError(PARSE_FAILURE_MESSAGE)

    body, citations = map_citations(text, item.get("exa_citations"), sources)
    return GeneratedStep(
        type=expected_type,
        text=body,
        summary_title=normalize_summary_title(_first_str(item, "summary_title", "title", "summary"), body),
        citations=tuple(citations),
    )
