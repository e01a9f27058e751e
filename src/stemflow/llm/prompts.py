from __future__ import annotations

from typing import List, Optional, Sequence

from stemflow.core.models import Direction, GraphNode, NodeAction, NodeSuggestionContext, NodeType, SearchResult
from stemflow.graph.ancestry import format_ancestry_for_prompt

PLANNER_SYSTEM_PROMPT = (
    "You are a scientific research planner working in the Observation-Mechanism-Validation (OMV) framework. "
    "You propose distinct, independent directions of investigation. Output must be valid JSON."
)

GENERATION_SYSTEM_PROMPT = (
    "You are a scientific research assistant working in the Observation-Mechanism-Validation (OMV) framework. "
    "You write one grounded research note and cite the provided sources. Output must be valid JSON."
)

NODE_ACTION_SYSTEM_PROMPT = (
    "You are assisting with scientific research using the Observation-Mechanism-Validation (OMV) framework."
)

_ACTION_INSTRUCTIONS: dict[str, str] = {
    "summarize": "Summarize the context into a concise observation.",
    "suggest-mechanism": "Suggest a plausible mechanism based on the context.",
    "critique": "Critique the reasoning gaps or weaknesses in the context.",
    "expand": "Expand the context with additional relevant details.",
    "questions": "Generate clarifying questions based on the context.",
}
_SUGGEST_VALIDATION_INSTRUCTION = (
    "Suggest a concrete experiment or analysis that would validate the mechanism in the context."
)

_MAX_GUIDANCE_NODES = 10
_MAX_SOURCE_CHARS = 1200


def compose_system_prompt(base_prompt: str, global_goal: str) -> str:
    parts: List[str] = []
    if base_prompt.strip():
        parts.append(base_prompt.strip())
    if global_goal.strip():
        parts.append(f"Global research goal:\n{global_goal.strip()}")
    return "\n\n".join(parts).strip()


def format_node_guidance(nodes: Sequence[NodeSuggestionContext]) -> str:
    if not nodes:
        return "No graded nodes were provided."

    ordered = sorted(nodes, key=lambda node: node.grade, reverse=True)
    prioritized = [node for node in ordered if node.grade >= 4]
    downweighted = [node for node in ordered if node.grade == 1]

    sections: List[str] = []
    if prioritized:
        sections.append("High-priority nodes (grade 4-5):")
        for index, node in enumerate(prioritized[:_MAX_GUIDANCE_NODES], 1):
            sections.extend([f"{index}. [{node.id}]", f"   Type: {node.type}", f"   Content: {node.content}"])
    else:
        sections.append("No nodes graded 4 or 5 yet.")

    if downweighted:
        sections.append("Nodes to avoid (grade 1):")
        for index, node in enumerate(downweighted[:_MAX_GUIDANCE_NODES], 1):
            sections.extend([f"{index}. [{node.id}]", f"   Type: {node.type}", f"   Content: {node.content}"])

    return "\n".join(sections)


def _ancestry_block(ancestry: Sequence[GraphNode]) -> str:
    return format_ancestry_for_prompt(ancestry).strip() or "No ancestry context provided."


def build_planner_prompt(
    *,
    ancestry: Sequence[GraphNode],
    expected_type: Optional[NodeType],
    graded_nodes: Sequence[NodeSuggestionContext],
    min_directions: int,
) -> str:
    current = ancestry[-1] if ancestry else None
    if expected_type and current is not None:
        sequence_rule = (
            f"STRICT SEQUENCE RULE: The current node is {current.type}. "
            f'Every direction will become a "{expected_type}" node.'
        )
    else:
        sequence_rule = "Follow the OMV sequence based on the current context."

    return "\n".join(
        [
            f"Ancestry context:\n{_ancestry_block(ancestry)}",
            f"Propose {min_directions} to 5 distinct next research directions.",
            sequence_rule,
            "Graded node context:",
            format_node_guidance(graded_nodes),
            "Prioritization rule: strongly prioritize directions aligned with nodes graded 4 or 5 stars.",
            "Avoid or heavily downweight directions that resemble nodes graded 1 star unless absolutely necessary.",
            "Each direction needs a concise \"summary_title\" (3-8 words) and a \"search_query\" suitable for a web search "
            "that would find evidence for it.",
            "",
            "CRITICAL: You must respond with ONLY a valid JSON array. No explanations, no markdown, no additional text.",
            'Format: [{"summary_title": "short title", "search_query": "web search query"}, ...]',
        ]
    )


def format_sources(results: Sequence[SearchResult]) -> str:
    if not results:
        return "No external sources were found. Do not invent citations."
    blocks: List[str] = []
    for index, result in enumerate(results, 1):
        lines = [f"[exa:{index}] {result.title or 'Untitled source'}"]
        if result.url:
            lines.append(f"URL: {result.url}")
        if result.published_date:
            lines.append(f"Published: {result.published_date}")
        text = result.text.strip()
        if text:
            lines.append(text[:_MAX_SOURCE_CHARS])
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def build_direction_prompt(
    *,
    direction: Direction,
    ancestry: Sequence[GraphNode],
    sources: Sequence[SearchResult],
) -> str:
    return "\n".join(
        [
            f"Ancestry context:\n{_ancestry_block(ancestry)}",
            f"Selected direction: {direction.summary_title}",
            f"Write exactly one {direction.suggested_type} node that develops this direction.",
            "Sources:",
            format_sources(sources),
            "Cite sources inline with markers like [[exa:1]] and list every cited marker in \"exa_citations\".",
            'Writing style rule: in "text_content", use markdown emphasis to highlight key scientific terms. '
            "Use **bold** for the most important terms and *italic* for secondary emphasis. Keep emphasis sparse.",
            "",
            "CRITICAL: You must respond with ONLY a valid JSON array containing one object. No additional text.",
            f'Format: [{{"type": "{direction.suggested_type}", "summary_title": "short summary", '
            '"text_content": "description with [[exa:1]] markers", "exa_citations": ["exa:1"]}]',
        ]
    )


def action_instruction(action: NodeAction, source_type: Optional[NodeType]) -> str:
    if action == "suggest-mechanism" and source_type == "MECHANISM":
        return _SUGGEST_VALIDATION_INSTRUCTION
    instruction = _ACTION_INSTRUCTIONS.get(action)
    if instruction is None:
        raise ValueError(f"Unsupported node action: {action}")
    return instruction


def build_action_prompt(
    *,
    action: NodeAction,
    ancestry: Sequence[GraphNode],
    extra_context: Optional[str] = None,
) -> str:
    source_type = ancestry[-1].type if ancestry else None
    context = [format_ancestry_for_prompt(ancestry).strip(), (extra_context or "").strip()]
    body = "\n\n".join(part for part in context if part)
    return f"{action_instruction(action, source_type)}\n\n{body}".strip()
