from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Protocol, Sequence

from stemflow.core.models import (
    Direction,
    GeneratedStep,
    GhostProposal,
    GraphNode,
    Message,
    NodeSuggestionContext,
    Position,
    RequestOptions,
    Response,
    StreamChunk,
)
from stemflow.generation.config import GenerationSettings
from stemflow.generation.parsing import expected_next_type, parse_directions, parse_generated_step
from stemflow.graph.ancestry import build_node_suggestion_context, get_ancestry
from stemflow.graph.store import GraphStore
from stemflow.llm.errors import (
    MISSING_KEY_MESSAGE,
    PARSE_FAILURE_MESSAGE,
    TRUNCATED_MESSAGE,
    ConfigurationError,
    MalformedOutputError,
)
from stemflow.llm.prompts import (
    GENERATION_SYSTEM_PROMPT,
    PLANNER_SYSTEM_PROMPT,
    build_direction_prompt,
    build_planner_prompt,
    compose_system_prompt,
)
from stemflow.llm.retry import call_with_retries
from stemflow.llm.settings import ApiCredentials
from stemflow.llm.stream import collect_stream_text
from stemflow.search.exa import SearchClient

logger = logging.getLogger(__name__)

_TRUNCATION_REASONS = frozenset({"length", "max_tokens", "MAX_TOKENS"})


class ModelClient(Protocol):
    async def complete(self, options: RequestOptions, credentials: ApiCredentials) -> Response:
        ...

    def stream(self, options: RequestOptions, credentials: ApiCredentials) -> AsyncIterator[StreamChunk]:
        ...


class CredentialStore(Protocol):
    def load_api_keys(self) -> ApiCredentials:
        ...


@dataclass(frozen=True, slots=True)
class PlanContext:
    source_node_id: str
    ancestry: Sequence[GraphNode]
    graded_nodes: Sequence[NodeSuggestionContext]
    credentials: ApiCredentials


@dataclass(frozen=True, slots=True)
class PlanResult:
    context: PlanContext
    directions: Sequence[Direction]
    proposals: Sequence[GhostProposal]


class GenerationOrchestrator:
    """
    Plan-then-generate workflow.

    ``generate`` asks the model for independent research directions and turns them into
    ghost proposals without body text. ``generate_step_from_direction`` grounds one
    direction with a web search and writes the note; it runs when a proposal is accepted.
    Errors are never swallowed here; callers decide how to surface them.
    """

    def __init__(
        self,
        *,
        client: ModelClient,
        search: SearchClient,
        credentials: CredentialStore,
        store: GraphStore,
        settings: GenerationSettings,
        global_goal: str = "",
        stream: bool = False,
        max_output_tokens: Optional[int] = None,
    ) -> None:
        self._client = client
        self._search = search
        self._credentials = credentials
        self._store = store
        self._settings = settings
        self._global_goal = global_goal
        self._stream = stream
        self._max_output_tokens = max_output_tokens

    def resolve_context(self, source_node_id: str) -> PlanContext:
        credentials = self._credentials.load_api_keys()
        if not credentials.usable:
            raise ConfigurationError(MISSING_KEY_MESSAGE)

        state = self._store.snapshot()
        ancestry = get_ancestry(source_node_id, state.nodes, state.edges)
        if not ancestry:
            raise ConfigurationError(f"Node not found: {source_node_id}")
        return PlanContext(
            source_node_id=source_node_id,
            ancestry=tuple(ancestry),
            graded_nodes=tuple(build_node_suggestion_context(state.nodes)),
            credentials=credentials,
        )

    async def plan_directions(self, context: PlanContext) -> List[Direction]:
        source = context.ancestry[-1]
        expected_type = expected_next_type(source.type)
        prompt = build_planner_prompt(
            ancestry=context.ancestry,
            expected_type=expected_type,
            graded_nodes=context.graded_nodes,
            min_directions=self._settings.min_directions,
        )
        messages = [
            Message(role="system", content=compose_system_prompt(PLANNER_SYSTEM_PROMPT, self._global_goal)),
            Message(role="user", content=prompt),
        ]
        content = await call_with_retries(
            lambda: self._complete_text(messages, self._settings.planner_temperature, context.credentials),
            max_attempts=self._settings.max_attempts,
            delay_seconds=self._settings.retry_delay_seconds,
            label="planner call",
        )
        directions = parse_directions(content, source_node_id=source.id, suggested_type=expected_type)
        if len(directions) < self._settings.min_directions:
            raise MalformedOutputError(
                f"AI returned fewer than {self._settings.min_directions} planned directions"
            )
        logger.info("Planned directions. source_node_id=%s count=%s", source.id, len(directions))
        return directions

    async def generate(self, source_node_id: str) -> PlanResult:
        context = self.resolve_context(source_node_id)
        directions = await self.plan_directions(context)
        parent = context.ancestry[-1]
        proposals = tuple(
            GhostProposal(
                id=f"ghost-{uuid.uuid4().hex[:12]}",
                parent_id=parent.id,
                suggested_type=direction.suggested_type,
                planner_direction=direction,
                position=Position(
                    x=parent.position.x + index * self._settings.ghost_offset_x,
                    y=parent.position.y + self._settings.ghost_offset_y,
                ),
            )
            for index, direction in enumerate(directions)
        )
        return PlanResult(context=context, directions=tuple(directions), proposals=proposals)

    async def generate_step_from_direction(self, direction: Direction, context: PlanContext) -> GeneratedStep:
        search = await self._search.search(direction.search_query, num_results=self._settings.search_num_results)
        if search.error:
            logger.warning(
                "Grounding search failed; generating without sources. direction_id=%s error=%s",
                direction.id,
                search.error,
            )

        prompt = build_direction_prompt(direction=direction, ancestry=context.ancestry, sources=search.results)
        messages = [
            Message(role="system", content=compose_system_prompt(GENERATION_SYSTEM_PROMPT, self._global_goal)),
            Message(role="user", content=prompt),
        ]
        content = await call_with_retries(
            lambda: self._complete_text(messages, self._settings.generation_temperature, context.credentials),
            max_attempts=self._settings.max_attempts,
            delay_seconds=self._settings.retry_delay_seconds,
            label="direction generation call",
        )
        step = parse_generated_step(content, expected_type=direction.suggested_type, sources=search.results)
        logger.info(
            "Generated step. direction_id=%s citations=%s chars=%s",
            direction.id,
            len(step.citations),
            len(step.text),
        )
        return step

    async def generate_next_steps(self, source_node_id: str) -> List[GeneratedStep]:
        """Plan, then ground and generate every direction; one failed direction fails the call."""
        context = self.resolve_context(source_node_id)
        directions = await self.plan_directions(context)
        tasks = [asyncio.ensure_future(self.generate_step_from_direction(d, context)) for d in directions]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    async def _complete_text(
        self,
        messages: Sequence[Message],
        temperature: Optional[float],
        credentials: ApiCredentials,
    ) -> str:
        assert credentials.provider is not None and credentials.model is not None
        options = RequestOptions(
            provider=credentials.provider,
            model=credentials.model,
            messages=tuple(messages),
            temperature=temperature,
            max_tokens=self._max_output_tokens,
        )
        if self._stream:
            return await collect_stream_text(self._client.stream(options, credentials))

        response = await self._client.complete(options, credentials)
        if response.finish_reason in _TRUNCATION_REASONS:
            raise MalformedOutputError(TRUNCATED_MESSAGE)
        if response.finish_reason == "error":
            raise MalformedOutputError(PARSE_FAILURE_MESSAGE)
        return response.text
