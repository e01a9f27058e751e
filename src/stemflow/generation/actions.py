from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from stemflow.core.models import (
    GraphEdge,
    GraphNode,
    Message,
    NodeAction,
    NodeType,
    Position,
    RequestOptions,
)
from stemflow.generation.config import GenerationSettings
from stemflow.generation.orchestrator import CredentialStore, ModelClient
from stemflow.graph.ancestry import get_ancestry
from stemflow.graph.store import GraphStore
from stemflow.llm.errors import (
    MISSING_KEY_MESSAGE,
    PARSE_FAILURE_MESSAGE,
    ConfigurationError,
    MalformedOutputError,
)
from stemflow.llm.prompts import NODE_ACTION_SYSTEM_PROMPT, build_action_prompt, compose_system_prompt
from stemflow.llm.retry import call_with_retries
from stemflow.llm.settings import ApiCredentials
from stemflow.llm.stream import collect_stream_text

logger = logging.getLogger(__name__)

TextCallback = Callable[[str], None]


def action_result_type(action: NodeAction, source_type: NodeType) -> NodeType:
    """Only suggest-mechanism moves along the OMV sequence; other actions keep the source type."""
    if action == "suggest-mechanism":
        if source_type == "OBSERVATION":
            return "MECHANISM"
        if source_type == "MECHANISM":
            return "VALIDATION"
    return source_type


@dataclass(frozen=True, slots=True)
class ActionResult:
    action: NodeAction
    text: str
    node: Optional[GraphNode] = None


class NodeActionRunner:
    """
    Free-text AI actions on a single node (summarize, critique, expand, questions, suggest-mechanism).

    The node's ancestry is sent as context and the reply is streamed in when streaming is
    enabled. A non-empty reply becomes a new node to the right of the source node, joined
    by an edge from the source. At most one action runs per node; ``cancel`` stops it and
    nothing is added to the graph.
    """

    def __init__(
        self,
        *,
        client: ModelClient,
        credentials: CredentialStore,
        store: GraphStore,
        settings: GenerationSettings,
        global_goal: str = "",
        stream: bool = True,
        max_output_tokens: Optional[int] = None,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._store = store
        self._settings = settings
        self._global_goal = global_goal
        self._stream = stream
        self._max_output_tokens = max_output_tokens
        self._tasks: Dict[str, "asyncio.Future[str]"] = {}

    def is_running(self, node_id: str) -> bool:
        return node_id in self._tasks

    async def execute_action(
        self,
        node_id: str,
        action: NodeAction,
        *,
        context: Optional[str] = None,
        create_node: bool = True,
        on_text: Optional[TextCallback] = None,
    ) -> Optional[ActionResult]:
        """
        Run ``action`` on ``node_id`` and return its text and the node it created.

        Returns None when an action is already running on the node or the run was cancelled.
        Failures propagate after the retry budget is spent.
        """
        if node_id in self._tasks:
            logger.info("Node action ignored; another action is running. node_id=%s action=%s", node_id, action)
            return None

        task = asyncio.ensure_future(self._request(node_id, action, context, on_text))
        self._tasks[node_id] = task
        logger.info("Node action started. node_id=%s action=%s", node_id, action)

        try:
            text = await task
        except asyncio.CancelledError:
            if self._tasks.get(node_id) is not task:
                logger.info("Node action cancelled. node_id=%s action=%s", node_id, action)
                return None
            # The caller was cancelled rather than the action.
            del self._tasks[node_id]
            task.cancel()
            raise
        finally:
            if self._tasks.get(node_id) is task and task.done():
                del self._tasks[node_id]

        text = text.strip()
        if not text or not create_node:
            return ActionResult(action=action, text=text)
        return ActionResult(action=action, text=text, node=self._add_result_node(node_id, action, text))

    def cancel(self, node_id: str) -> bool:
        task = self._tasks.pop(node_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    async def _request(
        self,
        node_id: str,
        action: NodeAction,
        extra_context: Optional[str],
        on_text: Optional[TextCallback],
    ) -> str:
        credentials = self._credentials.load_api_keys()
        if not credentials.usable:
            raise ConfigurationError(MISSING_KEY_MESSAGE)
        assert credentials.provider is not None and credentials.model is not None

        state = self._store.snapshot()
        ancestry = get_ancestry(node_id, state.nodes, state.edges)
        if not ancestry:
            raise ConfigurationError(f"Node not found: {node_id}")

        options = RequestOptions(
            provider=credentials.provider,
            model=credentials.model,
            messages=(
                Message(role="system", content=compose_system_prompt(NODE_ACTION_SYSTEM_PROMPT, self._global_goal)),
                Message(
                    role="user",
                    content=build_action_prompt(action=action, ancestry=ancestry, extra_context=extra_context),
                ),
            ),
            max_tokens=self._max_output_tokens,
        )
        return await call_with_retries(
            lambda: self._request_text(options, credentials, on_text),
            max_attempts=self._settings.max_attempts,
            delay_seconds=self._settings.retry_delay_seconds,
            label=f"{action} action",
        )

    async def _request_text(
        self,
        options: RequestOptions,
        credentials: ApiCredentials,
        on_text: Optional[TextCallback],
    ) -> str:
        if self._stream:
            return await collect_stream_text(self._client.stream(options, credentials), on_text)

        response = await self._client.complete(options, credentials)
        if response.finish_reason == "error":
            raise MalformedOutputError(PARSE_FAILURE_MESSAGE)
        if on_text is not None and response.text:
            on_text(response.text)
        return response.text

    def _add_result_node(self, node_id: str, action: NodeAction, text: str) -> Optional[GraphNode]:
        source = next((node for node in self._store.snapshot().nodes if node.id == node_id), None)
        if source is None:
            logger.warning("Source node removed before the action finished. node_id=%s action=%s", node_id, action)
            return None
        node = GraphNode(
            id=f"node-{uuid.uuid4().hex[:12]}",
            type=action_result_type(action, source.type),
            text=text,
            position=Position(x=source.position.x + self._settings.action_offset_x, y=source.position.y),
        )
        self._store.add_node(node)
        self._store.add_edge(GraphEdge(id=f"edge-{node_id}-{node.id}", source=node_id, target=node.id))
        logger.info(
            "Node action result added. node_id=%s action=%s new_node_id=%s type=%s",
            node_id,
            action,
            node.id,
            node.type,
        )
        return node
