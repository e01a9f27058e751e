from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from stemflow.core.models import GeneratedStep, GhostProposal, GraphEdge, GraphNode
from stemflow.generation.orchestrator import GenerationOrchestrator, PlanContext, PlanResult
from stemflow.graph.store import GraphStore
from stemflow.llm.errors import to_generation_error

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Attempt:
    context: Optional[PlanContext]
    task: Optional["asyncio.Future[GeneratedStep]"] = None


class GhostStagingMachine:
    """
    Tracks ghost proposals through proposed -> pending -> (promoted | error).

    Only one generation runs per ghost. Results that arrive after the ghost was dismissed,
    cancelled or restaged are discarded without touching the graph.
    """

    def __init__(self, *, orchestrator: GenerationOrchestrator, store: GraphStore) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._contexts: Dict[str, PlanContext] = {}
        self._attempts: Dict[str, _Attempt] = {}

    @property
    def orchestrator(self) -> GenerationOrchestrator:
        return self._orchestrator

    async def propose(self, source_node_id: str) -> List[GhostProposal]:
        plan = await self._orchestrator.generate(source_node_id)
        self.stage(plan)
        return list(plan.proposals)

    def stage(self, plan: PlanResult) -> None:
        """Replace every staged ghost with the plan's proposals in one store update."""
        for ghost_id in list(self._attempts):
            self._abandon(ghost_id, cancel=True)
        self._store.set_ghost_proposals(plan.proposals)
        self._contexts = {proposal.id: plan.context for proposal in plan.proposals}
        logger.info(
            "Ghost proposals staged. source_node_id=%s count=%s",
            plan.context.source_node_id,
            len(plan.proposals),
        )

    def is_pending(self, ghost_id: str) -> bool:
        return ghost_id in self._attempts

    async def accept(self, ghost_id: str) -> Optional[GraphNode]:
        """
        Generate the body for a ghost and promote it into a real node.

        Returns the new node, or None when the ghost is missing, already pending, failed
        (the ghost is left in the error state), or was dismissed while generating.
        """
        ghost = self._find(ghost_id)
        if ghost is None:
            logger.warning("Accept ignored; ghost not found. ghost_id=%s", ghost_id)
            return None
        if ghost.status == "pending" or ghost_id in self._attempts:
            logger.info("Accept ignored; generation already in flight. ghost_id=%s", ghost_id)
            return None

        self._store.update_ghost(replace(ghost, status="pending", error=None))
        attempt = _Attempt(context=self._contexts.get(ghost_id))
        attempt.task = asyncio.ensure_future(self._generate(ghost, attempt))
        self._attempts[ghost_id] = attempt
        logger.info("Ghost generation started. ghost_id=%s query=%s", ghost_id, ghost.planner_direction.search_query)

        try:
            step = await attempt.task
        except asyncio.CancelledError:
            if not self._is_current(ghost_id, attempt):
                return None
            # The caller was cancelled rather than the ghost.
            self._abandon(ghost_id, cancel=True)
            self._reset_to_proposed(ghost_id)
            raise
        except Exception as exc:
            if not self._is_current(ghost_id, attempt):
                logger.info("Discarding failed generation for a stale ghost. ghost_id=%s", ghost_id)
                return None
            del self._attempts[ghost_id]
            self._mark_error(ghost_id, exc)
            return None

        if not self._is_current(ghost_id, attempt):
            logger.info("Discarding generation result for a stale ghost. ghost_id=%s", ghost_id)
            return None
        del self._attempts[ghost_id]
        return self._promote(ghost_id, step)

    async def retry(self, ghost_id: str) -> Optional[GraphNode]:
        ghost = self._find(ghost_id)
        if ghost is None or ghost.status != "error":
            logger.info("Retry ignored; ghost is not in error state. ghost_id=%s", ghost_id)
            return None
        return await self.accept(ghost_id)

    def cancel(self, ghost_id: str) -> bool:
        """Stop an in-flight generation and return the ghost to proposed."""
        if ghost_id not in self._attempts:
            return False
        self._abandon(ghost_id, cancel=True)
        self._reset_to_proposed(ghost_id)
        logger.info("Ghost generation cancelled. ghost_id=%s", ghost_id)
        return True

    def dismiss(self, ghost_id: str) -> bool:
        """Remove a ghost in any state; an in-flight generation is left to finish and ignored."""
        self._abandon(ghost_id, cancel=False)
        self._contexts.pop(ghost_id, None)
        removed = self._store.remove_ghost(ghost_id)
        if removed:
            logger.info("Ghost dismissed. ghost_id=%s", ghost_id)
        return removed

    def dismiss_all(self) -> int:
        ghost_ids = [ghost.id for ghost in self._store.snapshot().ghosts]
        return sum(1 for ghost_id in ghost_ids if self.dismiss(ghost_id))

    async def _generate(self, ghost: GhostProposal, attempt: _Attempt) -> GeneratedStep:
        # Dismissed or restaged before the task got its first turn.
        if not self._is_current(ghost.id, attempt):
            raise asyncio.CancelledError()
        if attempt.context is None:
            attempt.context = self._orchestrator.resolve_context(ghost.parent_id)
            self._contexts[ghost.id] = attempt.context
        return await self._orchestrator.generate_step_from_direction(ghost.planner_direction, attempt.context)

    def _promote(self, ghost_id: str, step: GeneratedStep) -> Optional[GraphNode]:
        ghost = self._find(ghost_id)
        if ghost is None:
            return None
        node = GraphNode(
            id=f"node-{uuid.uuid4().hex[:12]}",
            type=ghost.suggested_type,
            text=step.text,
            position=ghost.position,
            summary_title=step.summary_title,
            citations=step.citations,
            source_ghost_id=ghost.id,
        )
        edge = GraphEdge(id=f"edge-{ghost.parent_id}-{node.id}", source=ghost.parent_id, target=node.id)
        if not self._store.promote_ghost(ghost_id, node, edge):
            return None
        self._contexts.pop(ghost_id, None)
        logger.info(
            "Ghost promoted. ghost_id=%s node_id=%s parent_id=%s citations=%s",
            ghost_id,
            node.id,
            ghost.parent_id,
            len(node.citations),
        )
        return node

    def _mark_error(self, ghost_id: str, exc: Exception) -> None:
        ghost = self._find(ghost_id)
        if ghost is None:
            return
        error = to_generation_error(exc)
        if error.provider is None:
            context = self._contexts.get(ghost_id)
            if context is not None:
                error = replace(error, provider=context.credentials.provider)
        self._store.update_ghost(replace(ghost, status="error", error=error))
        logger.warning(
            "Ghost generation failed. ghost_id=%s code=%s retryable=%s error=%s",
            ghost_id,
            error.code,
            error.retryable,
            error.message,
        )

    def _reset_to_proposed(self, ghost_id: str) -> None:
        ghost = self._find(ghost_id)
        if ghost is not None and ghost.status == "pending":
            self._store.update_ghost(replace(ghost, status="proposed", error=None))

    def _abandon(self, ghost_id: str, *, cancel: bool) -> None:
        attempt = self._attempts.pop(ghost_id, None)
        if attempt is not None and cancel:
            attempt.task.cancel()

    def _is_current(self, ghost_id: str, attempt: _Attempt) -> bool:
        return self._attempts.get(ghost_id) is attempt

    def _find(self, ghost_id: str) -> Optional[GhostProposal]:
        return next((ghost for ghost in self._store.snapshot().ghosts if ghost.id == ghost_id), None)
