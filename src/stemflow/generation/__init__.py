"""
Plan-then-generate workflow (planning + grounding search + generation + citation mapping)
and free-text node actions.
"""

from stemflow.generation.actions import ActionResult, NodeActionRunner
from stemflow.generation.config import GenerationSettings
from stemflow.generation.orchestrator import GenerationOrchestrator, PlanContext, PlanResult

__all__ = [
    "ActionResult",
    "GenerationOrchestrator",
    "GenerationSettings",
    "NodeActionRunner",
    "PlanContext",
    "PlanResult",
]
