from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class GenerationSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Planner policy
    min_directions: int = Field(default=3, ge=1)
    planner_temperature: float = 0.4

    # Accept-time generation
    generation_temperature: float = 0.4
    search_num_results: int = 5

    # Retry policy for planner and generation calls
    max_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = 0.0

    # Ghost layout relative to the parent node
    ghost_offset_x: float = 220
    ghost_offset_y: float = 250

    # Free-text node actions place their result to the right of the source node
    action_offset_x: float = 380
