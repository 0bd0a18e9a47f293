"""Featured set and backfill job models."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class BackfillJob(BaseModel):
    """Delayed replenishment of the featured set. At most one exists."""
    scheduled_at: float
    execute_at: float
    shortfall: int
    target_count: int
    current_count_at_schedule: int
    status: Literal["pending"] = "pending"


class BackfillStatus(BaseModel):
    """Read-only projection of the scheduler state for pollers."""
    pending: bool = False
    is_ready: bool = False
    time_remaining: float = 0.0
    job: BackfillJob | None = None


class FeaturedLimits(BaseModel):
    min: int
    max: int
    current: int


class ToggleResult(BaseModel):
    featured_ids: list[str] = Field(default_factory=list)
    action: Literal["added", "removed"]
    auto_backfill_scheduled: bool = False
    shortfall: int | None = None
    execute_at: float | None = None
    limits: FeaturedLimits


class BackfillOutcome(BaseModel):
    """What a backfill check/execution did.

    status:
      - idle       no job stored
      - not_due    job pending, execute_at in the future
      - satisfied  job due but the set had already recovered; job deleted
      - executed   ids added, job deleted
      - failed     execution raised; job left in place for the next check
    """
    status: Literal["idle", "not_due", "satisfied", "executed", "failed"]
    added: list[str] = Field(default_factory=list)
    needed: int = 0
    partial: bool = False
    featured_count: int | None = None
    time_remaining: float | None = None
