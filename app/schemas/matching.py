"""
Pydantic schemas for the matching operational endpoints.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class QueueStats(BaseModel):
    """Matching queue depth and health."""
    pending: int
    running: int
    done: int
    failed: int
    avg_wait_ms: int


class EnqueueRequest(BaseModel):
    """Batch enqueue payload."""
    intent_ids: list[UUID] = Field(..., min_length=1, max_length=1000)


class EnqueueResult(BaseModel):
    intent_id: UUID
    enqueued: bool


class EnqueueBatchResult(BaseModel):
    enqueued: int
    skipped: int
    errors: int


class MaintenanceStatus(BaseModel):
    """In-process maintenance scheduler state."""
    is_running: bool
    current_run_id: str | None
    last_run_id: str | None
    last_started_at: datetime | None
    last_finished_at: datetime | None
    last_status: str | None
    runs_completed: int
    runs_skipped: int


class MaintenanceRunResult(BaseModel):
    """Report of a maintenance run."""
    run_id: str
    trigger: str
    skipped: bool = False
    status: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    failed_steps: list[str] = []
    steps: dict[str, dict] = {}
