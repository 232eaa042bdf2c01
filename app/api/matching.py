"""
Matching engine admin endpoints.

Operational surface of the matching subsystem: queue depth for
dashboards, event-driven enqueue, and manual maintenance runs.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.matching_engine.enqueue import EnqueueService
from app.matching_engine.exceptions import MaintenanceAlreadyRunningError
from app.matching_engine.maintenance import MaintenanceScheduler
from app.matching_engine.task_queue import TaskQueue
from app.schemas.matching import (
    EnqueueBatchResult,
    EnqueueRequest,
    EnqueueResult,
    MaintenanceRunResult,
    MaintenanceStatus,
    QueueStats,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies (overridable in tests)
# ---------------------------------------------------------------------------


def get_task_queue() -> TaskQueue:
    from app.matching_engine.task_queue import task_queue
    return task_queue


def get_enqueue_service() -> EnqueueService:
    from app.matching_engine.enqueue import enqueue_service
    return enqueue_service


def get_maintenance_scheduler() -> MaintenanceScheduler:
    from app.matching_engine.maintenance import maintenance_scheduler
    return maintenance_scheduler


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


@router.get("/queue", response_model=QueueStats)
async def get_queue_stats(
    db: AsyncSession = Depends(get_db),
    queue: TaskQueue = Depends(get_task_queue),
):
    """Task counts per status and the average wait of due tasks."""
    return await queue.get_queue_stats(session=db)


@router.post("/enqueue", response_model=EnqueueBatchResult)
async def enqueue_intents(
    body: EnqueueRequest,
    service: EnqueueService = Depends(get_enqueue_service),
):
    """Queue several intents (e.g. after a bulk profile import)."""
    return await service.enqueue_many(body.intent_ids)


@router.post("/enqueue/{intent_id}", response_model=EnqueueResult)
async def enqueue_intent(
    intent_id: UUID,
    service: EnqueueService = Depends(get_enqueue_service),
):
    """
    Queue one intent for matching.

    ``enqueued`` is False when the intent is unknown, not eligible
    or already queued.
    """
    enqueued = await service.enqueue(intent_id)
    return EnqueueResult(intent_id=intent_id, enqueued=enqueued)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@router.get("/maintenance/status", response_model=MaintenanceStatus)
async def get_maintenance_status(
    scheduler: MaintenanceScheduler = Depends(get_maintenance_scheduler),
):
    """State of the maintenance scheduler in this process."""
    return scheduler.state.as_dict()


@router.post("/maintenance/trigger", response_model=MaintenanceRunResult)
async def trigger_maintenance(
    scheduler: MaintenanceScheduler = Depends(get_maintenance_scheduler),
):
    """Run maintenance immediately; 409 if a run is already in progress."""
    try:
        report = await scheduler.trigger_manual_maintenance()
    except MaintenanceAlreadyRunningError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Maintenance already running (run_id={exc.run_id})",
        )
    if report is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Maintenance already running",
        )
    return report
