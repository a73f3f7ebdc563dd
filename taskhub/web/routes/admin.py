"""Queue administration endpoints for the dashboard."""

from typing import Optional

import structlog
from fastapi import APIRouter, Body, Depends

from taskhub.runtime import TaskRuntime
from taskhub.web.dependencies import get_runtime
from taskhub.web.schemas.tasks import (
    AdminQueueStatsResponse,
    QueueCleanRequest,
    QueueCleanResponse,
)

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get(
    "/queue-stats",
    response_model=AdminQueueStatsResponse,
    summary="Get queue statistics",
    description="Point-in-time job counts per state for the task and notification queues.",
)
async def get_queue_stats(
    runtime: TaskRuntime = Depends(get_runtime),
) -> AdminQueueStatsResponse:
    """Get job counts for both queues."""
    return AdminQueueStatsResponse.model_validate(await runtime.get_stats())


@router.post(
    "/queue-clean",
    response_model=QueueCleanResponse,
    summary="Purge finished jobs",
    description="Purge completed and failed jobs, by the configured retention "
    "or by a grace period in seconds. Waiting and active jobs are never purged.",
)
async def clean_queues(
    request: Optional[QueueCleanRequest] = Body(None),
    runtime: TaskRuntime = Depends(get_runtime),
) -> QueueCleanResponse:
    """Purge finished jobs from both queues."""
    grace_seconds = request.grace_seconds if request else None
    removed = await runtime.clean(grace_seconds)
    logger.info("queues_cleaned_via_api", grace_seconds=grace_seconds, removed=removed)
    return QueueCleanResponse.model_validate(removed)
