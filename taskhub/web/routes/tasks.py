"""AI task endpoints: submission, status polling and listing."""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from taskhub.tasks.models import JobState
from taskhub.tasks.queue import JobQueue
from taskhub.web.dependencies import get_task_queue
from taskhub.web.schemas.tasks import (
    TaskListResponse,
    TaskStatusResponse,
    TaskSubmitRequest,
    TaskSubmitResponse,
)

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/tasks", tags=["Tasks"])


@router.post(
    "",
    response_model=TaskSubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit an AI task",
    description="Queue an AI task for background processing. Returns 202 Accepted "
    "once the task is stored; poll GET /tasks/{external_id} for the outcome.",
)
async def submit_task(
    request: TaskSubmitRequest,
    queue: JobQueue = Depends(get_task_queue),
) -> TaskSubmitResponse:
    """Submit a new AI task."""
    job = await queue.submit(
        request.type,
        request.payload,
        priority=request.priority,
        external_id=request.external_id,
        max_attempts=request.max_attempts,
        user_id=request.user_id,
        notify_to=request.notify_to,
    )

    logger.info(
        "task_submitted_via_api",
        job_id=job.id,
        external_id=job.external_id,
        job_type=job.type.value,
        user_id=job.user_id,
    )
    return TaskSubmitResponse(
        job_id=job.id,
        external_id=job.external_id,
        type=job.type,
        state=job.state,
        priority=job.priority,
    )


@router.get(
    "",
    response_model=TaskListResponse,
    summary="List tasks",
    description="List tasks in claim order with an optional state filter.",
)
async def list_tasks(
    state: Optional[JobState] = Query(None, description="Filter by task state"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum tasks to return"),
    queue: JobQueue = Depends(get_task_queue),
) -> TaskListResponse:
    """List tasks with optional filtering."""
    jobs = await queue.list_jobs(state=state, limit=limit)
    return TaskListResponse(
        tasks=[TaskStatusResponse.model_validate(job.snapshot()) for job in jobs],
        total=len(jobs),
    )


@router.get(
    "/{external_id}",
    response_model=TaskStatusResponse,
    summary="Get task status",
    description="Latest committed state of a task, with its result or failure reason.",
)
async def get_task_status(
    external_id: str,
    queue: JobQueue = Depends(get_task_queue),
) -> TaskStatusResponse:
    """Get a task's status by correlation key."""
    snapshot = await queue.get_status(external_id)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task not found: {external_id}",
        )
    return TaskStatusResponse.model_validate(snapshot)
