"""FastAPI dependency injection for the runtime and its queues."""

from fastapi import Depends, HTTPException, Request, status

from taskhub.runtime import TaskRuntime
from taskhub.tasks.queue import JobQueue


def get_runtime(request: Request) -> TaskRuntime:
    """
    Dependency that provides the TaskRuntime created in the app lifespan.

    Raises:
        HTTPException: 503 if the runtime is not running yet
    """
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Task runtime is not available",
        )
    return runtime


def get_task_queue(runtime: TaskRuntime = Depends(get_runtime)) -> JobQueue:
    """Dependency that provides the AI task queue."""
    return runtime.tasks
