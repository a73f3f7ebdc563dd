"""Completion hook: turn finished AI tasks into notification jobs.

The task queue publishes lifecycle events on the EventBus; CompletionNotifier
subscribes to them and submits a ``task-completed`` job to the notification
queue. A notification that cannot be enqueued is logged and dropped, and the
originating job keeps its committed state.

Example:
    >>> notifier = CompletionNotifier(notification_queue, NotificationConfig())
    >>> notifier.attach(event_bus)
"""

import json
from typing import TYPE_CHECKING, Any

import structlog

from taskhub.common.config import NotificationConfig
from taskhub.core.event_bus import JOB_COMPLETED, JOB_FAILED, EventBus, JobEvent
from taskhub.tasks.models import NotificationType, TaskType
from taskhub.tasks.payloads import TaskCompletedPayload

if TYPE_CHECKING:
    from taskhub.tasks.queue import JobQueue

logger = structlog.get_logger(__name__)


def truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)].rstrip() + "..."


def _message_content(result: Any) -> str | None:
    try:
        content = result["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return content if isinstance(content, str) else None


def summarize_result(task_type: str, result: Any, limit: int = 200) -> str:
    """Short human-readable summary of a task result.

    Chat responses are reduced to the reply text, image generations to the
    image count and first URL, document and spreadsheet results to their text.
    Anything else falls back to compact JSON.
    """
    summary: str | None = None

    if task_type in (TaskType.TEXT_GEN.value, TaskType.IMAGE_UNDERSTAND.value):
        summary = _message_content(result)
    elif task_type == TaskType.IMAGE_GEN.value and isinstance(result, dict):
        images = result.get("data") or []
        if isinstance(images, list) and images:
            first = images[0].get("url") if isinstance(images[0], dict) else None
            summary = f"已生成 {len(images)} 张图片" + (f": {first}" if first else "")
    elif task_type in (TaskType.DOCUMENT_PROCESS.value, TaskType.EXCEL_PROCESS.value):
        if isinstance(result, dict) and isinstance(result.get("content"), str):
            summary = result["content"]

    if summary is None:
        summary = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, default=str)
    return truncate(summary, limit)


class CompletionNotifier:
    """EventBus subscriber enqueueing ``task-completed`` notifications."""

    def __init__(self, queue: "JobQueue", config: NotificationConfig):
        """
        Args:
            queue: Notification queue receiving the jobs
            config: Notification settings (enablement, failure notices, summary length)
        """
        self.queue = queue
        self.config = config

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(self.handle_event)

    def _build_payload(self, event: JobEvent) -> TaskCompletedPayload | None:
        job = event.job
        if event.event_type == JOB_COMPLETED:
            return TaskCompletedPayload(
                to=job.notify_to,
                task_id=job.external_id,
                task_type=job.type.value,
                summary=summarize_result(job.type.value, job.result, self.config.summary_length),
            )
        if event.event_type == JOB_FAILED and self.config.notify_on_failure:
            return TaskCompletedPayload(
                to=job.notify_to,
                task_id=job.external_id,
                task_type=job.type.value,
                summary=truncate(job.failure_reason or "", self.config.summary_length),
                succeeded=False,
            )
        return None

    async def handle_event(self, event: JobEvent) -> None:
        """Enqueue a notification for a terminal job event, if one is due."""
        job = event.job
        if not self.config.enabled or not job.notify_to:
            return
        if job.queue == self.queue.name:
            return

        try:
            payload = self._build_payload(event)
            if payload is None:
                return
            notification = await self.queue.submit(
                NotificationType.TASK_COMPLETED,
                payload,
                external_id=f"{job.external_id}:notify",
                user_id=job.user_id,
            )
        except Exception as e:
            logger.error(
                "notification_enqueue_failed",
                job_id=job.id,
                external_id=job.external_id,
                event_type=event.event_type,
                error=str(e),
            )
            return

        logger.info(
            "notification_enqueued",
            job_id=job.id,
            notification_id=notification.id,
            to=job.notify_to,
            succeeded=payload.succeeded,
        )
