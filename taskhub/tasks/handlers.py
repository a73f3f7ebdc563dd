"""Handlers for AI task jobs.

Each handler forwards the typed payload to the AI client and returns the
result stored on the job. Handlers never retry; a raised error is reported
to the queue, which applies the retry policy.
"""

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from taskhub.api.ai_client import AIClient
from taskhub.tasks.models import TaskType
from taskhub.tasks.payloads import (
    AITaskPayload,
    DocumentProcessPayload,
    ExcelProcessPayload,
    ImageGenPayload,
    ImageUnderstandPayload,
    TextGenPayload,
)
from taskhub.tasks.registry import HandlerRegistry

logger = structlog.get_logger(__name__)


async def dispatch_ai_task(client: AIClient, payload: AITaskPayload) -> Any:
    """Execute an AI task payload against the AI client.

    Args:
        client: Client for the AI API
        payload: One of the AI task payload models

    Returns:
        Raw API response for text, image and vision tasks; reply text for
        document and spreadsheet tasks

    Raises:
        AIServiceError: If the API call fails
        TypeError: If the payload is not an AI task payload
    """
    logger.debug("ai_task_dispatch", kind=payload.kind)

    match payload:
        case TextGenPayload():
            return await client.generate_text(
                [message.model_dump() for message in payload.messages],
                model=payload.model,
                temperature=payload.temperature,
                max_tokens=payload.max_tokens,
            )
        case ImageGenPayload():
            return await client.generate_image(payload.prompt, size=payload.size, num=payload.num)
        case ImageUnderstandPayload():
            return await client.understand_image(payload.image, payload.prompt)
        case DocumentProcessPayload():
            return {"content": await client.parse_document(payload.content, payload.task)}
        case ExcelProcessPayload():
            return {"content": await client.process_excel(payload.instruction, payload.data)}
        case _:
            raise TypeError(f"Unsupported AI task payload: {type(payload).__name__}")


def make_ai_handler(client: AIClient) -> Callable[[AITaskPayload], Awaitable[Any]]:
    """Bind ``dispatch_ai_task`` to a client, giving a queue handler."""

    async def handle_ai_task(payload: AITaskPayload) -> Any:
        return await dispatch_ai_task(client, payload)

    return handle_ai_task


def register_ai_handlers(registry: HandlerRegistry, client: AIClient) -> None:
    """Register the AI handler for every task type."""
    handler = make_ai_handler(client)
    for task_type in TaskType:
        registry.register(task_type, handler)
