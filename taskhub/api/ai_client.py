"""Client for the generative-AI HTTP API used by the task handlers.

Every method makes exactly one request. A failed call raises AIServiceError
and the job queue decides whether the job is attempted again.
"""

import json
from typing import Any, Dict, List, Optional

import httpx
import structlog

from taskhub.common.config import AIServiceConfig
from taskhub.common.http_client import AsyncHTTPClient
from taskhub.core.exceptions import AIServiceError, AIServiceNotConfiguredError

logger = structlog.get_logger(__name__)

DOCUMENT_SYSTEM_PROMPT = "你是一个专业的文档处理助手。"
EXCEL_SYSTEM_PROMPT = "你是一个Excel处理专家。根据用户的要求处理数据，返回处理结果。"


def extract_message_content(response: Dict[str, Any]) -> str:
    """Return the first choice's message text from a chat completion.

    Raises:
        AIServiceError: If the response has no message content
    """
    try:
        return response["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise AIServiceError(f"Malformed chat completion response: missing {e}") from e


class AIClient:
    """
    Async client for the chat-completion and image-generation endpoints.

    Example:
        >>> async with AIClient(AIServiceConfig(api_key="...")) as client:
        ...     reply = await client.generate_text([{"role": "user", "content": "hi"}])
    """

    def __init__(self, config: AIServiceConfig):
        self.config = config
        self.api_key = config.resolved_api_key()
        self._http = AsyncHTTPClient(
            config.http,
            base_url=config.base_url.rstrip("/"),
            headers={"Content-Type": "application/json"},
        )
        if not self.api_key:
            logger.warning("ai_service_not_configured", base_url=config.base_url)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def open(self) -> None:
        await self._http.open()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "AIClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def _post(self, path: str, body: Dict[str, Any], operation: str) -> Dict[str, Any]:
        """POST a JSON body and return the decoded JSON response.

        Raises:
            AIServiceNotConfiguredError: If no API key is configured
            AIServiceError: On transport errors, error statuses or invalid JSON
        """
        if not self.api_key:
            raise AIServiceNotConfiguredError()

        try:
            response = await self._http.post(
                path,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(
                "ai_request_failed",
                operation=operation,
                status_code=status,
                response_body=e.response.text[:200],
            )
            raise AIServiceError(
                f"{operation} failed with HTTP {status}",
                status_code=status,
            ) from e
        except httpx.RequestError as e:
            logger.error("ai_request_failed", operation=operation, error=str(e))
            raise AIServiceError(f"{operation} failed: {e}") from e
        except json.JSONDecodeError as e:
            raise AIServiceError(f"{operation} returned invalid JSON") from e

        logger.info("ai_request_completed", operation=operation, model=body.get("model"))
        return data

    async def generate_text(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Run a chat completion and return the raw response."""
        body = {
            "model": model or self.config.text_model,
            "messages": messages,
            "temperature": self.config.default_temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.config.default_max_tokens,
        }
        return await self._post("/chat/completions", body, "text_generation")

    async def generate_image(self, prompt: str, size: str = "1024x1024", num: int = 1) -> Dict[str, Any]:
        """Generate images from a prompt and return the raw response."""
        body = {
            "model": self.config.image_model,
            "prompt": prompt,
            "size": size,
            "n": num,
        }
        return await self._post("/images/generations", body, "image_generation")

    async def understand_image(self, image: str, prompt: str) -> Dict[str, Any]:
        """Ask the vision model about an image URL or data URI."""
        body = {
            "model": self.config.vision_model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "image_url", "image_url": {"url": image}},
                        {"type": "text", "text": prompt},
                    ],
                }
            ],
            "max_tokens": self.config.default_max_tokens,
        }
        return await self._post("/chat/completions", body, "image_understanding")

    async def parse_document(self, content: str, task: str) -> str:
        """Run ``task`` over document text and return the reply text."""
        response = await self.generate_text(
            [
                {"role": "system", "content": DOCUMENT_SYSTEM_PROMPT},
                {"role": "user", "content": f"{task}\n\n文档内容：\n{content}"},
            ],
            max_tokens=self.config.document_max_tokens,
        )
        return extract_message_content(response)

    async def process_excel(self, instruction: str, data: Any = None) -> str:
        """Run an instruction over tabular data and return the reply text."""
        data_block = ""
        if data:
            data_block = f"\n\n数据：\n{json.dumps(data, ensure_ascii=False, indent=2)}"
        response = await self.generate_text(
            [
                {"role": "system", "content": EXCEL_SYSTEM_PROMPT},
                {"role": "user", "content": f"{instruction}{data_block}"},
            ],
            max_tokens=self.config.document_max_tokens,
        )
        return extract_message_content(response)
