"""Async HTTP client with connection pooling using httpx."""

from typing import Any, Dict, Optional

import httpx
import structlog

from .config import HTTPConfig

logger = structlog.get_logger(__name__)


class AsyncHTTPClient:
    """
    Async HTTP client with connection pooling.

    The client is used from inside job handlers, so it makes exactly one
    attempt per call: retrying a failed job is the job queue's concern, and
    retrying here as well would multiply the number of upstream calls.

    Example:
        >>> async with AsyncHTTPClient(HTTPConfig(), base_url="https://api.example.com") as client:
        ...     response = await client.get("/status")
    """

    def __init__(
        self,
        config: HTTPConfig,
        base_url: str = "",
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize the async HTTP client.

        Args:
            config: HTTPConfig object with client settings
            base_url: Base URL for all requests (optional)
            headers: Default headers sent with every request
        """
        self.config = config
        self.base_url = base_url
        self.headers = headers or {}
        self._client: Optional[httpx.AsyncClient] = None
        self.logger = logger.bind(component="http_client")

    async def open(self) -> None:
        """Create the underlying connection pool (idempotent)."""
        if self._client is not None:
            return

        limits = httpx.Limits(
            max_connections=self.config.max_connections,
            max_keepalive_connections=self.config.max_keepalive_connections,
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=httpx.Timeout(float(self.config.timeout)),
            limits=limits,
            follow_redirects=True,
            max_redirects=self.config.max_redirects,
            verify=self.config.verify_ssl,
        )
        self.logger.info(
            "http_client_initialized",
            base_url=self.base_url,
            timeout=self.config.timeout,
            max_connections=self.config.max_connections,
        )

    async def aclose(self) -> None:
        """Close the connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self.logger.info("http_client_closed")

    async def __aenter__(self) -> "AsyncHTTPClient":
        """Enter async context manager."""
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        await self.aclose()

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Make a single HTTP request.

        Raises:
            RuntimeError: If the client has not been opened
            httpx.RequestError: On transport failures
        """
        if self._client is None:
            raise RuntimeError("Client not initialized. Use async with context manager.")

        self.logger.debug("http_request", method=method, url=str(url))
        return await self._client.request(method, url, **kwargs)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        """Make a GET request."""
        return await self.request("GET", url, **kwargs)

    async def post(
        self,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Make a POST request with an optional JSON body."""
        return await self.request("POST", url, json=json, **kwargs)
