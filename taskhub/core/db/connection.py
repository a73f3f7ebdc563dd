"""Database connection management."""

import asyncio
from pathlib import Path
from typing import Any, Optional

import aiosqlite
import structlog

from taskhub.core.exceptions import StoreUnavailableError

logger = structlog.get_logger(__name__)


class DatabaseConnection:
    """Manages an async SQLite connection with context manager support."""

    def __init__(
        self,
        db_path: Path,
        enable_wal: bool = True,
        timeout: int = 30,
    ):
        """
        Initialize database connection manager.

        Args:
            db_path: Path to SQLite database file
            enable_wal: Enable Write-Ahead Logging mode
            timeout: Busy timeout in seconds
        """
        self.db_path = db_path
        self.enable_wal = enable_wal
        self.timeout = timeout
        self._connection: Optional[aiosqlite.Connection] = None
        # Serialises statement+commit pairs issued by coroutines sharing the connection
        self.lock = asyncio.Lock()

    @property
    def connection(self) -> aiosqlite.Connection:
        """Return the open connection.

        Raises:
            StoreUnavailableError: If connect() has not been called
        """
        if self._connection is None:
            raise StoreUnavailableError(f"Database {self.db_path} is not connected")
        return self._connection

    async def connect(self) -> aiosqlite.Connection:
        """
        Establish database connection.

        Returns:
            Active database connection

        Raises:
            StoreUnavailableError: If connection fails
        """
        if self._connection is not None:
            return self._connection

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self._connection = await aiosqlite.connect(
                str(self.db_path),
                timeout=self.timeout,
            )
            self._connection.row_factory = aiosqlite.Row

            await self._connection.execute(f"PRAGMA busy_timeout = {int(self.timeout * 1000)}")
            if self.enable_wal:
                await self._connection.execute("PRAGMA journal_mode = WAL")

            logger.info(
                "database_connected",
                db_path=str(self.db_path),
                wal_mode=self.enable_wal,
            )
            return self._connection

        except Exception as e:
            logger.error(
                "database_connection_failed",
                db_path=str(self.db_path),
                error=str(e),
            )
            raise StoreUnavailableError(f"Failed to connect to database: {e}") from e

    async def close(self) -> None:
        """Close database connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("database_closed", db_path=str(self.db_path))

    async def __aenter__(self) -> aiosqlite.Connection:
        """Context manager entry."""
        return await self.connect()

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        await self.close()
