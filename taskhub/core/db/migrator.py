"""Database migration manager."""

import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

import aiosqlite
import structlog

from taskhub.core.exceptions import MigrationError

logger = structlog.get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


class Migrator:
    """Applies numbered SQL migration files (``001_name.sql``) in order."""

    def __init__(self, migrations_dir: Optional[Path] = None):
        self.migrations_dir = migrations_dir or MIGRATIONS_DIR

    async def run_migrations(self, db: aiosqlite.Connection) -> int:
        """
        Run all pending migrations on an open connection.

        Returns:
            Number of migrations applied

        Raises:
            MigrationError: If a migration fails
        """
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                filename TEXT NOT NULL,
                checksum TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
            """
        )
        await db.commit()

        applied_versions = await self._get_applied_versions(db)
        pending = self._get_pending_migrations(applied_versions)

        if not pending:
            logger.debug("no_pending_migrations")
            return 0

        for version, filename, sql, checksum in pending:
            try:
                logger.info("migration_applying", version=version, filename=filename)
                await db.executescript(sql)
                await db.execute(
                    """
                    INSERT INTO schema_migrations (version, filename, checksum, applied_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (version, filename, checksum, datetime.now(timezone.utc).isoformat()),
                )
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error(
                    "migration_failed",
                    version=version,
                    filename=filename,
                    error=str(e),
                )
                raise MigrationError(
                    f"Migration {filename} failed: {e}",
                    version=version,
                    filename=filename,
                ) from e

        logger.info("migrations_complete", applied=len(pending))
        return len(pending)

    async def _get_applied_versions(self, db: aiosqlite.Connection) -> set[int]:
        cursor = await db.execute("SELECT version FROM schema_migrations")
        rows = await cursor.fetchall()
        return {row[0] for row in rows}

    def _get_pending_migrations(self, applied_versions: set[int]) -> List[Tuple[int, str, str, str]]:
        """
        Get list of pending migrations.

        Returns:
            List of tuples: (version, filename, sql, checksum)
        """
        if not self.migrations_dir.exists():
            logger.warning("migrations_dir_not_found", path=str(self.migrations_dir))
            return []

        pending = []
        for sql_file in sorted(self.migrations_dir.glob("*.sql")):
            try:
                version = int(sql_file.stem.split("_")[0])
            except ValueError:
                logger.warning("migration_filename_invalid", filename=sql_file.name)
                continue

            if version in applied_versions:
                continue

            sql = sql_file.read_text(encoding="utf-8")
            checksum = hashlib.sha256(sql.encode()).hexdigest()
            pending.append((version, sql_file.name, sql, checksum))

        pending.sort(key=lambda x: x[0])
        return pending
