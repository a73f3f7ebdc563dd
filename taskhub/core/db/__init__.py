"""SQLite persistence for the job store."""

from .connection import DatabaseConnection
from .migrator import Migrator

__all__ = ["DatabaseConnection", "Migrator"]
