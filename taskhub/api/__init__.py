"""Clients for external services."""

from .ai_client import AIClient

__all__ = ["AIClient"]
