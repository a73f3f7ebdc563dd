"""HTTP API for task submission, status polling and queue administration."""

from .main import create_app

__all__ = ["create_app"]
