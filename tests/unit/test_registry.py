"""Tests for the handler registry."""

import pytest

from taskhub.core.exceptions import RegistryFrozenError, UnknownJobTypeError
from taskhub.tasks.models import NotificationType, TaskType
from taskhub.tasks.registry import HandlerRegistry


async def text_handler(payload):
    return {"content": "text"}


async def other_handler(payload):
    return {"content": "other"}


class TestHandlerRegistry:
    """Tests for HandlerRegistry."""

    def test_register_and_get(self):
        registry = HandlerRegistry()
        registry.register(TaskType.TEXT_GEN, text_handler)

        assert registry.get(TaskType.TEXT_GEN) is text_handler
        assert TaskType.TEXT_GEN in registry
        assert len(registry) == 1
        assert registry.types == [TaskType.TEXT_GEN]

    def test_register_replaces_handler(self):
        registry = HandlerRegistry()
        registry.register(TaskType.TEXT_GEN, text_handler)
        registry.register(TaskType.TEXT_GEN, other_handler)

        assert registry.get(TaskType.TEXT_GEN) is other_handler
        assert len(registry) == 1

    def test_get_unknown_type(self):
        registry = HandlerRegistry()
        registry.register(TaskType.TEXT_GEN, text_handler)

        with pytest.raises(UnknownJobTypeError) as exc_info:
            registry.get(NotificationType.WELCOME)

        assert exc_info.value.job_type == "welcome"

    def test_string_value_matches_enum_member(self):
        registry = HandlerRegistry()
        registry.register(TaskType.TEXT_GEN, text_handler)

        assert "text-gen" in registry

    def test_frozen_registry_rejects_registration(self):
        registry = HandlerRegistry()
        registry.register(TaskType.TEXT_GEN, text_handler)
        registry.freeze()

        assert registry.frozen
        with pytest.raises(RegistryFrozenError):
            registry.register(TaskType.IMAGE_GEN, other_handler)
        assert registry.get(TaskType.TEXT_GEN) is text_handler
