"""Tests for health and queue administration endpoints."""

import time

import httpx
import pytest
from fastapi.testclient import TestClient

import taskhub
from taskhub.web.settings import get_settings

AI_BASE_URL = "https://ai.test/api/v4"


def wait_for_count(client: TestClient, queue: str, state: str, expected: int, timeout: float = 5.0) -> dict:
    """Poll GET /admin/queue-stats until ``queue`` has ``expected`` jobs in ``state``."""
    deadline = time.monotonic() + timeout
    while True:
        stats = client.get("/admin/queue-stats").json()
        if stats[queue][state] == expected:
            return stats
        if time.monotonic() > deadline:
            raise AssertionError(f"{queue}.{state} is {stats[queue][state]}, expected {expected}")
        time.sleep(0.02)


class TestHealth:
    """Tests for the health check endpoint."""

    def test_health_check(self, test_app: TestClient):
        response = test_app.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == taskhub.__version__
        assert data["store_backend"] == "memory"
        assert data["ai_configured"] is True

    def test_health_reports_unconfigured_ai(self, make_client, make_config, monkeypatch):
        monkeypatch.delenv("TASKHUB_AI_API_KEY", raising=False)
        client = make_client(make_config(api_key=None))

        assert client.get("/health").json()["ai_configured"] is False

    def test_openapi_lists_task_routes(self, test_app: TestClient):
        paths = test_app.get("/openapi.json").json()["paths"]

        assert "/tasks" in paths
        assert "/tasks/{external_id}" in paths
        assert "/admin/queue-stats" in paths


class TestQueueStats:
    """Tests for GET /admin/queue-stats."""

    def test_empty_stats(self, test_app: TestClient):
        response = test_app.get("/admin/queue-stats")

        assert response.status_code == 200
        data = response.json()
        for queue in ("tasks", "notifications"):
            assert data[queue] == {
                "waiting": 0,
                "active": 0,
                "completed": 0,
                "failed": 0,
                "stalled": 0,
                "total": 0,
            }

    def test_stats_after_completion_with_notification(self, mock_http, test_app: TestClient):
        mock_http.post(f"{AI_BASE_URL}/chat/completions").mock(
            return_value=httpx.Response(
                200,
                json={"choices": [{"message": {"role": "assistant", "content": "Hi"}}]},
            )
        )

        test_app.post(
            "/tasks",
            json={
                "type": "text-gen",
                "payload": {"messages": [{"content": "Hello"}]},
                "notify_to": "user@example.com",
            },
        )

        stats = wait_for_count(test_app, "notifications", "completed", 1)
        assert stats["tasks"]["completed"] == 1
        assert stats["tasks"]["total"] == 1
        assert stats["notifications"]["total"] == 1


class TestQueueClean:
    """Tests for POST /admin/queue-clean."""

    def test_clean_without_body_uses_retention(self, test_app: TestClient):
        response = test_app.post("/admin/queue-clean")

        assert response.status_code == 200
        assert response.json() == {
            "tasks": {"completed": 0, "failed": 0},
            "notifications": {"completed": 0, "failed": 0},
        }

    def test_clean_with_grace_period(self, mock_http, test_app: TestClient):
        mock_http.post(f"{AI_BASE_URL}/images/generations").mock(
            return_value=httpx.Response(500, text="error")
        )
        mock_http.post(f"{AI_BASE_URL}/chat/completions").mock(
            return_value=httpx.Response(
                200,
                json={"choices": [{"message": {"role": "assistant", "content": "Hi"}}]},
            )
        )
        test_app.post("/tasks", json={"type": "text-gen", "payload": {"messages": [{"content": "Hi"}]}})
        test_app.post("/tasks", json={"type": "image-gen", "payload": {"prompt": "a cat"}})
        wait_for_count(test_app, "tasks", "completed", 1)
        wait_for_count(test_app, "tasks", "failed", 1)

        response = test_app.post("/admin/queue-clean", json={"grace_seconds": 0})

        assert response.status_code == 200
        assert response.json()["tasks"] == {"completed": 1, "failed": 1}
        assert test_app.get("/admin/queue-stats").json()["tasks"]["total"] == 0

    def test_clean_rejects_negative_grace(self, test_app: TestClient):
        response = test_app.post("/admin/queue-clean", json={"grace_seconds": -1})

        assert response.status_code == 422


class TestRequestLogging:
    """Tests for the request logging middleware."""

    @pytest.fixture
    def logged_client(self, make_client, make_config, monkeypatch) -> TestClient:
        monkeypatch.setenv("TASKHUB_API_LOG_REQUESTS", "true")
        get_settings.cache_clear()
        return make_client(make_config())

    def test_request_id_generated(self, logged_client: TestClient):
        response = logged_client.get("/admin/queue-stats")

        assert response.status_code == 200
        assert len(response.headers["X-Request-ID"]) == 12

    def test_request_id_echoed(self, logged_client: TestClient):
        response = logged_client.get("/tasks", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_health_not_tagged(self, logged_client: TestClient):
        response = logged_client.get("/health")

        assert response.status_code == 200
        assert "X-Request-ID" not in response.headers
