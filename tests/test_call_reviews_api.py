
import json
from contextlib import contextmanager

import httpx
import pytest
from fastapi.testclient import TestClient

from src.api.routes.call_reviews import review_event_stream
from src.api.schemas.review import ProgressMessage
from src.config import Settings, get_settings
from src.main import app
from src.services.call_log_sources import InMemoryCallLogRepository
from src.services.progress_broadcaster import SSE_KEEPALIVE
from src.services.review_pipeline import ReviewPipeline, get_review_pipeline
from tests.judge_fakes import make_judge_client, verdict_handler


INTERNAL_SECRET = "internal-test-secret"


@pytest.fixture
def pipeline(clean_call_session, review_store, broadcaster):
    return ReviewPipeline(
        store=review_store,
        judge_client=make_judge_client(verdict_handler({"errors": []})),
        call_logs=InMemoryCallLogRepository([clean_call_session]),
        broadcaster=broadcaster,
        judge_max_retries=0,
    )


@pytest.fixture
def settings():
    return Settings(internal_webhook_secret=INTERNAL_SECRET, auto_review_on_queue=False)


@contextmanager
def overridden_client(pipeline, settings):
    """TestClient whose pipeline and settings dependencies are replaced."""
    app.dependency_overrides[get_review_pipeline] = lambda: pipeline
    app.dependency_overrides[get_settings] = lambda: settings
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def client(pipeline, settings):
    with overridden_client(pipeline, settings) as client:
        yield client


class TestReviewEndpoints:
    """Tests for the immediate review and status endpoints."""

    def test_review_single(self, client, review_store):
        response = client.post("/api/v1/call-reviews/review", json={"call_log_id": "log-001"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["call_log_id"] == "log-001"
        assert body["data"]["result"]["errors"] == []

    def test_review_unknown_call_log(self, client):
        response = client.post("/api/v1/call-reviews/review", json={"call_log_id": "ghost"})

        assert response.status_code == 404
        assert "ghost" in response.json()["detail"]

    def test_review_requires_an_id(self, client):
        response = client.post("/api/v1/call-reviews/review", json={})
        assert response.status_code == 400

    def test_review_batch_reports_failures(self, client):
        response = client.post(
            "/api/v1/call-reviews/review",
            json={"call_log_ids": ["log-001", "ghost"]},
        )

        data = response.json()["data"]
        assert data["processed"] == 1
        assert data["failed"] == 1
        assert data["errors"][0]["call_log_id"] == "ghost"

    def test_judge_failure_maps_to_503(self, clean_call_session, review_store, settings):
        pipeline = ReviewPipeline(
            store=review_store,
            judge_client=make_judge_client(lambda request: httpx.Response(500, text="boom")),
            call_logs=InMemoryCallLogRepository([clean_call_session]),
            judge_max_retries=0,
        )
        with overridden_client(pipeline, settings) as client:
            response = client.post("/api/v1/call-reviews/review", json={"call_log_id": "log-001"})

        assert response.status_code == 503

    def test_malformed_verdict_maps_to_502(self, clean_call_session, review_store, settings):
        pipeline = ReviewPipeline(
            store=review_store,
            judge_client=make_judge_client(verdict_handler("not json")),
            call_logs=InMemoryCallLogRepository([clean_call_session]),
            judge_max_retries=0,
        )
        with overridden_client(pipeline, settings) as client:
            response = client.post("/api/v1/call-reviews/review", json={"call_log_id": "log-001"})

        assert response.status_code == 502

    def test_get_review_status(self, client):
        client.post("/api/v1/call-reviews/review", json={"call_log_id": "log-001"})

        response = client.get("/api/v1/call-reviews/review", params={"call_log_id": "log-001"})

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["error_count"] == 0

    def test_get_review_status_missing(self, client):
        response = client.get("/api/v1/call-reviews/review", params={"call_log_id": "nope"})
        assert response.status_code == 404

    def test_get_review_statuses(self, client):
        client.post("/api/v1/call-reviews/webhook", json={"call_log_id": "a", "agent_id": "agent-1"})

        response = client.get("/api/v1/call-reviews/statuses", params={"call_log_ids": "a, b"})

        assert response.status_code == 200
        assert list(response.json().keys()) == ["a"]

    def test_stats(self, client):
        client.post("/api/v1/call-reviews/webhook", json={"call_log_id": "a", "agent_id": "agent-1"})
        client.post("/api/v1/call-reviews/review", json={"call_log_id": "log-001"})

        response = client.get("/api/v1/call-reviews/stats")

        assert response.status_code == 200
        assert response.json()["stats"] == {"pending": 1, "completed": 1}
        assert response.json()["timestamp"]


class TestQueueEndpoints:
    """Tests for the webhook and batch queueing endpoints."""

    def test_webhook_insert_format(self, client, review_store):
        response = client.post(
            "/api/v1/call-reviews/webhook",
            json={"type": "INSERT", "record": {"id": "log-009", "agent_id": "agent-1"}},
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"call_log_id": "log-009", "agent_id": "agent-1"}

    def test_webhook_direct_format(self, client):
        response = client.post(
            "/api/v1/call-reviews/webhook",
            json={"call_log_id": "log-010", "agent_id": "agent-2"},
        )
        assert response.status_code == 200

    def test_webhook_invalid_payload(self, client):
        response = client.post("/api/v1/call-reviews/webhook", json={"call_log_id": "log-010"})
        assert response.status_code == 400

    def test_webhook_auto_review(self, pipeline, review_store):
        auto_settings = Settings(internal_webhook_secret=INTERNAL_SECRET, auto_review_on_queue=True)
        with overridden_client(pipeline, auto_settings) as client:
            response = client.post(
                "/api/v1/call-reviews/webhook",
                json={"call_log_id": "log-001", "agent_id": "agent-1"},
            )
            status = client.get("/api/v1/call-reviews/review", params={"call_log_id": "log-001"})

        assert response.status_code == 200
        assert status.json()["status"] == "completed"

    def test_batch_review(self, client):
        response = client.post("/api/v1/call-reviews/batch-review", json={"agent_id": "agent-1"})

        assert response.status_code == 200
        assert response.json()["data"] == {"total": 1, "queued": 1, "agent_id": "agent-1"}

    def test_batch_review_no_calls(self, client):
        response = client.post("/api/v1/call-reviews/batch-review", json={"agent_id": "agent-404", "limit": 5})

        assert response.json()["message"] == "No call logs found for this agent"
        assert response.json()["data"]["total"] == 0

    def test_batch_review_limit_bounds(self, client):
        response = client.post("/api/v1/call-reviews/batch-review", json={"agent_id": "agent-1", "limit": 0})
        assert response.status_code == 422


class TestInternalReview:
    """Tests for the trigger-driven internal review endpoint."""

    def test_requires_secret(self, client):
        response = client.post("/api/internal/ai-review", json={"call_log_id": "log-001"})
        assert response.status_code == 401

    def test_wrong_secret(self, client):
        response = client.post(
            "/api/internal/ai-review",
            json={"call_log_id": "log-001"},
            headers={"Authorization": "Bearer wrong"},
        )
        assert response.status_code == 401

    def test_secret_not_configured(self, pipeline):
        with overridden_client(pipeline, Settings(internal_webhook_secret=None)) as client:
            response = client.post(
                "/api/internal/ai-review",
                json={"call_log_id": "log-001"},
                headers={"Authorization": "Bearer anything"},
            )

        assert response.status_code == 500

    def test_reviews_pending_once(self, client):
        headers = {"Authorization": f"Bearer {INTERNAL_SECRET}"}
        client.post("/api/v1/call-reviews/webhook", json={"call_log_id": "log-001", "agent_id": "agent-1"})

        first = client.post("/api/internal/ai-review", json={"call_log_id": "log-001"}, headers=headers)
        second = client.post("/api/internal/ai-review", json={"call_log_id": "log-001"}, headers=headers)

        assert first.status_code == 200
        assert first.json()["data"] == {"call_log_id": "log-001", "error_count": 0, "status": "completed"}
        assert second.json() == {"success": True, "message": "Already processed"}


class TestServiceEndpoints:
    """Tests for health and SSE endpoints."""

    def test_health(self, client):
        response = client.get("/api/v1/call-reviews/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["judge_model"] == "gemini-test"

    def test_root(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_sse_requires_ids(self, client):
        assert client.get("/api/v1/call-reviews/sse").status_code == 400


class FakeRequest:
    """Request stand-in whose disconnect state follows a fixed script."""

    def __init__(self, disconnected):
        self.disconnected = list(disconnected)

    async def is_disconnected(self):
        return self.disconnected.pop(0) if self.disconnected else True


class TestReviewEventStream:
    """Tests for the SSE frame generator."""

    @pytest.mark.asyncio
    async def test_connected_then_update(self, broadcaster):
        subscription = broadcaster.subscribe(["log-001"])
        broadcaster.publish(ProgressMessage(call_log_id="log-001", status="processing"))

        frames = [
            frame
            async for frame in review_event_stream(FakeRequest([False, True]), broadcaster, subscription, 1)
        ]

        assert json.loads(frames[0][len("data: "):]) == {
            "type": "connected",
            "subscription_key": "call-reviews:log-001",
        }
        assert json.loads(frames[1][len("data: "):]) == {
            "type": "update",
            "data": {"call_log_id": "log-001", "status": "processing"},
        }
        assert len(frames) == 2
        assert broadcaster.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_keepalive_when_idle(self, broadcaster):
        subscription = broadcaster.subscribe(["log-001"])

        frames = [
            frame
            async for frame in review_event_stream(FakeRequest([False, True]), broadcaster, subscription, 0.01)
        ]

        assert frames[1] == SSE_KEEPALIVE
