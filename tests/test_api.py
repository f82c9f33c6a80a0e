"""HTTP surface tests with the pipeline mocked out."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from review_rag.deps import get_pipeline
from review_rag.errors import (
    BudgetExceeded,
    DeadlineExceeded,
    FatalError,
    GenerationFailed,
    NotFound,
    RetryableError,
    Throttled,
    UnavailableError,
    ValidationError,
)
from review_rag.main import app, status_for
from review_rag.streaming import ContentChannel, StreamEvent

HEADERS = {"X-User-Id": "user-1", "X-Org-Id": "org-1"}
BODY = {
    "projectId": "proj-1",
    "profileId": "user-1",
    "diffContent": "+x = 1",
    "filePath": "app/x.py",
    "language": "python",
}


@pytest.fixture
def pipeline():
    pipeline = Mock()
    pipeline.submit = AsyncMock(return_value=SimpleNamespace(id="req-1"))
    pipeline.process = AsyncMock()
    pipeline.get_review = AsyncMock(return_value={"status": "completed", "cacheHit": True, "content": "ok"})
    pipeline.submit_feedback = AsyncMock()
    pipeline.analytics = AsyncMock(return_value=[{"date": "2024-03-10", "cacheHits": 3}])
    pipeline.open_stream = Mock(return_value=None)
    return pipeline


@pytest.fixture
def client(pipeline):
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestCreateReview:
    def test_accepts_and_schedules_processing(self, client, pipeline):
        response = client.post("/review", json=BODY, headers=HEADERS)

        assert response.status_code == 202
        assert response.json() == {"reviewRequestId": "req-1", "status": "pending"}
        payload = pipeline.submit.call_args.args[0]
        assert payload.diff_content == "+x = 1"
        assert pipeline.submit.call_args.kwargs["org_id"] == "org-1"
        pipeline.process.assert_awaited_once_with("req-1")

    def test_missing_identity_is_401(self, client):
        assert client.post("/review", json=BODY).status_code == 401

    def test_unauthorized_is_403(self, client, pipeline):
        response = client.post("/review", json=BODY, headers={**HEADERS, "X-Authorized": "false"})

        assert response.status_code == 403
        pipeline.submit.assert_not_called()

    def test_validation_error_is_400_with_payload(self, client, pipeline):
        pipeline.submit.side_effect = ValidationError("diffContent must not be empty")

        response = client.post("/review", json=BODY, headers=HEADERS)

        assert response.status_code == 400
        assert response.json() == {
            "error": {
                "code": "validation_error",
                "message": "diffContent must not be empty",
                "retryable": False,
            }
        }

    def test_malformed_body_is_rejected(self, client):
        assert client.post("/review", json={"projectId": "p"}, headers=HEADERS).status_code == 422


class TestReadEndpoints:
    def test_get_review(self, client, pipeline):
        response = client.get("/review/req-1", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["cacheHit"] is True
        pipeline.get_review.assert_awaited_once_with("req-1")

    def test_unknown_review_is_404(self, client, pipeline):
        pipeline.get_review.side_effect = NotFound("review nope not found")

        response = client.get("/review/nope", headers=HEADERS)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_analytics(self, client, pipeline):
        response = client.get("/projects/proj-1/analytics", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()[0]["cacheHits"] == 3


class TestFeedback:
    def test_feedback_is_204(self, client, pipeline):
        response = client.post("/review/req-1/feedback", json={"accepted": False}, headers=HEADERS)

        assert response.status_code == 204
        request_id, feedback = pipeline.submit_feedback.call_args.args
        assert request_id == "req-1"
        assert feedback.accepted is False


class TestStream:
    def test_relays_events_from_the_channel(self, client, pipeline):
        channel = ContentChannel()
        for event in (
            StreamEvent("delta", "partial"),
            StreamEvent("reset"),
            StreamEvent("delta", "final"),
            StreamEvent("done"),
        ):
            channel._queue.put_nowait(event)
        pipeline.open_stream.return_value = channel

        response = client.get("/review/req-1/stream", headers=HEADERS)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text.startswith("partial")
        assert response.text.endswith("final")
        assert "restarting" in response.text

    def test_finished_review_returns_stored_content(self, client, pipeline):
        response = client.get("/review/req-1/stream", headers=HEADERS)

        assert response.status_code == 200
        assert response.text == "ok"

    def test_unclaimable_pending_review_is_409(self, client, pipeline):
        pipeline.get_review.return_value = {"status": "in_progress", "cacheHit": False}

        response = client.get("/review/req-1/stream", headers=HEADERS)

        assert response.status_code == 409


class TestErrorStatus:
    @pytest.mark.parametrize(
        "error, status",
        [
            (ValidationError("x"), 400),
            (NotFound("x"), 404),
            (BudgetExceeded("org", "daily", 2.0, 1.0), 402),
            (Throttled("org", 10, 20), 429),
            (GenerationFailed({"m": "timeout"}), 502),
            (FatalError("x"), 502),
            (RetryableError("x"), 503),
            (UnavailableError("x"), 503),
            (DeadlineExceeded("x"), 504),
        ],
    )
    def test_mapping(self, error, status):
        assert status_for(error) == status
