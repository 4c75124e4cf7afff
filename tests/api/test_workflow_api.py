"""
API tests for `api/sessions.py`, `api/workflow.py` and `api/memory.py` using FastAPI's TestClient.

Covers:
- POST /api/sessions and GET /api/sessions/{id}: create and fetch (200/201), unknown id (404)
- POST /api/workflow/{id}/start: started (202), unknown session (404), second active run (409)
- POST /api/workflow/{id}/checkpoints/{stage_id}: accepted (200), invalid decision (400)
- GET /api/workflow/{id}/status and /result after a full run
- POST /api/workflow/{id}/cancel
- GET /api/memory/{id}/search, /recent and /stats after a run

Every test gets a fresh in-memory service container through `app.dependency_overrides`, so no
session file is written and runs from one test never leak into another. The Generation Service is
the offline mock selected by `LLM_PROVIDER=mock` in conftest.
"""

import time

import pytest
from fastapi.testclient import TestClient

from api.dependencies import Services, get_services
from main import app

client = TestClient(app)


@pytest.fixture(autouse=True)
def services():
    container = Services(persist=False)
    app.dependency_overrides[get_services] = lambda: container
    yield container
    app.dependency_overrides.clear()
    container.orchestrator.shutdown(wait=True)


def _create_session():
    resp = client.post("/api/sessions", json={"title": "Grade 3 maths"})
    assert resp.status_code == 201
    return resp.json()["session"]["id"]


def _wait_for_checkpoint(session_id, stage_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = client.get(f"/api/workflow/{session_id}/status").json()["status"]
        awaiting = status["awaitingCheckpoint"]
        if awaiting is not None and awaiting["stageId"] == stage_id:
            return status
        time.sleep(0.02)
    pytest.fail(f"Checkpoint {stage_id} not reached")


def _wait_until_finished(session_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = client.get(f"/api/workflow/{session_id}/status").json()["status"]
        if status["overallStatus"] in ("completed", "failed", "cancelled"):
            return status
        time.sleep(0.02)
    pytest.fail("Run did not finish")


def test_create_and_fetch_session():
    session_id = _create_session()

    resp = client.get(f"/api/sessions/{session_id}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["response"] == "ok"
    assert body["session"]["title"] == "Grade 3 maths"
    assert body["session"]["stages"] is None


def test_unknown_session_is_404():
    assert client.get("/api/sessions/missing").status_code == 404
    assert client.post("/api/sessions/missing/messages", json={"content": "hi"}).status_code == 404
    assert client.post("/api/workflow/missing/start", json={"message": "Create a worksheet"}).status_code == 404
    assert client.get("/api/workflow/missing/status").status_code == 404
    assert client.get("/api/memory/missing/stats").status_code == 404


def test_add_message():
    session_id = _create_session()

    resp = client.post(f"/api/sessions/{session_id}/messages", json={"content": "Hello"})
    assert resp.status_code == 201
    assert resp.json()["message"]["role"] == "user"

    session = client.get(f"/api/sessions/{session_id}").json()["session"]
    assert [message["content"] for message in session["messages"]] == ["Hello"]


def test_full_workflow_over_http():
    session_id = _create_session()

    resp = client.post(
        f"/api/workflow/{session_id}/start",
        json={"message": "Create a worksheet for Grade 3 addition", "subjects": ["Mathematics"], "grades": [3]},
    )
    assert resp.status_code == 202
    assert resp.json()["runId"].startswith("run_")

    status = _wait_for_checkpoint(session_id, "feedback")
    assert len(status["awaitingCheckpoint"]["review"]["questions"]) == 3

    resp = client.post(f"/api/workflow/{session_id}/checkpoints/feedback", json={"decision": "approve"})
    assert resp.status_code == 200

    _wait_for_checkpoint(session_id, "scheduler")
    resp = client.post(
        f"/api/workflow/{session_id}/checkpoints/scheduler",
        json={"decision": "approve", "payload": {"date": "2026-03-10"}},
    )
    assert resp.status_code == 200

    final = _wait_until_finished(session_id)
    assert final["overallStatus"] == "completed"
    assert final["progress"] == 1.0

    result = client.get(f"/api/workflow/{session_id}/result").json()["result"]
    assert result["artifact"]["format"] == "markdown"
    assert len(result["log"]) == 10

    session = client.get(f"/api/sessions/{session_id}").json()["session"]
    assert session["messages"][0]["content"] == "Create a worksheet for Grade 3 addition"
    assert len(session["stages"]) == 10

    stats = client.get(f"/api/memory/{session_id}/stats").json()["stats"]
    assert stats["totalItems"] > 0
    assert stats["newestItem"] is not None

    found = client.get(f"/api/memory/{session_id}/search", params={"q": "worksheets"}).json()["items"]
    assert found
    assert found[0]["usageCount"] >= 1

    recent = client.get(f"/api/memory/{session_id}/recent", params={"limit": 2}).json()["items"]
    assert len(recent) == 2


def test_second_run_conflicts_and_bad_decision_is_400():
    session_id = _create_session()
    body = {"message": "Create a worksheet for Grade 3 addition", "subjects": ["Mathematics"], "grades": [3]}

    assert client.post(f"/api/workflow/{session_id}/start", json=body).status_code == 202
    _wait_for_checkpoint(session_id, "feedback")

    assert client.post(f"/api/workflow/{session_id}/start", json=body).status_code == 409

    resp = client.post(f"/api/workflow/{session_id}/checkpoints/scheduler", json={"decision": "approve"})
    assert resp.status_code == 400

    resp = client.post(f"/api/workflow/{session_id}/cancel")
    assert resp.status_code == 200
    assert resp.json()["status"]["cancelRequested"] is True
    assert _wait_until_finished(session_id)["overallStatus"] == "cancelled"


def test_start_requires_message():
    session_id = _create_session()
    resp = client.post(f"/api/workflow/{session_id}/start", json={"message": ""})
    assert resp.status_code == 422
