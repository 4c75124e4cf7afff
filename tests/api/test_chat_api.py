"""
API tests for `api/chat.py` using FastAPI's TestClient.

Covers:
- POST /api/sessions/{id}/chat: reply with intent, follow-up suggestions and memory (200)
- Unknown session (404), empty message (422)
- Generation Service failure (503) without an assistant message on the session

Every test gets a fresh in-memory service container through `app.dependency_overrides`; the
Generation Service is the offline mock selected by `LLM_PROVIDER=mock` in conftest.
"""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from api.dependencies import Services, get_services
from core.errors import GenerationUnavailable
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
    return client.post("/api/sessions", json={"title": "Grade 3 maths"}).json()["session"]["id"]


def test_chat_reply():
    session_id = _create_session()

    resp = client.post(
        f"/api/sessions/{session_id}/chat",
        json={"message": "Create a worksheet for Grade 3 addition", "subjects": ["Mathematics"], "grades": [3]},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["response"] == "ok"
    reply = body["reply"]
    assert reply["intent"]["type"] == "worksheetGeneration"
    assert reply["suggestions"] == ["makeSimpler", "generateQuiz", "addVisuals"]
    assert reply["content"]
    assert reply["memory"]

    session = client.get(f"/api/sessions/{session_id}").json()["session"]
    assert [message["role"] for message in session["messages"]] == ["user", "assistant"]


def test_chat_unknown_session_and_empty_message():
    assert client.post("/api/sessions/missing/chat", json={"message": "hi"}).status_code == 404

    session_id = _create_session()
    assert client.post(f"/api/sessions/{session_id}/chat", json={"message": ""}).status_code == 422


def test_chat_generation_unavailable(services):
    services.chat.generate = MagicMock(side_effect=GenerationUnavailable("provider down"))
    session_id = _create_session()

    resp = client.post(f"/api/sessions/{session_id}/chat", json={"message": "Create a lesson plan for fractions"})
    assert resp.status_code == 503
    assert "provider down" in resp.json()["message"]

    session = client.get(f"/api/sessions/{session_id}").json()["session"]
    assert [message["role"] for message in session["messages"]] == ["user"]
