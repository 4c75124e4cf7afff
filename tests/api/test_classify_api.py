"""
API tests for `api/classify.py` and `api/speech.py` using FastAPI's TestClient.

Covers:
- POST /api/classify: intent, confidence and parameters for a worksheet request
- GET /api/classify/suggestions: prefix suggestions and the list of intents
- POST /api/speech/synthesize: MPEG audio from the mock Speech Service (200), empty text (400),
  and the browser fallback when the provider fails (503); the provider call runs off the event loop

Mocks:
- The Speech Service on the shared container, where a provider failure is needed
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from api.dependencies import Services, get_services
from main import app
from provider_api import SpeechServiceError
from provider_api.mock_client import MOCK_AUDIO_HEADER

client = TestClient(app)


@pytest.fixture(autouse=True)
def services():
    container = Services(persist=False)
    app.dependency_overrides[get_services] = lambda: container
    yield container
    app.dependency_overrides.clear()
    container.orchestrator.shutdown(wait=True)


def test_classify_worksheet_request():
    resp = client.post(
        "/api/classify",
        json={"message": "Create a worksheet for Grade 3 addition", "subjects": ["Mathematics"], "grades": [3]},
    )
    assert resp.status_code == 200
    intent = resp.json()["intent"]
    assert intent["type"] == "worksheetGeneration"
    assert intent["confidence"] == 86
    assert intent["matchedKeywords"] == ["worksheet"]
    assert intent["parameters"]["difficulty"] == "medium"
    assert intent["isFallback"] is False


def test_classify_empty_message_falls_back():
    resp = client.post("/api/classify", json={"message": ""})
    assert resp.status_code == 200
    intent = resp.json()["intent"]
    assert intent["type"] == "generalQuery"
    assert intent["isFallback"] is True


def test_suggestions():
    resp = client.get("/api/classify/suggestions", params={"text": "qui"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["suggestions"] == ["quizGeneration: quiz"]
    assert "worksheetGeneration" in body["intents"]


def test_synthesize_returns_audio():
    resp = client.post("/api/speech/synthesize", json={"text": "Namaste class"})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "audio/mpeg"
    assert resp.content == MOCK_AUDIO_HEADER + "Namaste class".encode("utf-8")


def test_synthesize_rejects_empty_text():
    resp = client.post("/api/speech/synthesize", json={"text": "  "})
    assert resp.status_code == 400


def test_synthesize_falls_back_when_provider_fails(services):
    failing = MagicMock()
    failing.synthesize.side_effect = SpeechServiceError("ElevenLabs API error: 500")
    services._speech = failing

    resp = client.post("/api/speech/synthesize", json={"text": "Namaste class"})
    assert resp.status_code == 503
    assert resp.json()["fallback"] == "browser"


def test_synthesize_runs_off_the_event_loop(services):
    seen = {}

    def synthesize(text, voice_params=None):
        try:
            asyncio.get_running_loop()
            seen["on_loop"] = True
        except RuntimeError:
            seen["on_loop"] = False
        return b"ID3audio"

    speech = MagicMock()
    speech.synthesize.side_effect = synthesize
    services._speech = speech

    resp = client.post("/api/speech/synthesize", json={"text": "Namaste class"})
    assert resp.status_code == 200
    assert resp.content == b"ID3audio"
    assert seen["on_loop"] is False
