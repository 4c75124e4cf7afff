"""
api/dependencies.py

Process-wide service container shared by the API routers.

The routers never build collaborators themselves. They ask FastAPI for
`get_services()` through `Depends`, which returns one `Services` instance
holding the session repository, the memory store, the classifier, the
orchestrator, the chat responder and the speech service. Tests swap the
whole container with `app.dependency_overrides[get_services]` or reset it with
`reset_services()`.
"""

import logging
import threading
from typing import Optional

from core.chat import ChatResponder
from core.classifier import IntentClassifier
from core.orchestrator import WorkflowOrchestrator
from provider_api import SpeechService, get_speech_service
from services.session_memory import SessionMemoryStore
from services.session_store import JsonSessionPersistence, SessionRepository

logger = logging.getLogger(__name__)


class Services:
    """
    Wiring of the collaborators used by the HTTP layer.

    Args:
        persist (bool): Whether sessions are written to the configured JSON file.
    """

    def __init__(self, persist: bool = True):
        self.memory_store = SessionMemoryStore()
        self.sessions = SessionRepository(
            self.memory_store,
            JsonSessionPersistence() if persist else None,
        )
        self.classifier = IntentClassifier()
        self.orchestrator = WorkflowOrchestrator(
            classifier=self.classifier,
            memory_store=self.memory_store,
            sessions=self.sessions,
        )
        self.chat = ChatResponder(
            classifier=self.classifier,
            memory_store=self.memory_store,
            generate=self.orchestrator.generate_text,
            sessions=self.sessions,
            model_name=self.orchestrator.generation_service.model_name,
        )
        self._speech: Optional[SpeechService] = None

    @property
    def speech(self) -> SpeechService:
        """Speech Service, built on first use so a missing API key only affects speech routes."""
        if self._speech is None:
            self._speech = get_speech_service()
        return self._speech

    def shutdown(self) -> None:
        self.orchestrator.shutdown(wait=False)
        self.sessions.save()


_services: Optional[Services] = None
_services_lock = threading.Lock()


def get_services() -> Services:
    """FastAPI dependency returning the shared container, creating it on first call."""
    global _services
    with _services_lock:
        if _services is None:
            _services = Services()
            loaded = _services.sessions.load()
            logger.info(f"[get_services] Service container ready, {loaded} session(s) loaded")
        return _services


def reset_services() -> None:
    """Shut down and forget the shared container."""
    global _services
    with _services_lock:
        services, _services = _services, None
    if services is not None:
        services.shutdown()
