"""
core/chat.py

Conversational replies to teacher messages.

One chat turn:
1. Classifies the message
2. Retrieves relevant session memory as context (reinforcing what it returns)
3. Stores the notes the message reveals about the teacher
4. Asks the Generation Service for a reply shaped by the intent
5. Attaches follow-up actions the client can offer next

Unlike a workflow run a chat turn has no stages or checkpoints; it is answered
synchronously on the caller's thread.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence

from config import load_prompt
from config.logging_config import get_logger
from core.classifier import IntentClassifier
from core.errors import GenerationUnavailable, SessionNotFound
from monitoring.metrics import CHAT_REPLY_COUNT
from services.session_memory import SessionMemoryStore
from services.session_store import SessionRepository
from shared.models import Intent, IntentType, MemoryType
from shared.utils import truncate_message_for_logging

logger = get_logger(__name__)

CONTENT_INTENTS = {IntentType.WORKSHEET_GENERATION.value, IntentType.QUIZ_GENERATION.value}

FOLLOW_UP_ACTIONS = {
    IntentType.WORKSHEET_GENERATION.value: ["makeSimpler", "generateQuiz", "addVisuals"],
    IntentType.LESSON_PLANNING.value: ["createTimeline", "addActivities", "generateAssessment"],
    IntentType.CONCEPT_EXPLANATION.value: ["provideExamples", "createDiagram", "suggestPractice"],
}
DEFAULT_FOLLOW_UPS = ["makeSimpler", "translate", "generateQuiz"]

LANGUAGES = {"en": "English", "hi": "Hindi"}


def follow_up_actions(intent_type: str) -> List[str]:
    """Action ids the client can offer after a reply to a request of this intent."""
    return list(FOLLOW_UP_ACTIONS.get(intent_type, DEFAULT_FOLLOW_UPS))


class ChatResponder:
    """
    Answers one chat message at a time for a session.

    Args:
        classifier (IntentClassifier): Shared rule-based classifier.
        memory_store (SessionMemoryStore): Source of context and sink for learned notes.
        generate (Callable[[str], str]): Prompt-to-text call; raises GenerationUnavailable.
            The API wires in the orchestrator's timeout-bounded `generate_text`.
        sessions (SessionRepository, optional): When given, the session must exist and
            both the message and the reply are appended to it.
        model_name (str): Reported with every reply.
        context_limit (int): Maximum number of memory items used as context.
    """

    def __init__(self, classifier: IntentClassifier, memory_store: SessionMemoryStore,
                 generate: Callable[[str], str], sessions: Optional[SessionRepository] = None,
                 model_name: str = "unknown", context_limit: int = 5):
        self.classifier = classifier
        self.memory_store = memory_store
        self.generate = generate
        self.sessions = sessions
        self.model_name = model_name
        self.context_limit = context_limit

    def reply(self, session_id: str, message: str,
              subjects: Optional[Sequence[str]] = None,
              grades: Optional[Sequence[int]] = None,
              locale: str = "en") -> Dict[str, Any]:
        """
        Produce the assistant's reply to `message`.

        Returns:
            Dict[str, Any]: content, intent, suggestions, the context used, the five most
            recent memory items and the model that answered.

        Raises:
            SessionNotFound: If a session repository is attached and has no such session.
            GenerationUnavailable: If the Generation Service fails or times out. Memory
                is already updated at that point; the reply is not recorded.
        """
        if self.sessions is not None and not self.sessions.exists(session_id):
            raise SessionNotFound(session_id)

        subjects = list(subjects or [])
        grades = [int(grade) for grade in (grades or [])]
        chat_logger = get_logger(__name__, session_id=session_id)

        intent = self.classifier.classify(message, subjects, grades)
        context = self.memory_store.retrieve_relevant(session_id, message, self.context_limit)
        self.memory_store.remember_interaction(session_id, message, intent, subjects, grades)
        if self.sessions is not None:
            self.sessions.add_message(session_id, "user", message)

        prompt = self._build_prompt(session_id, message, intent, [item.content for item in context],
                                    subjects, grades, locale)
        try:
            content = self.generate(prompt)
        except GenerationUnavailable:
            CHAT_REPLY_COUNT.labels(intent=intent.type, status="unavailable").inc()
            raise

        if self.sessions is not None:
            self.sessions.add_message(session_id, "assistant", content)
        CHAT_REPLY_COUNT.labels(intent=intent.type, status="ok").inc()
        chat_logger.info(
            f"[ChatResponder] Replied to '{truncate_message_for_logging(message, 60)}' as {intent.type} "
            f"with {len(context)} context item(s)"
        )

        return {
            "content": content,
            "intent": intent.to_dict(),
            "suggestions": follow_up_actions(intent.type),
            "context": [item.content for item in context],
            "memory": [item.to_dict() for item in self.memory_store.recent(session_id, 5)],
            "modelUsed": self.model_name,
        }

    def _build_prompt(self, session_id: str, message: str, intent: Intent, context: List[str],
                      subjects: List[str], grades: List[int], locale: str) -> str:
        template = "chat_content" if intent.type in CONTENT_INTENTS else "chat_reply"
        preferences = [
            item.content for item in self.memory_store.by_type(session_id, MemoryType.PREFERENCE)
        ]
        return load_prompt(template).format(
            context="\n".join(f"- {item}" for item in context) or "No previous context",
            message=message,
            intent=intent.type,
            confidence=intent.confidence,
            subjects=", ".join(subjects) or "not specified",
            grades=", ".join(str(grade) for grade in grades) or "not specified",
            language=LANGUAGES.get(locale, "English"),
            preferences="; ".join(preferences) or "none recorded",
        )
