"""
Manages sessions, their chat messages and their persisted workflow state.

This module provides the session repository used by the API and the
orchestrator, and the JSON file persistence layer behind it. Sessions are
kept in memory for fast access and written to a single versioned JSON
document whenever they change, so that a restarted service picks up the
sessions (including their stage logs and memory items) where it left off.

Each session has its own lock; different sessions never contend with each
other.
"""
import json
import logging
import os
import threading
from typing import Dict, List, Optional

from config import CONFIG
from core.errors import SessionNotFound
from services.session_memory import SessionMemoryStore
from shared.models import Message, Session, Stage
from shared.utils import to_iso, utc_now

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class JsonSessionPersistence:
    """
    Stores all sessions in one JSON document.

    The document has the shape `{"version": 1, "savedAt": "...", "sessions": [...]}`
    where every session is rendered with `Session.to_dict()`. Writes go to a
    temporary file that is then moved over the target, so a crash mid-write never
    leaves a truncated document behind.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or CONFIG['paths']['sessions_full_path']
        self._lock = threading.Lock()

    def load_sessions(self) -> List[Session]:
        """
        Load every session from disk.

        Returns:
            List[Session]: The stored sessions. An empty list is returned if the file
            doesn't exist; an unreadable or invalid document is logged and treated as
            empty as well.
        """
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"[SessionPersistence] Could not read {self.path}: {e}. Starting with no sessions.")
            return []

        if not isinstance(document, dict) or not isinstance(document.get('sessions'), list):
            logger.warning(f"[SessionPersistence] Unexpected document shape in {self.path}. Starting with no sessions.")
            return []

        sessions = []
        for raw in document['sessions']:
            try:
                sessions.append(Session.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[SessionPersistence] Skipping malformed session record: {e}")
        logger.info(f"[SessionPersistence] Loaded {len(sessions)} session(s) from {self.path}")
        return sessions

    def save_sessions(self, sessions: List[Session]) -> None:
        """Write every session to disk, replacing the previous document."""
        document = {
            'version': SCHEMA_VERSION,
            'savedAt': to_iso(utc_now()),
            'sessions': [session.to_dict() for session in sessions],
        }
        with self._lock:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            tmp_path = f"{self.path}.tmp"
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=4)
            os.replace(tmp_path, self.path)
        logger.debug(f"[SessionPersistence] Saved {len(sessions)} session(s) to {self.path}")


class SessionRepository:
    """
    In-memory registry of sessions with optional write-through persistence.

    Args:
        memory_store (SessionMemoryStore): Source of truth for memory items; its
            contents are exported into each session before saving and restored on load.
        persistence (JsonSessionPersistence, optional): Durable storage. When omitted
            the repository keeps sessions in memory only.
    """

    def __init__(self, memory_store: SessionMemoryStore,
                 persistence: Optional[JsonSessionPersistence] = None):
        self.memory_store = memory_store
        self.persistence = persistence
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def load(self) -> int:
        """Populate the repository (and the memory store) from persistence."""
        if self.persistence is None:
            return 0
        sessions = self.persistence.load_sessions()
        with self._registry_lock:
            for session in sessions:
                self._sessions[session.id] = session
                self._locks[session.id] = threading.RLock()
        for session in sessions:
            self.memory_store.load(session.id, session.memory)
        return len(sessions)

    def lock_for(self, session_id: str) -> threading.RLock:
        with self._registry_lock:
            if session_id not in self._sessions:
                raise SessionNotFound(session_id)
            return self._locks[session_id]

    def create_session(self, title: Optional[str] = None) -> Session:
        session = Session(title=title or "New session")
        with self._registry_lock:
            self._sessions[session.id] = session
            self._locks[session.id] = threading.RLock()
        logger.info(f"[SessionRepository] Created session {session.id}")
        self.save()
        return session

    def get(self, session_id: str) -> Session:
        """
        Return a detached copy of a session, with its memory items filled in.

        Raises:
            SessionNotFound: If no session has this id.
        """
        with self.lock_for(session_id):
            session = Session.from_dict(self._sessions[session_id].to_dict())
        session.memory = self.memory_store.export(session_id)
        return session

    def exists(self, session_id: str) -> bool:
        with self._registry_lock:
            return session_id in self._sessions

    def list_sessions(self) -> List[Session]:
        with self._registry_lock:
            session_ids = list(self._sessions.keys())
        return [self.get(session_id) for session_id in session_ids]

    def add_message(self, session_id: str, role: str, content: str) -> Message:
        """
        Append a chat message to a session and touch its last-active time.

        Raises:
            SessionNotFound: If no session has this id.
        """
        message = Message(role=role, content=content)
        with self.lock_for(session_id):
            session = self._sessions[session_id]
            session.messages.append(message)
            session.last_active_at = message.timestamp
        self.save()
        return message

    def record_stages(self, session_id: str, stages: List[Stage], persist: bool = False) -> None:
        """
        Store a snapshot of a run's stages on the session.

        The orchestrator passes copies, so later mutation of the live run never shows
        up in the stored session.
        """
        with self.lock_for(session_id):
            session = self._sessions[session_id]
            session.stages = stages
            session.last_active_at = utc_now()
        if persist:
            self.save()

    def save(self) -> None:
        if self.persistence is None:
            return
        self.persistence.save_sessions(self.list_sessions())
