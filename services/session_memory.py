"""
services/session_memory.py

Relevance-scored memory of facts, preferences and context notes per session.

The store keeps a list of MemoryItem records for every session and ranks them
against free-text queries with a lexical score (exact phrase, token overlap),
a type multiplier, a recency bonus and a usage bonus. Items that are returned
by a retrieval call are reinforced (their usage count goes up), and a periodic
sweep removes items whose usage-extended lifetime has expired.

Every session has its own lock; operations on different sessions never
contend with each other.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from monitoring.metrics import MEMORY_SWEEP_REMOVED
from shared.models import Intent, IntentType, MemoryItem, MemoryType
from shared.utils import truncate_message_for_logging, utc_now

logger = logging.getLogger(__name__)

RETRIEVE_FLOOR = 0.1
SEARCH_FLOOR = 0.2
EXACT_MATCH_BONUS = 1.0
OVERLAP_WEIGHT = 0.8
RECENCY_WINDOW = timedelta(hours=24)
RECENCY_MULTIPLIER = 1.1
USAGE_BONUS_PER_USE = 0.05
MAX_USAGE_BONUS = 0.2
MAX_RELEVANCE = 2.0
LIFETIME_EXTENSION_PER_USE = 0.1
DEFAULT_MAX_AGE = timedelta(days=7)

TYPE_MULTIPLIERS = {
    MemoryType.PREFERENCE: 1.2,
    MemoryType.FACT: 1.1,
    MemoryType.CONTEXT: 0.9,
}


class SessionMemoryStore:
    """
    In-process store of MemoryItem records keyed by session id.

    Args:
        clock (Callable[[], datetime], optional): Returns the current aware UTC time.
            Tests inject a fake clock to control recency and retention.
        default_max_age (timedelta, optional): Base lifetime used by `sweep` when no
            explicit age is passed.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None,
                 default_max_age: timedelta = DEFAULT_MAX_AGE):
        self._clock = clock or utc_now
        self.default_max_age = default_max_age
        self._items: Dict[str, List[MemoryItem]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        # Guards creation of per-session entries only.
        self._registry_lock = threading.Lock()

    def _session_lock(self, session_id: str, create: bool = True) -> Optional[threading.Lock]:
        """Lock of a session; read paths pass `create=False` and get None for unknown sessions."""
        with self._registry_lock:
            lock = self._locks.get(session_id)
            if lock is None and create:
                lock = threading.Lock()
                self._locks[session_id] = lock
                self._items[session_id] = []
            return lock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def store(self, session_id: str, content: str, type: MemoryType,
              metadata: Optional[Dict[str, Any]] = None) -> MemoryItem:
        """
        Add a note to a session's memory. Always succeeds.

        Returns:
            MemoryItem: The stored item with a fresh id, the current time and usage 0.
        """
        item = MemoryItem(
            session_id=session_id,
            content=content,
            type=MemoryType(type),
            metadata=dict(metadata or {}),
            created_at=self._clock(),
        )
        with self._session_lock(session_id):
            self._items[session_id].append(item)
        logger.debug(f"[SessionMemory] Stored {item.type.value} for {session_id}: "
                     f"'{truncate_message_for_logging(content, 60)}'")
        return item

    def remember_interaction(self, session_id: str, message: str, intent: Intent,
                             subjects: Optional[Sequence[str]] = None,
                             grades: Optional[Sequence[int]] = None) -> List[MemoryItem]:
        """
        Derive notes from a classified request and store them.

        The notes cover the subjects and grades the teacher works with, a summary of
        the classified request, one intent-specific fact for the intents that have one,
        and style preferences signalled by words such as "simple", "visual" or
        "interactive" in the message.

        Returns:
            List[MemoryItem]: The stored items, in the order they were derived.
        """
        subjects = list(subjects or [])
        grades = list(grades or [])
        metadata = {
            "intent": intent.type,
            "subjects": subjects,
            "grades": grades,
            "confidence": intent.confidence,
        }
        return [
            self.store(session_id, content, note_type, metadata)
            for content, note_type in self._extract_notes(message, intent, subjects, grades)
        ]

    @staticmethod
    def _extract_notes(message: str, intent: Intent, subjects: List[str],
                       grades: List[int]) -> List[Tuple[str, MemoryType]]:
        notes = []
        text = (message or "").lower()

        if subjects:
            notes.append((f"Teacher works with subjects: {', '.join(subjects)}", MemoryType.PREFERENCE))
        if grades:
            notes.append((f"Teacher handles grades: {', '.join(str(g) for g in grades)}", MemoryType.PREFERENCE))

        notes.append((f"User requested {intent.type} with confidence {intent.confidence}%", MemoryType.CONTEXT))

        if intent.type == IntentType.WORKSHEET_GENERATION.value:
            if subjects:
                notes.append((f"Teacher creates worksheets for {', '.join(subjects)} subjects", MemoryType.FACT))
            else:
                notes.append(("Teacher creates worksheets", MemoryType.FACT))
        elif intent.type == IntentType.LESSON_PLANNING.value:
            notes.append(("Teacher plans lessons for multi-grade classroom", MemoryType.FACT))
        elif intent.type == IntentType.BEHAVIOR_MANAGEMENT.value:
            notes.append(("Teacher needs help with classroom behavior management", MemoryType.PREFERENCE))
        elif intent.type == IntentType.TRANSLATION.value:
            notes.append(("Teacher uses bilingual content (English/Hindi)", MemoryType.PREFERENCE))

        if "simple" in text or "easy" in text:
            notes.append(("Teacher prefers simple, easy-to-understand content", MemoryType.PREFERENCE))
        if "visual" in text or "diagram" in text:
            notes.append(("Teacher uses visual aids and diagrams", MemoryType.PREFERENCE))
        if "interactive" in text or "activity" in text:
            notes.append(("Teacher prefers interactive activities", MemoryType.PREFERENCE))

        return notes

    # ------------------------------------------------------------------
    # Ranked reads (these reinforce returned items)
    # ------------------------------------------------------------------

    def retrieve_relevant(self, session_id: str, query: str, limit: int = 5) -> List[MemoryItem]:
        """
        Return up to `limit` items scoring above 0.1 for `query`.

        Results are ordered by descending relevance, then by descending creation time.
        Every returned item has its usage count incremented by exactly one; items that
        were scored but not returned are left untouched. Callers should not call this
        speculatively.
        """
        return self._ranked(session_id, query, RETRIEVE_FLOOR, limit)

    def search(self, session_id: str, query: str) -> List[MemoryItem]:
        """Like `retrieve_relevant` with a 0.2 floor and no limit."""
        return self._ranked(session_id, query, SEARCH_FLOOR, None)

    def _ranked(self, session_id: str, query: str, floor: float,
                limit: Optional[int]) -> List[MemoryItem]:
        query_lower = (query or "").lower().strip()
        query_tokens = query_lower.split()
        if not query_tokens:
            return []

        lock = self._session_lock(session_id, create=False)
        if lock is None:
            return []
        with lock:
            now = self._clock()
            scored = []
            for item in self._items[session_id]:
                score = self.relevance(item, query_tokens, query_lower, now)
                if score > floor:
                    scored.append((score, item))

            scored.sort(key=lambda pair: (-pair[0], -pair[1].created_at.timestamp()))
            if limit is not None:
                scored = scored[:max(limit, 0)]

            for _, item in scored:
                item.usage_count += 1

            results = [item for _, item in scored]

        logger.debug(f"[SessionMemory] Query '{truncate_message_for_logging(query_lower, 50)}' "
                     f"for {session_id} returned {len(results)} item(s)")
        return results

    @staticmethod
    def relevance(item: MemoryItem, query_tokens: List[str], query_lower: str, now: datetime) -> float:
        """
        Score one item against a tokenized, lower-cased query.

        - +1.0 if the whole query appears in the item content
        - + (overlapping query tokens / query tokens) * 0.8, where a query token
          overlaps when it contains, or is contained in, any item token
        - multiplied by the type multiplier (preference 1.2, fact 1.1, context 0.9)
        - multiplied by 1.1 when the item is less than 24 hours old
        - + min(usage_count * 0.05, 0.2)
        - capped at 2.0
        """
        score = 0.0
        content_lower = item.content.lower()

        if query_lower in content_lower:
            score += EXACT_MATCH_BONUS

        item_tokens = content_lower.split()
        overlapping = [
            token for token in query_tokens
            if any(item_token in token or token in item_token for item_token in item_tokens)
        ]
        score += (len(overlapping) / len(query_tokens)) * OVERLAP_WEIGHT

        score *= TYPE_MULTIPLIERS[item.type]

        if now - item.created_at < RECENCY_WINDOW:
            score *= RECENCY_MULTIPLIER

        score += min(item.usage_count * USAGE_BONUS_PER_USE, MAX_USAGE_BONUS)

        return min(score, MAX_RELEVANCE)

    # ------------------------------------------------------------------
    # Plain reads
    # ------------------------------------------------------------------

    def recent(self, session_id: str, limit: int = 10) -> List[MemoryItem]:
        """Most recently created items first. Does not change usage counts."""
        lock = self._session_lock(session_id, create=False)
        if lock is None:
            return []
        with lock:
            items = sorted(self._items[session_id], key=lambda item: item.created_at, reverse=True)
        return items[:max(limit, 0)]

    def by_type(self, session_id: str, type: MemoryType) -> List[MemoryItem]:
        memory_type = MemoryType(type)
        lock = self._session_lock(session_id, create=False)
        if lock is None:
            return []
        with lock:
            return [item for item in self._items[session_id] if item.type == memory_type]

    def stats(self, session_id: str) -> Dict[str, Any]:
        """
        Summary counts for a session's memory.

        Returns:
            Dict[str, Any]: totalItems, factCount, preferenceCount, contextCount,
            averageUsage and the oldest/newest creation times (None when empty).
        """
        lock = self._session_lock(session_id, create=False)
        items = []
        if lock is not None:
            with lock:
                items = list(self._items[session_id])

        def count(memory_type: MemoryType) -> int:
            return sum(1 for item in items if item.type == memory_type)

        return {
            "totalItems": len(items),
            "factCount": count(MemoryType.FACT),
            "preferenceCount": count(MemoryType.PREFERENCE),
            "contextCount": count(MemoryType.CONTEXT),
            "averageUsage": (sum(item.usage_count for item in items) / len(items)) if items else 0,
            "oldestItem": min(item.created_at for item in items) if items else None,
            "newestItem": max(item.created_at for item in items) if items else None,
        }

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def sweep(self, session_id: str, base_max_age: Optional[timedelta] = None) -> int:
        """
        Remove items whose age exceeds `base_max_age * (1 + usage_count * 0.1)`.

        Args:
            session_id (str): Session to sweep.
            base_max_age (timedelta, optional): Base lifetime; defaults to the store's
                default (7 days).

        Returns:
            int: Number of items removed. Sweeping twice with the same clock value
            removes nothing the second time.
        """
        base_max_age = base_max_age or self.default_max_age
        lock = self._session_lock(session_id, create=False)
        if lock is None:
            return 0
        with lock:
            now = self._clock()
            kept = []
            removed = 0
            for item in self._items[session_id]:
                max_age = base_max_age * (1 + item.usage_count * LIFETIME_EXTENSION_PER_USE)
                if now - item.created_at > max_age:
                    removed += 1
                else:
                    kept.append(item)
            self._items[session_id] = kept

        if removed:
            MEMORY_SWEEP_REMOVED.inc(removed)
            logger.info(f"[SessionMemory] Swept {removed} expired item(s) from {session_id}")
        return removed

    def sweep_all(self, base_max_age: Optional[timedelta] = None) -> int:
        """Sweep every known session; returns the total number of removed items."""
        return sum(self.sweep(session_id, base_max_age) for session_id in self.session_ids())

    def session_ids(self) -> List[str]:
        with self._registry_lock:
            return list(self._items.keys())

    # ------------------------------------------------------------------
    # Persistence hooks
    # ------------------------------------------------------------------

    def export(self, session_id: str) -> List[MemoryItem]:
        """Copy of a session's items, for writing alongside the session."""
        lock = self._session_lock(session_id, create=False)
        if lock is None:
            return []
        with lock:
            return [MemoryItem.from_dict(item.to_dict()) for item in self._items[session_id]]

    def load(self, session_id: str, items: Iterable[MemoryItem]) -> None:
        """Replace a session's items with previously exported ones."""
        items = list(items)
        with self._session_lock(session_id):
            self._items[session_id] = items
        logger.debug(f"[SessionMemory] Loaded {len(items)} item(s) for {session_id}")
