"""
shared/models.py

Common data models and type definitions used across the workflow core.

This module contains the records that the orchestrator, the intent classifier,
the session memory store and the persistence layer exchange:

- Stage / LogEntry: one step of the workflow pipeline and its append-only event log
- Intent: the classifier output
- MemoryItem: a fact, preference or context note scoped to a session
- Session / Message: the unit of conversation and workflow state

Every record can be rendered with `to_dict()` into the persisted JSON shape
(camelCase keys, ISO-8601 timestamps) and rebuilt with `from_dict()`. The stage
state machine lives here as well, so that no caller can move a stage into a
status it is not allowed to reach.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional

from shared.utils import generate_id, parse_timestamp, to_iso, utc_now


class StageKind(Enum):
    """
    Kind of a workflow stage.

    - AUTOMATED: runs to completion without outside input
    - CHECKPOINT: suspends the run until a teacher supplies a decision
    """
    AUTOMATED = "automated"
    CHECKPOINT = "checkpoint"


class StageStatus(Enum):
    """Lifecycle status of a single stage."""
    PENDING = "pending"
    RUNNING = "running"
    SUSPENDED = "suspended"
    SKIPPED = "skipped"
    COMPLETED = "completed"
    ERROR = "error"


# pending -> running -> {completed | error | suspended | skipped}
# pending -> skipped, suspended -> running | error
ALLOWED_TRANSITIONS = {
    StageStatus.PENDING: {StageStatus.RUNNING, StageStatus.SKIPPED},
    StageStatus.RUNNING: {
        StageStatus.COMPLETED,
        StageStatus.ERROR,
        StageStatus.SUSPENDED,
        StageStatus.SKIPPED,
    },
    StageStatus.SUSPENDED: {StageStatus.RUNNING, StageStatus.ERROR},
    StageStatus.SKIPPED: set(),
    StageStatus.COMPLETED: set(),
    StageStatus.ERROR: set(),
}

FINISHED_STATUSES = {StageStatus.COMPLETED, StageStatus.SKIPPED}


class RunStatus(Enum):
    """
    Overall status of a workflow run, derived by the orchestrator.

    AWAITING_INPUT is reported while a checkpoint stage is suspended.
    """
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_INPUT = "awaiting_input"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CheckpointDecision(Enum):
    """Decisions a teacher can send to a suspended checkpoint stage."""
    APPROVE = "approve"
    REGENERATE = "regenerate"
    REJECT = "reject"


class MemoryType(Enum):
    """Kinds of notes kept by the session memory store."""
    FACT = "fact"
    PREFERENCE = "preference"
    CONTEXT = "context"


class IntentType(Enum):
    """
    The fixed set of intents the rule-based classifier can return.

    GENERAL_QUERY doubles as the fallback when no pattern scores above the floor.
    """
    WORKSHEET_GENERATION = "worksheetGeneration"
    LESSON_PLANNING = "lessonPlanning"
    CONCEPT_EXPLANATION = "conceptExplanation"
    QUIZ_GENERATION = "quizGeneration"
    GRADE_ADAPTATION = "gradeAdaptation"
    TRANSLATION = "translation"
    RESOURCE_CREATION = "resourceCreation"
    BEHAVIOR_MANAGEMENT = "behaviorManagement"
    PARENT_COMMUNICATION = "parentCommunication"
    GENERAL_QUERY = "generalQuery"


class InvalidTransition(ValueError):
    """Raised when a stage is asked to move to a status its current status cannot reach."""

    def __init__(self, stage_id: str, current: StageStatus, requested: StageStatus):
        self.stage_id = stage_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Stage '{stage_id}' cannot move from {current.value} to {requested.value}"
        )


@dataclass(frozen=True)
class LogEntry:
    """
    One recorded orchestration event on a stage.

    Entries are immutable once created; the stage only ever appends them. The
    metadata bag is free-form (processingTime, modelUsed, tokensProcessed,
    confidence, parameters, ...) and is copied on creation so later mutation of
    the caller's dict cannot leak into the log.
    """
    message: str
    reasoning: str
    metadata: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=lambda: generate_id("log"))
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if self.metadata is not None:
            object.__setattr__(self, "metadata", dict(self.metadata))

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "timestamp": to_iso(self.timestamp),
            "message": self.message,
            "reasoning": self.reasoning,
        }
        if self.metadata is not None:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        return cls(
            id=data["id"],
            timestamp=parse_timestamp(data["timestamp"]),
            message=data.get("message", ""),
            reasoning=data.get("reasoning", ""),
            metadata=data.get("metadata"),
        )


@dataclass
class Stage:
    """
    One step of the workflow pipeline.

    Stages are created from the workflow configuration when a run starts and are
    mutated only by the orchestrator through `transition()` and `append_log()`.
    `sub_steps` are display labels used for progress reporting; they are not
    scheduled separately. `output` holds the JSON-able result a stage hands to
    later stages and to the final artifact prompt.
    """
    id: str
    name: str
    kind: StageKind
    handler: str
    sub_steps: List[str] = field(default_factory=list)
    applies_to: Optional[List[str]] = None
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    log_entries: List[LogEntry] = field(default_factory=list)
    output: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, stage_config: Dict[str, Any]) -> "Stage":
        """
        Build a fresh pending stage from one entry of `workflow.stages` in config.json.

        Args:
            stage_config (Dict[str, Any]): Mapping with 'id', 'name', 'kind', 'handler' and the
                optional 'sub_steps' and 'applies_to' keys.

        Returns:
            Stage: A stage in PENDING status with an empty log.
        """
        applies_to = stage_config.get("applies_to")
        return cls(
            id=stage_config["id"],
            name=stage_config.get("name", stage_config["id"]),
            kind=StageKind(stage_config.get("kind", StageKind.AUTOMATED.value)),
            handler=stage_config["handler"],
            sub_steps=list(stage_config.get("sub_steps") or []),
            applies_to=list(applies_to) if applies_to is not None else None,
        )

    @property
    def is_checkpoint(self) -> bool:
        return self.kind == StageKind.CHECKPOINT

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def applies_to_intent(self, intent_type: str) -> bool:
        return self.applies_to is None or intent_type in self.applies_to

    def transition(self, new_status: StageStatus, at: Optional[datetime] = None) -> None:
        """
        Move the stage to `new_status`, enforcing the stage state machine.

        The start timestamp is recorded the first time the stage enters RUNNING (a
        checkpoint resuming from SUSPENDED keeps its original start), and the end
        timestamp is recorded on any terminal status.

        Raises:
            InvalidTransition: If the move is not allowed from the current status.
        """
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(self.id, self.status, new_status)

        at = at or utc_now()
        if new_status == StageStatus.RUNNING and self.started_at is None:
            self.started_at = at
        if new_status in (StageStatus.COMPLETED, StageStatus.ERROR, StageStatus.SKIPPED):
            self.ended_at = at
        self.status = new_status

    def append_log(self, entry: LogEntry) -> LogEntry:
        self.log_entries.append(entry)
        return entry

    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "handler": self.handler,
            "status": self.status.value,
            "startedAt": to_iso(self.started_at),
            "endedAt": to_iso(self.ended_at),
            "subSteps": list(self.sub_steps),
            "appliesTo": list(self.applies_to) if self.applies_to is not None else None,
            "logEntries": [entry.to_dict() for entry in self.log_entries],
            "output": dict(self.output),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Stage":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            kind=StageKind(data.get("kind", StageKind.AUTOMATED.value)),
            handler=data.get("handler", ""),
            sub_steps=list(data.get("subSteps") or []),
            applies_to=data.get("appliesTo"),
            status=StageStatus(data.get("status", StageStatus.PENDING.value)),
            started_at=parse_timestamp(data.get("startedAt")),
            ended_at=parse_timestamp(data.get("endedAt")),
            log_entries=[LogEntry.from_dict(entry) for entry in data.get("logEntries", [])],
            output=dict(data.get("output") or {}),
        )


@dataclass
class Intent:
    """
    Result of classifying a teacher's message.

    `confidence` is an integer percentage capped at 95. `matched_keywords` keeps the
    keywords of the winning pattern in table order; callers should treat it as a set.
    `is_fallback` is True when no pattern scored above the floor and the default
    general query intent was returned instead.
    """
    type: str
    confidence: int
    matched_keywords: List[str] = field(default_factory=list)
    parameters: Dict[str, Any] = field(default_factory=dict)
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "confidence": self.confidence,
            "matchedKeywords": list(self.matched_keywords),
            "parameters": dict(self.parameters),
            "isFallback": self.is_fallback,
        }


@dataclass
class MemoryItem:
    """
    One stored note for a session.

    Items are never edited after creation except for `usage_count`, which only ever
    increases (every time a retrieval call returns the item).
    """
    session_id: str
    content: str
    type: MemoryType
    metadata: Dict[str, Any] = field(default_factory=dict)
    usage_count: int = 0
    id: str = field(default_factory=lambda: generate_id("memory"))
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "content": self.content,
            "type": self.type.value,
            "createdAt": to_iso(self.created_at),
            "usageCount": self.usage_count,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryItem":
        return cls(
            id=data["id"],
            session_id=data["sessionId"],
            content=data["content"],
            type=MemoryType(data["type"]),
            created_at=parse_timestamp(data["createdAt"]),
            usage_count=int(data.get("usageCount", 0)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class Message:
    """A single chat message; owned by the caller, read by the classifier."""
    role: str
    content: str
    id: str = field(default_factory=lambda: generate_id("msg"))
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": to_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            role=data.get("role", "user"),
            content=data.get("content", ""),
            timestamp=parse_timestamp(data["timestamp"]),
        )


@dataclass
class Session:
    """
    The unit of conversation and workflow state.

    `stages` is None until a workflow run starts on the session and is replaced by a
    fresh list on every new run. `memory` is only filled when the session is exported
    for persistence; at runtime the session memory store is the source of truth.
    """
    title: str = "New session"
    id: str = field(default_factory=lambda: generate_id("session"))
    created_at: datetime = field(default_factory=utc_now)
    last_active_at: datetime = field(default_factory=utc_now)
    messages: List[Message] = field(default_factory=list)
    stages: Optional[List[Stage]] = None
    memory: List[MemoryItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": to_iso(self.created_at),
            "lastActiveAt": to_iso(self.last_active_at),
            "messages": [message.to_dict() for message in self.messages],
            "stages": [stage.to_dict() for stage in self.stages] if self.stages is not None else None,
            "memory": [item.to_dict() for item in self.memory],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        stages = data.get("stages")
        return cls(
            id=data["id"],
            title=data.get("title", "New session"),
            created_at=parse_timestamp(data["createdAt"]),
            last_active_at=parse_timestamp(data.get("lastActiveAt") or data["createdAt"]),
            messages=[Message.from_dict(message) for message in data.get("messages", [])],
            stages=[Stage.from_dict(stage) for stage in stages] if stages is not None else None,
            memory=[MemoryItem.from_dict(item) for item in data.get("memory", [])],
        )
