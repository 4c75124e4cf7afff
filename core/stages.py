"""
core/stages.py

Stage handlers and the registry that maps handler names to them.

Stages in config.json name a `handler`; the orchestrator looks the handler up
in a StageRegistry and calls it with a RunContext. This keeps what a stage
does separate from how the orchestrator sequences, times and logs stages.

Two handler shapes exist:
- AutomatedHandler: `run(ctx) -> output dict`
- CheckpointHandler: `prepare(ctx, attempt) -> review dict` presented to the
  teacher, optional `validate(payload) -> payload` applied to approvals before
  they are accepted, and `complete(ctx, review, payload) -> output dict`.

The default pipeline builds a worksheet: plan, record the classification,
draft a brief from memory, personalise it, check it, let the teacher review
sample questions, store what was learned, let the teacher pick a delivery
date and prepare a notification.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional

from config import load_prompt
from core.errors import InvalidDecision
from services.session_memory import SessionMemoryStore
from shared.models import Intent, MemoryType, Stage, StageKind
from shared.utils import extract_json_object, utc_now

logger = logging.getLogger(__name__)

_SUBJECT_NAMES = ("mathematics", "math", "science", "english", "hindi", "social studies")
_GRADE_IN_TEXT_RE = re.compile(r"grade\s*(\d+)|class\s*(\d+)|standard\s*(\d+)", re.IGNORECASE)


@dataclass
class RunContext:
    """
    Everything a stage handler may read or call during one run.

    `outputs` collects the output of every completed stage keyed by handler name,
    so later stages can build on earlier ones regardless of stage ids. `generate`
    goes through the orchestrator's generation executor (with timeout) and `log`
    appends a LogEntry to the stage that is currently executing.
    """
    session_id: str
    trigger_text: str
    subjects: List[str]
    grades: List[int]
    memory_store: SessionMemoryStore
    generate: Callable[[str], str]
    log: Callable[..., None]
    workflow_config: Dict[str, Any]
    intent: Optional[Intent] = None
    planned_stage_ids: List[str] = field(default_factory=list)
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def subject(self) -> str:
        """First selected subject, else one named in the request, else the configured default."""
        if self.subjects:
            return self.subjects[0]
        lowered = self.trigger_text.lower()
        for name in _SUBJECT_NAMES:
            if name in lowered:
                return "Mathematics" if name == "math" else name.title()
        return self.workflow_config.get("default_subject", "Mathematics")

    @property
    def grade(self) -> int:
        """First selected grade, else one named in the request, else the configured default."""
        if self.grades:
            return int(self.grades[0])
        match = _GRADE_IN_TEXT_RE.search(self.trigger_text)
        if match:
            return int(next(group for group in match.groups() if group))
        return int(self.workflow_config.get("default_grade", 3))

    @property
    def parameters(self) -> Dict[str, Any]:
        return self.intent.parameters if self.intent else {}


class AutomatedHandler:
    """Handler for a stage that runs to completion without outside input."""

    kind = StageKind.AUTOMATED

    def __init__(self, name: str, run: Callable[[RunContext], Dict[str, Any]], description: str = ""):
        self.name = name
        self.run = run
        self.description = description


class CheckpointHandler:
    """
    Handler for a stage that waits for a teacher decision.

    Args:
        name: Handler name referenced from config.json.
        prepare: Builds the review data shown to the teacher; called again with a
            higher attempt number on every regeneration.
        complete: Turns the approved review (and payload) into the stage output.
        validate: Checks and normalises an approval payload; raises InvalidDecision.
        allows_regenerate: Whether `regenerate` is a valid decision for this stage.
    """

    kind = StageKind.CHECKPOINT

    def __init__(self, name: str,
                 prepare: Callable[[RunContext, int], Dict[str, Any]],
                 complete: Callable[[RunContext, Dict[str, Any], Dict[str, Any]], Dict[str, Any]],
                 validate: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None,
                 allows_regenerate: bool = False,
                 description: str = ""):
        self.name = name
        self.prepare = prepare
        self.complete = complete
        self.validate = validate or (lambda payload: dict(payload or {}))
        self.allows_regenerate = allows_regenerate
        self.description = description


class StageRegistry:
    """Registration and lookup of stage handlers by name."""

    def __init__(self) -> None:
        self._handlers: Dict[str, Any] = {}

    def register(self, handler) -> None:
        """Add or replace a handler, keyed by its name."""
        self._handlers[handler.name] = handler

    def get(self, name: str):
        """
        Raises:
            KeyError: If no handler is registered under `name`.
        """
        return self._handlers[name]

    def names(self) -> List[str]:
        return list(self._handlers.keys())

    def check_stages(self, stages: List[Stage]) -> None:
        """
        Verify that every configured stage has a handler of the matching kind.

        Raises:
            ValueError: On an unknown handler or a kind mismatch.
        """
        for stage in stages:
            if stage.handler not in self._handlers:
                raise ValueError(f"Stage '{stage.id}' references unknown handler '{stage.handler}'")
            handler = self._handlers[stage.handler]
            if handler.kind != stage.kind:
                raise ValueError(
                    f"Stage '{stage.id}' is {stage.kind.value} but handler '{stage.handler}' is {handler.kind.value}"
                )


# ---------------------------------------------------------------------------
# Automated stages
# ---------------------------------------------------------------------------

def plan_workflow(ctx: RunContext) -> Dict[str, Any]:
    ctx.log(
        "Workflow planned",
        f"Request will pass through {len(ctx.planned_stage_ids)} stage(s) for "
        f"Grade {ctx.grade} {ctx.subject}",
        {"plannedStages": list(ctx.planned_stage_ids)},
    )
    return {
        "request": ctx.trigger_text,
        "subject": ctx.subject,
        "grade": ctx.grade,
        "plannedStages": list(ctx.planned_stage_ids),
    }


def classify_intent(ctx: RunContext) -> Dict[str, Any]:
    """Record the classification made at the start of the run."""
    intent = ctx.intent
    ctx.log(
        f"Intent classified as {intent.type}",
        f"Matched keywords {intent.matched_keywords or 'none'} with {intent.confidence}% confidence",
        {
            "confidence": intent.confidence,
            "parameters": dict(intent.parameters),
            "modelUsed": "rule-based-classifier",
        },
    )
    return intent.to_dict()


def build_worksheet_brief(ctx: RunContext) -> Dict[str, Any]:
    """
    Draft the worksheet brief: scope, rubric, guardrails and the memory context that
    the final prompt will carry. Memory retrieval here reinforces the returned items.
    """
    limit = ctx.workflow_config.get("memory_context_limit", 5)
    memories = ctx.memory_store.retrieve_relevant(ctx.session_id, ctx.trigger_text, limit)
    context = [item.content for item in memories]
    parameters = ctx.parameters

    brief = {
        "subject": ctx.subject,
        "grade": ctx.grade,
        "difficulty": parameters.get("difficulty", "medium"),
        "questionCount": parameters.get("count", ctx.workflow_config.get("default_question_count", 10)),
        "context": context,
        "rubric": [
            "Correct answers earn full points",
            "Working shown earns partial credit",
            "Answers explained in the student's own words earn a bonus",
        ],
        "guardrails": [
            f"Vocabulary suitable for Grade {ctx.grade}",
            "No culturally insensitive examples",
            "Every question has exactly one defensible answer",
        ],
    }
    ctx.log(
        "Worksheet brief drafted",
        f"Using {len(context)} memory item(s) as context",
        {"memoryHits": len(context)},
    )
    return brief


def personalise_brief(ctx: RunContext) -> Dict[str, Any]:
    """Adapt the brief to the grade and to preferences stored for the session."""
    preferences = [item.content for item in ctx.memory_store.by_type(ctx.session_id, MemoryType.PREFERENCE)]
    adaptations = []

    if ctx.grade <= 2:
        adaptations.append("Use pictures and very short sentences")
    elif ctx.grade >= 6:
        adaptations.append("Include multi-step reasoning questions")
    if len(set(ctx.grades)) > 1:
        adaptations.append(f"Provide tiers for grades {', '.join(str(g) for g in sorted(set(ctx.grades)))}")
    if ctx.parameters.get("targetLanguage") == "hi":
        adaptations.append("Write instructions in Hindi with English terms in brackets")

    joined = " ".join(preferences).lower()
    if "simple" in joined:
        adaptations.append("Keep wording simple")
    if "visual" in joined:
        adaptations.append("Add a diagram or picture prompt to each section")
    if "interactive" in joined:
        adaptations.append("Include at least one pair or group activity")

    adaptations.append("Use examples from everyday Indian contexts")

    ctx.log(
        "Brief personalised",
        f"Applied {len(adaptations)} adaptation(s) from grade and {len(preferences)} stored preference(s)",
        {"adaptations": list(adaptations)},
    )
    return {"adaptations": adaptations, "preferences": preferences}


def judge_brief(ctx: RunContext) -> Dict[str, Any]:
    """
    Rule-based appropriateness checks on the brief.

    Raises:
        ValueError: When a check fails; the stage is marked error and the run halts.
    """
    brief = ctx.outputs.get("build_worksheet_brief", {})
    grade = brief.get("grade", ctx.grade)
    count = brief.get("questionCount", 0)
    checks = {
        "gradeInRange": 1 <= grade <= 12,
        "questionCountInRange": 1 <= count <= 50,
        "subjectPresent": bool(brief.get("subject", ctx.subject)),
        "difficultyKnown": brief.get("difficulty", "medium") in ("easy", "medium", "hard"),
    }
    failed = [name for name, passed in checks.items() if not passed]
    if failed:
        raise ValueError(f"Worksheet brief failed checks: {', '.join(failed)}")

    ctx.log("Brief approved", "All appropriateness checks passed", {"checks": checks})
    return {"checks": checks, "approved": True}


def store_session_memory(ctx: RunContext) -> Dict[str, Any]:
    items = ctx.memory_store.remember_interaction(
        ctx.session_id, ctx.trigger_text, ctx.intent, ctx.subjects, ctx.grades
    )
    ctx.log(
        "Session memory updated",
        f"Stored {len(items)} note(s) learned from this request",
        {"storedItems": len(items)},
    )
    return {"storedItems": len(items), "contents": [item.content for item in items]}


def prepare_notification(ctx: RunContext) -> Dict[str, Any]:
    delivery = ctx.outputs.get("schedule_delivery", {}).get("deliveryDate")
    notification = {
        "title": f"Grade {ctx.grade} {ctx.subject} worksheet",
        "deliveryDate": delivery,
        "status": "scheduled" if delivery else "ready",
        "preparedAt": utc_now().isoformat(),
    }
    ctx.log("Notification prepared", f"Worksheet notification is {notification['status']}", dict(notification))
    return {"notification": notification}


# ---------------------------------------------------------------------------
# Checkpoint stages
# ---------------------------------------------------------------------------

def prepare_sample_questions(ctx: RunContext, attempt: int) -> Dict[str, Any]:
    """
    Ask the Generation Service for sample questions for the teacher to review.

    Regenerations (attempt > 0) add a variation hint so the new draft differs.

    Raises:
        GenerationUnavailable: If the Generation Service fails or times out.
        ValueError: If the answer contains no usable questions.
    """
    brief = ctx.outputs.get("build_worksheet_brief", {})
    personalised = ctx.outputs.get("personalise_brief", {})
    variation = f"(attempt {attempt + 1}, make it different)" if attempt else ""

    prompt = load_prompt("sample_questions").format(
        count=ctx.workflow_config.get("sample_question_count", 3),
        subject=ctx.subject,
        grade=ctx.grade,
        request=ctx.trigger_text,
        variation=variation,
        difficulty=brief.get("difficulty", "medium"),
        preferences="; ".join(personalised.get("preferences", [])) or "none recorded",
    )
    parsed = extract_json_object(ctx.generate(prompt))
    questions = parsed.get("questions")
    if not isinstance(questions, list) or not questions:
        raise ValueError("Generation Service returned no usable sample questions")

    ctx.log(
        "Sample questions ready for review",
        parsed.get("reasoning") or f"Generated {len(questions)} sample question(s)",
        {"attempt": attempt + 1, "questionCount": len(questions)},
    )
    return {"questions": questions, "reasoning": parsed.get("reasoning", ""), "attempt": attempt + 1}


def approve_sample_questions(ctx: RunContext, review: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "approvedQuestions": list(review.get("questions", [])),
        "attempts": review.get("attempt", 1),
        "comment": payload.get("comment"),
    }


def prepare_delivery_schedule(ctx: RunContext, attempt: int) -> Dict[str, Any]:
    today = utc_now().date()
    suggestions = [(today + timedelta(days=offset)).isoformat() for offset in (1, 2, 7)]
    ctx.log("Waiting for a delivery date", "Teacher picks when the worksheet goes out", {"suggestedDates": suggestions})
    return {"suggestedDates": suggestions}


def validate_delivery_date(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Raises:
        InvalidDecision: If the payload has no ISO-8601 `date` (YYYY-MM-DD).
    """
    raw = (payload or {}).get("date")
    if not raw:
        raise InvalidDecision("Scheduling requires a 'date' in the payload")
    try:
        chosen = date.fromisoformat(str(raw))
    except ValueError:
        raise InvalidDecision(f"Invalid delivery date '{raw}', expected YYYY-MM-DD")
    return {"date": chosen.isoformat()}


def confirm_delivery_schedule(ctx: RunContext, review: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"deliveryDate": payload["date"]}


def build_default_registry() -> StageRegistry:
    """Registry with every handler used by the default worksheet pipeline."""
    registry = StageRegistry()
    registry.register(AutomatedHandler("plan_workflow", plan_workflow, "Plan the stages for the request"))
    registry.register(AutomatedHandler("classify_intent", classify_intent, "Record the intent classification"))
    registry.register(AutomatedHandler("build_worksheet_brief", build_worksheet_brief, "Draft the worksheet brief"))
    registry.register(AutomatedHandler("personalise_brief", personalise_brief, "Adapt the brief to the teacher"))
    registry.register(AutomatedHandler("judge_brief", judge_brief, "Check the brief for appropriateness"))
    registry.register(CheckpointHandler(
        "review_sample_questions",
        prepare=prepare_sample_questions,
        complete=approve_sample_questions,
        allows_regenerate=True,
        description="Teacher reviews sample questions",
    ))
    registry.register(AutomatedHandler("store_session_memory", store_session_memory, "Store learned notes"))
    registry.register(CheckpointHandler(
        "schedule_delivery",
        prepare=prepare_delivery_schedule,
        complete=confirm_delivery_schedule,
        validate=validate_delivery_date,
        description="Teacher picks a delivery date",
    ))
    registry.register(AutomatedHandler("prepare_notification", prepare_notification, "Prepare the notification"))
    logger.debug(f"[StageRegistry] Registered handlers: {registry.names()}")
    return registry
