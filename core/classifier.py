"""
core/classifier.py

Rule-based intent classification for teacher requests.

This module maps a free-text request (plus the subjects and grades the teacher
selected) to one of a fixed set of intents using a weighted keyword/regex table
with small context adjustments. It is deterministic and has no collaborators,
so the orchestrator can call it synchronously at the start of every run.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Pattern, Sequence

from monitoring.metrics import CLASSIFICATION_COUNT
from shared.models import Intent, IntentType
from shared.utils import truncate_message_for_logging

logger = logging.getLogger(__name__)

# Scores at or below the floor fall back to the general query intent.
SCORE_FLOOR = 0.1
MAX_CONFIDENCE = 95
KEYWORD_FACTOR = 0.3
PATTERN_FACTOR = 0.5
CONTEXT_FACTOR = 0.2
MAX_SUGGESTIONS = 5

_COUNT_RE = re.compile(r"(\d+)\s*(question|exercise|problem)", re.IGNORECASE)
_TARGET_GRADE_RE = re.compile(r"grade\s*(\d+)", re.IGNORECASE)
_DURATION_RE = re.compile(r"(\d+)\s*(minute|hour|day)", re.IGNORECASE)


@dataclass(frozen=True)
class IntentPattern:
    """One row of the classification table."""
    type: IntentType
    keywords: Sequence[str]
    patterns: Sequence[Pattern]
    weight: float


def _compile(*expressions: str) -> List[Pattern]:
    return [re.compile(expression, re.IGNORECASE) for expression in expressions]


# Order matters: on equal scores the earlier row wins.
INTENT_PATTERNS = (
    IntentPattern(
        IntentType.WORKSHEET_GENERATION,
        ("worksheet", "activity sheet", "exercise", "practice", "homework", "assignment"),
        _compile(r"create.*worksheet", r"generate.*activity", r"make.*exercise", r"design.*practice"),
        1.0,
    ),
    IntentPattern(
        IntentType.LESSON_PLANNING,
        ("lesson plan", "teaching plan", "curriculum", "schedule", "syllabus", "plan"),
        _compile(r"lesson\s+plan", r"teaching\s+plan", r"plan.*lesson", r"curriculum.*design"),
        1.0,
    ),
    IntentPattern(
        IntentType.CONCEPT_EXPLANATION,
        ("explain", "what is", "how does", "definition", "meaning", "understand"),
        _compile(r"explain.*concept", r"what\s+is", r"how\s+does", r"help.*understand"),
        0.9,
    ),
    IntentPattern(
        IntentType.QUIZ_GENERATION,
        ("quiz", "test", "questions", "assessment", "exam", "evaluation"),
        _compile(r"create.*quiz", r"generate.*questions", r"make.*test", r"assessment.*questions"),
        1.0,
    ),
    IntentPattern(
        IntentType.GRADE_ADAPTATION,
        ("grade", "level", "age appropriate", "simplify", "adapt", "modify"),
        _compile(r"for\s+grade", r"age\s+appropriate", r"simplify.*for", r"adapt.*level"),
        0.8,
    ),
    IntentPattern(
        IntentType.TRANSLATION,
        ("translate", "hindi", "english", "language", "convert"),
        _compile(r"translate.*to", r"in\s+hindi", r"in\s+english", r"convert.*language"),
        0.9,
    ),
    IntentPattern(
        IntentType.RESOURCE_CREATION,
        ("resource", "material", "handout", "visual", "diagram", "chart"),
        _compile(r"create.*resource", r"make.*material", r"design.*visual", r"generate.*diagram"),
        0.8,
    ),
    IntentPattern(
        IntentType.BEHAVIOR_MANAGEMENT,
        ("behavior", "discipline", "manage", "classroom management", "student behavior"),
        _compile(r"manage.*behavior", r"classroom\s+management", r"student\s+discipline", r"behavior\s+problems"),
        0.7,
    ),
    IntentPattern(
        IntentType.PARENT_COMMUNICATION,
        ("parent", "communication", "family", "guardian", "meeting"),
        _compile(r"parent.*communication", r"talk.*parents", r"family.*meeting", r"guardian.*discuss"),
        0.7,
    ),
    IntentPattern(
        IntentType.GENERAL_QUERY,
        ("help", "advice", "suggestion", "guidance", "support"),
        _compile(r"help.*me", r"need.*advice", r"suggest.*me", r"guidance.*on"),
        0.5,
    ),
)


def _round_half_up(value: float) -> int:
    # Python's round() is banker's rounding; confidences round .5 upwards.
    return int(math.floor(value + 0.5))


class IntentClassifier:
    """
    Weighted keyword/pattern classifier for teacher requests.

    Scoring, per row of the table:
    - `weight * 0.3` for every keyword contained in the normalized message
    - `weight * 0.5` for every regex that matches (each counted once)
    - `context_score * 0.2`, where the context score rewards rows that fit the
      selected subjects and grades (see `_context_score`)

    The best row is the one with the strictly greatest score above 0.1, scanning in
    table order. If nothing clears the floor the general query intent is returned
    with `is_fallback=True` and a score of 0.1 (confidence 10).

    The classifier is stateless after construction and safe to share between threads.
    """

    def __init__(self, patterns: Sequence[IntentPattern] = INTENT_PATTERNS):
        self.patterns = tuple(patterns)
        logger.info(f"[IntentClassifier] Initialized with {len(self.patterns)} intent patterns")

    def classify(
        self,
        message: Optional[str],
        subjects: Optional[Sequence[str]] = None,
        grades: Optional[Sequence[int]] = None,
    ) -> Intent:
        """
        Classify a teacher's request.

        Args:
            message (Optional[str]): Raw request text; None is treated as empty.
            subjects (Optional[Sequence[str]]): Subjects selected in the UI, e.g. ["Mathematics"].
            grades (Optional[Sequence[int]]): Grades selected in the UI, e.g. [3, 4].

        Returns:
            Intent: The winning intent with confidence in [0, 95], the keywords of the
            winning row that were found, and parameters extracted from the message.
            This method never raises on any string input.
        """
        subjects = list(subjects or [])
        grades = list(grades or [])
        normalized = (message or "").lower().strip()

        best_type = IntentType.GENERAL_QUERY
        best_score = SCORE_FLOOR
        best_keywords: List[str] = []
        is_fallback = True

        for pattern in self.patterns:
            score = 0.0
            keywords = []

            for keyword in pattern.keywords:
                if keyword.lower() in normalized:
                    score += pattern.weight * KEYWORD_FACTOR
                    keywords.append(keyword)

            for regex in pattern.patterns:
                if regex.search(normalized):
                    score += pattern.weight * PATTERN_FACTOR

            score += self._context_score(pattern.type, subjects, grades) * CONTEXT_FACTOR

            if score > best_score:
                best_score = score
                best_type = pattern.type
                best_keywords = keywords
                is_fallback = False

        confidence = min(_round_half_up(best_score * 100), MAX_CONFIDENCE)
        parameters = self._extract_parameters(best_type, normalized, subjects, grades)

        intent = Intent(
            type=best_type.value,
            confidence=confidence,
            matched_keywords=best_keywords,
            parameters=parameters,
            is_fallback=is_fallback,
        )

        CLASSIFICATION_COUNT.labels(intent=intent.type, fallback=str(is_fallback).lower()).inc()
        if is_fallback:
            logger.warning(
                f"[IntentClassifier] No intent cleared the floor for "
                f"'{truncate_message_for_logging(normalized, 50)}', falling back to {intent.type}"
            )
        else:
            logger.info(
                f"[IntentClassifier] Classified '{truncate_message_for_logging(normalized, 50)}' "
                f"as {intent.type} ({intent.confidence}%), keywords={intent.matched_keywords}"
            )
        return intent

    def suggestions(self, partial_text: Optional[str], subjects: Optional[Sequence[str]] = None) -> List[str]:
        """
        Suggest intents for a partially typed request.

        A keyword is suggested as `"<intent>: <keyword>"` when it starts with the
        lower-cased partial text or when the partial text already contains it. The first
        five suggestions in table order (then keyword order) are returned. `subjects` is
        accepted for interface symmetry with `classify` and does not affect the result.
        """
        normalized = (partial_text or "").lower()
        results = []
        for pattern in self.patterns:
            for keyword in pattern.keywords:
                lowered = keyword.lower()
                if lowered.startswith(normalized) or lowered in normalized:
                    results.append(f"{pattern.type.value}: {keyword}")
        return results[:MAX_SUGGESTIONS]

    def available_intents(self) -> List[str]:
        return [pattern.type.value for pattern in self.patterns]

    @staticmethod
    def _context_score(intent_type: IntentType, subjects: List[str], grades: List[int]) -> float:
        score = 0.0

        if subjects:
            if intent_type in (IntentType.WORKSHEET_GENERATION, IntentType.QUIZ_GENERATION):
                score += 0.3
            elif intent_type == IntentType.CONCEPT_EXPLANATION:
                if "Science" in subjects or "Mathematics" in subjects:
                    score += 0.4
            elif intent_type == IntentType.RESOURCE_CREATION:
                if "Art" in subjects or "Science" in subjects:
                    score += 0.3

        if grades:
            average_grade = sum(grades) / len(grades)
            if intent_type == IntentType.BEHAVIOR_MANAGEMENT:
                if average_grade <= 3:
                    score += 0.2
            elif intent_type == IntentType.CONCEPT_EXPLANATION:
                score += 0.1
            elif intent_type == IntentType.GRADE_ADAPTATION:
                if len(grades) > 1:
                    score += 0.4

        return score

    @staticmethod
    def _extract_parameters(
        intent_type: IntentType, message: str, subjects: List[str], grades: List[int]
    ) -> Dict[str, Any]:
        """
        Pull structured parameters out of the normalized message.

        Keys whose source text is missing are left out rather than set to None.
        """
        parameters: Dict[str, Any] = {}
        if subjects:
            parameters["subjects"] = list(subjects)
        if grades:
            parameters["grades"] = list(grades)

        if intent_type in (IntentType.WORKSHEET_GENERATION, IntentType.QUIZ_GENERATION):
            count_match = _COUNT_RE.search(message)
            if count_match:
                parameters["count"] = int(count_match.group(1))

            if "easy" in message or "simple" in message:
                parameters["difficulty"] = "easy"
            elif "hard" in message or "difficult" in message:
                parameters["difficulty"] = "hard"
            else:
                parameters["difficulty"] = "medium"

        elif intent_type == IntentType.TRANSLATION:
            if "hindi" in message:
                parameters["targetLanguage"] = "hi"
            elif "english" in message:
                parameters["targetLanguage"] = "en"

        elif intent_type == IntentType.GRADE_ADAPTATION:
            grade_match = _TARGET_GRADE_RE.search(message)
            if grade_match:
                parameters["targetGrade"] = int(grade_match.group(1))

        elif intent_type == IntentType.LESSON_PLANNING:
            duration_match = _DURATION_RE.search(message)
            if duration_match:
                parameters["duration"] = {
                    "value": int(duration_match.group(1)),
                    "unit": duration_match.group(2).lower(),
                }

        return parameters
