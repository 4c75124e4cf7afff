"""
generation.py – Generation Service implementations
---------------------------------------------------
The workflow core treats text generation as an opaque collaborator with a
single operation, `generate(prompt) -> text`. This module defines that
contract and two implementations:

- OpenAIGenerationService: chat completions against the OpenAI-compatible
  endpoint built by `llm_cloud.provider.get_client()`.
- MockGenerationService: deterministic, offline output for local runs and tests.

Any failure of the underlying call surfaces as `GenerationUnavailable`; callers
never receive placeholder content in place of a real answer.
"""

import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from openai import OpenAIError

from config import CONFIG
from core.errors import GenerationUnavailable
from llm_cloud.provider import get_client, get_provider_name
from monitoring.metrics import GENERATION_REQUEST_TIME, track_errors, track_latency

logger = logging.getLogger(__name__)


class GenerationService(ABC):
    """Contract for anything that turns a prompt into text."""

    model_name: str = "unknown"

    @abstractmethod
    def generate(self, prompt: str) -> str:
        """
        Produce text for `prompt`.

        Raises:
            GenerationUnavailable: If the service cannot produce an answer.
        """
        raise NotImplementedError


class OpenAIGenerationService(GenerationService):
    """
    Generation through an OpenAI-compatible chat completions endpoint.

    Args:
        client: Optional pre-built client (tests pass a MagicMock). When omitted the
            client is built lazily on first use with `get_client()`, so constructing
            the service never requires credentials.
        model_config (Dict[str, Any], optional): `{"name": ..., "settings": {...}}`;
            defaults to `CONFIG["llm"]["models"]["generation"]`.
    """

    def __init__(self, client=None, model_config: Optional[Dict[str, Any]] = None):
        self._client = client
        self._client_lock = threading.Lock()
        self.model_config = model_config or CONFIG["llm"]["models"]["generation"]
        self.model_name = self.model_config["name"]

    @property
    def client(self):
        with self._client_lock:
            if self._client is None:
                try:
                    self._client = get_client()
                except (RuntimeError, ValueError) as e:
                    raise GenerationUnavailable(f"LLM client could not be created: {e}") from e
            return self._client

    @track_errors('generation', 'openai_generation')
    @track_latency(GENERATION_REQUEST_TIME, labels=lambda self: {'model': self.model_name})
    def generate(self, prompt: str) -> str:
        settings = self.model_config.get("settings", {})
        kwargs = {
            "max_tokens": settings.get("max_tokens", 2048),
            "temperature": settings.get("temperature", 0.7),
            "top_p": settings.get("top_p", 0.9),
        }
        if "top_k" in settings and get_provider_name() != "openai":
            kwargs["extra_body"] = {"top_k": settings["top_k"]}

        try:
            response = self.client.chat.completions.create(
                model=self.model_name,
                messages=[{"role": "user", "content": prompt}],
                **kwargs,
            )
        except OpenAIError as e:
            raise GenerationUnavailable(f"Generation request failed: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise GenerationUnavailable("Generation service returned an empty response")

        logger.info(f"[OpenAIGenerationService] Generated {len(content)} characters with {self.model_name}")
        return content.strip()


_COUNT_RE = re.compile(r"Create (\d+) sample questions")
_GRADE_RE = re.compile(r"Grade (\d+)")


class MockGenerationService(GenerationService):
    """
    Deterministic offline Generation Service.

    Sample-question prompts get a JSON document with the requested number of
    questions; every other prompt gets a small markdown worksheet. Prompts are kept
    in `self.prompts` so tests can assert on what was asked.
    """

    model_name = "mock-generation"

    def __init__(self) -> None:
        self.prompts: List[str] = []
        self._lock = threading.Lock()

    def generate(self, prompt: str) -> str:
        with self._lock:
            self.prompts.append(prompt)
            call_number = len(self.prompts)

        count_match = _COUNT_RE.search(prompt)
        if count_match:
            count = int(count_match.group(1))
            return json.dumps({
                "questions": [
                    {
                        "question": f"Sample question {index + 1} (draft {call_number})",
                        "type": "short_answer",
                        "difficulty": "medium",
                        "points": 5,
                    }
                    for index in range(count)
                ],
                "reasoning": "Mock questions covering the requested topic at a steady difficulty.",
            })

        grade_match = _GRADE_RE.search(prompt)
        grade = grade_match.group(1) if grade_match else "?"
        return (
            f"# Worksheet (Grade {grade})\n\n"
            "## Learning objectives\n- Practise the requested topic\n\n"
            "## Questions\n1. Sample question 1\n2. Sample question 2\n\n"
            "## Answer key\n1. -\n2. -\n"
        )


def get_generation_service() -> GenerationService:
    """Pick the Generation Service for the configured provider ("mock" or an OpenAI-compatible one)."""
    provider = get_provider_name()
    if provider == "mock":
        logger.info("Generation provider selected: mock")
        return MockGenerationService()
    return OpenAIGenerationService()
