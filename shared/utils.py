"""
shared/utils.py

Shared utility functions used across multiple modules.

This module contains small helpers for identifiers, timestamps and for
handling text coming back from the Generation Service. It deliberately has no
dependency on the config package so that the data models can import it.
"""

import json
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def generate_id(prefix: str) -> str:
    """
    Create an opaque unique identifier such as `session_3f2a...`.

    Args:
        prefix (str): Readable prefix naming the kind of record

    Returns:
        str: Prefix followed by a random uuid4 hex string
    """
    return f"{prefix}_{uuid.uuid4().hex}"


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp written by `to_iso`.

    A trailing 'Z' is accepted, and naive timestamps are assumed to be UTC so that
    comparisons against `utc_now()` never mix aware and naive datetimes.
    """
    if value is None:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def safe_json_loads(json_string: str, fallback: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Safely parse JSON string with fallback handling.

    Args:
        json_string (str): JSON string to parse
        fallback (Optional[Dict[str, Any]]): Fallback value if parsing fails

    Returns:
        Dict[str, Any]: Parsed JSON dictionary or fallback value

    This function safely handles JSON parsing errors that can occur when
    processing LLM responses or persisted session data.
    """
    try:
        return json.loads(json_string)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON: {e}. Using fallback value.")
        return fallback or {}


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Pull the first JSON object out of a model response.

    Models often wrap JSON in prose or markdown fences. The outermost `{...}` span is
    parsed; anything that does not yield a dict returns an empty dict.
    """
    if not text:
        return {}
    match = _JSON_OBJECT_RE.search(text)
    if not match:
        return {}
    parsed = safe_json_loads(match.group(0))
    return parsed if isinstance(parsed, dict) else {}


def truncate_message_for_logging(message: str, max_length: int = 100) -> str:
    """
    Truncate long messages for logging purposes.

    Args:
        message (str): Message to truncate
        max_length (int): Maximum length before truncation (default: 100)

    Returns:
        str: Truncated message with ellipsis if needed

    Used for logging to avoid extremely long log entries while preserving
    the beginning of the message for debugging purposes.
    """
    if len(message) <= max_length:
        return message
    return message[:max_length] + "..."
