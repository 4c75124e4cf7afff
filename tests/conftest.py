"""
conftest.py – central pytest configuration and test bootstrap ("config test").

Pytest imports this module before it collects any test files, which lets us prepare the
environment so that imports of the `config` package (which reads environment variables at
import time) behave the same on every machine:

1) The project root is put on `sys.path` so absolute imports like `from core ...` and
   `from services ...` resolve without an editable install.
2) Environment defaults select the offline mock collaborators (`LLM_PROVIDER=mock`,
   `SPEECH_PROVIDER=mock`), disable file logging, shorten the checkpoint timeout and point
   session persistence at a throwaway file, so tests never touch the network or the
   developer's `user_data` directory.

Shared fixtures for building orchestrators and memory stores live here as well.
"""

import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure project root is on sys.path for direct imports like `core`, `shared`, etc.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Provide environment defaults for tests before `config` is imported anywhere
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="sahayak-tests-")
os.environ.setdefault("LLM_PROVIDER", "mock")
os.environ.setdefault("SPEECH_PROVIDER", "mock")
os.environ.setdefault("NEBIUS_API_KEY", "test-key")
os.environ.setdefault("LOG_FILE_PATH", "")
os.environ.setdefault("CHECKPOINT_TIMEOUT_SECONDS", "5")
os.environ.setdefault("SESSIONS_FILE_PATH", os.path.join(_TEST_DATA_DIR, "sessions.json"))


class FakeClock:
    """Settable clock for the memory store; starts at a fixed aware UTC time."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def fake_clock():
    return FakeClock()
