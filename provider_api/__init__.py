"""
provider_api package: provider-agnostic Speech Service integrations.

This package keeps speech-provider concerns behind a small, stable contract so
the API layer does not change when the provider is swapped.

Included modules:
- base: The abstract `SpeechService` interface, `VoiceParams` and `SpeechServiceError`
- mock_client: Deterministic, offline implementation for local runs and tests
- elevenlabs_client: ElevenLabs REST implementation

`get_speech_service()` picks the implementation from `speech.provider` in
config.json (overridable with SPEECH_PROVIDER).
"""

import logging

from config import get_config_value
from .base import SpeechService, SpeechServiceError, VoiceParams
from .mock_client import MockSpeechService
from .elevenlabs_client import ElevenLabsSpeechService

logger = logging.getLogger(__name__)


def get_speech_service() -> SpeechService:
    """
    Build the configured Speech Service.

    Raises:
        ValueError: If the configured provider is unknown.
        RuntimeError: If the provider needs an API key that is not set.
    """
    provider = str(get_config_value(["speech", "provider"], "SPEECH_PROVIDER", "mock")).strip().lower()
    logger.info("Speech provider selected: %s", provider)
    if provider == "mock":
        return MockSpeechService()
    if provider == "elevenlabs":
        return ElevenLabsSpeechService()
    raise ValueError(f"Unsupported speech provider: {provider}")


__all__ = [
    "SpeechService",
    "SpeechServiceError",
    "VoiceParams",
    "MockSpeechService",
    "ElevenLabsSpeechService",
    "get_speech_service",
]
