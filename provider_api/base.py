"""
Provider-agnostic interface for Speech Service integrations.

This module defines the abstract contract that any concrete speech provider must
fulfill to be used by the rest of the system. The adapter pattern keeps the
API layer independent of provider-specific concerns like authentication, HTTP
transport and audio formats. The interface is limited to what the assistant
needs: turning worksheet or chat text into audio, and turning a recorded
question back into text.

A mock implementation in `provider_api.mock_client` lets the service run
end-to-end without credentials or network access; `provider_api.elevenlabs_client`
talks to the ElevenLabs HTTP API.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, BinaryIO, Dict, Optional, Union


class SpeechServiceError(RuntimeError):
    """The speech provider failed; callers may fall back to on-device speech."""


@dataclass
class VoiceParams:
    """
    Voice parameters for synthesis.

    The defaults mirror the `speech` section of config.json; `SpeechService`
    implementations may ignore fields that their provider does not support.
    """
    voice_id: Optional[str] = None
    model_id: Optional[str] = None
    stability: float = 0.5
    similarity_boost: float = 0.75
    style: float = 0.5
    use_speaker_boost: bool = True

    def voice_settings(self) -> Dict[str, Any]:
        settings = asdict(self)
        settings.pop("voice_id")
        settings.pop("model_id")
        return settings


class SpeechService(ABC):
    """
    Abstract Speech Service.

    Implementations raise `SpeechServiceError` for provider failures and
    `ValueError` for input the provider would reject (empty or oversized text).
    """

    name: str = "unknown"

    @abstractmethod
    def synthesize(self, text: str, voice_params: Optional[VoiceParams] = None) -> bytes:
        """
        Render `text` as audio.

        Args:
            text (str): Text to speak. Must be non-empty.
            voice_params (Optional[VoiceParams]): Voice selection and tuning.

        Returns:
            bytes: Encoded audio (MPEG for the shipped implementations).
        """
        raise NotImplementedError

    @abstractmethod
    def transcribe(self, audio_stream: Union[bytes, BinaryIO]) -> str:
        """
        Convert recorded speech to text.

        Args:
            audio_stream: Raw audio bytes or a binary file-like object.

        Returns:
            str: The recognised text.
        """
        raise NotImplementedError


def validate_text(text: str, max_length: int) -> str:
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Text is required and must be a non-empty string")
    if len(text) > max_length:
        raise ValueError(f"Text too long. Maximum {max_length} characters.")
    return text
