"""
ElevenLabs implementation of the Speech Service.

Synthesis posts to `/text-to-speech/{voice_id}` and returns the MPEG body;
transcription posts the audio as multipart form data to `/speech-to-text`.
The API key is read from ELEVENLABS_API_KEY when the client is built, never
from config.json. Non-2xx responses and transport errors become
`SpeechServiceError` so the API layer can tell the browser to fall back to
its own speech synthesis.
"""

import logging
from typing import Any, BinaryIO, Dict, Optional, Union

import requests

from config import CONFIG
from llm_cloud.provider import require_any_env
from monitoring.metrics import SPEECH_REQUEST_TIME, track_errors, track_latency
from .base import SpeechService, SpeechServiceError, VoiceParams, validate_text

logger = logging.getLogger(__name__)

DEFAULT_TRANSCRIPTION_MODEL = "scribe_v1"


class ElevenLabsSpeechService(SpeechService):
    """
    Speech Service backed by the ElevenLabs REST API.

    Args:
        api_key (Optional[str]): Explicit key; defaults to ELEVENLABS_API_KEY.
        speech_config (Optional[Dict[str, Any]]): Defaults to `CONFIG["speech"]`.
        session (Optional[requests.Session]): Injected HTTP session, mainly for tests.

    Raises:
        RuntimeError: If no API key is configured.
    """

    name = "elevenlabs"

    def __init__(self, api_key: Optional[str] = None,
                 speech_config: Optional[Dict[str, Any]] = None,
                 session: Optional[requests.Session] = None) -> None:
        if api_key is None:
            _, api_key = require_any_env(["ELEVENLABS_API_KEY"])
        self._api_key = api_key
        self.config = speech_config or CONFIG.get("speech", {})
        self.base_url = self.config.get("base_url", "https://api.elevenlabs.io/v1").rstrip("/")
        self.timeout = self.config.get("timeout", 30)
        self.max_text_length = self.config.get("max_text_length", 5000)
        self.session = session or requests.Session()

    def _default_voice_params(self) -> VoiceParams:
        settings = self.config.get("voice_settings", {})
        return VoiceParams(
            voice_id=self.config.get("default_voice_id"),
            model_id=self.config.get("model_id"),
            stability=settings.get("stability", 0.5),
            similarity_boost=settings.get("similarity_boost", 0.75),
            style=settings.get("style", 0.5),
            use_speaker_boost=settings.get("use_speaker_boost", True),
        )

    @track_errors('speech', 'elevenlabs_synthesize')
    @track_latency(SPEECH_REQUEST_TIME, labels=lambda self: {'provider': self.name})
    def synthesize(self, text: str, voice_params: Optional[VoiceParams] = None) -> bytes:
        validate_text(text, self.max_text_length)
        defaults = self._default_voice_params()
        params = voice_params or defaults
        voice_id = params.voice_id or defaults.voice_id
        model_id = params.model_id or defaults.model_id

        try:
            response = self.session.post(
                f"{self.base_url}/text-to-speech/{voice_id}",
                headers={
                    "Accept": "audio/mpeg",
                    "Content-Type": "application/json",
                    "xi-api-key": self._api_key,
                },
                json={
                    "text": text,
                    "model_id": model_id,
                    "voice_settings": params.voice_settings(),
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise SpeechServiceError(f"ElevenLabs request failed: {e}") from e

        if not response.ok:
            raise SpeechServiceError(f"ElevenLabs API error: {response.status_code} {response.reason}")

        logger.info(f"[ElevenLabsSpeechService] Synthesized {len(text)} characters with voice {voice_id}")
        return response.content

    @track_errors('speech', 'elevenlabs_transcribe')
    @track_latency(SPEECH_REQUEST_TIME, labels=lambda self: {'provider': self.name})
    def transcribe(self, audio_stream: Union[bytes, BinaryIO]) -> str:
        try:
            response = self.session.post(
                f"{self.base_url}/speech-to-text",
                headers={"xi-api-key": self._api_key},
                data={"model_id": self.config.get("transcription_model_id", DEFAULT_TRANSCRIPTION_MODEL)},
                files={"file": ("audio.webm", audio_stream)},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise SpeechServiceError(f"ElevenLabs request failed: {e}") from e

        if not response.ok:
            raise SpeechServiceError(f"ElevenLabs API error: {response.status_code} {response.reason}")

        return (response.json().get("text") or "").strip()
