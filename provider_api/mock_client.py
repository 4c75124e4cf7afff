"""
Deterministic mock Speech Service for local runs, demos and tests.

The mock never touches the network. Synthesis returns a short fake MPEG frame
header followed by the UTF-8 text, so the same input always yields the same
bytes and tests can check what was "spoken". Transcription decodes bytes back
to text the same way, which makes a synthesize/transcribe pair round-trip.
"""

from typing import BinaryIO, List, Optional, Union

from config import CONFIG
from .base import SpeechService, VoiceParams, validate_text

MOCK_AUDIO_HEADER = b"ID3MOCK"


class MockSpeechService(SpeechService):
    """In-memory Speech Service with deterministic output."""

    name = "mock"

    def __init__(self, max_text_length: Optional[int] = None) -> None:
        self.max_text_length = max_text_length or CONFIG.get("speech", {}).get("max_text_length", 5000)
        self.synthesized: List[str] = []

    def synthesize(self, text: str, voice_params: Optional[VoiceParams] = None) -> bytes:
        validate_text(text, self.max_text_length)
        self.synthesized.append(text)
        return MOCK_AUDIO_HEADER + text.encode("utf-8")

    def transcribe(self, audio_stream: Union[bytes, BinaryIO]) -> str:
        data = audio_stream if isinstance(audio_stream, (bytes, bytearray)) else audio_stream.read()
        if data.startswith(MOCK_AUDIO_HEADER):
            data = data[len(MOCK_AUDIO_HEADER):]
        return bytes(data).decode("utf-8", errors="replace").strip()
