"""
Speech API Endpoints

Text-to-speech for worksheets and chat replies. When the Speech Service is
unavailable the endpoint answers 503 with `"fallback": "browser"` so the
client can switch to the browser's own speech synthesis instead of failing.

Endpoints:
  - POST /speech/synthesize: Returns `audio/mpeg`
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from api.dependencies import Services, get_services
from provider_api import SpeechServiceError, VoiceParams

logger = logging.getLogger(__name__)

router = APIRouter()


class SynthesizeRequest(BaseModel):
    text: str
    voice_id: Optional[str] = None
    model_id: Optional[str] = None


def _unavailable() -> JSONResponse:
    return JSONResponse(
        content={"response": "error", "message": "Speech Service unavailable", "fallback": "browser"},
        status_code=503,
    )


@router.post("/speech/synthesize")
async def synthesize_speech(request: SynthesizeRequest, services: Services = Depends(get_services)):
    """
    Convert text to speech.

    HTTP Status Codes:
        200: MPEG audio body
        400: Empty or oversized text
        503: Speech Service unavailable; body carries `"fallback": "browser"`
    """
    voice_params = None
    if request.voice_id or request.model_id:
        voice_params = VoiceParams(voice_id=request.voice_id, model_id=request.model_id)

    try:
        speech = services.speech
        # The provider call blocks on HTTP; keep it off the event loop.
        audio = await asyncio.to_thread(speech.synthesize, request.text, voice_params)
    except SpeechServiceError as e:
        logger.error(f"[synthesize_speech] Speech Service unavailable: {e}\n")
        return _unavailable()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RuntimeError as e:
        logger.error(f"[synthesize_speech] Speech Service not configured: {e}\n")
        return _unavailable()

    logger.info(f"[synthesize_speech] Synthesized {len(request.text)} characters ({len(audio)} bytes)\n")
    return Response(
        content=audio,
        media_type="audio/mpeg",
        headers={"Content-Length": str(len(audio))},
    )
