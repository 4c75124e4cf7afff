"""
Chat API Endpoint

Single-turn conversation with the assistant inside a session. The reply is
generated right away; worksheet requests that need teacher review go through
the workflow endpoints instead.

Endpoints:
  - POST /sessions/{session_id}/chat: Reply to a message with context-aware
    content and follow-up action suggestions
"""

import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from api.dependencies import Services, get_services
from core.errors import GenerationUnavailable, SessionNotFound

logger = logging.getLogger(__name__)

router = APIRouter()


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    subjects: List[str] = []
    grades: List[int] = []
    locale: str = "en"


@router.post("/sessions/{session_id}/chat")
async def chat(session_id: str, request: ChatRequest, services: Services = Depends(get_services)):
    """
    Answer a chat message.

    The message is classified, relevant session memory is used as context, new notes
    are stored and the Generation Service writes the reply. Both the message and the
    reply are appended to the session.

    HTTP Status Codes:
        200: `{"response": "ok", "reply": {content, intent, suggestions, context, memory, modelUsed}}`
        404: Unknown session id
        503: Generation Service unavailable; nothing is recorded as the assistant's reply
    """
    logger.info(f"[chat] Message for session {session_id}: '{request.message[:80]}'\n")
    try:
        reply = await asyncio.to_thread(
            services.chat.reply,
            session_id,
            request.message,
            request.subjects,
            request.grades,
            request.locale,
        )
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GenerationUnavailable as e:
        logger.error(f"[chat] Generation Service unavailable for session {session_id}: {e}\n")
        return JSONResponse(
            content={"response": "error", "message": f"Generation Service unavailable: {e}"},
            status_code=503,
        )

    logger.info(f"[chat] Replied as {reply['intent']['type']} with {len(reply['suggestions'])} suggestion(s)\n")
    return {"response": "ok", "reply": reply}
