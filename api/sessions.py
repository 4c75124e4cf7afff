"""
Session API Endpoints

Sessions are the unit of conversation and workflow state. A client creates a
session, posts chat messages to it and starts workflow runs on it.

Endpoints:
  - POST /sessions: Create a session
  - GET /sessions: List sessions
  - GET /sessions/{session_id}: Fetch a session with its messages, stages and memory
  - POST /sessions/{session_id}/messages: Append a chat message without a reply
    (api/chat.py answers messages)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from api.dependencies import Services, get_services
from core.errors import SessionNotFound

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateSessionRequest(BaseModel):
    title: Optional[str] = None


class MessageRequest(BaseModel):
    content: str = Field(..., min_length=1)
    role: str = "user"


@router.post("/sessions", status_code=201)
async def create_session(request: Optional[CreateSessionRequest] = None,
                         services: Services = Depends(get_services)):
    """
    Create a new session.

    Returns:
        dict: `{"response": "ok", "session": {...}}` with the new session's id.
    """
    session = services.sessions.create_session(request.title if request else None)
    logger.info(f"[create_session] Session created: {session.id}\n")
    return {"response": "ok", "session": session.to_dict()}


@router.get("/sessions")
async def list_sessions(services: Services = Depends(get_services)):
    sessions = services.sessions.list_sessions()
    return {
        "response": "ok",
        "sessions": [
            {
                "id": session.id,
                "title": session.title,
                "createdAt": session.to_dict()["createdAt"],
                "lastActiveAt": session.to_dict()["lastActiveAt"],
                "messageCount": len(session.messages),
            }
            for session in sessions
        ],
    }


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, services: Services = Depends(get_services)):
    """
    Fetch a session.

    HTTP Status Codes:
        200: Session found
        404: Unknown session id
    """
    try:
        session = services.sessions.get(session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"response": "ok", "session": session.to_dict()}


@router.post("/sessions/{session_id}/messages", status_code=201)
async def add_message(session_id: str, request: MessageRequest,
                      services: Services = Depends(get_services)):
    """
    Append a chat message to a session.

    Posting a message does not start a workflow run; the client starts one
    explicitly through the workflow endpoints.
    """
    try:
        message = services.sessions.add_message(session_id, request.role, request.content)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    logger.info(f"[add_message] Message {message.id} added to session {session_id}\n")
    return {"response": "ok", "message": message.to_dict()}
