"""
Workflow API Endpoints

HTTP surface of the workflow orchestrator. Runs execute in the background;
clients poll the status endpoint, answer checkpoints while a run waits for
input, and fetch the final artifact with its execution log at the end.

Endpoints:
  - POST /workflow/{session_id}/start: Start a run for a teacher request
  - GET /workflow/{session_id}/status: Status snapshot (stages, progress, checkpoint)
  - POST /workflow/{session_id}/checkpoints/{stage_id}: Approve, regenerate or reject
  - POST /workflow/{session_id}/cancel: Cancel the active run
  - GET /workflow/{session_id}/result: Final artifact and per-stage log

Error mapping:
  - SessionNotFound / RunNotFound → 404
  - RunAlreadyActive → 409
  - InvalidDecision → 400
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from api.dependencies import Services, get_services
from core.errors import InvalidDecision, RunAlreadyActive, RunNotFound, SessionNotFound
from shared.utils import truncate_message_for_logging

logger = logging.getLogger(__name__)

router = APIRouter()


class StartRunRequest(BaseModel):
    message: str = Field(..., min_length=1)
    subjects: List[str] = Field(default_factory=list)
    grades: List[int] = Field(default_factory=list)


class CheckpointRequest(BaseModel):
    decision: str
    payload: Optional[Dict[str, Any]] = None


@router.post("/workflow/{session_id}/start", status_code=202)
async def start_run(session_id: str, request: StartRunRequest,
                    services: Services = Depends(get_services)):
    """
    Start a workflow run on a session.

    The teacher's message is stored on the session and the run starts on its own
    thread; the response carries the first status snapshot.

    HTTP Status Codes:
        202: Run started
        404: Unknown session id
        409: The session already has an active run
    """
    logger.info(
        f"[start_run] Session {session_id} - Message: '{truncate_message_for_logging(request.message, 80)}' "
        f"- Subjects: {request.subjects} - Grades: {request.grades}\n"
    )
    try:
        handle = services.orchestrator.start_run(session_id, request.message, request.subjects, request.grades)
        services.sessions.add_message(session_id, "user", request.message)
        status = services.orchestrator.get_status(session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RunAlreadyActive as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"response": "ok", "runId": handle.run_id, "status": status}


@router.get("/workflow/{session_id}/status")
async def get_status(session_id: str, services: Services = Depends(get_services)):
    try:
        status = services.orchestrator.get_status(session_id)
    except RunNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"response": "ok", "status": status}


@router.post("/workflow/{session_id}/checkpoints/{stage_id}")
async def resolve_checkpoint(session_id: str, stage_id: str, request: CheckpointRequest,
                             services: Services = Depends(get_services)):
    """
    Deliver a teacher decision to a waiting checkpoint.

    Example Request:
        POST /api/workflow/session_ab12/checkpoints/scheduler
        {"decision": "approve", "payload": {"date": "2026-10-20"}}

    HTTP Status Codes:
        200: Decision accepted
        400: The stage is not waiting, the decision or payload is invalid, or the
             regeneration limit is reached
        404: The session has no run
    """
    try:
        status = services.orchestrator.resolve_checkpoint(
            session_id, stage_id, request.decision, request.payload
        )
    except RunNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidDecision as e:
        logger.warning(f"[resolve_checkpoint] Rejected decision for {session_id}/{stage_id}: {e}\n")
        raise HTTPException(status_code=400, detail=str(e))
    return {"response": "ok", "status": status}


@router.post("/workflow/{session_id}/cancel")
async def cancel_run(session_id: str, services: Services = Depends(get_services)):
    try:
        status = services.orchestrator.cancel_run(session_id)
    except RunNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"response": "ok", "status": status}


@router.get("/workflow/{session_id}/result")
async def get_result(session_id: str, services: Services = Depends(get_services)):
    """
    Final artifact and execution log of the session's latest run.

    `artifact` is null until the run completes; `overallStatus` tells a client
    whether to keep polling.
    """
    try:
        result = services.orchestrator.get_result(session_id)
    except RunNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"response": "ok", "result": result}
