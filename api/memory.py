"""
Session Memory API Endpoints

Read access to the relevance-scored session memory. Search results are
ranked and reinforce the returned items (their usage count goes up), so the
search endpoint is a retrieval, not a passive read. `recent` and `stats` do
not change usage counts.

Endpoints:
  - GET /memory/{session_id}/search?q=...: Ranked search above the search floor
  - GET /memory/{session_id}/recent?limit=10: Newest items first
  - GET /memory/{session_id}/stats: Counts by type, average usage, age range
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import Services, get_services
from shared.utils import to_iso

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_session(services: Services, session_id: str) -> None:
    if not services.sessions.exists(session_id):
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")


@router.get("/memory/{session_id}/search")
async def search_memory(session_id: str, q: str = Query(""), services: Services = Depends(get_services)):
    _require_session(services, session_id)
    items = services.memory_store.search(session_id, q)
    logger.info(f"[search_memory] Session {session_id} - Query: '{q}' - {len(items)} result(s)\n")
    return {"response": "ok", "items": [item.to_dict() for item in items]}


@router.get("/memory/{session_id}/recent")
async def recent_memory(session_id: str, limit: int = Query(10, ge=0, le=100),
                        services: Services = Depends(get_services)):
    _require_session(services, session_id)
    items = services.memory_store.recent(session_id, limit)
    return {"response": "ok", "items": [item.to_dict() for item in items]}


@router.get("/memory/{session_id}/stats")
async def memory_stats(session_id: str, services: Services = Depends(get_services)):
    _require_session(services, session_id)
    stats = services.memory_store.stats(session_id)
    stats["oldestItem"] = to_iso(stats["oldestItem"])
    stats["newestItem"] = to_iso(stats["newestItem"])
    return {"response": "ok", "stats": stats}
