"""
Classification API Endpoints

Exposes the rule-based intent classifier directly, mainly for the chat input
box: a preview of how a request will be routed, and typing suggestions.

Endpoints:
  - POST /classify: Classify a message with optional subject and grade selections
  - GET /classify/suggestions: Request templates for partially typed text
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.dependencies import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()


class ClassifyRequest(BaseModel):
    message: str
    subjects: List[str] = []
    grades: List[int] = []


@router.post("/classify")
async def classify_message(request: ClassifyRequest, services: Services = Depends(get_services)):
    """
    Classify a message.

    Example Response:
        {
            "response": "ok",
            "intent": {
                "type": "worksheetGeneration",
                "confidence": 86,
                "matchedKeywords": ["worksheet"],
                "parameters": {"subjects": ["Mathematics"], "grades": [3], "difficulty": "medium"},
                "isFallback": false
            }
        }
    """
    intent = services.classifier.classify(request.message, request.subjects, request.grades)
    return {"response": "ok", "intent": intent.to_dict()}


@router.get("/classify/suggestions")
async def get_suggestions(text: str = "",
                          subjects: Optional[List[str]] = Query(default=None),
                          services: Services = Depends(get_services)):
    return {
        "response": "ok",
        "suggestions": services.classifier.suggestions(text, subjects or []),
        "intents": services.classifier.available_intents(),
    }
