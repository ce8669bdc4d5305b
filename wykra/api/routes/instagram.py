from __future__ import annotations

from fastapi import APIRouter, Depends

from wykra.api.deps import get_dispatcher, submit_intent
from wykra.models.intents import INSTAGRAM_ANALYSIS, INSTAGRAM_SEARCH
from wykra.models.schemas import ProfileRequest, SearchRequest, TaskCreatedResponse
from wykra.services.dispatcher import TaskDispatcher

router = APIRouter(prefix="/api/v1/instagram", tags=["instagram"])


@router.post("/search", response_model=TaskCreatedResponse)
async def search(request: SearchRequest, dispatcher: TaskDispatcher = Depends(get_dispatcher)):
    """Discover Instagram creators matching a free-text query."""
    return await submit_intent(dispatcher, INSTAGRAM_SEARCH, request.query)


@router.post("/profile", response_model=TaskCreatedResponse)
async def analyze_profile(request: ProfileRequest, dispatcher: TaskDispatcher = Depends(get_dispatcher)):
    """Fetch and analyze a single Instagram profile."""
    return await submit_intent(dispatcher, INSTAGRAM_ANALYSIS, request.profile)
