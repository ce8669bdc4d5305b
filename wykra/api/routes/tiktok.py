from __future__ import annotations

from fastapi import APIRouter, Depends

from wykra.api.deps import get_dispatcher, submit_intent
from wykra.models.intents import TIKTOK_PROFILE, TIKTOK_SEARCH
from wykra.models.schemas import ProfileRequest, SearchRequest, TaskCreatedResponse
from wykra.services.dispatcher import TaskDispatcher

router = APIRouter(prefix="/api/v1/tiktok", tags=["tiktok"])


@router.post("/search", response_model=TaskCreatedResponse)
async def search(request: SearchRequest, dispatcher: TaskDispatcher = Depends(get_dispatcher)):
    """Discover TikTok creators matching a free-text query."""
    return await submit_intent(dispatcher, TIKTOK_SEARCH, request.query)


@router.post("/profile", response_model=TaskCreatedResponse)
async def analyze_profile(request: ProfileRequest, dispatcher: TaskDispatcher = Depends(get_dispatcher)):
    return await submit_intent(dispatcher, TIKTOK_PROFILE, request.profile)
