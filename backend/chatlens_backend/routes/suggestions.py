from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from ..errors import NotFoundError
from ..models.suggestion import ClickRequest, InteractionResponse, RankRequest
from ..services.chat_store import ChatStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/suggestions", tags=["suggestions"])


@router.post("/click", response_model=InteractionResponse)
async def click_suggestion(request: Request, payload: ClickRequest) -> InteractionResponse:
    if not payload.suggestion_id.strip():
        raise HTTPException(status_code=400, detail="Invalid suggestion ID")
    store: ChatStore = request.app.state.chat_store
    try:
        suggestion = store.record_click(payload.suggestion_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    logger.info("Click recorded for suggestion %s (total %d)", suggestion.id, suggestion.click_count)
    return InteractionResponse()


@router.post("/{suggestion_id}/rank", response_model=InteractionResponse)
async def rank_suggestion(request: Request, suggestion_id: str, payload: RankRequest) -> InteractionResponse:
    if not 1 <= payload.rank <= 5:
        raise HTTPException(status_code=400, detail="Rank must be between 1 and 5")
    store: ChatStore = request.app.state.chat_store
    try:
        suggestion = store.add_rating(suggestion_id, payload.rank)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    logger.info(
        "Suggestion %s rated %d, new avg %.2f from %d ratings",
        suggestion.id,
        payload.rank,
        suggestion.avg_rating,
        suggestion.rating_count,
    )
    return InteractionResponse(rank=payload.rank)
