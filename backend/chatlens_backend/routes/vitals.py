from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from ..models.vitals import METRIC_NAMES, METRIC_RATINGS, WebVitalCreated, WebVitalPayload
from ..services.chat_store import ChatStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vitals", tags=["vitals"])


@router.post("", status_code=201, response_model=WebVitalCreated)
async def record_web_vital(request: Request, payload: WebVitalPayload) -> WebVitalCreated:
    if not payload.session_id or not payload.user_id or not payload.metric or not payload.rating:
        raise HTTPException(status_code=400, detail="Missing required fields")
    if payload.metric not in METRIC_NAMES:
        raise HTTPException(status_code=400, detail=f"Invalid metric. Must be one of: {', '.join(METRIC_NAMES)}")
    if payload.rating not in METRIC_RATINGS:
        raise HTTPException(status_code=400, detail=f"Invalid rating. Must be one of: {', '.join(METRIC_RATINGS)}")

    store: ChatStore = request.app.state.chat_store
    vital = store.create_web_vital(
        session_id=payload.session_id,
        user_id=payload.user_id,
        metric=payload.metric,
        value=payload.value,
        rating=payload.rating,
        page_url=payload.page_url,
        user_agent=payload.user_agent,
        device=payload.device,
    )
    logger.info("Recorded %s for user %s: %s (%s)", vital.metric, vital.user_id, vital.value, vital.rating)
    return WebVitalCreated(id=vital.vital_id)
