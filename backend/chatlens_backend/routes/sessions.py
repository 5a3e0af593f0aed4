from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from ..models.chat import SessionDetail, SessionListResponse
from ..services.chat_store import ChatStore

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get("", response_model=SessionListResponse)
async def list_sessions(request: Request, user_id: str | None = Query(None, alias="userId")) -> SessionListResponse:
    if not user_id:
        raise HTTPException(status_code=400, detail="Missing userId parameter")
    store: ChatStore = request.app.state.chat_store
    return SessionListResponse(sessions=store.list_sessions(user_id))


@router.get("/{session_id}", response_model=SessionDetail)
async def session_detail(request: Request, session_id: str) -> SessionDetail:
    store: ChatStore = request.app.state.chat_store
    detail = store.session_detail(session_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return detail
