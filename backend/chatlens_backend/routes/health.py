from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..errors import PersistenceError
from ..services.chat_store import ChatStore
from ..services.system import runtime_summary

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthcheck(request: Request) -> JSONResponse:
    store: ChatStore = request.app.state.chat_store
    try:
        store.count_sessions()
        database = "ok"
    except PersistenceError as e:
        database = f"unavailable: {e}"
    healthy = database == "ok"
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "ok" if healthy else "degraded",
            "database": database,
            "detail": runtime_summary(request.app.state.settings),
        },
    )
