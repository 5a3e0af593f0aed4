from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from ..errors import PersistenceError, ValidationError
from ..models.chat import ChatRequest, StopRequest
from ..services.streaming import StreamingPipeline, encode_sse

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("/stream")
async def chat_stream_endpoint(request: Request, payload: ChatRequest) -> StreamingResponse:
    pipeline: StreamingPipeline = request.app.state.streaming_pipeline
    if pipeline.active(payload.session_id) is not None:
        raise HTTPException(status_code=409, detail="A response is already streaming for this session")
    try:
        handle = await pipeline.send_prompt(payload.session_id, payload.user_id, payload.prompt)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=f"Storage error: {str(e)}")

    async def event_generator():
        try:
            async for event in handle.events():
                yield encode_sse(event)
        finally:
            # Client went away (or stream ended): stop consuming the producer.
            handle.cancel()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"},
    )


@router.post("/stop")
async def chat_stop_endpoint(request: Request, payload: StopRequest) -> dict[str, bool]:
    pipeline: StreamingPipeline = request.app.state.streaming_pipeline
    return {"stopped": pipeline.stop(payload.session_id)}
