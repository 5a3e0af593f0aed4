from __future__ import annotations

import logging

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from .config import AppConfig, get_settings
from .routes import chat, dashboard, health, sessions, suggestions, vitals
from .services.chat_store import ChatStore
from .services.dashboard import DashboardService
from .services.llm import create_llm_backend
from .services.streaming import StreamingPipeline


def create_app(settings: AppConfig | None = None) -> FastAPI:
    """Create the FastAPI application for the instrumented chat backend."""
    settings = settings or get_settings()
    settings.ensure_directories()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app = FastAPI(
        title="ChatLens",
        version="0.1.0",
        description="Streaming chat API with per-turn latency metrics, suggestion engagement and dashboards.",
    )

    # Bootstrap services
    chat_store = ChatStore(settings)
    app.state.settings = settings
    app.state.chat_store = chat_store
    app.state.streaming_pipeline = StreamingPipeline(create_llm_backend(settings), chat_store, settings)
    app.state.dashboard_service = DashboardService(chat_store)

    # Browser clients (dev servers) call the API directly.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_origin_regex=".*",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, prefix="/api")
    app.include_router(chat.router, prefix="/api")
    app.include_router(sessions.router, prefix="/api")
    app.include_router(suggestions.router, prefix="/api")
    app.include_router(vitals.router, prefix="/api")
    app.include_router(dashboard.router, prefix="/api")

    @app.get("/api/config", tags=["config"])
    async def read_config() -> dict[str, object]:
        return {
            "llm_provider": settings.llm_provider,
            "ollama_model": settings.ollama_model,
            "ollama_base_url": settings.ollama_base_url,
            "llm_max_tokens": settings.llm_max_tokens,
            "queue_initial_retry_delay_ms": settings.queue_initial_retry_delay_ms,
            "queue_max_retry_attempts": settings.queue_max_retry_attempts,
            "queue_drain_interval_s": settings.queue_drain_interval_s,
        }

    return app
