from __future__ import annotations

from datetime import datetime

from pydantic import Field

from .base import CamelModel


class Suggestion(CamelModel):
    """Global follow-up suggestion, deduplicated by text."""

    id: str
    text: str
    total_rating: float = 0
    rating_count: int = 0
    avg_rating: float = 0
    click_count: int = 0
    created_at: datetime
    updated_at: datetime


class ClickRequest(CamelModel):
    suggestion_id: str


class RankRequest(CamelModel):
    rank: int = Field(..., description="Rating between 1 and 5")


class InteractionResponse(CamelModel):
    success: bool = True
    rank: int | None = None
