from __future__ import annotations

from datetime import datetime
from typing import Dict, List

from pydantic import Field

from .base import CamelModel


class VolumeMetrics(CamelModel):
    total_chats: int = 0
    total_messages: int = 0
    messages_per_user: Dict[str, int] = Field(default_factory=dict)
    suggestion_click_rate: float = 0.0
    total_suggestion_clicks: int = 0
    total_suggestion_impressions: int = 0


class LatencyMetrics(CamelModel):
    avg_ttft: float = 0.0
    p95_ttft: float = 0.0
    avg_total_time: float = 0.0
    p95_total_time: float = 0.0


class SizeMetrics(CamelModel):
    avg_word_count: float = 0.0
    avg_token_count: float = 0.0
    avg_chars_per_response: float = 0.0


class TrendMetrics(CamelModel):
    """Percent change against the preceding window of equal length."""

    ttft_delta: float = 0.0
    total_time_delta: float = 0.0
    word_count_delta: float = 0.0
    message_delta: float = 0.0


class SlowTurn(CamelModel):
    session_id: str
    message_id: str
    content: str
    ttft: float
    total_time: float
    created_at: datetime


class SuggestionStat(CamelModel):
    text: str
    click_count: int
    avg_rating: float
    rating_count: int


class TimePoint(CamelModel):
    timestamp: datetime
    value: float


class WebVitalSummary(CamelModel):
    avg: float = 0.0
    p75: float = 0.0
    p95: float = 0.0
    count: int = 0
    good: int = 0
    needs_improvement: int = 0
    poor: int = 0


class LcpSummary(WebVitalSummary):
    time_series: List[TimePoint] = Field(default_factory=list)


class WebVitalsMetrics(CamelModel):
    lcp: LcpSummary
    inp: WebVitalSummary
    cls: WebVitalSummary


class DashboardWindow(CamelModel):
    start: datetime
    end: datetime
    previous_start: datetime
    previous_end: datetime


class DashboardMetrics(CamelModel):
    window: DashboardWindow
    volume: VolumeMetrics
    latency: LatencyMetrics
    size: SizeMetrics
    trends: TrendMetrics
    slowest_turns: List[SlowTurn] = Field(default_factory=list)
    top_clicked_suggestions: List[SuggestionStat] = Field(default_factory=list)
    top_rated_suggestions: List[SuggestionStat] = Field(default_factory=list)
    web_vitals: WebVitalsMetrics | None = None
