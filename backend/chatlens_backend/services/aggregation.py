"""
Dashboard aggregation over message, suggestion and Web Vitals records.

Everything here is a pure function of its inputs so the dashboard can be
tested against fixture lists without a database.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence

from ..models.chat import Message
from ..models.dashboard import (
    DashboardMetrics,
    DashboardWindow,
    LatencyMetrics,
    LcpSummary,
    SizeMetrics,
    SlowTurn,
    SuggestionStat,
    TimePoint,
    TrendMetrics,
    VolumeMetrics,
    WebVitalSummary,
    WebVitalsMetrics,
)
from ..models.suggestion import Suggestion
from ..models.vitals import WebVital

TOP_N = 10
CHARS_PER_TOKEN = 4
SLOW_TURN_PREVIEW_CHARS = 100

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
RANGE_PRESETS: dict[str, timedelta | None] = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "all": None,
}


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[start, end)``."""

    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def previous(self) -> "TimeWindow":
        return TimeWindow(start=self.start - self.duration, end=self.start)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


def resolve_window(
    start: datetime | None = None,
    end: datetime | None = None,
    range_name: str | None = None,
    now: datetime | None = None,
) -> TimeWindow:
    """Explicit bounds win over a rolling preset; a missing start means the epoch.

    Naive bounds are read as UTC. Raises ``ValueError`` for an unknown preset
    or an empty window.
    """
    now = now or datetime.now(timezone.utc)
    end = end or now
    if start is None and range_name:
        if range_name not in RANGE_PRESETS:
            raise ValueError(f"Unknown range {range_name!r}; expected one of {', '.join(RANGE_PRESETS)}")
        span = RANGE_PRESETS[range_name]
        start = end - span if span is not None else None
    window = TimeWindow(start=_aware(start or EPOCH), end=_aware(end))
    if window.start >= window.end:
        raise ValueError("'from' must be earlier than 'to'")
    return window


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# Primitives


def percentile(values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile; 0 for an empty input."""
    if not values:
        return 0
    ordered = sorted(values)
    index = math.ceil(p / 100 * len(ordered)) - 1
    return ordered[min(max(index, 0), len(ordered) - 1)]


def average(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def trend_delta(current: float, previous: float) -> float:
    """Percent change from ``previous`` to ``current``."""
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / previous * 100


def word_count(text: str) -> int:
    return len(text.split())


def estimate_token_count(text: str) -> int:
    """Rough token estimate (one token per four characters), not a tokenizer."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def message_token_count(message: Message) -> int:
    if message.metrics and message.metrics.token_count:
        return message.metrics.token_count
    return estimate_token_count(message.content)


def timed_assistant_messages(messages: Iterable[Message]) -> list[Message]:
    return [m for m in messages if m.role == "assistant" and m.metrics is not None]


def _metric_values(messages: Iterable[Message], field: str) -> list[float]:
    values = []
    for message in messages:
        value = getattr(message.metrics, field)
        if value is not None:
            values.append(value)
    return values


# Sections


def compute_volume(
    messages: Sequence[Message],
    session_count: int,
    suggestions: Sequence[Suggestion],
) -> VolumeMetrics:
    per_user: dict[str, int] = {}
    impressions = 0
    for message in messages:
        per_user[message.user_id] = per_user.get(message.user_id, 0) + 1
        if message.role == "assistant":
            impressions += len(message.suggestions)
    # Clicks are tracked on the global suggestion records, not per window.
    clicks = sum(s.click_count for s in suggestions)
    return VolumeMetrics(
        total_chats=session_count,
        total_messages=len(messages),
        messages_per_user=per_user,
        suggestion_click_rate=clicks / impressions * 100 if impressions else 0.0,
        total_suggestion_clicks=clicks,
        total_suggestion_impressions=impressions,
    )


def compute_latency(messages: Sequence[Message]) -> LatencyMetrics:
    timed = timed_assistant_messages(messages)
    ttft = _metric_values(timed, "ttft")
    total = _metric_values(timed, "total_time")
    return LatencyMetrics(
        avg_ttft=average(ttft),
        p95_ttft=percentile(ttft, 95),
        avg_total_time=average(total),
        p95_total_time=percentile(total, 95),
    )


def compute_size(messages: Sequence[Message]) -> SizeMetrics:
    timed = timed_assistant_messages(messages)
    return SizeMetrics(
        avg_word_count=average([word_count(m.content) for m in timed]),
        avg_token_count=average([message_token_count(m) for m in timed]),
        avg_chars_per_response=average([len(m.content) for m in timed]),
    )


def compute_trends(current: Sequence[Message], previous: Sequence[Message]) -> TrendMetrics:
    now_timed = timed_assistant_messages(current)
    then_timed = timed_assistant_messages(previous)
    return TrendMetrics(
        ttft_delta=trend_delta(
            average(_metric_values(now_timed, "ttft")),
            average(_metric_values(then_timed, "ttft")),
        ),
        total_time_delta=trend_delta(
            average(_metric_values(now_timed, "total_time")),
            average(_metric_values(then_timed, "total_time")),
        ),
        word_count_delta=trend_delta(
            average([word_count(m.content) for m in now_timed]),
            average([word_count(m.content) for m in then_timed]),
        ),
        message_delta=trend_delta(len(current), len(previous)),
    )


def slowest_turns(messages: Sequence[Message], limit: int = TOP_N) -> list[SlowTurn]:
    timed = [m for m in timed_assistant_messages(messages) if m.metrics.total_time]
    timed.sort(key=lambda m: m.metrics.total_time, reverse=True)
    return [
        SlowTurn(
            session_id=m.session_id,
            message_id=m.message_id,
            content=m.content[:SLOW_TURN_PREVIEW_CHARS] + "...",
            ttft=m.metrics.ttft or 0,
            total_time=m.metrics.total_time or 0,
            created_at=m.created_at,
        )
        for m in timed[:limit]
    ]


def _suggestion_stat(suggestion: Suggestion) -> SuggestionStat:
    return SuggestionStat(
        text=suggestion.text,
        click_count=suggestion.click_count,
        avg_rating=suggestion.avg_rating,
        rating_count=suggestion.rating_count,
    )


def top_clicked_suggestions(suggestions: Sequence[Suggestion], limit: int = TOP_N) -> list[SuggestionStat]:
    ranked = sorted(suggestions, key=lambda s: s.click_count, reverse=True)
    return [_suggestion_stat(s) for s in ranked[:limit]]


def top_rated_suggestions(suggestions: Sequence[Suggestion], limit: int = TOP_N) -> list[SuggestionStat]:
    rated = sorted((s for s in suggestions if s.rating_count > 0), key=lambda s: s.avg_rating, reverse=True)
    return [_suggestion_stat(s) for s in rated[:limit]]


def summarize_web_vital(vitals: Sequence[WebVital]) -> WebVitalSummary:
    values = [v.value for v in vitals]
    return WebVitalSummary(
        avg=average(values),
        p75=percentile(values, 75),
        p95=percentile(values, 95),
        count=len(values),
        good=sum(1 for v in vitals if v.rating == "good"),
        needs_improvement=sum(1 for v in vitals if v.rating == "needs-improvement"),
        poor=sum(1 for v in vitals if v.rating == "poor"),
    )


def summarize_web_vitals(vitals: Sequence[WebVital]) -> WebVitalsMetrics | None:
    if not vitals:
        return None
    by_metric: dict[str, list[WebVital]] = {"LCP": [], "INP": [], "CLS": []}
    for vital in vitals:
        if vital.metric in by_metric:
            by_metric[vital.metric].append(vital)
    lcp = by_metric["LCP"]
    series = [TimePoint(timestamp=v.timestamp, value=v.value) for v in sorted(lcp, key=lambda v: v.timestamp)]
    return WebVitalsMetrics(
        lcp=LcpSummary(**summarize_web_vital(lcp).model_dump(), time_series=series),
        inp=summarize_web_vital(by_metric["INP"]),
        cls=summarize_web_vital(by_metric["CLS"]),
    )


def build_dashboard(
    *,
    window: TimeWindow,
    messages: Sequence[Message],
    previous_messages: Sequence[Message],
    session_count: int,
    suggestions: Sequence[Suggestion],
    vitals: Sequence[WebVital],
) -> DashboardMetrics:
    previous = window.previous()
    return DashboardMetrics(
        window=DashboardWindow(
            start=window.start,
            end=window.end,
            previous_start=previous.start,
            previous_end=previous.end,
        ),
        volume=compute_volume(messages, session_count, suggestions),
        latency=compute_latency(messages),
        size=compute_size(messages),
        trends=compute_trends(messages, previous_messages),
        slowest_turns=slowest_turns(messages),
        top_clicked_suggestions=top_clicked_suggestions(suggestions),
        top_rated_suggestions=top_rated_suggestions(suggestions),
        web_vitals=summarize_web_vitals(vitals),
    )
