from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from chatlens_backend.models.chat import Message, MessageMetrics
from chatlens_backend.models.suggestion import Suggestion
from chatlens_backend.models.vitals import WebVital
from chatlens_backend.services.aggregation import (
    EPOCH,
    TimeWindow,
    build_dashboard,
    compute_latency,
    compute_size,
    compute_trends,
    compute_volume,
    estimate_token_count,
    percentile,
    resolve_window,
    slowest_turns,
    summarize_web_vitals,
    top_clicked_suggestions,
    top_rated_suggestions,
    trend_delta,
)

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def make_suggestion(text: str, clicks: int = 0, ratings: tuple[int, ...] = ()) -> Suggestion:
    return Suggestion(
        id=text,
        text=text,
        total_rating=sum(ratings),
        rating_count=len(ratings),
        avg_rating=sum(ratings) / len(ratings) if ratings else 0,
        click_count=clicks,
        created_at=NOW,
        updated_at=NOW,
    )


def reply(content: str, ttft: int | None, total: int | None, user_id: str = "u1", suggestions=()) -> Message:
    return Message(
        message_id=f"m-{content[:8]}-{total}",
        session_id="s1",
        user_id=user_id,
        role="assistant",
        content=content,
        suggestions=list(suggestions),
        created_at=NOW,
        metrics=MessageMetrics(request_start_at=NOW, ttft=ttft, total_time=total),
    )


def prompt(content: str, user_id: str = "u1") -> Message:
    return Message(
        message_id=f"p-{content}", session_id="s1", user_id=user_id, role="user", content=content, created_at=NOW
    )


def test_percentile_nearest_rank():
    values = [50, 10, 40, 20, 30]
    assert percentile([], 95) == 0
    assert percentile([7], 95) == 7
    assert percentile(values, 50) == 30
    assert percentile(values, 95) == 50
    assert percentile(values, 0) == 10
    assert percentile(list(range(1, 101)), 95) == 95
    assert percentile(list(range(1, 101)), 75) == 75


def test_percentile_is_monotonic_and_bounded():
    values = [3, 9, 1, 4, 4, 12, 8]
    previous = min(values)
    for p in range(0, 101, 5):
        current = percentile(values, p)
        assert min(values) <= current <= max(values)
        assert current >= previous
        previous = current
    assert percentile(sorted(values), 100) == max(values)


@pytest.mark.parametrize(
    "current, previous, expected",
    [(0, 0, 0), (5, 0, 100), (10, 5, 100), (5, 10, -50), (7, 7, 0)],
)
def test_trend_delta(current, previous, expected):
    assert trend_delta(current, previous) == pytest.approx(expected)


def test_estimate_token_count():
    assert estimate_token_count("") == 0
    assert estimate_token_count("abcd") == 1
    assert estimate_token_count("abcde") == 2


def test_volume_counts_impressions_and_global_clicks():
    suggestions = [make_suggestion("a", clicks=3), make_suggestion("b", clicks=1)]
    messages = [
        prompt("hi"),
        reply("hello", 100, 400, suggestions=suggestions),
        prompt("yo", user_id="u2"),
        reply("hey", 80, 300, user_id="u2", suggestions=suggestions[:1] * 2),
    ]

    volume = compute_volume(messages, session_count=2, suggestions=suggestions)

    assert volume.total_chats == 2
    assert volume.total_messages == 4
    assert volume.messages_per_user == {"u1": 2, "u2": 2}
    assert volume.total_suggestion_impressions == 4
    assert volume.total_suggestion_clicks == 4
    assert volume.suggestion_click_rate == pytest.approx(100.0)
    assert compute_volume([], 0, suggestions).suggestion_click_rate == 0


def test_latency_and_size_ignore_untimed_messages():
    messages = [
        prompt("question"),
        reply("one two three", 100, 1000),
        reply("four five", 300, 2000),
        reply("no timing", None, None),
    ]

    latency = compute_latency(messages)
    assert latency.avg_ttft == pytest.approx(200)
    assert latency.p95_ttft == 300
    assert latency.avg_total_time == pytest.approx(1500)

    size = compute_size(messages[:3])
    assert size.avg_word_count == pytest.approx(2.5)
    assert size.avg_chars_per_response == pytest.approx((13 + 9) / 2)
    assert size.avg_token_count == pytest.approx((4 + 3) / 2)


def test_empty_sections_are_zero():
    assert compute_latency([]).p95_total_time == 0
    assert compute_size([]).avg_word_count == 0
    assert summarize_web_vitals([]) is None


def test_trends_compare_against_previous_window():
    current = [reply("a b c d", 200, 1000), prompt("x")]
    previous = [reply("a b", 100, 1000)]

    trends = compute_trends(current, previous)

    assert trends.ttft_delta == pytest.approx(100)
    assert trends.total_time_delta == pytest.approx(0)
    assert trends.word_count_delta == pytest.approx(100)
    assert trends.message_delta == pytest.approx(100)
    assert compute_trends([], []).message_delta == 0


def test_slowest_turns_sorted_and_truncated():
    long_text = "x" * 150
    messages = [reply("fast", 10, 100), reply(long_text, 50, 900), reply("mid", 20, 500)]

    turns = slowest_turns(messages, limit=2)

    assert [t.total_time for t in turns] == [900, 500]
    assert turns[0].content == "x" * 100 + "..."


def test_top_suggestions():
    suggestions = [
        make_suggestion("popular", clicks=9, ratings=(3,)),
        make_suggestion("loved", clicks=2, ratings=(5, 5)),
        make_suggestion("unrated", clicks=5),
    ]

    assert [s.text for s in top_clicked_suggestions(suggestions)] == ["popular", "unrated", "loved"]
    assert [s.text for s in top_rated_suggestions(suggestions)] == ["loved", "popular"]
    assert len(top_clicked_suggestions(suggestions, limit=1)) == 1


def test_web_vitals_summary():
    def vital(metric: str, value: float, rating: str, minutes: int) -> WebVital:
        return WebVital(
            vital_id=f"{metric}-{minutes}",
            session_id="s1",
            user_id="u1",
            metric=metric,
            value=value,
            rating=rating,
            timestamp=NOW + timedelta(minutes=minutes),
            page_url="/",
        )

    vitals = [
        vital("LCP", 3000, "needs-improvement", 2),
        vital("LCP", 1200, "good", 1),
        vital("LCP", 5000, "poor", 3),
        vital("CLS", 0.05, "good", 1),
        vital("TTFB", 300, "good", 1),
    ]

    summary = summarize_web_vitals(vitals)

    assert summary.lcp.count == 3
    assert summary.lcp.avg == pytest.approx(3066.6667, rel=1e-4)
    assert summary.lcp.p75 == 5000
    assert (summary.lcp.good, summary.lcp.needs_improvement, summary.lcp.poor) == (1, 1, 1)
    assert [p.value for p in summary.lcp.time_series] == [1200, 3000, 5000]
    assert summary.cls.count == 1
    assert summary.inp.count == 0


def test_resolve_window_presets_and_explicit_bounds():
    window = resolve_window(range_name="7d", now=NOW)
    assert window == TimeWindow(NOW - timedelta(days=7), NOW)
    assert window.previous() == TimeWindow(NOW - timedelta(days=14), NOW - timedelta(days=7))
    assert window.contains(NOW - timedelta(days=7))
    assert not window.contains(NOW)

    assert resolve_window(now=NOW).start == EPOCH
    assert resolve_window(range_name="all", now=NOW).start == EPOCH

    explicit = resolve_window(datetime(2024, 1, 1), datetime(2024, 1, 2), range_name="24h", now=NOW)
    assert explicit.start == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert explicit.duration == timedelta(days=1)

    with pytest.raises(ValueError):
        resolve_window(range_name="1y", now=NOW)


def test_resolve_window_mixes_naive_and_aware_bounds():
    window = resolve_window(datetime(2024, 1, 1), datetime(2024, 2, 1, tzinfo=timezone.utc), now=NOW)
    assert window.start == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert window.duration == timedelta(days=31)

    with pytest.raises(ValueError, match="earlier"):
        resolve_window(datetime(2024, 2, 1), datetime(2024, 1, 1, tzinfo=timezone.utc), now=NOW)
    with pytest.raises(ValueError):
        resolve_window(datetime(2024, 1, 1, tzinfo=timezone.utc), datetime(2024, 1, 1), now=NOW)


def test_build_dashboard_wires_sections():
    window = resolve_window(range_name="24h", now=NOW)
    dashboard = build_dashboard(
        window=window,
        messages=[prompt("hi"), reply("hello", 90, 400)],
        previous_messages=[],
        session_count=1,
        suggestions=[],
        vitals=[],
    )

    assert dashboard.window.previous_end == window.start
    assert dashboard.volume.total_messages == 2
    assert dashboard.latency.avg_ttft == 90
    assert dashboard.trends.message_delta == 100
    assert dashboard.web_vitals is None
    assert "previousStart" in dashboard.model_dump(by_alias=True)["window"]
