from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from chatlens_backend.errors import PersistenceError, ValidationError
from chatlens_backend.services.streaming import StreamingPipeline, StreamState, elapsed_ms, encode_sse

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += timedelta(milliseconds=ms)


class ScriptedBackend:
    """Yields fragments after moving the fake clock, so timings are exact."""

    def __init__(self, clock: FakeClock, steps, end_ms: float = 0, error: Exception | None = None) -> None:
        self.clock = clock
        self.steps = steps
        self.end_ms = end_ms
        self.error = error
        self.prompts: list[tuple[str, list]] = []

    async def stream_generate(self, prompt, history, max_tokens):
        self.prompts.append((prompt, list(history)))
        for delay_ms, fragment in self.steps:
            self.clock.advance(delay_ms)
            yield fragment
        if self.error is not None:
            raise self.error
        self.clock.advance(self.end_ms)


class HangingBackend:
    def __init__(self, first: str | None = None) -> None:
        self.first = first
        self.closed = False

    async def stream_generate(self, prompt, history, max_tokens):
        try:
            if self.first is not None:
                yield self.first
            await asyncio.sleep(3600)
            yield "never"
        finally:
            self.closed = True


async def collect(handle) -> list[dict]:
    return [event async for event in handle.events()]


@pytest.mark.asyncio
async def test_stream_emits_tokens_then_done_with_exact_metrics(store, settings):
    clock = FakeClock()
    backend = ScriptedBackend(clock, [(100, "Hello"), (0, " "), (0, "world")], end_ms=550)
    pipeline = StreamingPipeline(backend, store, settings, clock=clock)

    handle = await pipeline.send_prompt("s1", "u1", "Tell me a story")
    events = await collect(handle)
    await handle.wait()

    assert [e["type"] for e in events] == ["token", "token", "token", "done"]
    assert "".join(e["content"] for e in events[:3]) == "Hello world"
    done = events[-1]
    assert done["fullText"] == "Hello world"
    assert done["metrics"] == {
        "requestStart": T0.isoformat(),
        "firstTokenAt": (T0 + timedelta(milliseconds=100)).isoformat(),
        "completedAt": (T0 + timedelta(milliseconds=650)).isoformat(),
        "ttft": 100,
        "totalTime": 650,
    }
    assert [s["text"] for s in done["suggestions"]] == [
        "What are the key considerations?",
        "What are common pitfalls?",
        "What are the trade-offs?",
    ]
    assert all(s["id"] for s in done["suggestions"])
    assert handle.state == StreamState.COMPLETED
    assert pipeline.active("s1") is None

    messages = store.list_messages("s1")
    assert [m.role for m in messages] == ["user", "assistant"]
    reply = messages[1]
    assert reply.content == "Hello world"
    assert reply.metrics.ttft == 100
    assert reply.metrics.total_time == 650
    assert reply.metrics.token_count == 2
    assert [s.text for s in reply.suggestions] == [s["text"] for s in done["suggestions"]]


@pytest.mark.asyncio
async def test_history_excludes_current_prompt(store, settings):
    clock = FakeClock()
    backend = ScriptedBackend(clock, [(10, "ok")])
    pipeline = StreamingPipeline(backend, store, settings, clock=clock)

    first = await pipeline.send_prompt("s1", "u1", "First question")
    await collect(first)
    second = await pipeline.send_prompt("s1", "u1", "Second question")
    await collect(second)

    prompt, history = backend.prompts[-1]
    assert prompt == "Second question"
    assert [(t.role, t.content) for t in history] == [("user", "First question"), ("assistant", "ok")]
    session = store.session_detail("s1")
    assert session.title == "First question"
    assert len(session.messages) == 4


@pytest.mark.asyncio
async def test_stream_without_fragments_has_zero_ttft(store, settings):
    clock = FakeClock()
    pipeline = StreamingPipeline(ScriptedBackend(clock, [], end_ms=40), store, settings, clock=clock)

    handle = await pipeline.send_prompt("s1", "u1", "Tell me a story")
    events = await collect(handle)

    done = events[-1]
    assert done["type"] == "done"
    assert done["fullText"] == ""
    assert done["metrics"]["firstTokenAt"] is None
    assert done["metrics"]["ttft"] == 0
    assert done["metrics"]["totalTime"] == 40
    assert store.list_messages("s1")[1].metrics.ttft is None


@pytest.mark.asyncio
async def test_producer_failure_emits_error_and_persists_nothing(store, settings):
    clock = FakeClock()
    backend = ScriptedBackend(clock, [(50, "Hel")], error=RuntimeError("model crashed"))
    pipeline = StreamingPipeline(backend, store, settings, clock=clock)

    handle = await pipeline.send_prompt("s1", "u1", "Tell me a story")
    events = await collect(handle)

    assert events[0] == {"type": "token", "content": "Hel"}
    assert events[-1] == {
        "type": "error",
        "kind": "producer",
        "message": "model crashed",
        "prompt": "Tell me a story",
    }
    assert handle.state == StreamState.FAILED
    assert [m.role for m in store.list_messages("s1")] == ["user"]


@pytest.mark.asyncio
async def test_cancel_mid_stream_discards_partial_text(store, settings):
    backend = HangingBackend(first="Partial")
    pipeline = StreamingPipeline(backend, store, settings)

    handle = await pipeline.send_prompt("s1", "u1", "Tell me a story")
    events = handle.events()
    first = await events.__anext__()
    assert first == {"type": "token", "content": "Partial"}
    assert handle.state == StreamState.STREAMING

    assert pipeline.stop("s1") is True
    await asyncio.wait_for(handle.wait(), timeout=5)

    assert [e async for e in events] == []
    assert handle.state == StreamState.ABORTED
    assert backend.closed is True
    assert pipeline.active("s1") is None
    assert [m.role for m in store.list_messages("s1")] == ["user"]


@pytest.mark.asyncio
async def test_cancel_before_first_fragment(store, settings):
    backend = HangingBackend()
    pipeline = StreamingPipeline(backend, store, settings)

    handle = await pipeline.send_prompt("s1", "u1", "Tell me a story")
    await asyncio.sleep(0)
    handle.cancel()
    await asyncio.wait_for(handle.wait(), timeout=5)

    assert await collect(handle) == []
    assert handle.state == StreamState.ABORTED
    assert len(store.list_messages("s1")) == 1


@pytest.mark.asyncio
async def test_stop_without_active_stream(store, settings):
    pipeline = StreamingPipeline(HangingBackend(), store, settings)
    assert pipeline.stop("missing") is False


@pytest.mark.asyncio
async def test_persistence_failure_reports_full_text(store, settings, monkeypatch):
    clock = FakeClock()
    pipeline = StreamingPipeline(ScriptedBackend(clock, [(20, "Saved"), (5, "?")]), store, settings, clock=clock)
    original = store.create_message

    def failing_create_message(**kwargs):
        if kwargs["role"] == "assistant":
            raise PersistenceError("disk full")
        return original(**kwargs)

    monkeypatch.setattr(store, "create_message", failing_create_message)

    handle = await pipeline.send_prompt("s1", "u1", "Tell me a story")
    events = await collect(handle)

    error = events[-1]
    assert error["type"] == "error"
    assert error["kind"] == "persistence"
    assert error["fullText"] == "Saved?"
    assert error["prompt"] == "Tell me a story"
    assert "disk full" in error["message"]
    assert handle.state == StreamState.COMPLETED
    assert handle.message is None


@pytest.mark.asyncio
async def test_suggestion_failure_reports_full_text(store, settings):
    clock = FakeClock()

    def broken_suggestions(prompt, history):
        raise RuntimeError("suggestion service down")

    pipeline = StreamingPipeline(
        ScriptedBackend(clock, [(10, "hi")]), store, settings, suggestion_generator=broken_suggestions, clock=clock
    )

    handle = await pipeline.send_prompt("s1", "u1", "Tell me a story")
    events = await asyncio.wait_for(collect(handle), timeout=5)
    await handle.wait()

    assert events[0] == {"type": "token", "content": "hi"}
    error = events[-1]
    assert error["type"] == "error"
    assert error["kind"] == "internal"
    assert error["fullText"] == "hi"
    assert error["prompt"] == "Tell me a story"
    assert "suggestion service down" in error["message"]
    assert handle.state == StreamState.FAILED
    assert pipeline.active("s1") is None
    assert [m.role for m in store.list_messages("s1")] == ["user"]


@pytest.mark.asyncio
async def test_store_writes_run_off_the_event_loop(store, settings, monkeypatch):
    clock = FakeClock()
    pipeline = StreamingPipeline(ScriptedBackend(clock, [(10, "ok")]), store, settings, clock=clock)
    original = store.create_message
    writer_threads: list[int] = []

    def recording_create_message(**kwargs):
        writer_threads.append(threading.get_ident())
        return original(**kwargs)

    monkeypatch.setattr(store, "create_message", recording_create_message)

    handle = await pipeline.send_prompt("s1", "u1", "Tell me a story")
    events = await collect(handle)

    assert events[-1]["type"] == "done"
    assert len(writer_threads) == 2
    assert threading.get_ident() not in writer_threads


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "session_id, user_id, prompt",
    [("", "u1", "hi"), ("s1", " ", "hi"), ("s1", "u1", "   ")],
)
async def test_blank_inputs_are_rejected(store, settings, session_id, user_id, prompt):
    pipeline = StreamingPipeline(HangingBackend(), store, settings)
    with pytest.raises(ValidationError):
        await pipeline.send_prompt(session_id, user_id, prompt)
    assert store.list_sessions("u1") == []


def test_elapsed_ms_rounds():
    assert elapsed_ms(T0, T0 + timedelta(microseconds=100_600)) == 101


def test_encode_sse_frames_json():
    assert encode_sse({"type": "token", "content": "a"}) == 'data: {"type": "token", "content": "a"}\n\n'
