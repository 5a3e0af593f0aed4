from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Sequence

from ..config import AppConfig
from ..errors import PersistenceError, ValidationError
from ..models.chat import Message, MessageMetrics, StreamMetrics
from ..models.suggestion import Suggestion
from .aggregation import word_count
from .chat_store import ChatStore
from .llm import ChatTurn, LLMBackend, open_fragment_source
from .suggestions import generate_suggestions

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
SuggestionGenerator = Callable[[str, Sequence[Message]], list[str]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def elapsed_ms(start: datetime, end: datetime) -> int:
    return round((end - start).total_seconds() * 1000)


def encode_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


class StreamState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class StreamSession:
    """In-flight state of one assistant turn; never persisted as-is."""

    prompt_text: str
    started_at: datetime
    first_fragment_at: datetime | None = None
    completed_at: datetime | None = None
    fragments: list[str] = field(default_factory=list)

    @property
    def assembled_text(self) -> str:
        return "".join(self.fragments)

    @property
    def fragment_count(self) -> int:
        return len(self.fragments)


_CLOSED = object()


class StreamHandle:
    """
    Caller's end of a running stream: a push channel of events, the current
    state, and a way to stop it. ``prompt`` is kept so the caller can offer a
    retry after an abort or failure.
    """

    def __init__(self, session_id: str, user_id: str, prompt: str) -> None:
        self.session_id = session_id
        self.user_id = user_id
        self.prompt = prompt
        self.state = StreamState.IDLE
        self.token = CancellationToken()
        self.message: Message | None = None
        self.error: str | None = None
        self._channel: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def cancel(self) -> None:
        self.token.cancel()

    @property
    def finished(self) -> bool:
        return self.state in (StreamState.COMPLETED, StreamState.ABORTED, StreamState.FAILED)

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            event = await self._channel.get()
            if event is _CLOSED:
                return
            yield event

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    def _emit(self, event: dict[str, Any]) -> None:
        self._channel.put_nowait(event)

    def _close(self) -> None:
        self._channel.put_nowait(_CLOSED)


class StreamingPipeline:
    def __init__(
        self,
        backend: LLMBackend,
        store: ChatStore,
        settings: AppConfig,
        suggestion_generator: SuggestionGenerator = generate_suggestions,
        clock: Clock = utc_now,
    ) -> None:
        self._backend = backend
        self._store = store
        self._settings = settings
        self._suggest = suggestion_generator
        self._clock = clock
        self._active: dict[str, StreamHandle] = {}

    def active(self, session_id: str) -> StreamHandle | None:
        return self._active.get(session_id)

    def stop(self, session_id: str) -> bool:
        handle = self._active.get(session_id)
        if handle is None:
            return False
        handle.cancel()
        return True

    async def send_prompt(self, session_id: str, user_id: str, prompt: str) -> StreamHandle:
        """
        Record the user's turn and start streaming the assistant's reply.

        One stream per session at a time is the caller's responsibility; use
        ``active()`` to check before calling.
        """
        for name, value in (("sessionId", session_id), ("userId", user_id), ("prompt", prompt)):
            if not value or not value.strip():
                raise ValidationError(f"{name} is required")

        now = self._clock()
        user_message = await asyncio.to_thread(self._record_prompt, session_id, user_id, prompt, now)
        history = await asyncio.to_thread(self._store.list_messages, session_id)
        turns = [
            ChatTurn(role=m.role, content=m.content) for m in history if m.message_id != user_message.message_id
        ]

        handle = StreamHandle(session_id, user_id, prompt)
        self._active[session_id] = handle
        handle._task = asyncio.create_task(self._run(handle, history, turns))
        return handle

    def _record_prompt(self, session_id: str, user_id: str, prompt: str, now: datetime) -> Message:
        self._store.ensure_user(user_id)
        if self._store.find_session(session_id) is None:
            self._store.create_session(session_id, user_id, title=prompt[:50], created_at=now)
        return self._store.create_message(
            session_id=session_id,
            user_id=user_id,
            role="user",
            content=prompt,
            created_at=now,
        )

    async def _run(self, handle: StreamHandle, history: list[Message], turns: list[ChatTurn]) -> None:
        try:
            stream = await self._consume(handle, turns)
            if stream is not None:
                await self._complete(handle, stream, history)
        except Exception as exc:
            handle.state = StreamState.FAILED
            handle.error = str(exc) or exc.__class__.__name__
            logger.error("Stream for session %s failed", handle.session_id, exc_info=True)
            handle._emit({"type": "error", "kind": "internal", "message": handle.error, "prompt": handle.prompt})
        finally:
            if self._active.get(handle.session_id) is handle:
                del self._active[handle.session_id]
            handle._close()

    async def _consume(self, handle: StreamHandle, turns: list[ChatTurn]) -> StreamSession | None:
        if handle.token.cancelled:
            handle.state = StreamState.ABORTED
            return None

        handle.state = StreamState.REQUESTING
        stream = StreamSession(prompt_text=handle.prompt, started_at=self._clock())
        source = open_fragment_source(self._backend, handle.prompt, turns, self._settings.llm_max_tokens)
        cancelled = asyncio.ensure_future(handle.token.wait())
        try:
            while not handle.token.cancelled:
                fetch = asyncio.ensure_future(source.next_fragment())
                await asyncio.wait({fetch, cancelled}, return_when=asyncio.FIRST_COMPLETED)
                if not fetch.done():
                    fetch.cancel()
                    await asyncio.gather(fetch, return_exceptions=True)
                    break
                try:
                    fragment = fetch.result()
                except Exception as exc:
                    handle.state = StreamState.FAILED
                    handle.error = str(exc) or exc.__class__.__name__
                    logger.error("Token producer failed for session %s", handle.session_id, exc_info=True)
                    handle._emit(
                        {"type": "error", "kind": "producer", "message": handle.error, "prompt": handle.prompt}
                    )
                    return None
                if fragment is None:
                    return stream
                if not fragment:
                    continue
                if stream.first_fragment_at is None:
                    stream.first_fragment_at = self._clock()
                    logger.info(
                        "TTFT: %dms for session %s",
                        elapsed_ms(stream.started_at, stream.first_fragment_at),
                        handle.session_id,
                    )
                handle.state = StreamState.STREAMING
                stream.fragments.append(fragment)
                handle._emit({"type": "token", "content": fragment})
        finally:
            cancelled.cancel()
            await source.aclose()

        handle.state = StreamState.ABORTED
        logger.info(
            "Stream for session %s stopped after %d fragments; partial text discarded",
            handle.session_id,
            stream.fragment_count,
        )
        return None

    async def _complete(self, handle: StreamHandle, stream: StreamSession, history: list[Message]) -> None:
        stream.completed_at = self._clock()
        handle.state = StreamState.COMPLETED
        full_text = stream.assembled_text
        metrics = MessageMetrics(
            request_start_at=stream.started_at,
            first_token_at=stream.first_fragment_at,
            completed_at=stream.completed_at,
            ttft=elapsed_ms(stream.started_at, stream.first_fragment_at) if stream.first_fragment_at else None,
            total_time=elapsed_ms(stream.started_at, stream.completed_at),
            token_count=word_count(full_text),
        )
        logger.info(
            "Total time: %dms, tokens: %d, session %s",
            metrics.total_time,
            metrics.token_count,
            handle.session_id,
        )

        try:
            suggestions, handle.message = await asyncio.to_thread(
                self._persist_reply, handle, history, full_text, stream.completed_at, metrics
            )
        except PersistenceError as exc:
            handle.error = str(exc)
            logger.error("Failed to persist reply for session %s", handle.session_id, exc_info=True)
            handle._emit(
                {
                    "type": "error",
                    "kind": "persistence",
                    "message": f"Response generated but could not be saved: {exc}",
                    "prompt": handle.prompt,
                    "fullText": full_text,
                }
            )
            return
        except Exception as exc:
            handle.state = StreamState.FAILED
            handle.error = str(exc) or exc.__class__.__name__
            logger.error("Failed to finish reply for session %s", handle.session_id, exc_info=True)
            handle._emit(
                {
                    "type": "error",
                    "kind": "internal",
                    "message": f"Response generated but could not be finished: {handle.error}",
                    "prompt": handle.prompt,
                    "fullText": full_text,
                }
            )
            return

        done_metrics = StreamMetrics(
            request_start=stream.started_at.isoformat(),
            first_token_at=stream.first_fragment_at.isoformat() if stream.first_fragment_at else None,
            completed_at=stream.completed_at.isoformat(),
            ttft=metrics.ttft or 0,
            total_time=metrics.total_time,
        )
        handle._emit(
            {
                "type": "done",
                "fullText": full_text,
                "suggestions": [s.model_dump(mode="json", by_alias=True) for s in suggestions],
                "metrics": done_metrics.model_dump(by_alias=True),
            }
        )

    def _persist_reply(
        self,
        handle: StreamHandle,
        history: list[Message],
        full_text: str,
        completed_at: datetime,
        metrics: MessageMetrics,
    ) -> tuple[list[Suggestion], Message]:
        suggestions = self._store.get_or_create_suggestions(self._suggest(handle.prompt, history))
        message = self._store.create_message(
            session_id=handle.session_id,
            user_id=handle.user_id,
            role="assistant",
            content=full_text,
            suggestions=[s.text for s in suggestions],
            created_at=completed_at,
            metrics=metrics,
        )
        return suggestions, message
