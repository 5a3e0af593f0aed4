from __future__ import annotations

import asyncio
import json
import random
import re
from dataclasses import dataclass
from typing import AsyncIterator, Protocol, Sequence

import httpx

from ..config import AppConfig
from ..errors import StreamProducerError


@dataclass
class ChatTurn:
    role: str
    content: str


class LLMBackend(Protocol):
    def stream_generate(
        self, prompt: str, history: Sequence[ChatTurn], max_tokens: int
    ) -> AsyncIterator[str]:
        ...


class FragmentSource(Protocol):
    """Pull-style view of a token producer: the next fragment, or ``None`` at end of stream."""

    async def next_fragment(self) -> str | None:
        ...

    async def aclose(self) -> None:
        ...


_FRAGMENT, _END, _ERROR = "fragment", "end", "error"


class ProducerSubscription:
    """
    Runs a producer iterator in its own task and hands over one fragment per
    request. The producer never runs ahead of the consumer, and its cleanup
    always happens inside the task that iterated it.
    """

    def __init__(self, iterator: AsyncIterator[str]) -> None:
        self._iterator = iterator
        self._requests: asyncio.Queue[None] = asyncio.Queue()
        self._replies: asyncio.Queue[tuple[str, object]] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._finished = False

    async def _pump(self) -> None:
        try:
            while True:
                await self._requests.get()
                try:
                    fragment = await self._iterator.__anext__()
                except StopAsyncIteration:
                    self._replies.put_nowait((_END, None))
                    return
                except Exception as exc:
                    self._replies.put_nowait((_ERROR, exc))
                    return
                self._replies.put_nowait((_FRAGMENT, fragment))
        finally:
            aclose = getattr(self._iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def next_fragment(self) -> str | None:
        if self._finished:
            return None
        if self._task is None:
            self._task = asyncio.create_task(self._pump())
        self._requests.put_nowait(None)
        kind, value = await self._replies.get()
        if kind == _FRAGMENT:
            return value
        self._finished = True
        if kind == _ERROR:
            raise value
        return None

    async def aclose(self) -> None:
        self._finished = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)


def open_fragment_source(
    backend: LLMBackend, prompt: str, history: Sequence[ChatTurn], max_tokens: int
) -> FragmentSource:
    return ProducerSubscription(backend.stream_generate(prompt, history, max_tokens).__aiter__())


def render_prompt(prompt: str, history: Sequence[ChatTurn]) -> str:
    if not history:
        return prompt

    lines: list[str] = []
    for message in history:
        role = message.role.capitalize()
        lines.append(f"{role}: {message.content}")
    lines.append(f"User: {prompt}")
    lines.append("Assistant:")
    return "\n".join(lines)


MOCK_RESPONSES: dict[str, str] = {
    "hello": (
        "Hello! I'm here to help you with any questions or tasks you have. "
        "How can I assist you today?"
    ),
    "how are you": (
        "I'm functioning well, thank you for asking! I'm ready to help you with whatever you need."
    ),
    "what can you do": (
        "I can help you with a variety of tasks including answering questions, providing "
        "explanations, helping with problem-solving, writing, and much more. "
        "What would you like to explore?"
    ),
    "weather": (
        "I don't have access to real-time weather data, but I'd be happy to discuss weather "
        "patterns, climate, or help you find weather resources!"
    ),
    "programming": (
        "I'd be happy to help with programming! I can assist with code explanation, debugging, "
        "architecture design, best practices, and more. What programming topic interests you?"
    ),
}

DEFAULT_RESPONSE = (
    "That's an interesting question. Let me provide you with a thoughtful response. "
    "Based on what you're asking, I can offer several perspectives and insights that might be helpful."
)

_FRAGMENT_PATTERN = re.compile(r"(\s+|[.,!?;:])")


def mock_response(prompt: str) -> str:
    lowered = prompt.lower()
    for key, response in MOCK_RESPONSES.items():
        if key in lowered:
            return response
    if "?" in prompt:
        return (
            f'That\'s a great question about "{prompt[:50]}...". Let me provide a comprehensive '
            f"answer. {DEFAULT_RESPONSE} I hope this helps clarify things!"
        )
    return DEFAULT_RESPONSE + " Feel free to ask follow-up questions!"


def split_fragments(text: str) -> list[str]:
    """Word, whitespace and punctuation runs, in order; joining them restores ``text``."""
    return [part for part in _FRAGMENT_PATTERN.split(text) if part]


@dataclass
class MockBackend:
    initial_delay_ms: float = 100.0
    token_delay_ms: float = 30.0
    jitter_ms: float = 10.0

    async def stream_generate(
        self, prompt: str, history: Sequence[ChatTurn], max_tokens: int
    ) -> AsyncIterator[str]:
        await asyncio.sleep(self.initial_delay_ms / 1000)
        for fragment in split_fragments(mock_response(prompt))[:max_tokens]:
            yield fragment
            delay = self.token_delay_ms + random.uniform(-self.jitter_ms, self.jitter_ms)
            await asyncio.sleep(max(delay, 0) / 1000)


@dataclass
class OllamaBackend:
    base_url: str
    model: str

    async def stream_generate(
        self, prompt: str, history: Sequence[ChatTurn], max_tokens: int
    ) -> AsyncIterator[str]:
        payload = {
            "model": self.model,
            "prompt": render_prompt(prompt, history),
            "stream": True,
            "options": {"num_predict": max_tokens},
        }
        try:
            async with httpx.AsyncClient(timeout=None) as client:
                async with client.stream("POST", f"{self.base_url}/api/generate", json=payload) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line:
                            continue
                        # Ollama streams JSON per line
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        if data.get("error"):
                            raise StreamProducerError(f"Ollama error: {data['error']}")
                        if data.get("done"):
                            break
                        chunk = data.get("response")
                        if chunk:
                            yield chunk
        except httpx.HTTPStatusError as e:
            raise StreamProducerError(f"Ollama HTTP error: {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise StreamProducerError(f"Cannot connect to Ollama at {self.base_url}: {str(e)}") from e


@dataclass
class DummyBackend:
    async def stream_generate(
        self, prompt: str, history: Sequence[ChatTurn], max_tokens: int
    ) -> AsyncIterator[str]:
        yield (
            "Offline placeholder response. Set CHATLENS_LLM_PROVIDER=mock or ollama "
            "to stream generated answers."
        )


def create_llm_backend(settings: AppConfig) -> LLMBackend:
    if settings.llm_provider == "ollama":
        return OllamaBackend(base_url=settings.ollama_base_url, model=settings.ollama_model)
    if settings.llm_provider == "mock":
        return MockBackend(
            initial_delay_ms=settings.mock_initial_delay_ms,
            token_delay_ms=settings.mock_token_delay_ms,
        )
    return DummyBackend()
