from __future__ import annotations

from typing import Sequence

GREETING = [
    "What can you help me with?",
    "Tell me about your capabilities",
    "Let's discuss programming",
]
PROGRAMMING = [
    "Explain TypeScript best practices",
    "Help me debug an issue",
    "Discuss software architecture",
]
WEATHER = [
    "Tell me about climate patterns",
    "What causes rain?",
    "Explain weather forecasting",
]
EXPLANATION = [
    "Can you give me an example?",
    "Tell me more details",
    "How does this apply in practice?",
]
OPEN_QUESTION = [
    "Can you elaborate on that?",
    "What are some examples?",
    "Are there alternatives?",
]
GENERIC = [
    "Tell me more about this",
    "What are the key considerations?",
    "Can you provide an example?",
    "How does this work in practice?",
    "What are common pitfalls?",
    "Explain this in simpler terms",
    "What are the benefits?",
    "What are the trade-offs?",
    "How can I learn more?",
    "What's the next step?",
]


def generate_suggestions(prompt: str, history: Sequence[object]) -> list[str]:
    """Return three follow-up prompts for the turn.

    Keyword rules are checked in order; anything else rotates through the
    generic list using the conversation length as the offset.
    """
    lowered = prompt.lower()
    if "hello" in lowered or "hi" in lowered:
        return list(GREETING)
    if "programming" in lowered or "code" in lowered:
        return list(PROGRAMMING)
    if "weather" in lowered:
        return list(WEATHER)
    if "explain" in lowered or "what is" in lowered:
        return list(EXPLANATION)
    if "how" in lowered or "why" in lowered or "when" in lowered:
        return list(OPEN_QUESTION)

    start = len(history) % len(GENERIC)
    return [GENERIC[(start + step) % len(GENERIC)] for step in (0, 3, 6)]
