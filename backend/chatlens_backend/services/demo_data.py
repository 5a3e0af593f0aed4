from __future__ import annotations

import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from ..models.chat import MessageMetrics
from .aggregation import word_count
from .chat_store import ChatStore
from .suggestions import generate_suggestions

CONVERSATIONS: list[tuple[str, str]] = [
    (
        "Hello! How are you today?",
        "Hello! I'm doing well, thank you for asking. I'm here to help you with any questions or tasks "
        "you have. How can I assist you today?",
    ),
    (
        "What is artificial intelligence?",
        "Artificial Intelligence (AI) refers to the simulation of human intelligence in machines that are "
        "programmed to think and learn. It encompasses machine learning, natural language processing, and "
        "computer vision.",
    ),
    (
        "Tell me about climate change",
        "Climate change refers to long-term shifts in global temperatures and weather patterns. Human "
        "activities, particularly burning fossil fuels, have been the main driver since the 1800s.",
    ),
    (
        "How do I learn programming?",
        "Choose a beginner-friendly language like Python, follow tutorials, build small projects, join "
        "coding communities and read other people's code. Consistency is key.",
    ),
    (
        "Explain quantum computing",
        "Quantum computers use qubits that can exist in superposition and become entangled, which lets "
        "them explore many states at once for problems like cryptography and chemistry simulation.",
    ),
    (
        "What are best practices for software development?",
        "Write readable code, test it at several levels, use version control well, review each other's "
        "changes, document your APIs and refactor regularly.",
    ),
    (
        "How does the internet work?",
        "Devices exchange packets over interconnected networks. DNS turns names into addresses, routers "
        "forward packets hop by hop, and protocols like TCP/IP and HTTP keep the exchange reliable.",
    ),
    (
        "Tell me about renewable energy",
        "Renewable energy comes from sources that replenish naturally: solar, wind, hydroelectric, "
        "geothermal and biomass. Each trades off cost, efficiency and availability differently.",
    ),
]


@dataclass
class SeedSummary:
    users: int = 0
    sessions: int = 0
    messages: int = 0
    clicks: int = 0
    ratings: int = 0


def _latency(rng: random.Random) -> tuple[int, int]:
    """Mostly fast turns, some medium, a slow tail for the slowest-turns table."""
    roll = rng.random()
    if roll < 0.7:
        ttft = rng.randint(50, 150)
        return ttft, ttft + rng.randint(200, 700)
    if roll < 0.9:
        ttft = rng.randint(150, 300)
        return ttft, ttft + rng.randint(500, 1500)
    ttft = rng.randint(300, 800)
    return ttft, ttft + rng.randint(1000, 4000)


def _rating(rng: random.Random) -> int:
    roll = rng.random()
    if roll < 0.5:
        return 5
    if roll < 0.75:
        return 4
    if roll < 0.9:
        return 3
    if roll < 0.97:
        return 2
    return 1


def seed_demo_data(
    store: ChatStore,
    *,
    sessions: int = 36,
    days: int = 30,
    seed: int | None = None,
    now: datetime | None = None,
) -> SeedSummary:
    """Populate the store with two users' conversations spread over the last ``days``."""
    rng = random.Random(seed)
    now = now or datetime.now(timezone.utc)
    summary = SeedSummary()
    users = ["user_1", "user_2"]
    for user_id in users:
        store.ensure_user(user_id, user_id.replace("_", " ").title())
        summary.users += 1

    # 60/40 split between the two users
    per_user = [int(sessions * 0.6), sessions - int(sessions * 0.6)]
    for user_id, count in zip(users, per_user):
        for _ in range(count):
            session_id = uuid.uuid4().hex
            started = now - timedelta(milliseconds=rng.randint(0, days * 24 * 60 * 60 * 1000))
            topics = [rng.choice(CONVERSATIONS) for _ in range(rng.randint(2, 5))]
            store.create_session(session_id, user_id, title=topics[0][0][:50], created_at=started)
            summary.sessions += 1
            last = started
            for prompt, reply in topics:
                asked = last + timedelta(milliseconds=rng.randint(1000, 11000))
                store.create_message(
                    session_id=session_id, user_id=user_id, role="user", content=prompt, created_at=asked
                )
                ttft, total = _latency(rng)
                answered = asked + timedelta(milliseconds=total)
                suggestions = store.get_or_create_suggestions(generate_suggestions(prompt, []))
                store.create_message(
                    session_id=session_id,
                    user_id=user_id,
                    role="assistant",
                    content=reply,
                    suggestions=[s.text for s in suggestions],
                    created_at=answered,
                    metrics=MessageMetrics(
                        request_start_at=asked,
                        first_token_at=asked + timedelta(milliseconds=ttft),
                        completed_at=answered,
                        ttft=ttft,
                        total_time=total,
                        token_count=word_count(reply),
                    ),
                )
                summary.messages += 2
                last = answered
                for suggestion in suggestions:
                    if rng.random() < 0.3:
                        store.record_click(suggestion.id)
                        summary.clicks += 1
                        if rng.random() < 0.6:
                            store.add_rating(suggestion.id, _rating(rng))
                            summary.ratings += 1
    return summary
