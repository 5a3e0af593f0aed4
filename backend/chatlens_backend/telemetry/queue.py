from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from ..errors import QueueUnavailableError

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 5
INITIAL_RETRY_DELAY_MS = 2000


def backoff_delay_ms(retry_count: int, initial_delay_ms: int = INITIAL_RETRY_DELAY_MS) -> int:
    """Delay before the next attempt: 2s, 4s, 8s, ... for the default base."""
    return initial_delay_ms * 2**retry_count


def _to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


@dataclass
class QueuedEvent:
    event_id: str
    url: str
    method: str
    body: Any
    headers: dict[str, str]
    enqueued_at: datetime
    retry_count: int
    next_retry_at: datetime


class DurableEventQueue:
    """
    Outbound events waiting for delivery, kept in a local SQLite file so they
    survive restarts. Every operation is a single transaction; callers never
    see a half-applied update.
    """

    def __init__(self, db_path: Path, clock: Callable[[], datetime] | None = None) -> None:
        self.db_path = Path(db_path)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise QueueUnavailableError(f"Cannot create {self.db_path.parent}: {exc}") from exc
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise QueueUnavailableError(f"Cannot open outbox {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise QueueUnavailableError(str(exc)) from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queued_events (
                    event_id TEXT PRIMARY KEY,
                    url TEXT NOT NULL,
                    method TEXT NOT NULL,
                    body TEXT,
                    headers TEXT NOT NULL,
                    enqueued_at INTEGER NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    next_retry_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_queued_events_next_retry ON queued_events (next_retry_at)"
            )

    def enqueue(
        self,
        url: str,
        method: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> str:
        event_id = f"evt_{uuid.uuid4().hex}"
        now = _to_ms(self._clock())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO queued_events (
                    event_id, url, method, body, headers, enqueued_at, retry_count, next_retry_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (event_id, url, method.upper(), json.dumps(body), json.dumps(headers or {}), now, now),
            )
        return event_id

    def dequeue(self, event_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM queued_events WHERE event_id = ?", (event_id,))

    def list_due(self, now: datetime | None = None) -> list[QueuedEvent]:
        """Events whose retry time has passed, oldest due first."""
        cutoff = _to_ms(now or self._clock())
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM queued_events
                WHERE next_retry_at <= ?
                ORDER BY next_retry_at ASC, enqueued_at ASC
                """,
                (cutoff,),
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def update_retry(self, event_id: str, retry_count: int, next_retry_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE queued_events SET retry_count = ?, next_retry_at = ? WHERE event_id = ?",
                (retry_count, _to_ms(next_retry_at), event_id),
            )

    def get(self, event_id: str) -> QueuedEvent | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM queued_events WHERE event_id = ?", (event_id,)).fetchone()
        return self._row_to_event(row) if row else None

    def list_all(self) -> list[QueuedEvent]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM queued_events ORDER BY next_retry_at ASC").fetchall()
        return [self._row_to_event(row) for row in rows]

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) AS cnt FROM queued_events").fetchone()["cnt"]

    def clear(self) -> int:
        with self._connect() as conn:
            return conn.execute("DELETE FROM queued_events").rowcount

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> QueuedEvent:
        return QueuedEvent(
            event_id=row["event_id"],
            url=row["url"],
            method=row["method"],
            body=json.loads(row["body"]) if row["body"] is not None else None,
            headers=json.loads(row["headers"]),
            enqueued_at=_from_ms(row["enqueued_at"]),
            retry_count=row["retry_count"],
            next_retry_at=_from_ms(row["next_retry_at"]),
        )
