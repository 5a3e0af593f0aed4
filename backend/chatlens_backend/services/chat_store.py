from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator, Sequence

from ..config import AppConfig
from ..errors import NotFoundError, PersistenceError
from ..models.chat import Message, MessageMetrics, SessionDetail, SessionListItem
from ..models.suggestion import Suggestion
from ..models.vitals import WebVital

logger = logging.getLogger(__name__)


def utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(value: datetime) -> str:
    # Fixed-width timestamps so range filters can compare the TEXT columns directly.
    return utc(value).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class ChatStore:
    """
    SQLite-backed store for users, chat sessions, messages, global suggestions
    and Web Vitals samples.
    """

    def __init__(self, settings: AppConfig) -> None:
        self.db_path = settings.database_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS chat_sessions (
                    session_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    message_count INTEGER NOT NULL DEFAULT 0
                );
                CREATE INDEX IF NOT EXISTS idx_sessions_user ON chat_sessions (user_id, updated_at);
                CREATE TABLE IF NOT EXISTS messages (
                    message_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    suggestions TEXT,
                    created_at TEXT NOT NULL,
                    request_start_at TEXT,
                    first_token_at TEXT,
                    completed_at TEXT,
                    ttft INTEGER,
                    total_time INTEGER,
                    token_count INTEGER
                );
                CREATE INDEX IF NOT EXISTS idx_messages_session ON messages (session_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_messages_user ON messages (user_id, created_at);
                CREATE TABLE IF NOT EXISTS suggestions (
                    suggestion_id TEXT PRIMARY KEY,
                    text TEXT NOT NULL UNIQUE,
                    total_rating REAL NOT NULL DEFAULT 0,
                    rating_count INTEGER NOT NULL DEFAULT 0,
                    avg_rating REAL NOT NULL DEFAULT 0,
                    click_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_suggestions_clicks ON suggestions (click_count DESC);
                CREATE INDEX IF NOT EXISTS idx_suggestions_rating ON suggestions (avg_rating DESC);
                CREATE TABLE IF NOT EXISTS web_vitals (
                    vital_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    metric TEXT NOT NULL,
                    value REAL NOT NULL,
                    rating TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    page_url TEXT NOT NULL,
                    user_agent TEXT,
                    device TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_vitals_user_metric ON web_vitals (user_id, metric, timestamp);
                """
            )

    # Users & sessions

    def ensure_user(self, user_id: str, name: str | None = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO users (user_id, name, created_at) VALUES (?, ?, ?)",
                (user_id, name or user_id, to_db_time(datetime.now(timezone.utc))),
            )

    def create_session(
        self,
        session_id: str,
        user_id: str,
        title: str | None = None,
        created_at: datetime | None = None,
    ) -> None:
        created = to_db_time(created_at or datetime.now(timezone.utc))
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO chat_sessions (session_id, user_id, title, created_at, updated_at, message_count)
                VALUES (?, ?, ?, ?, ?, 0)
                """,
                (session_id, user_id, title, created, created),
            )

    def find_session(self, session_id: str) -> sqlite3.Row | None:
        with self._connect() as conn:
            return conn.execute(
                "SELECT * FROM chat_sessions WHERE session_id = ?", (session_id,)
            ).fetchone()

    def list_sessions(self, user_id: str) -> list[SessionListItem]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT s.*, (SELECT MAX(m.created_at) FROM messages m WHERE m.session_id = s.session_id) AS last_message_at
                FROM chat_sessions s
                WHERE s.user_id = ?
                ORDER BY s.updated_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [
            SessionListItem(
                session_id=row["session_id"],
                title=row["title"] or "New Chat",
                message_count=row["message_count"],
                last_message_at=from_db_time(row["last_message_at"] or row["created_at"]),
                created_at=from_db_time(row["created_at"]),
            )
            for row in rows
        ]

    def session_detail(self, session_id: str) -> SessionDetail | None:
        row = self.find_session(session_id)
        if row is None:
            return None
        return SessionDetail(
            session_id=row["session_id"],
            user_id=row["user_id"],
            title=row["title"] or "New Chat",
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            messages=self.list_messages(session_id),
        )

    def count_sessions(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        user_id: str | None = None,
    ) -> int:
        where, params = _window_clause("created_at", start, end, user_id)
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) AS cnt FROM chat_sessions{where}", params).fetchone()["cnt"]

    # Messages

    def create_message(
        self,
        *,
        session_id: str,
        user_id: str,
        role: str,
        content: str,
        suggestions: Sequence[str] | None = None,
        created_at: datetime | None = None,
        metrics: MessageMetrics | None = None,
    ) -> Message:
        message_id = uuid.uuid4().hex
        created = created_at or datetime.now(timezone.utc)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO messages (
                    message_id, session_id, user_id, role, content, suggestions, created_at,
                    request_start_at, first_token_at, completed_at, ttft, total_time, token_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    session_id,
                    user_id,
                    role,
                    content,
                    json.dumps(list(suggestions)) if suggestions else None,
                    to_db_time(created),
                    to_db_time(metrics.request_start_at) if metrics else None,
                    to_db_time(metrics.first_token_at) if metrics and metrics.first_token_at else None,
                    to_db_time(metrics.completed_at) if metrics and metrics.completed_at else None,
                    metrics.ttft if metrics else None,
                    metrics.total_time if metrics else None,
                    metrics.token_count if metrics else None,
                ),
            )
            conn.execute(
                """
                UPDATE chat_sessions
                SET message_count = message_count + 1, updated_at = ?
                WHERE session_id = ?
                """,
                (to_db_time(created), session_id),
            )
            row = conn.execute("SELECT * FROM messages WHERE message_id = ?", (message_id,)).fetchone()
            return self._rows_to_messages(conn, [row])[0]

    def list_messages(self, session_id: str) -> list[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE session_id = ? ORDER BY created_at ASC",
                (session_id,),
            ).fetchall()
            return self._rows_to_messages(conn, rows)

    def messages_between(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        user_id: str | None = None,
    ) -> list[Message]:
        where, params = _window_clause("created_at", start, end, user_id)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM messages{where} ORDER BY created_at ASC", params
            ).fetchall()
            return self._rows_to_messages(conn, rows)

    def _rows_to_messages(self, conn: sqlite3.Connection, rows: Iterable[sqlite3.Row]) -> list[Message]:
        rows = list(rows)
        texts: list[str] = []
        for row in rows:
            texts.extend(json.loads(row["suggestions"]) if row["suggestions"] else [])
        by_text = {s.text: s for s in self._select_by_texts(conn, texts)}
        messages = []
        for row in rows:
            refs = json.loads(row["suggestions"]) if row["suggestions"] else []
            metrics = None
            if row["request_start_at"]:
                metrics = MessageMetrics(
                    request_start_at=from_db_time(row["request_start_at"]),
                    first_token_at=from_db_time(row["first_token_at"]),
                    completed_at=from_db_time(row["completed_at"]),
                    ttft=row["ttft"],
                    total_time=row["total_time"],
                    token_count=row["token_count"],
                )
            messages.append(
                Message(
                    message_id=row["message_id"],
                    session_id=row["session_id"],
                    user_id=row["user_id"],
                    role=row["role"],
                    content=row["content"],
                    suggestions=[by_text[text] for text in refs if text in by_text],
                    created_at=from_db_time(row["created_at"]),
                    metrics=metrics,
                )
            )
        return messages

    # Suggestions

    def get_or_create_suggestions(self, texts: Sequence[str]) -> list[Suggestion]:
        if not texts:
            return []
        now = to_db_time(datetime.now(timezone.utc))
        resolved: list[Suggestion] = []
        with self._connect() as conn:
            for text in texts:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO suggestions (suggestion_id, text, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (uuid.uuid4().hex, text, now, now),
                )
                if cursor.rowcount:
                    logger.debug("Created suggestion %r", text[:40])
                row = conn.execute("SELECT * FROM suggestions WHERE text = ?", (text,)).fetchone()
                resolved.append(_row_to_suggestion(row))
        return resolved

    def suggestions_by_texts(self, texts: Sequence[str]) -> list[Suggestion]:
        with self._connect() as conn:
            found = {s.text: s for s in self._select_by_texts(conn, texts)}
        return [found[text] for text in texts if text in found]

    @staticmethod
    def _select_by_texts(conn: sqlite3.Connection, texts: Sequence[str]) -> list[Suggestion]:
        unique = list(dict.fromkeys(texts))
        if not unique:
            return []
        placeholders = ", ".join("?" for _ in unique)
        rows = conn.execute(f"SELECT * FROM suggestions WHERE text IN ({placeholders})", unique).fetchall()
        return [_row_to_suggestion(row) for row in rows]

    def get_suggestion(self, suggestion_id: str) -> Suggestion | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM suggestions WHERE suggestion_id = ?", (suggestion_id,)
            ).fetchone()
        return _row_to_suggestion(row) if row else None

    def list_suggestions(self) -> list[Suggestion]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM suggestions").fetchall()
        return [_row_to_suggestion(row) for row in rows]

    def add_rating(self, suggestion_id: str, rating: float) -> Suggestion:
        # SET expressions see the pre-update row, so the average is derived in the same statement.
        return self._increment(
            suggestion_id,
            """
            UPDATE suggestions
            SET total_rating = total_rating + :rating,
                rating_count = rating_count + 1,
                avg_rating = (total_rating + :rating) / (rating_count + 1),
                updated_at = :now
            WHERE suggestion_id = :id
            """,
            {"rating": float(rating)},
        )

    def record_click(self, suggestion_id: str) -> Suggestion:
        return self._increment(
            suggestion_id,
            """
            UPDATE suggestions
            SET click_count = click_count + 1, updated_at = :now
            WHERE suggestion_id = :id
            """,
            {},
        )

    def _increment(self, suggestion_id: str, statement: str, params: dict[str, object]) -> Suggestion:
        with self._connect() as conn:
            cursor = conn.execute(
                statement,
                {**params, "id": suggestion_id, "now": to_db_time(datetime.now(timezone.utc))},
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Unknown suggestion {suggestion_id}")
            row = conn.execute(
                "SELECT * FROM suggestions WHERE suggestion_id = ?", (suggestion_id,)
            ).fetchone()
        return _row_to_suggestion(row)

    # Web Vitals

    def create_web_vital(
        self,
        *,
        session_id: str,
        user_id: str,
        metric: str,
        value: float,
        rating: str,
        page_url: str,
        user_agent: str | None = None,
        device: str | None = None,
        timestamp: datetime | None = None,
    ) -> WebVital:
        vital = WebVital(
            vital_id=uuid.uuid4().hex,
            session_id=session_id,
            user_id=user_id,
            metric=metric,
            value=value,
            rating=rating,
            timestamp=utc(timestamp or datetime.now(timezone.utc)),
            page_url=page_url,
            user_agent=user_agent,
            device=device,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO web_vitals (
                    vital_id, session_id, user_id, metric, value, rating,
                    timestamp, page_url, user_agent, device
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    vital.vital_id,
                    vital.session_id,
                    vital.user_id,
                    vital.metric,
                    vital.value,
                    vital.rating,
                    to_db_time(vital.timestamp),
                    vital.page_url,
                    vital.user_agent,
                    vital.device,
                ),
            )
        return vital

    def web_vitals_between(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        user_id: str | None = None,
    ) -> list[WebVital]:
        where, params = _window_clause("timestamp", start, end, user_id)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM web_vitals{where} ORDER BY timestamp ASC", params
            ).fetchall()
        return [
            WebVital(
                vital_id=row["vital_id"],
                session_id=row["session_id"],
                user_id=row["user_id"],
                metric=row["metric"],
                value=row["value"],
                rating=row["rating"],
                timestamp=from_db_time(row["timestamp"]),
                page_url=row["page_url"],
                user_agent=row["user_agent"],
                device=row["device"],
            )
            for row in rows
        ]


def _window_clause(
    column: str,
    start: datetime | None,
    end: datetime | None,
    user_id: str | None,
) -> tuple[str, list[object]]:
    """Build a WHERE clause for the half-open window ``[start, end)``."""
    clauses: list[str] = []
    params: list[object] = []
    if user_id:
        clauses.append("user_id = ?")
        params.append(user_id)
    if start is not None:
        clauses.append(f"{column} >= ?")
        params.append(to_db_time(start))
    if end is not None:
        clauses.append(f"{column} < ?")
        params.append(to_db_time(end))
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


def _row_to_suggestion(row: sqlite3.Row) -> Suggestion:
    return Suggestion(
        id=row["suggestion_id"],
        text=row["text"],
        total_rating=row["total_rating"],
        rating_count=row["rating_count"],
        avg_rating=row["avg_rating"],
        click_count=row["click_count"],
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )
