from __future__ import annotations

import logging
from datetime import datetime

from ..models.dashboard import DashboardMetrics
from .aggregation import build_dashboard, resolve_window
from .chat_store import ChatStore

logger = logging.getLogger(__name__)


class DashboardService:
    """Loads the records for a window (and the window before it) and aggregates them."""

    def __init__(self, store: ChatStore) -> None:
        self._store = store

    def metrics(
        self,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        range_name: str | None = None,
        now: datetime | None = None,
    ) -> DashboardMetrics:
        window = resolve_window(start, end, range_name, now=now)
        previous = window.previous()
        messages = self._store.messages_between(window.start, window.end, user_id)
        previous_messages = self._store.messages_between(previous.start, previous.end, user_id)
        logger.debug(
            "Aggregating %d messages (%d in previous window) for user=%s",
            len(messages),
            len(previous_messages),
            user_id or "*",
        )
        return build_dashboard(
            window=window,
            messages=messages,
            previous_messages=previous_messages,
            session_count=self._store.count_sessions(window.start, window.end, user_id),
            suggestions=self._store.list_suggestions(),
            vitals=self._store.web_vitals_between(window.start, window.end, user_id),
        )
