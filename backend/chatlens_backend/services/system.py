from __future__ import annotations

import platform
from datetime import datetime, timezone
from typing import Any

from ..config import AppConfig


def runtime_summary(settings: AppConfig) -> dict[str, Any]:
    """
    What this process is serving from: model provider, the two SQLite files
    and the host. Only filesystem metadata is read, so health checks stay cheap.
    """
    outbox = settings.outbox_path
    return {
        "llmProvider": settings.llm_provider,
        "databasePath": str(settings.database_path),
        "outboxPath": str(outbox),
        "outboxBytes": outbox.stat().st_size if outbox.exists() else 0,
        "platform": f"{platform.system()} {platform.release()} ({platform.machine()})",
        "checkedAt": datetime.now(timezone.utc).isoformat(),
    }
