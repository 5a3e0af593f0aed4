from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    workspace_root: Path = Path.home() / "ChatLens"
    database_name: str = "chatlens.db"
    outbox_name: str = "outbox.db"
    log_level: str = "INFO"

    llm_provider: Literal["none", "mock", "ollama"] = "mock"
    ollama_base_url: str = "http://127.0.0.1:11434"
    ollama_model: str = "llama3.2"
    llm_max_tokens: int = 1024

    # Mock producer pacing
    mock_initial_delay_ms: float = 100.0
    mock_token_delay_ms: float = 30.0

    # Client-side delivery (offline queue + dispatcher)
    telemetry_base_url: str = "http://127.0.0.1:8000"
    telemetry_timeout_s: float = 10.0
    queue_initial_retry_delay_ms: int = 2000
    queue_max_retry_attempts: int = 5
    queue_drain_interval_s: float = 10.0

    model_config = SettingsConfigDict(env_file=".env", env_prefix="CHATLENS_", extra="ignore")

    @property
    def database_path(self) -> Path:
        return self.workspace_root / self.database_name

    @property
    def outbox_path(self) -> Path:
        return self.workspace_root / self.outbox_name

    def ensure_directories(self) -> None:
        Path(self.workspace_root).mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> AppConfig:
    return AppConfig()


def reset_settings_cache() -> None:
    get_settings.cache_clear()
