from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from chatlens_backend.app import create_app
from chatlens_backend.config import AppConfig, reset_settings_cache
from chatlens_backend.services.chat_store import ChatStore


@pytest.fixture
def settings(tmp_path) -> AppConfig:
    return AppConfig(
        workspace_root=tmp_path,
        llm_provider="mock",
        mock_initial_delay_ms=0,
        mock_token_delay_ms=0,
    )


@pytest.fixture
def store(settings) -> ChatStore:
    return ChatStore(settings)


@pytest.fixture
def client(monkeypatch, tmp_path):
    """TestClient over a throwaway workspace with an instant mock producer."""
    monkeypatch.setenv("CHATLENS_WORKSPACE_ROOT", str(tmp_path))
    monkeypatch.setenv("CHATLENS_LLM_PROVIDER", "mock")
    monkeypatch.setenv("CHATLENS_MOCK_INITIAL_DELAY_MS", "0")
    monkeypatch.setenv("CHATLENS_MOCK_TOKEN_DELAY_MS", "0")
    reset_settings_cache()
    with TestClient(create_app()) as test_client:
        yield test_client
    reset_settings_cache()
