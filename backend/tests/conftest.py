"""Shared test fixtures for backend tests."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from model_switcher.core.config import settings
from model_switcher.services.chat.backend import ChatBackend
from model_switcher.services.llm.base import AgentPlatform

from fakes import EventRecorder, ScriptedProvider

# In-memory SQLite with StaticPool so all connections (including threads) share one DB
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


@pytest.fixture(autouse=True)
def setup_test_db():
    """Create all tables before each test, drop after."""
    import model_switcher.models.conversation  # noqa: F401 - register models
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """No delay between the final commit and the indicator clear."""
    monkeypatch.setattr(settings, "final_commit_delay", 0)
    monkeypatch.setattr(settings, "system_prompt", "")


@pytest.fixture
def engine():
    return test_engine


@pytest.fixture
def backend():
    return ChatBackend(test_engine)


@pytest.fixture
def recorder(backend):
    rec = EventRecorder()
    backend.subscribe(rec)
    return rec


@pytest.fixture
def providers():
    """Scripted providers by platform. Llama is unconfigured, like a fresh install."""
    return {
        AgentPlatform.ANTHROPIC: ScriptedProvider(AgentPlatform.ANTHROPIC, ["Hello", " from", " Claude"]),
        AgentPlatform.OPENAI: ScriptedProvider(AgentPlatform.OPENAI, ["Hello", " from", " GPT"]),
        AgentPlatform.LLAMA: ScriptedProvider(AgentPlatform.LLAMA, configured=False),
        AgentPlatform.GEMINI: ScriptedProvider(AgentPlatform.GEMINI, configured=False),
    }


async def noop_sweeper(self, interval=None):
    """No-op replacement for AgentRegistry.run_sweeper."""
    return


@pytest.fixture
def client(providers):
    """FastAPI TestClient with storage and providers patched."""
    with (
        patch("model_switcher.core.database.engine", test_engine),
        patch("model_switcher.services.agents.factory.get_stream_provider", side_effect=lambda p: providers[AgentPlatform(p)]),
        patch("model_switcher.services.registry.AgentRegistry.run_sweeper", noop_sweeper),
    ):
        from model_switcher.main import app

        with TestClient(app) as c:
            yield c
