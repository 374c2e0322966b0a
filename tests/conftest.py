"""Shared test fixtures."""

import itertools

import pytest
import pytest_asyncio

from recall import config
from recall.ingestion.chunks import Chunk

_clock = itertools.count(1_760_000_000_000, 10)


@pytest.fixture(autouse=True)
def default_settings(monkeypatch):
    """Every test runs against built-in defaults, never a user config file."""
    monkeypatch.setattr(config, "_settings", config.Settings())
    yield config._settings


@pytest_asyncio.fixture
async def db(tmp_path):
    """A fresh SQLite database in a temp dir, with tables created."""
    from recall.ingestion import pipeline
    from recall.storage.db import close_db, configure_engine, init_db

    configure_engine(f"sqlite+aiosqlite:///{tmp_path / 'context-memory.db'}")
    await init_db()
    pipeline.reset_capture_service()
    yield
    pipeline.reset_capture_service()
    await close_db()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_chunk(content: str, type: str = "terminal_input", session_id: str = "term-1", **overrides) -> Chunk:
    """Create a chunk with a monotonically increasing timestamp."""
    data = {
        "timestamp": next(_clock),
        "type": type,
        "content": content,
        "sessionId": session_id,
    }
    data.update(overrides)
    return Chunk.model_validate(data)


def user(content: str, session_id: str = "term-1", **overrides) -> Chunk:
    return make_chunk(content, "terminal_input", session_id, **overrides)


def claude(content: str, session_id: str = "term-1", **overrides) -> Chunk:
    return make_chunk(content, "claude_output", session_id, **overrides)


def shell(content: str, session_id: str = "term-1", **overrides) -> Chunk:
    return make_chunk(content, "terminal_output", session_id, **overrides)


def wire(*chunks: Chunk) -> list[dict]:
    return [c.to_wire() for c in chunks]
