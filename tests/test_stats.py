"""Tests for memory statistics."""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from recall.context.stats import get_stats
from recall.ingestion.pipeline import CaptureService
from recall.storage.db import get_session
from recall.storage.store import folder_id_for
from tests.conftest import claude, shell, user, wire


class TestStats:
    @pytest.mark.asyncio
    async def test_empty_store(self, db):
        async with get_session() as session:
            stats = await get_stats(session)
        assert stats == {
            "totalFolders": 0,
            "totalSessions": 0,
            "totalConversations": 0,
            "totalPatterns": 0,
            "totalInsights": 0,
            "successRate": 0.0,
            "currentSession": None,
            "degraded": [],
        }

    @pytest.mark.asyncio
    async def test_counts_per_folder(self, db):
        service = CaptureService()
        await service.process_batch(
            wire(user("claude build it"), claude("Build succeeded ✅"), shell("$ ")), project_path="/work/a"
        )
        await service.process_batch(
            wire(
                user("claude one", session_id="t2"), claude("TypeError: nope", session_id="t2"),
                user("claude two", session_id="t2"), claude("done ✅", session_id="t2"), shell("$ ", session_id="t2"),
            ),
            project_path="/work/b",
        )

        async with get_session() as session:
            overall = await get_stats(session)
            only_b = await get_stats(session, folder_id_for("/work/b"))

        assert overall["totalFolders"] == 2
        assert overall["totalConversations"] == 3
        assert overall["successRate"] == round(2 / 3, 4)
        assert only_b["totalFolders"] == 1
        assert only_b["totalConversations"] == 2
        assert only_b["successRate"] == 0.5
        assert only_b["totalPatterns"] >= 1

    @pytest.mark.asyncio
    async def test_pattern_count_failure_degrades(self, db):
        service = CaptureService()
        await service.process_batch(wire(user("claude hi"), claude("hello")), project_path="/work/a")

        failure = OperationalError("SELECT count(*) FROM detected_patterns", {}, Exception("no such table"))
        with patch("recall.context.stats._count_patterns", side_effect=failure):
            async with get_session() as session:
                stats = await get_stats(session, folder_id_for("/work/a"))

        assert stats["totalConversations"] == 1
        assert stats["totalPatterns"] is None
        assert stats["totalInsights"] == 0
        assert stats["degraded"] == ["patterns"]
