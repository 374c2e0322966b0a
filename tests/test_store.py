"""Tests for the context store — write discipline, sessions, finalization."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from recall.exceptions import ConversationRejected
from recall.storage.db import get_session
from recall.storage.models import ClaudeConversation, ContextSession
from recall.storage.store import (
    build_conversation_record,
    close_idle_sessions,
    derive_next_steps,
    ensure_folder,
    ensure_open_session,
    estimate_tokens,
    finalize_session,
    folder_id_for,
    get_open_session,
    list_recent_conversations,
    normalize_tristate,
    refresh_session_stats,
    store_conversation,
    summarize_conversations,
    touch_session,
    validate_conversation,
)

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def snapshot(user_input="create a login form", reply="Here's a login form", key=None, closed=True, started_at=0, files=None):
    return {
        "turn_key": key or f"key-{user_input}",
        "source_session_id": "term-1",
        "project_path": "/work/app",
        "user_input": user_input,
        "claude_reply": reply,
        "started_at": started_at,
        "files_involved": files or [],
        "command": "claude",
        "closed": closed,
        "close_reason": "completion" if closed else None,
    }


async def open_session(session, path="/work/app", now=T0):
    folder = await ensure_folder(session, path)
    return await ensure_open_session(session, folder.id, now=now)


class TestHelpers:
    def test_normalize_tristate(self):
        assert normalize_tristate(True) == 1
        assert normalize_tristate(False) == 0
        assert normalize_tristate(1) == 1
        assert normalize_tristate(0) == 0
        assert normalize_tristate(None) is None

    def test_normalize_tristate_rejects_other_values(self):
        for value in (2, -1, "yes", 0.5):
            with pytest.raises(ValueError):
                normalize_tristate(value)

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_folder_id_stable(self):
        assert folder_id_for("/work/app") == folder_id_for("/work/app")
        assert folder_id_for("/work/app") != folder_id_for("/work/other")


class TestValidation:
    def record(self, **overrides):
        data = build_conversation_record(snapshot(), "sess-1")
        data.update(overrides)
        return data

    def test_built_record_is_valid(self):
        record = self.record()
        validate_conversation(record)
        assert record["context_used"] is None
        assert record["embedding"] is None
        assert record["completed_at"] is not None

    def test_open_turn_has_no_completion_time(self):
        record = build_conversation_record(snapshot(closed=False), "sess-1")
        assert record["completed_at"] is None

    def test_missing_nullable_field_rejected(self):
        record = self.record()
        del record["error_type"]
        with pytest.raises(ConversationRejected) as exc:
            validate_conversation(record)
        assert exc.value.field == "error_type"

    def test_boolean_success_rejected(self):
        with pytest.raises(ConversationRejected) as exc:
            validate_conversation(self.record(success=True))
        assert exc.value.field == "success"

    def test_out_of_range_success_rejected(self):
        with pytest.raises(ConversationRejected):
            validate_conversation(self.record(success=2))

    def test_non_string_embedding_rejected(self):
        with pytest.raises(ConversationRejected) as exc:
            validate_conversation(self.record(embedding=[0.1, 0.2]))
        assert exc.value.field == "embedding"

    def test_blank_input_rejected(self):
        with pytest.raises(ConversationRejected):
            validate_conversation(self.record(user_input="  "))

    def test_rejection_is_a_value_error(self):
        with pytest.raises(ValueError):
            validate_conversation(self.record(files_involved="a.py"))


class TestSessions:
    @pytest.mark.asyncio
    async def test_folder_created_once(self, db):
        async with get_session() as session:
            first = await ensure_folder(session, "/work/app")
            second = await ensure_folder(session, "/work/app")
        assert first.id == second.id
        assert first.name == "app"
        assert first.auto_created is True

    @pytest.mark.asyncio
    async def test_open_session_reused_within_timeout(self, db):
        async with get_session() as session:
            first = await open_session(session)
            folder_id = first.folder_id
            second = await ensure_open_session(session, folder_id, now=T0 + timedelta(minutes=10))
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_idle_session_rolls_over(self, db):
        async with get_session() as session:
            first = await open_session(session)
            later = T0 + timedelta(minutes=45)
            second = await ensure_open_session(session, first.folder_id, now=later)
            assert second.id != first.id
            assert first.end_time is not None

            count = await session.scalar(
                select(func.count(ContextSession.id)).where(
                    ContextSession.folder_id == first.folder_id, ContextSession.end_time.is_(None)
                )
            )
        assert count == 1

    @pytest.mark.asyncio
    async def test_touch_merges_files(self, db):
        async with get_session() as session:
            ctx = await open_session(session)
            await touch_session(session, ctx, files=["a.py", "b.py"], now=T0)
            await touch_session(session, ctx, files=["b.py", "c.py"], now=T0 + timedelta(minutes=1))
        assert ctx.files_modified == ["a.py", "b.py", "c.py"]
        assert ctx.last_activity_at == T0 + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_close_idle_sessions(self, db):
        async with get_session() as session:
            stale = await open_session(session, "/work/stale", now=T0)
            fresh = await open_session(session, "/work/fresh", now=T0 + timedelta(minutes=50))
            closed = await close_idle_sessions(session, now=T0 + timedelta(minutes=55))
        assert closed == [stale.id]
        async with get_session() as session:
            assert await get_open_session(session, stale.folder_id) is None
            assert (await get_open_session(session, fresh.folder_id)).id == fresh.id


class TestConversations:
    @pytest.mark.asyncio
    async def test_store_counts_new_conversation(self, db):
        async with get_session() as session:
            ctx = await open_session(session)
            _, created = await store_conversation(session, build_conversation_record(snapshot(), ctx.id))
            session_id = ctx.id
        assert created is True
        async with get_session() as session:
            ctx = await session.get(ContextSession, session_id)
            assert ctx.total_conversations == 1

    @pytest.mark.asyncio
    async def test_same_turn_updates_in_place(self, db):
        async with get_session() as session:
            ctx = await open_session(session)
            partial = build_conversation_record(snapshot(reply="Here's", closed=False), ctx.id)
            first, _ = await store_conversation(session, partial)

            full = build_conversation_record(snapshot(reply="Here's a login form"), ctx.id, success=1)
            second, created = await store_conversation(session, full)
            session_id = ctx.id

        assert created is False
        assert first.id == second.id
        async with get_session() as session:
            rows = (await session.execute(select(ClaudeConversation))).scalars().all()
            ctx = await session.get(ContextSession, session_id)
        assert len(rows) == 1
        assert rows[0].claude_reply == "Here's a login form"
        assert rows[0].success == 1
        assert rows[0].completed_at is not None
        assert ctx.total_conversations == 1

    @pytest.mark.asyncio
    async def test_rejected_record_not_written(self, db):
        async with get_session() as session:
            ctx = await open_session(session)
            record = build_conversation_record(snapshot(), ctx.id)
            record["success"] = False
            with pytest.raises(ConversationRejected):
                await store_conversation(session, record)
            count = await session.scalar(select(func.count(ClaudeConversation.id)))
        assert count == 0

    @pytest.mark.asyncio
    async def test_success_rate_ignores_unknown_outcomes(self, db):
        async with get_session() as session:
            ctx = await open_session(session)
            for i, outcome in enumerate([1, 0, None, 1]):
                await store_conversation(
                    session, build_conversation_record(snapshot(f"q{i}"), ctx.id, success=outcome)
                )
            await refresh_session_stats(session, ctx.id)
        assert ctx.total_conversations == 4
        assert ctx.success_rate == pytest.approx(2 / 3)

    @pytest.mark.asyncio
    async def test_success_rate_zero_when_nothing_known(self, db):
        async with get_session() as session:
            ctx = await open_session(session)
            await store_conversation(session, build_conversation_record(snapshot(), ctx.id))
            await refresh_session_stats(session, ctx.id)
        assert ctx.success_rate == 0.0

    @pytest.mark.asyncio
    async def test_recent_conversations_newest_first(self, db):
        async with get_session() as session:
            ctx = await open_session(session)
            for i in range(3):
                record = build_conversation_record(
                    snapshot(f"q{i}", started_at=1_760_000_000_000 + i * 1000, closed=i != 2), ctx.id
                )
                await store_conversation(session, record)
            recent = await list_recent_conversations(session, ctx.folder_id)
            completed = await list_recent_conversations(session, ctx.folder_id, completed_only=True)
        assert [c.user_input for c in recent] == ["q2", "q1", "q0"]
        assert [c.user_input for c in completed] == ["q1", "q0"]


class TestFinalize:
    @pytest.mark.asyncio
    async def test_auto_summary_and_next_steps(self, db):
        async with get_session() as session:
            ctx = await open_session(session)
            turns = [
                (snapshot("add login form", files=["src/Login.tsx"], started_at=1000), 1, None),
                (snapshot("run the tests", started_at=2000), 0, "type"),
            ]
            for turn, success, error_type in turns:
                await store_conversation(
                    session, build_conversation_record(turn, ctx.id, success=success, error_type=error_type)
                )
            result = await finalize_session(session, ctx.id, now=T0 + timedelta(hours=1))

        assert result.end_time == T0 + timedelta(hours=1)
        assert result.total_conversations == 2
        assert result.success_rate == pytest.approx(0.5)
        assert result.summary.startswith("2 conversation(s): 1 succeeded, 1 failed.")
        assert "Last request: run the tests" in result.summary
        assert "src/Login.tsx" in result.summary
        assert result.next_steps == ["Revisit: run the tests (type error)"]

    @pytest.mark.asyncio
    async def test_explicit_summary_kept(self, db):
        async with get_session() as session:
            ctx = await open_session(session)
            result = await finalize_session(
                session, ctx.id, summary="Shipped the login page", next_steps=["Add OAuth"]
            )
        assert result.summary == "Shipped the login page"
        assert result.next_steps == ["Add OAuth"]

    @pytest.mark.asyncio
    async def test_finalize_twice_is_noop(self, db):
        async with get_session() as session:
            ctx = await open_session(session)
            first = await finalize_session(session, ctx.id, summary="first", now=T0)
            second = await finalize_session(session, ctx.id, summary="second", now=T0 + timedelta(hours=2))
        assert second.summary == "first"
        assert second.end_time == first.end_time

    @pytest.mark.asyncio
    async def test_unknown_session(self, db):
        async with get_session() as session:
            assert await finalize_session(session, "missing") is None

    def test_empty_session_has_no_summary(self):
        assert summarize_conversations([]) is None
        assert derive_next_steps([]) == []

    def test_failure_followed_by_success_is_resolved(self):
        conversations = [
            ClaudeConversation(user_input="build", success=0, error_type="syntax", claude_reply="SyntaxError"),
            ClaudeConversation(user_input="fix build", success=1, claude_reply="fixed ✅"),
            ClaudeConversation(user_input="deploy", success=None, claude_reply=""),
        ]
        assert derive_next_steps(conversations) == ["Follow up: deploy"]
