"""Context store — folders, sessions and conversations with strict write discipline.

Every write path goes through this module. Records are validated before they
touch the database: a nullable field must be present as an explicit ``None``,
tri-state outcomes must already be normalized to 1/0/None, and anything else
is rejected with ``ConversationRejected`` so a single bad record never takes
down the rest of a batch.
"""

import hashlib
import logging
import math
from datetime import datetime, timedelta, timezone
from pathlib import PurePath
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from recall.config import get_settings
from recall.exceptions import ConversationRejected
from recall.storage.models import ClaudeConversation, ContextFolder, ContextSession, utcnow

logger = logging.getLogger(__name__)

# Every key a conversation record must carry, nullable or not
CONVERSATION_FIELDS = (
    "session_id",
    "turn_key",
    "source_session_id",
    "user_input",
    "claude_reply",
    "timestamp",
    "success",
    "error_type",
    "files_involved",
    "tokens_used",
    "context_used",
    "embedding",
    "completed_at",
)

MAX_NEXT_STEPS = 5


def folder_id_for(project_path: str) -> str:
    """Stable folder id for a project path."""
    digest = hashlib.sha256(project_path.encode()).hexdigest()
    return f"folder_{digest[:16]}"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def from_epoch_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def estimate_tokens(text: str) -> int:
    """Rough estimate: ~4 characters per token."""
    return math.ceil(len(text) / 4)


def normalize_tristate(value) -> Optional[int]:
    """Normalize a success flag to the stored 1/0/NULL representation.

    Raises:
        ValueError: If the value is not a bool, 0, 1 or None.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, int) and value in (0, 1):
        return value
    raise ValueError(f"not a tri-state value: {value!r}")


# --- Folders ---


async def get_folder_by_path(session: AsyncSession, project_path: str) -> Optional[ContextFolder]:
    result = await session.execute(
        select(ContextFolder).where(ContextFolder.project_path == project_path)
    )
    return result.scalar_one_or_none()


async def ensure_folder(
    session: AsyncSession,
    project_path: str,
    name: Optional[str] = None,
    watcher_enabled: Optional[bool] = None,
) -> ContextFolder:
    """Get or create the context folder for a project path."""
    folder = await session.get(ContextFolder, folder_id_for(project_path))
    if folder:
        if watcher_enabled is not None and folder.watcher_enabled != watcher_enabled:
            folder.watcher_enabled = watcher_enabled
            await session.flush()
        return folder

    folder = ContextFolder(
        id=folder_id_for(project_path),
        project_path=project_path,
        name=name or PurePath(project_path).name or project_path,
        auto_created=name is None,
        watcher_enabled=bool(watcher_enabled),
    )
    session.add(folder)
    await session.flush()
    logger.info("Created context folder %s (%s)", folder.name, folder.id)
    return folder


# --- Sessions ---


async def get_open_session(session: AsyncSession, folder_id: str) -> Optional[ContextSession]:
    result = await session.execute(
        select(ContextSession).where(
            ContextSession.folder_id == folder_id,
            ContextSession.end_time.is_(None),
        )
    )
    return result.scalar_one_or_none()


async def ensure_open_session(
    session: AsyncSession,
    folder_id: str,
    now: Optional[datetime] = None,
    idle_timeout: Optional[timedelta] = None,
) -> ContextSession:
    """Reuse the folder's open session, or open a new one.

    An open session idle for longer than ``idle_timeout`` is finalized first.
    """
    now = now or utcnow()
    if idle_timeout is None:
        idle_timeout = timedelta(minutes=get_settings().sessions.idle_timeout_minutes)

    current = await get_open_session(session, folder_id)
    if current is not None:
        if now - as_utc(current.last_activity_at) <= idle_timeout:
            return current
        logger.info("Session %s idled out, opening a new one", current.id)
        await finalize_session(session, current.id, now=now)

    ctx = ContextSession(folder_id=folder_id, start_time=now, last_activity_at=now, files_modified=[])
    session.add(ctx)
    await session.flush()
    logger.info("Opened context session %s for folder %s", ctx.id, folder_id)
    return ctx


async def touch_session(
    session: AsyncSession,
    ctx: ContextSession,
    files: Optional[list[str]] = None,
    now: Optional[datetime] = None,
) -> None:
    """Record activity on a session and merge any files it touched."""
    ctx.last_activity_at = now or utcnow()
    if files:
        merged = list(ctx.files_modified or [])
        for path in files:
            if path not in merged:
                merged.append(path)
        ctx.files_modified = merged
    await session.flush()


async def refresh_session_stats(session: AsyncSession, session_id: str) -> Optional[ContextSession]:
    """Recompute the conversation counter and running success rate."""
    ctx = await session.get(ContextSession, session_id)
    if ctx is None:
        return None

    result = await session.execute(
        select(
            func.count(ClaudeConversation.id),
            func.avg(ClaudeConversation.success),
        ).where(ClaudeConversation.session_id == session_id)
    )
    count, rate = result.one()
    ctx.total_conversations = count or 0
    ctx.success_rate = float(rate) if rate is not None else 0.0
    await session.flush()
    return ctx


async def finalize_session(
    session: AsyncSession,
    session_id: str,
    summary: Optional[str] = None,
    next_steps: Optional[list[str]] = None,
    now: Optional[datetime] = None,
) -> Optional[ContextSession]:
    """Close a session, freezing its counters and recording a summary.

    Returns None for an unknown session. Finalizing a closed session is a
    no-op.
    """
    ctx = await session.get(ContextSession, session_id)
    if ctx is None:
        return None
    if ctx.end_time is not None:
        return ctx

    await refresh_session_stats(session, session_id)

    result = await session.execute(
        select(ClaudeConversation)
        .where(ClaudeConversation.session_id == session_id)
        .order_by(ClaudeConversation.timestamp.asc())
    )
    conversations = list(result.scalars().all())

    ctx.summary = summary if summary is not None else summarize_conversations(conversations)
    ctx.next_steps = next_steps if next_steps is not None else derive_next_steps(conversations)
    ctx.end_time = now or utcnow()
    await session.flush()

    from recall.storage.memory import promote_patterns_to_insights

    promoted = await promote_patterns_to_insights(session, ctx.folder_id)
    logger.info(
        "Finalized session %s: %d conversations, success rate %.2f, %d insights promoted",
        session_id,
        ctx.total_conversations,
        ctx.success_rate,
        promoted,
    )
    return ctx


async def close_idle_sessions(
    session: AsyncSession,
    now: Optional[datetime] = None,
    idle_timeout: Optional[timedelta] = None,
) -> list[str]:
    """Finalize every open session idle past the timeout."""
    now = now or utcnow()
    if idle_timeout is None:
        idle_timeout = timedelta(minutes=get_settings().sessions.idle_timeout_minutes)

    result = await session.execute(
        select(ContextSession.id).where(
            ContextSession.end_time.is_(None),
            ContextSession.last_activity_at < now - idle_timeout,
        )
    )
    closed = [row[0] for row in result.all()]
    for session_id in closed:
        await finalize_session(session, session_id, now=now)
    return closed


def summarize_conversations(conversations: list[ClaudeConversation]) -> Optional[str]:
    """Build a one-paragraph summary from a session's conversations."""
    if not conversations:
        return None

    succeeded = sum(1 for c in conversations if c.success == 1)
    failed = sum(1 for c in conversations if c.success == 0)
    files: list[str] = []
    for c in conversations:
        for path in c.files_involved or []:
            if path not in files:
                files.append(path)

    parts = [f"{len(conversations)} conversation(s): {succeeded} succeeded, {failed} failed."]
    last_input = conversations[-1].user_input
    if len(last_input) > 80:
        last_input = last_input[:80] + "..."
    parts.append(f"Last request: {last_input}")
    if files:
        parts.append("Files: " + ", ".join(files[:5]))
    return " ".join(parts)


def derive_next_steps(conversations: list[ClaudeConversation]) -> list[str]:
    """Unresolved follow-ups: failures not followed by a success, and unanswered turns."""
    steps: list[str] = []
    resolved_after = False
    for c in reversed(conversations):
        if c.success == 1:
            resolved_after = True
            continue
        if c.success == 0 and not resolved_after:
            label = f" ({c.error_type} error)" if c.error_type else ""
            steps.append(f"Revisit: {c.user_input}{label}")
        elif not c.claude_reply:
            steps.append(f"Follow up: {c.user_input}")
        if len(steps) >= MAX_NEXT_STEPS:
            break
    return steps


# --- Conversations ---


def build_conversation_record(
    turn: dict,
    session_id: str,
    success: Optional[int] = None,
    error_type: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Turn an extractor snapshot into a complete conversation record.

    Every nullable field is present with an explicit None.
    """
    reply = turn.get("claude_reply") or ""
    return {
        "session_id": session_id,
        "turn_key": turn["turn_key"],
        "source_session_id": turn.get("source_session_id"),
        "user_input": turn["user_input"],
        "claude_reply": reply,
        "timestamp": from_epoch_ms(turn["started_at"]),
        "success": success,
        "error_type": error_type,
        "files_involved": list(turn.get("files_involved") or []),
        "tokens_used": estimate_tokens(turn["user_input"] + reply),
        "context_used": None,
        "embedding": None,
        "completed_at": (now or utcnow()) if turn.get("closed") else None,
    }


def validate_conversation(record: dict) -> None:
    """Check a conversation record against the store's write contract.

    Raises:
        ConversationRejected: On the first violation found.
    """
    for field in CONVERSATION_FIELDS:
        if field not in record:
            raise ConversationRejected(field, "missing; pass None explicitly for unknown values")

    success = record["success"]
    if isinstance(success, bool):
        raise ConversationRejected("success", "boolean given; normalize to 1/0/None first")
    if success not in (0, 1, None) or (success is not None and not isinstance(success, int)):
        raise ConversationRejected("success", f"invalid tri-state value {success!r}")

    if not isinstance(record["session_id"], str) or not record["session_id"]:
        raise ConversationRejected("session_id", "required")
    if not isinstance(record["turn_key"], str) or not record["turn_key"]:
        raise ConversationRejected("turn_key", "required")
    if not isinstance(record["user_input"], str) or not record["user_input"].strip():
        raise ConversationRejected("user_input", "must be a non-empty string")
    if not isinstance(record["claude_reply"], str):
        raise ConversationRejected("claude_reply", "must be a string")
    if not isinstance(record["timestamp"], datetime):
        raise ConversationRejected("timestamp", "must be a datetime")
    if record["error_type"] is not None and not isinstance(record["error_type"], str):
        raise ConversationRejected("error_type", "must be a string or None")

    files = record["files_involved"]
    if not isinstance(files, list) or not all(isinstance(f, str) for f in files):
        raise ConversationRejected("files_involved", "must be a list of paths")

    tokens = record["tokens_used"]
    if isinstance(tokens, bool) or not isinstance(tokens, int) or tokens < 0:
        raise ConversationRejected("tokens_used", "must be a non-negative integer")

    for field in ("context_used", "embedding"):
        if record[field] is not None and not isinstance(record[field], str):
            raise ConversationRejected(field, "must be a serialized string or None")
    if record["completed_at"] is not None and not isinstance(record["completed_at"], datetime):
        raise ConversationRejected("completed_at", "must be a datetime or None")


async def store_conversation(session: AsyncSession, record: dict) -> tuple[ClaudeConversation, bool]:
    """Validate and upsert a conversation by its turn key.

    Returns:
        (conversation, created): created is False when an existing row for
        the same turn was updated.

    Raises:
        ConversationRejected: If the record violates the write contract.
    """
    validate_conversation(record)

    result = await session.execute(
        select(ClaudeConversation).where(ClaudeConversation.turn_key == record["turn_key"])
    )
    existing = result.scalar_one_or_none()

    if existing is not None:
        existing.claude_reply = record["claude_reply"]
        existing.success = record["success"]
        existing.error_type = record["error_type"]
        existing.files_involved = record["files_involved"]
        existing.tokens_used = record["tokens_used"]
        if record["completed_at"] is not None and existing.completed_at is None:
            existing.completed_at = record["completed_at"]
        await session.flush()
        logger.debug("Updated conversation %s", existing.id)
        return existing, False

    conversation = ClaudeConversation(**record)
    session.add(conversation)
    await session.flush()
    await session.execute(
        update(ContextSession)
        .where(ContextSession.id == record["session_id"])
        .values(total_conversations=ContextSession.total_conversations + 1)
    )
    logger.debug("Stored conversation %s: %s", conversation.id, record["user_input"][:60])
    return conversation, True


async def list_recent_conversations(
    session: AsyncSession,
    folder_id: str,
    limit: int = 10,
    completed_only: bool = False,
) -> list[ClaudeConversation]:
    """Most recent conversations in a folder, newest first."""
    query = (
        select(ClaudeConversation)
        .join(ContextSession, ClaudeConversation.session_id == ContextSession.id)
        .where(ContextSession.folder_id == folder_id)
    )
    if completed_only:
        query = query.where(ClaudeConversation.completed_at.is_not(None))
    query = query.order_by(ClaudeConversation.timestamp.desc()).limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())
