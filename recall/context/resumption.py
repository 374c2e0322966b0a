"""Session resumption — what happened before, and what to pick up next.

Read-only: nothing here writes to the store.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from recall.storage.models import ClaudeConversation, ContextSession, utcnow
from recall.storage.store import as_utc

logger = logging.getLogger(__name__)

MAX_SUGGESTED_ACTIONS = 5
MAX_COLLABORATOR_HANDOFFS = 2
REPLY_EXCERPT_CHARS = 200


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _session_dict(ctx: ContextSession) -> dict:
    return {
        "id": ctx.id,
        "startTime": _iso(ctx.start_time),
        "endTime": _iso(ctx.end_time),
        "lastActivityAt": _iso(ctx.last_activity_at),
        "totalConversations": ctx.total_conversations,
        "successRate": ctx.success_rate,
        "summary": ctx.summary,
        "nextSteps": list(ctx.next_steps or []),
        "filesModified": list(ctx.files_modified or []),
        "isOpen": ctx.end_time is None,
    }


def _update_dict(conv: ClaudeConversation) -> dict:
    return {
        "sourceSessionId": conv.source_session_id,
        "userInput": conv.user_input,
        "replyExcerpt": conv.claude_reply[:REPLY_EXCERPT_CHARS],
        "timestamp": _iso(conv.timestamp),
        "filesInvolved": list(conv.files_involved or []),
        "success": conv.success,
    }


async def _previous_sessions(
    session: AsyncSession, folder_id: str, scope: Optional[str], limit: int
) -> list[ContextSession]:
    query = select(ContextSession).where(ContextSession.folder_id == folder_id)
    if scope:
        scoped = select(ClaudeConversation.session_id).where(ClaudeConversation.source_session_id == scope)
        query = query.where(ContextSession.id.in_(scoped))
    query = query.order_by(ContextSession.start_time.desc()).limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def _collaborator_updates(
    session: AsyncSession, folder_id: str, scope: Optional[str], limit: int
) -> list[ClaudeConversation]:
    """Completed conversations from other terminals since the scope last spoke."""
    if not scope:
        return []

    last_own = await session.execute(
        select(ClaudeConversation.timestamp)
        .join(ContextSession, ClaudeConversation.session_id == ContextSession.id)
        .where(ContextSession.folder_id == folder_id, ClaudeConversation.source_session_id == scope)
        .order_by(ClaudeConversation.timestamp.desc())
        .limit(1)
    )
    since = last_own.scalar_one_or_none()

    query = (
        select(ClaudeConversation)
        .join(ContextSession, ClaudeConversation.session_id == ContextSession.id)
        .where(
            ContextSession.folder_id == folder_id,
            ClaudeConversation.completed_at.is_not(None),
            ClaudeConversation.source_session_id.is_not(None),
            ClaudeConversation.source_session_id != scope,
        )
    )
    if since is not None:
        query = query.where(ClaudeConversation.timestamp > since)
    query = query.order_by(ClaudeConversation.timestamp.desc()).limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


def continuity_score(
    previous: list[ContextSession],
    collaborators: list[ClaudeConversation],
    now: datetime,
) -> float:
    """How much usable context a resuming session has, from 0.0 to 1.0."""
    if not previous:
        return 0.0

    last = previous[0]
    score = 0.3

    # 1. Recency of the last session
    last_active = as_utc(last.end_time or last.last_activity_at or last.start_time)
    age_days = (now - last_active).total_seconds() / 86400
    if age_days < 1:
        score += 0.3
    elif age_days < 7:
        score += 0.2
    else:
        score += 0.1

    # 2. Explicit follow-ups
    if last.next_steps:
        score += 0.2

    # 3. A real summary
    if last.summary and len(last.summary) > 20:
        score += 0.1

    # 4. File overlap with collaborator work (any files when working alone)
    own_files = set(last.files_modified or [])
    if collaborators:
        other_files = {f for conv in collaborators for f in (conv.files_involved or [])}
        if own_files & other_files:
            score += 0.1
    elif own_files:
        score += 0.1

    return round(min(score, 1.0), 2)


def suggested_actions(previous: list[ContextSession], collaborators: list[ClaudeConversation]) -> list[str]:
    actions: list[str] = []
    for ctx in previous:
        if ctx.next_steps:
            actions.extend(ctx.next_steps)
            break
    for conv in collaborators[:MAX_COLLABORATOR_HANDOFFS]:
        actions.append(f"Review {conv.source_session_id}'s work: {conv.user_input}")
    return actions[:MAX_SUGGESTED_ACTIONS]


def build_resumption_prompt(
    previous: list[ContextSession],
    collaborators: list[ClaudeConversation],
    actions: list[str],
) -> str:
    if not previous and not collaborators:
        return "No previous sessions recorded for this project."

    lines = []
    if previous:
        last = previous[0]
        lines.append(
            f"Last session: {last.total_conversations} conversation(s), "
            f"success rate {last.success_rate:.0%}."
        )
        if last.summary:
            lines.append(f"Summary: {last.summary}")
        if last.files_modified:
            lines.append("Files: " + ", ".join(last.files_modified[:5]))
    if collaborators:
        lines.append(f"{len(collaborators)} update(s) from other sessions since you left:")
        for conv in collaborators[:3]:
            lines.append(f"  - [{conv.source_session_id}] {conv.user_input}")
    if actions:
        lines.append("Suggested next steps:")
        lines.extend(f"  - {action}" for action in actions)
    return "\n".join(lines)


async def get_resumption_context(
    session: AsyncSession,
    folder_id: str,
    scope: Optional[str] = None,
    limit: int = 5,
    now: Optional[datetime] = None,
) -> dict:
    """Context for resuming work in a folder.

    Args:
        folder_id: The project's context folder.
        scope: A terminal or agent session id. Limits previous sessions to
            those the scope took part in and enables collaborator updates.
        limit: Maximum previous sessions and collaborator updates returned.
        now: Reference time for recency scoring.
    """
    now = now or utcnow()
    previous = await _previous_sessions(session, folder_id, scope, limit)
    collaborators = await _collaborator_updates(session, folder_id, scope, limit)
    actions = suggested_actions(previous, collaborators)

    logger.debug(
        "Resumption for %s (scope %s): %d sessions, %d collaborator updates",
        folder_id, scope, len(previous), len(collaborators),
    )
    return {
        "folderId": folder_id,
        "scope": scope,
        "previousSessions": [_session_dict(s) for s in previous],
        "collaboratorUpdates": [_update_dict(c) for c in collaborators],
        "suggestedActions": actions,
        "continuityScore": continuity_score(previous, collaborators, now),
        "resumptionPrompt": build_resumption_prompt(previous, collaborators, actions),
    }
