"""Memory statistics over the context store."""

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from recall.storage.models import (
    ClaudeConversation,
    ContextFolder,
    ContextSession,
    DetectedPattern,
    LearnedInsight,
)

logger = logging.getLogger(__name__)


async def _count_folders(session: AsyncSession, folder_id: Optional[str]) -> int:
    query = select(func.count(ContextFolder.id))
    if folder_id:
        query = query.where(ContextFolder.id == folder_id)
    return (await session.execute(query)).scalar_one()


async def _count_sessions(session: AsyncSession, folder_id: Optional[str]) -> int:
    query = select(func.count(ContextSession.id))
    if folder_id:
        query = query.where(ContextSession.folder_id == folder_id)
    return (await session.execute(query)).scalar_one()


async def _conversation_totals(session: AsyncSession, folder_id: Optional[str]) -> tuple[int, float]:
    query = select(func.count(ClaudeConversation.id), func.avg(ClaudeConversation.success)).join(
        ContextSession, ClaudeConversation.session_id == ContextSession.id
    )
    if folder_id:
        query = query.where(ContextSession.folder_id == folder_id)
    count, rate = (await session.execute(query)).one()
    return count or 0, float(rate) if rate is not None else 0.0


async def _count_patterns(session: AsyncSession, folder_id: Optional[str]) -> int:
    query = select(func.count(DetectedPattern.id))
    if folder_id:
        query = query.where(DetectedPattern.folder_id == folder_id)
    return (await session.execute(query)).scalar_one()


async def _count_insights(session: AsyncSession, folder_id: Optional[str]) -> int:
    query = select(func.count(LearnedInsight.id))
    if folder_id:
        query = query.where(LearnedInsight.folder_id == folder_id)
    return (await session.execute(query)).scalar_one()


async def _current_session_id(session: AsyncSession, folder_id: Optional[str]) -> Optional[str]:
    query = select(ContextSession.id).where(ContextSession.end_time.is_(None))
    if folder_id:
        query = query.where(ContextSession.folder_id == folder_id)
    query = query.order_by(ContextSession.last_activity_at.desc()).limit(1)
    return (await session.execute(query)).scalar_one_or_none()


async def get_stats(session: AsyncSession, folder_id: Optional[str] = None) -> dict:
    """Memory statistics, for one folder or across all of them.

    Pattern and insight counts are best-effort: if either query fails the
    field is None and named in ``degraded``, and the rest is still returned.
    """
    total_conversations, success_rate = await _conversation_totals(session, folder_id)
    stats = {
        "totalFolders": await _count_folders(session, folder_id),
        "totalSessions": await _count_sessions(session, folder_id),
        "totalConversations": total_conversations,
        "totalPatterns": None,
        "totalInsights": None,
        "successRate": round(success_rate, 4),
        "currentSession": await _current_session_id(session, folder_id),
        "degraded": [],
    }

    for field, name, counter in (
        ("totalPatterns", "patterns", _count_patterns),
        ("totalInsights", "insights", _count_insights),
    ):
        try:
            stats[field] = await counter(session, folder_id)
        except SQLAlchemyError as e:
            logger.warning("Stats: %s count unavailable: %s", name, e)
            stats["degraded"].append(name)

    return stats
