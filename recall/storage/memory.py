"""Pattern and insight memory — frequency-tracked patterns promoted to insights."""

import logging
import re
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from recall.config import get_settings
from recall.exceptions import PatternRejected
from recall.storage.models import PATTERN_TYPES, DetectedPattern, LearnedInsight, new_id, utcnow
from recall.storage.store import as_utc

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")

INSIGHT_TYPES = {
    "command_sequence": "workflow",
    "error_solution": "fix",
    "file_cluster": "structure",
    "success_signal": "outcome",
}


def normalize_description(description: str) -> str:
    """Canonical form used to match repeated sightings of a pattern."""
    text = _WHITESPACE.sub(" ", description.strip().lower())
    return text.rstrip(".!:;, ")


def _validate_pattern(pattern: dict) -> None:
    if pattern.get("pattern_type") not in PATTERN_TYPES:
        raise PatternRejected(f"unknown pattern type {pattern.get('pattern_type')!r}")
    description = pattern.get("description")
    if not isinstance(description, str) or not description.strip():
        raise PatternRejected("description must be a non-empty string")
    metadata = pattern.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        raise PatternRejected("metadata must be a dict")
    seen_at = pattern.get("seen_at")
    if seen_at is not None and not isinstance(seen_at, datetime):
        raise PatternRejected("seen_at must be a datetime")


def _insert_for(session: AsyncSession):
    dialect = session.bind.dialect.name if session.bind is not None else "sqlite"
    if dialect == "postgresql":
        return pg_insert
    return sqlite_insert


async def upsert_pattern(
    session: AsyncSession,
    folder_id: str,
    session_id: str,
    pattern: dict,
) -> DetectedPattern:
    """Record one sighting of a pattern.

    Inserts the row if absent (ignoring a concurrent insert of the same key),
    then locks it and bumps frequency, last_seen, metadata and confidence in
    the caller's transaction.

    Raises:
        PatternRejected: If the pattern dict is malformed.
    """
    from recall.processing.patterns import score_confidence

    _validate_pattern(pattern)
    settings = get_settings().patterns
    pattern_type = pattern["pattern_type"]
    normalized = normalize_description(pattern["description"])
    seen_at = pattern.get("seen_at") or utcnow()
    base = settings.base_confidence.get(pattern_type, 0.5)

    insert = _insert_for(session)
    stmt = (
        insert(DetectedPattern)
        .values({
            DetectedPattern.id: new_id(),
            DetectedPattern.session_id: session_id,
            DetectedPattern.folder_id: folder_id,
            DetectedPattern.pattern_type: pattern_type,
            DetectedPattern.description: pattern["description"],
            DetectedPattern.normalized_description: normalized,
            DetectedPattern.frequency: 1,
            DetectedPattern.confidence: base,
            DetectedPattern.first_seen: seen_at,
            DetectedPattern.last_seen: seen_at,
            DetectedPattern.metadata_: pattern.get("metadata") or {},
        })
        .on_conflict_do_nothing(
            index_elements=["folder_id", "pattern_type", "normalized_description"]
        )
        .returning(DetectedPattern.id)
    )
    inserted_id = (await session.execute(stmt)).scalar_one_or_none()

    result = await session.execute(
        select(DetectedPattern)
        .where(
            DetectedPattern.folder_id == folder_id,
            DetectedPattern.pattern_type == pattern_type,
            DetectedPattern.normalized_description == normalized,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one()

    if inserted_id is not None:
        logger.debug("New %s pattern: %s", pattern_type, pattern["description"])
        return row

    gap_days = max((seen_at - as_utc(row.last_seen)).total_seconds(), 0.0) / 86400
    row.frequency = (row.frequency or 0) + 1
    row.last_seen = seen_at
    if pattern.get("metadata"):
        row.metadata_ = {**(row.metadata_ or {}), **pattern["metadata"]}
    row.confidence = score_confidence(pattern_type, row.frequency, gap_days)
    await session.flush()
    logger.debug(
        "Pattern %s seen again (frequency %d, confidence %.2f)",
        row.id, row.frequency, row.confidence,
    )
    return row


async def list_patterns(
    session: AsyncSession,
    folder_id: str,
    pattern_type: Optional[str] = None,
    limit: int = 20,
) -> list[DetectedPattern]:
    """Patterns for a folder, most frequent first."""
    query = select(DetectedPattern).where(DetectedPattern.folder_id == folder_id)
    if pattern_type:
        query = query.where(DetectedPattern.pattern_type == pattern_type)
    query = query.order_by(
        DetectedPattern.frequency.desc(), DetectedPattern.last_seen.desc()
    ).limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def store_insight(
    session: AsyncSession,
    folder_id: str,
    insight_type: str,
    title: str,
    content: str,
    confidence: float,
    source_pattern_id: Optional[str] = None,
) -> tuple[LearnedInsight, bool]:
    """Create or refresh an insight keyed by (folder, type, title)."""
    result = await session.execute(
        select(LearnedInsight).where(
            LearnedInsight.folder_id == folder_id,
            LearnedInsight.insight_type == insight_type,
            LearnedInsight.title == title,
        )
    )
    insight = result.scalar_one_or_none()
    if insight:
        insight.content = content
        insight.confidence = max(insight.confidence or 0.0, confidence)
        if source_pattern_id:
            insight.source_pattern_id = source_pattern_id
        await session.flush()
        return insight, False

    insight = LearnedInsight(
        folder_id=folder_id,
        insight_type=insight_type,
        title=title,
        content=content,
        confidence=min(max(confidence, 0.0), 1.0),
        source_pattern_id=source_pattern_id,
    )
    session.add(insight)
    await session.flush()
    logger.info("Learned insight for %s: %s", folder_id, title)
    return insight, True


def _insight_content(pattern: DetectedPattern) -> str:
    content = f"Seen {pattern.frequency} times (confidence {pattern.confidence:.2f})."
    summary = (pattern.metadata_ or {}).get("solutionSummary")
    if summary:
        content += f" Fix: {summary}"
    return content


async def promote_patterns_to_insights(session: AsyncSession, folder_id: str) -> int:
    """Turn frequent, confident patterns into insights. Returns how many were new."""
    settings = get_settings().patterns
    result = await session.execute(
        select(DetectedPattern).where(
            DetectedPattern.folder_id == folder_id,
            DetectedPattern.frequency >= settings.insight_min_frequency,
            DetectedPattern.confidence >= settings.insight_min_confidence,
        )
    )
    created = 0
    for pattern in result.scalars().all():
        _, is_new = await store_insight(
            session,
            folder_id=folder_id,
            insight_type=INSIGHT_TYPES.get(pattern.pattern_type, pattern.pattern_type),
            title=pattern.description,
            content=_insight_content(pattern),
            confidence=pattern.confidence,
            source_pattern_id=pattern.id,
        )
        if is_new:
            created += 1
    return created


async def record_insight_usage(session: AsyncSession, insight_id: str) -> Optional[LearnedInsight]:
    insight = await session.get(LearnedInsight, insight_id)
    if insight is None:
        return None
    insight.usage_count = (insight.usage_count or 0) + 1
    insight.last_used = utcnow()
    await session.flush()
    return insight


async def list_insights(session: AsyncSession, folder_id: str, limit: int = 10) -> list[LearnedInsight]:
    result = await session.execute(
        select(LearnedInsight)
        .where(LearnedInsight.folder_id == folder_id)
        .order_by(LearnedInsight.confidence.desc(), LearnedInsight.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
