"""Capture pipeline — turns a delivered batch into stored conversations and patterns.

Batches are processed one at a time under an asyncio lock so a terminal's
chunks are applied in arrival order. Extractor and detector state is
checkpointed before each batch and restored if the write transaction fails,
which makes a retried batch behave exactly like the first attempt.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from recall.config import get_settings
from recall.exceptions import ConversationRejected, PatternRejected
from recall.ingestion.chunks import Chunk, parse_chunks
from recall.processing.extractor import ConversationExtractor
from recall.processing.patterns import PatternDetector
from recall.processing.signals import assess_outcome
from recall.storage.db import get_session
from recall.storage.memory import upsert_pattern
from recall.storage.models import utcnow
from recall.storage.store import (
    as_utc,
    build_conversation_record,
    close_idle_sessions,
    ensure_folder,
    ensure_open_session,
    folder_id_for,
    list_recent_conversations,
    refresh_session_stats,
    store_conversation,
    touch_session,
)

logger = logging.getLogger(__name__)


def _lookback_entry(conv) -> dict:
    return {
        "user_input": conv.user_input,
        "claude_reply": conv.claude_reply,
        "success": conv.success,
        "error_type": conv.error_type,
        "files_involved": list(conv.files_involved or []),
        "completed_at": as_utc(conv.completed_at),
        "source_session_id": conv.source_session_id,
    }


class CaptureService:
    """Owns the extractor and detector and persists what they produce."""

    def __init__(self, extractor: Optional[ConversationExtractor] = None, detector: Optional[PatternDetector] = None):
        self.extractor = extractor or ConversationExtractor()
        self.detector = detector or PatternDetector()
        self._lock = asyncio.Lock()
        # Project path each terminal session last reported
        self._projects: dict[str, str] = {}

    def _project_for(self, chunks: list[Chunk], project_path: Optional[str]) -> str:
        if project_path:
            return project_path
        for chunk in chunks:
            if chunk.session_id in self._projects:
                return self._projects[chunk.session_id]
        return get_settings().general.default_project_path

    async def _lookback(self, folder_id: str) -> list[dict]:
        limit = get_settings().sessions.lookback_conversations
        async with get_session() as session:
            recent = await list_recent_conversations(session, folder_id, limit=limit, completed_only=True)
            return [_lookback_entry(c) for c in reversed(recent)]

    async def process_batch(self, chunks: list, project_path: Optional[str] = None) -> dict:
        """Extract, detect and persist one batch.

        Returns counters for the capture response. Raises on storage failure
        after rolling extractor and detector state back.
        """
        parsed = parse_chunks(chunks)
        async with self._lock:
            path = self._project_for(parsed, project_path)
            folder_id = folder_id_for(path)
            extractor_state = self.extractor.checkpoint()
            detector_state = self.detector.checkpoint()
            try:
                fresh, duplicates = self.extractor.filter_fresh(parsed)
                turns = self.extractor.feed(fresh, project_path=path)
                lookback = await self._lookback(folder_id) if turns else []
                now = utcnow()
                patterns = self.detector.detect(fresh, turns, lookback, now=now)

                async with get_session() as session:
                    result = await self._persist(session, path, turns, patterns, fresh, now)
            except Exception:
                self.extractor.restore(extractor_state)
                self.detector.restore(detector_state)
                logger.error("Capture batch of %d chunks failed, state rolled back", len(parsed), exc_info=True)
                raise

            for chunk in parsed:
                self._projects[chunk.session_id] = path

        result["processed"] = len(parsed)
        result["duplicatesSkipped"] = duplicates
        logger.info(
            "Captured %d chunks (%d new): %d conversations stored, %d pattern sightings",
            len(parsed), len(fresh), result["conversationsStored"], result["patternsDetected"],
        )
        return result

    async def _persist(
        self,
        session: AsyncSession,
        project_path: str,
        turns: list[dict],
        patterns: list[dict],
        fresh: list[Chunk],
        now: datetime,
    ) -> dict:
        folder = await ensure_folder(session, project_path)
        ctx = await ensure_open_session(session, folder.id, now=now)

        stored = 0
        files: list[str] = []
        for turn in turns:
            success, error_type = assess_outcome(turn["claude_reply"])
            record = build_conversation_record(turn, ctx.id, success=success, error_type=error_type, now=now)
            try:
                _, created = await store_conversation(session, record)
            except ConversationRejected as e:
                logger.warning("Rejected conversation %s: %s", turn["turn_key"], e)
                continue
            if created:
                stored += 1
            files.extend(turn["files_involved"])

        detected = 0
        for pattern in patterns:
            try:
                await upsert_pattern(session, folder.id, ctx.id, {**pattern, "seen_at": now})
            except PatternRejected as e:
                logger.warning("Rejected pattern %r: %s", pattern.get("description"), e)
                continue
            detected += 1

        for chunk in fresh:
            files.extend(chunk.files)
        if fresh or turns:
            await touch_session(session, ctx, files=files, now=now)
        ctx = await refresh_session_stats(session, ctx.id)

        return {
            "currentSession": ctx.id,
            "totalConversations": ctx.total_conversations,
            "conversationsStored": stored,
            "patternsDetected": detected,
        }

    async def _persist_closed(self, turns: list[dict]) -> int:
        """Store turns closed outside a batch (timeout or explicit end)."""
        by_project: dict[str, list[dict]] = {}
        for turn in turns:
            path = turn.get("project_path") or self._projects.get(turn["source_session_id"])
            by_project.setdefault(path or get_settings().general.default_project_path, []).append(turn)

        stored = 0
        for path, group in by_project.items():
            folder_id = folder_id_for(path)
            lookback = await self._lookback(folder_id)
            now = utcnow()
            patterns = self.detector.detect([], group, lookback, now=now)
            async with get_session() as session:
                result = await self._persist(session, path, group, patterns, [], now)
            stored += len(group)
            logger.debug("Persisted %d closed turns for %s (%s)", len(group), path, result["currentSession"])
        return stored

    async def sweep(self, now: Optional[float] = None) -> dict:
        """Close idle turns and idle sessions. Called by the background sweeper."""
        async with self._lock:
            extractor_state = self.extractor.checkpoint()
            detector_state = self.detector.checkpoint()
            turns = self.extractor.close_idle(now)
            try:
                closed_turns = await self._persist_closed(turns) if turns else 0
            except Exception:
                self.extractor.restore(extractor_state)
                self.detector.restore(detector_state)
                raise
            forgotten = self.extractor.evict_stale(now)
            self.detector.forget(forgotten)
            for session_id in forgotten:
                self._projects.pop(session_id, None)

        async with get_session() as session:
            closed_sessions = await close_idle_sessions(session)
        if closed_turns or closed_sessions:
            logger.info("Sweep closed %d turns and %d sessions", closed_turns, len(closed_sessions))
        return {"turnsClosed": closed_turns, "sessionsClosed": closed_sessions}

    async def end_terminal_session(self, session_id: str) -> int:
        """Close a terminal session's open turn and persist it."""
        async with self._lock:
            extractor_state = self.extractor.checkpoint()
            turns = self.extractor.end_session(session_id)
            try:
                return await self._persist_closed(turns) if turns else 0
            except Exception:
                self.extractor.restore(extractor_state)
                raise


_service: Optional[CaptureService] = None


def get_capture_service() -> CaptureService:
    """Get or create the process-wide capture service."""
    global _service
    if _service is None:
        _service = CaptureService()
    return _service


def reset_capture_service() -> None:
    global _service
    _service = None
