"""Pattern detection — command sequences, error fixes, file clusters, success signals.

Each detector is independent: one that raises is logged and skipped, and the
others (and conversation storage) carry on. Detectors return pattern dicts
``{pattern_type, description, metadata}``; each dict is one sighting, and the
store turns repeated sightings into a frequency count.
"""

import copy
import logging
import math
from collections import deque
from datetime import datetime, timedelta
from itertools import combinations
from typing import Optional

from recall.config import get_settings
from recall.ingestion.chunks import Chunk
from recall.processing.signals import command_name, contains_resolution, detect_error_type, find_success_marker

logger = logging.getLogger(__name__)

SOLUTION_SUMMARY_CHARS = 200


def score_confidence(pattern_type: str, frequency: int, gap_days: float = 0.0) -> float:
    """Confidence for a pattern seen ``frequency`` times.

    Grows from the type's base toward the ceiling with repetition, then decays
    with the time since the previous sighting. Never drops below the base.
    """
    settings = get_settings().patterns
    base = settings.base_confidence.get(pattern_type, 0.5)
    ceiling = settings.confidence_ceiling
    grown = base + (ceiling - base) * (1 - math.exp(-settings.repetition_rate * max(frequency - 1, 0)))
    decayed = grown * 0.5 ** (max(gap_days, 0.0) / settings.half_life_days)
    return round(min(max(decayed, base), ceiling), 4)


def _pattern(pattern_type: str, description: str, metadata: Optional[dict] = None) -> dict:
    return {"pattern_type": pattern_type, "description": description, "metadata": metadata or {}}


class PatternDetector:
    """Runs every detector over a processed batch.

    Command history is kept per terminal session across batches, so a
    sequence can span two flushes.
    """

    def __init__(self):
        self.settings = get_settings().patterns
        self.tracked = {c.lower() for c in self.settings.tracked_commands}
        self._history: dict[str, deque] = {}

    def checkpoint(self) -> dict[str, deque]:
        return copy.deepcopy(self._history)

    def restore(self, checkpoint: dict[str, deque]) -> None:
        self._history = copy.deepcopy(checkpoint)

    def forget(self, session_ids: list[str]) -> None:
        for session_id in session_ids:
            self._history.pop(session_id, None)

    def detect(
        self,
        chunks: list[Chunk],
        turns: list[dict],
        lookback: Optional[list[dict]] = None,
        now: Optional[datetime] = None,
    ) -> list[dict]:
        """Run all detectors.

        Args:
            chunks: Fresh chunks from this batch, in arrival order.
            turns: Turn snapshots from the extractor; only closed turns count.
            lookback: The folder's recently completed conversations, oldest
                first, each with user_input, claude_reply, files_involved and
                completed_at.
            now: Reference time for the file cluster window.
        """
        closed = [t for t in turns if t.get("closed")]
        lookback = lookback or []
        runs = [
            ("command_sequence", lambda: self.detect_command_sequences(chunks)),
            ("error_solution", lambda: self.detect_error_solutions(closed, lookback)),
            ("file_cluster", lambda: self.detect_file_clusters(closed, lookback, now)),
            ("success_signal", lambda: self.detect_success_signals(closed)),
        ]
        found: list[dict] = []
        for name, run in runs:
            try:
                found.extend(run())
            except Exception as e:
                logger.error("Pattern detector %s failed: %s", name, e, exc_info=True)
        if found:
            logger.debug("Detected %d pattern sightings", len(found))
        return found

    # --- command_sequence ---

    def _command_for(self, chunk: Chunk) -> Optional[str]:
        if chunk.command_context:
            name = command_name(chunk.command_context)
        else:
            name = command_name(chunk.content)
        if name and name in self.tracked:
            return name
        return None

    def detect_command_sequences(self, chunks: list[Chunk]) -> list[dict]:
        found = []
        for chunk in chunks:
            if not chunk.is_input:
                continue
            name = self._command_for(chunk)
            if name is None:
                continue
            history = self._history.get(chunk.session_id)
            if history is None:
                history = self._history[chunk.session_id] = deque(maxlen=self.settings.sequence_length)
            history.append(name)
            if len(history) >= self.settings.min_sequence_length:
                found.append(_pattern(
                    "command_sequence",
                    "Command sequence: " + " → ".join(history),
                    {"commands": list(history)},
                ))
        return found

    # --- error_solution ---

    def detect_error_solutions(self, closed: list[dict], lookback: list[dict]) -> list[dict]:
        found = []
        previous = lookback[-1] if lookback else None
        for turn in closed:
            reply = turn.get("claude_reply") or ""
            error_type = detect_error_type(reply)
            resolved = contains_resolution(reply)

            if error_type and resolved:
                found.append(self._error_solution(error_type, reply))
            elif previous is not None and resolved:
                prev_reply = previous.get("claude_reply") or ""
                prev_error = detect_error_type(prev_reply)
                if prev_error and not contains_resolution(prev_reply):
                    found.append(self._error_solution(prev_error, reply))
            previous = turn
        return found

    def _error_solution(self, error_type: str, reply: str) -> dict:
        return _pattern(
            "error_solution",
            f"Resolved {error_type} error",
            {"errorType": error_type, "solutionSummary": reply[:SOLUTION_SUMMARY_CHARS]},
        )

    # --- file_cluster ---

    def detect_file_clusters(
        self, closed: list[dict], lookback: list[dict], now: Optional[datetime] = None
    ) -> list[dict]:
        found = []
        window_files: list[str] = []
        if now is not None:
            cutoff = now - timedelta(seconds=self.settings.file_cluster_window_seconds)
            for conv in lookback:
                completed_at = conv.get("completed_at")
                if completed_at is not None and completed_at >= cutoff:
                    window_files.extend(conv.get("files_involved") or [])

        for turn in closed:
            files = list(dict.fromkeys(turn.get("files_involved") or []))[: self.settings.max_cluster_files]
            if not files:
                continue
            pairs = {tuple(sorted(p)) for p in combinations(files, 2)}
            for other in dict.fromkeys(window_files):
                if other in files:
                    continue
                for path in files:
                    pairs.add(tuple(sorted((path, other))))
            for a, b in sorted(pairs):
                found.append(_pattern(
                    "file_cluster",
                    f"Files edited together: {a} + {b}",
                    {"files": [a, b]},
                ))
            # Later turns in the same batch see this turn's files as recent work
            window_files.extend(files)
        return found

    # --- success_signal ---

    def detect_success_signals(self, closed: list[dict]) -> list[dict]:
        found = []
        for turn in closed:
            marker = find_success_marker(turn.get("claude_reply") or "", self.settings.success_markers)
            if marker:
                found.append(_pattern(
                    "success_signal",
                    f"Success signal: {marker}",
                    {"marker": marker, "userInput": turn["user_input"][:SOLUTION_SUMMARY_CHARS]},
                ))
        return found
