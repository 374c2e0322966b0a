"""Conversation extractor — segments a terminal chunk stream into user/assistant turns.

There is no explicit framing in a terminal stream, so turn boundaries are
inferred. Each chunk is classified by an ordered list of ``(matcher, handler)``
rules into one tagged event; the first matching rule wins. Events then drive a
small per-terminal state machine (open turn, interactive mode, last activity).

A turn is emitted as a snapshot dict. Still-open turns are emitted too, with
``closed=False``, so the store can persist them provisionally and update them
by ``turn_key`` as more reply text arrives.
"""

import copy
import hashlib
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from recall.config import get_settings
from recall.ingestion.chunks import Chunk
from recall.processing.signals import (
    clean_output,
    command_name,
    is_bare_prompt,
    is_session_banner,
    opens_reply,
    strip_ansi,
    strip_prompt,
)

logger = logging.getLogger(__name__)


def compute_turn_key(source_session_id: str, started_at_ms: int, user_input: str) -> str:
    """Idempotency key for a turn: same terminal, same start chunk, same input."""
    raw = f"{source_session_id}\x1f{started_at_ms}\x1f{user_input}"
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


def chunk_fingerprint(chunk: Chunk) -> str:
    return hashlib.sha1(f"{chunk.timestamp}\x1f{chunk.type}\x1f{chunk.content}".encode()).hexdigest()


# --- Events ---


@dataclass
class TurnStart:
    user_input: str
    interactive: bool = False
    command: Optional[str] = None
    lines: list[str] = field(default_factory=list)


@dataclass
class SessionEnd:
    pass


@dataclass
class ReplyText:
    lines: list[str]


@dataclass
class Completion:
    lines: list[str] = field(default_factory=list)
    reason: str = "completion"


@dataclass
class Ignored:
    reason: str


Event = Union[TurnStart, SessionEnd, ReplyText, Completion, Ignored]


# --- State ---


@dataclass
class OpenTurn:
    source_session_id: str
    user_input: str
    started_at: int
    project_path: Optional[str] = None
    command: Optional[str] = None
    reply_parts: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    last_activity: float = 0.0

    @property
    def turn_key(self) -> str:
        return compute_turn_key(self.source_session_id, self.started_at, self.user_input)

    @property
    def has_reply(self) -> bool:
        return bool(self.reply_parts)

    def add_files(self, files: list[str]) -> None:
        for path in files:
            if path not in self.files:
                self.files.append(path)

    def snapshot(self, closed: bool = False, close_reason: Optional[str] = None) -> dict:
        return {
            "turn_key": self.turn_key,
            "source_session_id": self.source_session_id,
            "project_path": self.project_path,
            "user_input": self.user_input,
            "claude_reply": "\n".join(self.reply_parts),
            "started_at": self.started_at,
            "files_involved": list(self.files),
            "command": self.command,
            "closed": closed,
            "close_reason": close_reason,
        }


@dataclass
class TerminalState:
    turn: Optional[OpenTurn] = None
    interactive: bool = False
    last_activity: float = 0.0
    ended: bool = False
    # Fingerprint -> how many copies of that chunk have been accepted
    seen: OrderedDict = field(default_factory=OrderedDict)


@dataclass
class _Context:
    chunk: Chunk
    state: TerminalState
    text: str


# --- Rules ---


def _invocation_patterns(words: list[str]) -> list[tuple[str, re.Pattern]]:
    return [(w, re.compile(rf"^{re.escape(w)}(?:\s+(.+))?$", re.DOTALL)) for w in words]


class ConversationExtractor:
    """Stateful turn segmenter, one state per terminal session."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        settings = get_settings().extraction
        self.clock = clock
        self.sentinel = settings.interactive_sentinel
        self.inferred_input = settings.inferred_input
        self.dedupe_window = settings.dedupe_window
        self.state_ttl = settings.state_ttl_seconds
        self.turn_timeout = settings.turn_timeout_seconds
        self.session_end_inputs = {s.lower() for s in settings.session_end_inputs}
        self.trivial_inputs = {s.lower() for s in settings.trivial_inputs}
        self.invocations = _invocation_patterns(settings.invocation_commands)
        self._states: dict[str, TerminalState] = {}

        self.input_rules = [
            (self._match_session_end, self._on_session_end),
            (self._match_invocation, self._on_invocation),
            (self._match_interactive_input, self._on_interactive_input),
            (self._match_command_after_reply, self._on_command_after_reply),
        ]
        self.output_rules = [
            (self._match_session_banner, self._on_session_banner),
            (self._match_reply_opener, self._on_reply_opener),
            (self._match_no_turn, self._on_no_turn),
            (self._match_completion, self._on_completion),
            (self._match_reply, self._on_reply),
        ]

    # Matchers return a truthy match value or None; handlers turn it into an event.

    def _match_session_end(self, ctx: _Context):
        if ctx.state.interactive and ctx.text.lower() in self.session_end_inputs:
            return True
        return None

    def _on_session_end(self, ctx: _Context, _match) -> Event:
        return SessionEnd()

    def _match_invocation(self, ctx: _Context):
        for word, pattern in self.invocations:
            m = pattern.match(ctx.text)
            if m:
                return word, m
        return None

    def _on_invocation(self, ctx: _Context, match: tuple[str, re.Match]) -> Event:
        word, m = match
        argument = (m.group(1) or "").strip()
        if not argument:
            return TurnStart(self.sentinel, interactive=True, command=word)
        return TurnStart(argument, command=word)

    def _match_interactive_input(self, ctx: _Context):
        if not ctx.state.interactive:
            return None
        if len(ctx.text) <= 2 or (command_name(ctx.text) or "") in self.trivial_inputs:
            return None
        return True

    def _on_interactive_input(self, ctx: _Context, _match) -> Event:
        return TurnStart(ctx.text, interactive=True)

    def _match_command_after_reply(self, ctx: _Context):
        turn = ctx.state.turn
        if turn is not None and not ctx.state.interactive and turn.has_reply:
            return True
        return None

    def _on_command_after_reply(self, ctx: _Context, _match) -> Event:
        return Completion(reason="next_command")

    def _match_session_banner(self, ctx: _Context):
        if ctx.state.interactive or not is_session_banner(ctx.chunk.content):
            return None
        return True

    def _on_session_banner(self, ctx: _Context, _match) -> Event:
        return TurnStart(self.sentinel, interactive=True)

    def _match_reply_opener(self, ctx: _Context):
        if ctx.state.turn is not None or ctx.state.interactive:
            return None
        lines = clean_output(ctx.chunk.content)
        return lines if opens_reply(lines) else None

    def _on_reply_opener(self, ctx: _Context, lines: list[str]) -> Event:
        return TurnStart(self.inferred_input, lines=lines)

    def _match_no_turn(self, ctx: _Context):
        return True if ctx.state.turn is None else None

    def _on_no_turn(self, ctx: _Context, _match) -> Event:
        return Ignored("no open turn")

    def _match_completion(self, ctx: _Context):
        if ctx.state.interactive:
            return None
        raw_lines = strip_ansi(ctx.chunk.content).replace("\r", "\n").split("\n")
        if not any(is_bare_prompt(line) for line in raw_lines):
            return None
        lines = clean_output(ctx.chunk.content)
        if ctx.state.turn.has_reply or lines:
            return lines
        return None

    def _on_completion(self, ctx: _Context, lines: list[str]) -> Event:
        return Completion(lines=lines)

    def _match_reply(self, ctx: _Context):
        return clean_output(ctx.chunk.content) or None

    def _on_reply(self, ctx: _Context, lines: list[str]) -> Event:
        return ReplyText(lines)

    def classify(self, chunk: Chunk, state: TerminalState) -> Event:
        """Map one chunk to an event using the first matching rule."""
        if chunk.is_input:
            ctx = _Context(chunk, state, strip_prompt(strip_ansi(chunk.content)))
            if not ctx.text:
                return Ignored("blank input")
            rules = self.input_rules
        else:
            ctx = _Context(chunk, state, chunk.content)
            rules = self.output_rules

        for matcher, handler in rules:
            match = matcher(ctx)
            if match is not None:
                return handler(ctx, match)
        return Ignored("shell command" if chunk.is_input else "noise")

    # --- Idempotency ---

    def _state(self, session_id: str) -> TerminalState:
        state = self._states.get(session_id)
        if state is None:
            state = self._states[session_id] = TerminalState()
        return state

    def filter_fresh(self, chunks: list[Chunk]) -> tuple[list[Chunk], int]:
        """Drop chunks that were already accepted.

        A chunk is identified by its timestamp, type and content. Copies are
        counted, so the n-th identical chunk in a batch is only a duplicate
        when n copies were accepted before. Order and timestamps are never
        used to reject a chunk.

        Returns:
            (fresh chunks in arrival order, number of duplicates skipped)
        """
        fresh = []
        duplicates = 0
        occurrences: dict[tuple[str, str], int] = {}
        for chunk in chunks:
            state = self._state(chunk.session_id)
            fp = chunk_fingerprint(chunk)
            key = (chunk.session_id, fp)
            occurrences[key] = occurrences.get(key, 0) + 1
            if occurrences[key] <= state.seen.get(fp, 0):
                duplicates += 1
                continue
            state.seen[fp] = occurrences[key]
            state.seen.move_to_end(fp)
            while len(state.seen) > self.dedupe_window:
                state.seen.popitem(last=False)
            fresh.append(chunk)
        if duplicates:
            logger.debug("Skipped %d already-seen chunks", duplicates)
        return fresh, duplicates

    def checkpoint(self) -> dict[str, TerminalState]:
        return copy.deepcopy(self._states)

    def restore(self, checkpoint: dict[str, TerminalState]) -> None:
        self._states = copy.deepcopy(checkpoint)

    # --- Segmentation ---

    def _close(self, state: TerminalState, reason: str, out: list[dict]) -> None:
        if state.turn is None:
            return
        out.append(state.turn.snapshot(closed=True, close_reason=reason))
        logger.debug("Closed turn %s (%s)", state.turn.turn_key, reason)
        state.turn = None

    def feed(self, chunks: list[Chunk], project_path: Optional[str] = None) -> list[dict]:
        """Advance the state machine over fresh chunks.

        Returns snapshots for every turn closed during the batch, followed by
        the still-open turns the batch touched.
        """
        out: list[dict] = []
        touched: dict[str, TerminalState] = {}
        now = self.clock()

        for chunk in chunks:
            state = self._state(chunk.session_id)
            state.last_activity = now
            state.ended = False
            event = self.classify(chunk, state)

            if isinstance(event, TurnStart):
                self._close(state, "next_turn", out)
                state.turn = OpenTurn(
                    source_session_id=chunk.session_id,
                    user_input=event.user_input,
                    started_at=chunk.timestamp,
                    project_path=project_path,
                    command=chunk.command_context or event.command,
                    last_activity=now,
                )
                state.turn.reply_parts.extend(event.lines)
                if event.interactive:
                    state.interactive = True
            elif isinstance(event, SessionEnd):
                self._close(state, "session_end", out)
                state.interactive = False
                continue
            elif isinstance(event, (ReplyText, Completion)):
                if event.lines:
                    state.turn.reply_parts.extend(event.lines)
            elif isinstance(event, Ignored):
                logger.debug("Ignored chunk from %s: %s", chunk.session_id, event.reason)

            if state.turn is not None:
                state.turn.last_activity = now
                state.turn.add_files(chunk.files)
                touched[chunk.session_id] = state
            if isinstance(event, Completion):
                self._close(state, event.reason, out)

        for state in touched.values():
            if state.turn is not None:
                out.append(state.turn.snapshot())
        return out

    def close_idle(self, now: Optional[float] = None) -> list[dict]:
        """Close turns with no activity for longer than the turn timeout."""
        now = self.clock() if now is None else now
        out: list[dict] = []
        for state in self._states.values():
            if state.turn is not None and now - state.turn.last_activity > self.turn_timeout:
                self._close(state, "timeout", out)
        return out

    def end_session(self, session_id: str) -> list[dict]:
        """Explicitly end a terminal session, closing its open turn."""
        out: list[dict] = []
        state = self._states.get(session_id)
        if state is not None:
            self._close(state, "session_end", out)
            state.interactive = False
            state.ended = True
            state.last_activity = self.clock()
        return out

    def evict_stale(self, now: Optional[float] = None) -> list[str]:
        """Forget terminals with no open turn that have gone quiet.

        An ended terminal is forgotten once the turn timeout has passed, any
        other terminal after the state TTL. Returns the forgotten session ids.
        """
        now = self.clock() if now is None else now
        stale = []
        for session_id, state in self._states.items():
            if state.turn is not None:
                continue
            ttl = self.turn_timeout if state.ended else self.state_ttl
            if now - state.last_activity > ttl:
                stale.append(session_id)
        for session_id in stale:
            del self._states[session_id]
        if stale:
            logger.debug("Forgot %d idle terminal sessions", len(stale))
        return stale

    def open_turn(self, session_id: str) -> Optional[dict]:
        state = self._states.get(session_id)
        if state is None or state.turn is None:
            return None
        return state.turn.snapshot()
