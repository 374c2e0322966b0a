"""Relevant memories: past successful conversations that match the task at hand.

Candidates come from plain SQL ``LIKE`` matching on keywords, error terms and
file extensions; a scoring pass then ranks them. Read-only.
"""

import logging
import re
from datetime import datetime
from typing import Optional

from sqlalchemy import Text, cast, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from recall.config import get_settings
from recall.processing.signals import clean_output
from recall.storage.models import ClaudeConversation, ContextSession, utcnow
from recall.storage.store import as_utc

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 160

STOP_WORDS = frozenset(
    "the a an and or but in on at to for of with by this that these those i you we they "
    "is are was were be been being have has had do does did will would should could can may might".split()
)

# Checked in order; earlier tables rank their terms first
KEYWORD_PATTERNS = [
    re.compile(
        r"\b(?:npm|yarn|node|python|pip|git|docker|kubectl|curl|wget|ssh|vim|nano|code|jest|test|build|deploy"
        r"|error|bug|fix|install|update|configure|setup|auth|login|token|api|database|db|sql|json|xml|html|css"
        r"|js|ts|jsx|tsx|py|java|cpp|rust|go|php|ruby|swift|kotlin)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(?:error|exception|failed|failure|crash|bug|issue|problem|broken|not working|doesn't work|can't"
        r"|cannot|unable)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b\w+\.(?:js|ts|jsx|tsx|py|java|cpp|c|rs|go|php|rb|swift|kt|html|css|scss|json|xml|md|txt|yml|yaml)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(?:react|vue|angular|express|fastapi|django|flask|spring|laravel|rails|nextjs|nuxt|gatsby|webpack"
        r"|vite|babel|typescript|javascript|deno|bun)\b",
        re.IGNORECASE,
    ),
]

ERROR_KEYWORDS = re.compile(
    r"\b(?:syntaxerror|typeerror|referenceerror|rangeerror|modulenotfounderror|importerror|keyerror"
    r"|timeout|connection|refused|denied|not found|module not found|command not found|permission denied"
    r"|access denied)\b",
    re.IGNORECASE,
)
STATUS_CODES = re.compile(r"\b(?:400|401|403|404|500|502|503|504)\b")
MODULE_NAME = re.compile(r"module ['\"]([^'\"]+)['\"]", re.IGNORECASE)


def extract_keywords(text: str) -> list[str]:
    """Search terms from free text: technical terms first, then other meaningful words."""
    found: list[str] = []
    for pattern in KEYWORD_PATTERNS:
        found.extend(m.group(0).lower() for m in pattern.finditer(text))
    words = re.sub(r"[^\w\s]", " ", text.lower()).split()
    found.extend(w for w in words if len(w) > 2 and w not in STOP_WORDS)
    return list(dict.fromkeys(found))


def extract_error_keywords(text: str) -> list[str]:
    if not text:
        return []
    found = [m.group(0).lower() for m in ERROR_KEYWORDS.finditer(text)]
    found.extend(m.group(0) for m in STATUS_CODES.finditer(text))
    found.extend(m.group(1).lower() for m in MODULE_NAME.finditer(text))
    return list(dict.fromkeys(found))


def file_extensions(files: list[str]) -> list[str]:
    exts = [f.rsplit(".", 1)[1].lower() for f in files if "." in f.rsplit("/", 1)[-1]]
    return list(dict.fromkeys(e for e in exts if e))


def _shared_files(current: list[str], involved: list[str]) -> list[str]:
    return [f for f in current if any(f in other or other in f for other in involved)]


def relevance_score(
    conv: ClaudeConversation,
    keywords: list[str],
    error_keywords: list[str],
    current_files: list[str],
    now: datetime,
) -> float:
    """Score a candidate between 0 and 1.

    Keyword hits in the question weigh more than hits in the reply; error
    terms weigh most. Recent, successful and longer conversations get small
    bonuses.
    """
    settings = get_settings().retrieval
    user_input = conv.user_input.lower()
    reply = conv.claude_reply.lower()

    score = 0.0
    for keyword in keywords:
        if keyword in user_input:
            score += 0.3
        if keyword in reply:
            score += 0.2
    for keyword in error_keywords:
        if keyword in user_input or keyword in reply:
            score += 0.5
    score += 0.25 * len(_shared_files(current_files, list(conv.files_involved or [])))

    age_days = (now - as_utc(conv.timestamp)).total_seconds() / 86400
    if age_days < settings.recent_days:
        score += 0.1
    if conv.success == 1:
        score += 0.1
    if len(conv.claude_reply) > 500:
        score += 0.05
    if len(conv.claude_reply) > 1000:
        score += 0.05
    return round(min(score, 1.0), 4)


def match_reason(
    conv: ClaudeConversation, keywords: list[str], current_files: list[str], error_context: Optional[str]
) -> str:
    reasons = []
    text = f"{conv.user_input}\n{conv.claude_reply}".lower()
    matched = [k for k in keywords if k in text]
    if matched:
        reasons.append("Similar keywords: " + ", ".join(matched[:3]))
    shared = _shared_files(current_files, list(conv.files_involved or []))
    if shared:
        reasons.append("Same files: " + ", ".join(shared[:2]))
    if error_context and conv.error_type:
        reasons.append(f"Similar error type: {conv.error_type}")
    return "; ".join(reasons) or "Similar context"


def quick_preview(reply: str) -> str:
    lines = clean_output(reply)
    preview = " ".join(line.strip() for line in lines if line.strip())
    if len(preview) > PREVIEW_CHARS:
        return preview[: PREVIEW_CHARS - 3].rstrip() + "..."
    return preview


def time_ago(value: datetime, now: datetime) -> str:
    seconds = max((now - as_utc(value)).total_seconds(), 0)
    if seconds < 60:
        return "just now"
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size:
            count = int(seconds // size)
            return f"{count} {unit}{'s' if count != 1 else ''} ago"
    return "just now"


async def _candidates(
    session: AsyncSession,
    folder_id: Optional[str],
    keywords: list[str],
    error_keywords: list[str],
    extensions: list[str],
    limit: int,
) -> list[tuple[ClaudeConversation, Optional[str]]]:
    query = (
        select(ClaudeConversation, ContextSession.summary)
        .join(ContextSession, ClaudeConversation.session_id == ContextSession.id)
        .where(ClaudeConversation.success == 1)
    )
    if folder_id:
        query = query.where(ContextSession.folder_id == folder_id)

    conditions = []
    for keyword in keywords:
        like = f"%{keyword}%"
        conditions.append(ClaudeConversation.user_input.ilike(like))
        conditions.append(ClaudeConversation.claude_reply.ilike(like))
    for keyword in error_keywords:
        like = f"%{keyword}%"
        conditions.append(ClaudeConversation.user_input.ilike(like))
        conditions.append(ClaudeConversation.claude_reply.ilike(like))
        conditions.append(ClaudeConversation.error_type.ilike(like))
    files_text = cast(ClaudeConversation.files_involved, Text)
    for ext in extensions:
        conditions.append(files_text.ilike(f"%.{ext}%"))
    if conditions:
        query = query.where(or_(*conditions))

    query = query.order_by(ClaudeConversation.timestamp.desc()).limit(limit)
    result = await session.execute(query)
    return [(conv, summary) for conv, summary in result.all()]


async def find_relevant_conversations(
    session: AsyncSession,
    query: str,
    folder_id: Optional[str] = None,
    current_files: Optional[list[str]] = None,
    error_context: Optional[str] = None,
    limit: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[dict]:
    """Past successful conversations relevant to ``query``, best first.

    Args:
        query: What the user is asking or doing now.
        folder_id: Limit the search to one project's context folder.
        current_files: Files open or being edited right now.
        error_context: Error output the user is looking at, if any.
        limit: Maximum results; defaults to ``retrieval.max_results``.
        now: Reference time for the recency bonus.
    """
    settings = get_settings().retrieval
    now = now or utcnow()
    current_files = current_files or []
    limit = limit or settings.max_results

    keywords = extract_keywords(query)
    error_keywords = extract_error_keywords(error_context or "")
    extensions = file_extensions(current_files)
    logger.debug("Retrieval keywords %s, error terms %s, extensions %s", keywords, error_keywords, extensions)

    candidates = await _candidates(
        session, folder_id, keywords, error_keywords, extensions, settings.candidate_limit
    )
    scored = []
    for conv, summary in candidates:
        score = relevance_score(conv, keywords, error_keywords, current_files, now)
        if score <= settings.min_score:
            continue
        scored.append((score, conv, summary))
    scored.sort(key=lambda item: item[0], reverse=True)

    return [
        {
            "id": conv.id,
            "userInput": conv.user_input,
            "preview": quick_preview(conv.claude_reply),
            "relevanceScore": score,
            "matchReason": match_reason(conv, keywords, current_files, error_context),
            "timeAgo": time_ago(conv.timestamp, now),
            "timestamp": as_utc(conv.timestamp).isoformat(),
            "filesInvolved": list(conv.files_involved or []),
            "errorType": conv.error_type,
            "sessionSummary": summary,
        }
        for score, conv, summary in scored[:limit]
    ]
