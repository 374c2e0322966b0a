"""Text heuristics for terminal output."""

import re
from typing import Optional

from recall.config import get_settings

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")

# Prompt prefix on an input line: "$ ", "> ", "➜ dir ", "[branch]$ "
PROMPT_PREFIX = re.compile(r"^\s*(?:\[[^\]]*\]\s*\$|➜\s*\S*|\$|>|%|#)\s+")

# Error signatures, checked in order; first match names the error type
ERROR_PATTERNS = [
    ("syntax", re.compile(r"\bsyntax\s*error\b|\bunexpected token\b|\bparse error\b", re.IGNORECASE)),
    ("type", re.compile(r"\btype\s*error\b|\bis not a function\b|\bcannot read propert", re.IGNORECASE)),
    ("reference", re.compile(r"\breference\s*error\b|\bis not defined\b|\bname\s*error\b", re.IGNORECASE)),
    ("module", re.compile(r"\bmodule not found\b|\bcannot find module\b|\bno module named\b|\bimport\s*error\b", re.IGNORECASE)),
    ("permission", re.compile(r"\bpermission denied\b|\bEACCES\b|\bEPERM\b", re.IGNORECASE)),
    ("connection", re.compile(r"\bECONNREFUSED\b|\bconnection refused\b|\btimed? ?out\b|\bETIMEDOUT\b", re.IGNORECASE)),
    ("404", re.compile(r"\b404\b|\bnot found\b", re.IGNORECASE)),
    ("500", re.compile(r"\b500\b|\binternal server error\b", re.IGNORECASE)),
    ("generic", re.compile(r"\berror\b|\bexception\b|\bfailed\b|\btraceback\b|\bfatal\b", re.IGNORECASE)),
]

RESOLUTION_PATTERN = re.compile(
    r"\b(?:fixed|resolved|solved|solution|the fix|corrected|now works|should work now|working now)\b",
    re.IGNORECASE,
)

# Lines that are terminal chrome rather than assistant text
NOISE_PATTERNS = [
    re.compile(r"^\s*(?:\[[^\]]*\]\s*\$|➜\s*\S*|\$|>|%)\s*$"),
    re.compile(r"^\s*(?:\$|>|➜)\s+\S"),
    re.compile(r"^\s*(?:loading|connecting|thinking|initializing)\b.*(?:\.\.\.|…)?\s*$", re.IGNORECASE),
    re.compile(r"^\s*\[\d{1,2}:\d{2}(?::\d{2})?\]\s*$"),
    re.compile(r"[\x00-\x08\x0b-\x1f\x7f]"),
]

BARE_PROMPT = NOISE_PATTERNS[0]

# Banners printed when an assistant session starts without a typed invocation
SESSION_BANNERS = [
    re.compile(r"starting\s+claude\s+code", re.IGNORECASE),
    re.compile(r"claude\s+code\s+(?:cli|session)", re.IGNORECASE),
    re.compile(r"connected\s+to\s+claude", re.IGNORECASE),
    re.compile(r"welcome.*claude", re.IGNORECASE),
]

# Openers typical of an assistant reply, matched against the first output line
REPLY_OPENERS = re.compile(
    r"^(?:I'll|I\s+can|Let\s+me|I\s+need\s+to|I\s+understand|Looking\s+at|Based\s+on|Here's"
    r"|To\s+(?:help|assist|fix)|I\s+see|The\s+(?:issue|problem|error)\s+is)\s",
    re.IGNORECASE,
)


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


def strip_prompt(line: str) -> str:
    """Remove a leading shell prompt from an input line."""
    return PROMPT_PREFIX.sub("", line, count=1).strip()


def is_bare_prompt(line: str) -> bool:
    return bool(BARE_PROMPT.match(line))


def is_noise(line: str) -> bool:
    """Whether an output line is prompt/echo/progress chrome."""
    if not line.strip():
        return True
    return any(p.search(line) for p in NOISE_PATTERNS)


def clean_output(content: str) -> list[str]:
    """ANSI-stripped output lines that survive the noise filter."""
    lines = strip_ansi(content).replace("\r\n", "\n").replace("\r", "\n").split("\n")
    return [line.rstrip() for line in lines if not is_noise(line)]


def is_session_banner(text: str) -> bool:
    stripped = strip_ansi(text)
    return any(p.search(stripped) for p in SESSION_BANNERS)


def opens_reply(lines: list[str]) -> bool:
    """Whether cleaned output lines start the way an assistant reply does."""
    return bool(lines) and bool(REPLY_OPENERS.match(lines[0].strip()))


def detect_error_type(text: str) -> Optional[str]:
    """Name the first error signature found in the text, if any."""
    if not text:
        return None
    for error_type, pattern in ERROR_PATTERNS:
        if pattern.search(text):
            return error_type
    return None


def contains_resolution(text: str) -> bool:
    return bool(text) and bool(RESOLUTION_PATTERN.search(text))


def find_success_marker(text: str, markers: Optional[list[str]] = None) -> Optional[str]:
    """First configured success marker present in the text (case-insensitive)."""
    if not text:
        return None
    if markers is None:
        markers = get_settings().patterns.success_markers
    lowered = text.lower()
    for marker in markers:
        if marker.isascii() and marker.replace(" ", "").isalpha():
            if re.search(rf"\b{re.escape(marker.lower())}\b", lowered):
                return marker
        elif marker.lower() in lowered:
            return marker
    return None


def assess_outcome(reply: str) -> tuple[Optional[int], Optional[str]]:
    """Classify a reply as (success, error_type).

    Success markers win: (1, None). An error signature alone: (0, type).
    Otherwise the outcome is unknown: (None, None).
    """
    if find_success_marker(reply):
        return 1, None
    error_type = detect_error_type(reply)
    if error_type:
        return 0, error_type
    return None, None


def command_name(line: str) -> Optional[str]:
    """Lowercased first word of an input line with its prompt removed."""
    stripped = strip_prompt(strip_ansi(line))
    if not stripped:
        return None
    return stripped.split()[0].lower()
