"""Heuristics over raw CLI terminal output.

The external CLI does not announce when it needs input, so the
supervisor inspects the most recent output after it goes quiet.
"""
from __future__ import annotations

import re

from .models import WaitingInputType

_ANSI_PATTERNS = [
    re.compile(r"\x1b\[[0-9;]*m"),
    re.compile(r"\x1b\[\?[0-9;]*[hl]"),
    re.compile(r"\x1b\[[0-9;]*[a-zA-Z]"),
    re.compile(r"\x1b\][^\x07]*\x07"),
    re.compile(r"\x1b[PX^_].*?\x1b\\", re.DOTALL),
    re.compile(r"\x1b[>=]"),
    re.compile(r"[\x00-\x09\x0B-\x1F\x7F]"),
]

_FOCUS_EVENTS = re.compile(r"\x1b\[[IO]")

_SESSION_ID_PATTERNS = [
    re.compile(r"session[:\s]+([a-f0-9-]{36})", re.IGNORECASE),
    re.compile(
        r"([a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12})",
        re.IGNORECASE,
    ),
]

_YES_NO = re.compile(r"\(y/n\)|\[y/N\]|\[Y/n\]", re.IGNORECASE)

_SECTION_SPLIT = re.compile(r"(?:⏺|─{3,})")

# UI chrome that contains '?' without being a question.
_CHROME = [
    re.compile(r"\? for shortcuts"),
    re.compile(r'Try "[^"]*"'),
    re.compile(r"/model to try"),
    re.compile(r"bypass permissions", re.IGNORECASE),
    re.compile(r"shift\+tab to cycle", re.IGNORECASE),
]

_QUESTION_WORDS = re.compile(
    r"\b(?:what|which|how|where|when|why|who|would you|could you|do you|"
    r"should|can you|let me know|give me|tell me|prefer|like to|want to|"
    r"choose|select|pick|decide|confirm|proceed|continue|approach)\b"
    r"|\boption|\balternative",
    re.IGNORECASE,
)


def strip_ansi(text: str) -> str:
    for pattern in _ANSI_PATTERNS:
        text = pattern.sub("", text)
    return text.replace("\r", "")


def filter_focus_events(text: str) -> str:
    """Drop terminal focus-in/out reports that confuse the CLI."""
    return _FOCUS_EVENTS.sub("", text)


def extract_session_id(text: str) -> str | None:
    for pattern in _SESSION_ID_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def detect_waiting_for_input(text: str) -> WaitingInputType | None:
    """Return the input type the CLI is asking for, or None.

    ``text`` should already be ANSI stripped. Returns None for the
    normal idle prompt.
    """
    if "Enter to select" in text and "↑/↓ to navigate" in text:
        return WaitingInputType.QUESTION
    if "Allow" in text and "Deny" in text:
        return WaitingInputType.PERMISSION
    if _YES_NO.search(text):
        return WaitingInputType.CONFIRMATION

    sections = _SECTION_SPLIT.split(text)
    last = sections[-1] if sections else text
    for pattern in _CHROME:
        last = pattern.sub("", last)

    if "?" not in last:
        return None
    if _QUESTION_WORDS.search(last):
        return WaitingInputType.QUESTION
    trimmed = last.strip()
    if trimmed.endswith("?") and len(trimmed) > 10:
        return WaitingInputType.QUESTION
    return None
