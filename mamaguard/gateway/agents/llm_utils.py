"""
LLM utility functions — output clean-up and transcript formatting.

Shared by the response generator and the clinical summarizer.
"""

from __future__ import annotations

import re
from typing import Iterable

_LABEL_PREFIX = re.compile(r"^(clinical\s+)?(summary|resume|résumé)\s*:\s*", re.IGNORECASE)


def collapse_whitespace(text: str) -> str:
    """Single paragraph: newlines, bullets' spacing and runs of spaces become one space."""
    return " ".join((text or "").split())


def truncate_words(text: str, max_words: int) -> str:
    """
    Cut ``text`` at a word boundary so it holds at most ``max_words`` words.

    A cut sentence is closed with a period (trailing commas/semicolons
    dropped first) so the stored note never ends mid-clause punctuation.
    """
    words = text.split()
    if len(words) <= max_words:
        return text
    cut = " ".join(words[:max_words]).rstrip(",;:-–—")
    if not cut.endswith((".", "!", "?")):
        cut += "."
    return cut


def strip_label(text: str) -> str:
    """Drop a leading "Summary:" style label some models add despite instructions."""
    return _LABEL_PREFIX.sub("", text, count=1)


def format_transcript(lines: Iterable[tuple[str, str]], empty: str = "(No messages yet)") -> str:
    """Render (role, content) pairs as "role: content" lines."""
    rendered = [f"{role}: {collapse_whitespace(content)}" for role, content in lines if content]
    return "\n".join(rendered) if rendered else empty
