"""
Token budgeting helpers.

Token counts here are an approximation: words x 1.3 plus a 10% character
overhead. They are never exact tokenizer counts.
"""

from dataclasses import dataclass
from typing import Optional

# Ratios kept as integer tenths so estimates are exact.
WORDS_TOKEN_TENTHS = 13
CHARS_TOKEN_TENTHS = 1

TERMINAL_PUNCTUATION = ".!?"
ELLIPSIS = "..."


def estimate_tokens(text: str) -> int:
    """Approximate token cost of text; 0 for blank text."""
    if not text or not text.strip():
        return 0
    words = len(text.split())
    word_tokens = -(-words * WORDS_TOKEN_TENTHS // 10)
    overhead = -(-len(text) * CHARS_TOKEN_TENTHS // 10)
    return word_tokens + overhead


def cut_at_sentence(text: str, max_chars: int, lookback: int = 200) -> Optional[str]:
    """
    Longest prefix of text, at most max_chars long, that ends a sentence.

    A sentence ends at terminal punctuation followed by whitespace or the end
    of the text, searched at most `lookback` characters back from the limit.
    Returns None when there is no such boundary.
    """
    if max_chars <= 0:
        return None
    if len(text) <= max_chars:
        return text

    floor = max(0, max_chars - lookback)
    for i in range(max_chars - 1, floor - 1, -1):
        if text[i] in TERMINAL_PUNCTUATION and (i + 1 == len(text) or text[i + 1].isspace()):
            if i > 0:
                return text[: i + 1].rstrip()
    return None


def truncate_at_sentence(text: str, max_chars: int, lookback: int = 200) -> str:
    """
    Shorten text to at most max_chars characters.

    Cuts at the last sentence boundary (see `cut_at_sentence`). Without one,
    cuts at the last word boundary and appends an ellipsis.
    """
    if max_chars <= 0:
        return ""
    sentence = cut_at_sentence(text, max_chars, lookback)
    if sentence is not None:
        return sentence

    room = max_chars - len(ELLIPSIS)
    if room <= 0:
        return text[:max_chars]
    window = text[:room]
    cut = max(window.rfind(" "), window.rfind("\n"), window.rfind("\t"))
    if text[room].isspace():
        cut = room
    if cut <= 0:
        return window.rstrip() + ELLIPSIS
    return window[:cut].rstrip() + ELLIPSIS


@dataclass(frozen=True)
class ContextBudget:
    """Per-request token limits; never persisted."""

    total_tokens: int
    conversation_cap: int = 300
    conversation_window: int = 6
    pinned_fraction: float = 1.0 / 3.0
    custom_fraction: float = 0.6

    def __post_init__(self):
        if self.total_tokens < 0:
            raise ValueError("total_tokens must be non-negative")

    @property
    def pinned_allowance(self) -> int:
        return int(self.total_tokens * self.pinned_fraction)

    def custom_ceiling(self, remaining: int) -> int:
        return int(max(0, remaining) * self.custom_fraction)

    @classmethod
    def from_settings(cls, settings, total_tokens: Optional[int] = None) -> "ContextBudget":
        return cls(
            total_tokens=settings.total_token_budget if total_tokens is None else max(0, total_tokens),
            conversation_cap=settings.conversation_token_cap,
            conversation_window=settings.conversation_window,
            pinned_fraction=settings.pinned_fraction,
            custom_fraction=settings.custom_fraction,
        )
