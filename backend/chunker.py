"""
Text chunking module.

Splits journal entries into paragraph-aligned chunks bounded by a word-count
ceiling. Paragraphs are never split; a single paragraph longer than the
ceiling becomes one oversized chunk.
"""

import re
from dataclasses import dataclass
from typing import List

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")


@dataclass(frozen=True)
class TextChunk:
    chunk_id: str
    note_id: str
    ordinal: int
    text: str
    word_count: int


def chunk_id_for(note_id: str, ordinal: int) -> str:
    return f"{note_id}::{ordinal}"


class Chunker:
    """Handles splitting text into paragraph-aligned chunks for embedding."""

    def __init__(self, max_words: int = 500):
        """
        Initialize the chunker.

        Args:
            max_words: Word-count ceiling for a chunk built from several paragraphs
        """
        if max_words < 1:
            raise ValueError("max_words must be at least 1")
        self.max_words = max_words

    def chunk(self, text: str, note_id: str) -> List[TextChunk]:
        """
        Split text into chunks for embedding.

        Args:
            text: The text to chunk
            note_id: Identifier for the parent document

        Returns:
            Ordered list of chunks; empty when the text has no content
        """
        if not text or not text.strip():
            return []

        paragraphs = self._split_into_paragraphs(self._clean_text(text))

        groups: List[List[str]] = []
        current: List[str] = []
        current_words = 0

        for paragraph in paragraphs:
            words = self.count_words(paragraph)
            if current and current_words + words > self.max_words:
                groups.append(current)
                current = []
                current_words = 0
            current.append(paragraph)
            current_words += words

        if current:
            groups.append(current)

        chunks: List[TextChunk] = []
        for ordinal, group in enumerate(groups):
            body = "\n\n".join(group)
            chunks.append(
                TextChunk(
                    chunk_id=chunk_id_for(note_id, ordinal),
                    note_id=note_id,
                    ordinal=ordinal,
                    text=body,
                    word_count=self.count_words(body),
                )
            )
        return chunks

    @staticmethod
    def count_words(text: str) -> int:
        return len(text.split())

    def _clean_text(self, text: str) -> str:
        """Normalize line endings and trim outer whitespace."""
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        return text.strip()

    def _split_into_paragraphs(self, text: str) -> List[str]:
        """Split text into paragraphs."""
        paragraphs = _PARAGRAPH_SPLIT_RE.split(text)
        return [p.strip() for p in paragraphs if p.strip()]
