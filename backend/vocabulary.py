"""Corpus vocabulary statistics for the hashing embedder.

The store keeps document frequency per term plus the set of document ids
already counted. Writers are serialized by a single lock and publish a new
immutable snapshot after every change; readers only ever see a complete
snapshot.
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

from errors import StorageWriteError, VocabularyCorruptionError

logger = logging.getLogger(__name__)

_NON_WORD_RE = re.compile(r"[^\w\s]")

STOP_WORDS: FrozenSet[str] = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "is", "are", "was", "were", "be", "been", "have",
        "has", "had", "do", "does", "did", "will", "would", "could", "should",
        "this", "that", "these", "those", "i", "me", "my", "we", "our", "you",
        "your", "he", "him", "his", "she", "her", "it", "its", "they", "them",
    }
)


def tokenize(text: str) -> List[str]:
    """Case-fold, strip punctuation, split on whitespace and drop stop words."""
    if not text:
        return []
    cleaned = _NON_WORD_RE.sub(" ", text.casefold())
    return [token for token in cleaned.split() if token not in STOP_WORDS]


@dataclass(frozen=True)
class VocabularySnapshot:
    document_frequency: Mapping[str, int]
    document_count: int

    def idf(self, term: str, unseen: float) -> float:
        df = self.document_frequency.get(term, 0)
        if df <= 0:
            return unseen
        return math.log((1.0 + self.document_count) / (1.0 + df)) + 1.0

    def __contains__(self, term: object) -> bool:
        return term in self.document_frequency

    def __len__(self) -> int:
        return len(self.document_frequency)


_EMPTY_SNAPSHOT = VocabularySnapshot(document_frequency=MappingProxyType({}), document_count=0)


class VocabularyStore:
    """Document-frequency table and processed-document set for one corpus."""

    def __init__(self, path: Optional[str] = None, min_chars: int = 10):
        """
        Args:
            path: JSON file for persistence; None keeps the vocabulary in memory
            min_chars: Texts shorter than this (after stripping) are never observed
        """
        self.path = path
        self.min_chars = min_chars
        self._write_lock = threading.Lock()
        self._df: Dict[str, int] = {}
        self._processed: FrozenSet[str] = frozenset()
        self._snapshot: VocabularySnapshot = _EMPTY_SNAPSHOT
        self.needs_recovery = False
        self._load()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def snapshot(self) -> VocabularySnapshot:
        return self._snapshot

    def is_processed(self, document_id: str) -> bool:
        return document_id in self._processed

    def processed_documents(self) -> FrozenSet[str]:
        return self._processed

    @property
    def document_count(self) -> int:
        return self._snapshot.document_count

    @property
    def vocabulary_size(self) -> int:
        return len(self._snapshot)

    def validate(self) -> None:
        """Raise VocabularyCorruptionError when the statistics cannot be trusted."""
        snapshot = self._snapshot
        for term, df in snapshot.document_frequency.items():
            if not isinstance(df, int) or isinstance(df, bool):
                raise VocabularyCorruptionError(f"Non-integer document frequency for {term!r}: {df!r}")
            if df <= 0 or df > snapshot.document_count:
                raise VocabularyCorruptionError(
                    f"Document frequency {df} for {term!r} outside 1..{snapshot.document_count}"
                )
            if not math.isfinite(snapshot.idf(term, 0.0)):
                raise VocabularyCorruptionError(f"Non-finite weight for {term!r}")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def observe(self, document_id: str, text: str) -> bool:
        """Count a document's distinct terms once. Returns True when counters changed."""
        if not document_id:
            return False
        if text is None or len(text.strip()) < self.min_chars:
            logger.debug("Skipping vocabulary update for %s: content below %d chars", document_id, self.min_chars)
            return False

        terms = set(tokenize(text))
        with self._write_lock:
            if self.is_processed(document_id):
                return False

            df = dict(self._df)
            for term in terms:
                df[term] = df.get(term, 0) + 1
            processed = self._processed | {document_id}

            self._persist(df, processed)
            self._publish(df, processed)

        logger.debug("Observed %s (%d distinct terms)", document_id, len(terms))
        return True

    def observe_many(self, documents: Iterable[Tuple[str, str]]) -> int:
        """Count several documents under one lock; the file is written once.

        Returns the number of documents newly counted.
        """
        prepared = [
            (document_id, set(tokenize(text)))
            for document_id, text in documents
            if document_id and text is not None and len(text.strip()) >= self.min_chars
        ]
        with self._write_lock:
            df = dict(self._df)
            processed = set(self._processed)
            counted = 0
            for document_id, terms in prepared:
                if document_id in processed:
                    continue
                for term in terms:
                    df[term] = df.get(term, 0) + 1
                processed.add(document_id)
                counted += 1
            if counted:
                self._persist(df, processed)
                self._publish(df, frozenset(processed))
        logger.debug("Observed %d document(s) in one batch", counted)
        return counted

    def replace_with(self, other: "VocabularyStore") -> None:
        """Adopt another store's counters wholesale, persisting once."""
        df = dict(other.snapshot().document_frequency)
        processed = other.processed_documents()
        with self._write_lock:
            self._persist(df, processed)
            self._publish(df, processed)
            self.needs_recovery = False
        logger.info("Vocabulary replaced: %d terms across %d documents", len(df), len(processed))

    def _publish(self, df: Dict[str, int], processed: FrozenSet[str]) -> None:
        self._df = df
        self._processed = processed
        self._snapshot = VocabularySnapshot(
            document_frequency=MappingProxyType(df),
            document_count=len(processed),
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            df = {str(term): value for term, value in (payload.get("document_frequency") or {}).items()}
            processed = frozenset(str(doc_id) for doc_id in (payload.get("processed_documents") or []))
        except Exception as exc:
            logger.warning("Failed to load vocabulary from %s: %s", self.path, exc)
            self.needs_recovery = True
            return

        self._publish(df, processed)
        try:
            self.validate()
        except VocabularyCorruptionError as exc:
            logger.warning("Loaded vocabulary is corrupt: %s", exc)
            self.needs_recovery = True
            return
        logger.info("Loaded vocabulary: %d terms across %d documents", len(df), len(processed))

    def _persist(self, df: Dict[str, int], processed: Set[str] | FrozenSet[str]) -> None:
        if not self.path:
            return
        payload = {
            "document_frequency": df,
            "processed_documents": sorted(processed),
        }
        tmp_path = f"{self.path}.tmp"
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StorageWriteError(self.path, exc) from exc
