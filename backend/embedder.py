"""
Embedding module.

Feature-hashing TF-IDF embeddings: every term is hashed into a fixed number of
dimensions and weighted by term frequency times inverse document frequency
taken from the shared vocabulary. Vectors are L2-normalized, so a dot product
is a cosine similarity.
"""

import hashlib
import math
from collections import Counter
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

import numpy as np

from errors import VocabularyCorruptionError
from vocabulary import VocabularySnapshot, VocabularyStore, tokenize


@lru_cache(maxsize=65536)
def hash_dimension(term: str, dimension: int) -> int:
    """Stable bucket for a term: first 8 bytes of SHA-256, big-endian, mod dimension."""
    digest = hashlib.sha256(term.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % dimension


@dataclass(frozen=True, eq=False)
class EmbeddingVector:
    values: np.ndarray
    matchable: bool

    @classmethod
    def zeros(cls, dimension: int) -> "EmbeddingVector":
        return cls(values=np.zeros(dimension, dtype=np.float64), matchable=False)

    def tolist(self) -> List[float]:
        return [float(v) for v in self.values]


class HashingEmbedder:
    """Turns text into fixed-length TF-IDF vectors over hashed term buckets."""

    def __init__(
        self,
        vocabulary: VocabularyStore,
        dimension: int = 256,
        unseen_idf: float = 0.5,
    ):
        """
        Initialize the embedder.

        Args:
            vocabulary: Shared document-frequency store
            dimension: Number of hash buckets per vector
            unseen_idf: IDF factor applied to terms the vocabulary has never seen
        """
        if dimension < 1:
            raise ValueError("dimension must be at least 1")
        self.vocabulary = vocabulary
        self.embedding_dim = dimension
        self.unseen_idf = unseen_idf

    def get_embedding_dim(self) -> int:
        return self.embedding_dim

    def dimension_for(self, term: str) -> int:
        return hash_dimension(term, self.embedding_dim)

    def embed(self, text: str, snapshot: Optional[VocabularySnapshot] = None) -> EmbeddingVector:
        """
        Convert text to an embedding vector.

        Args:
            text: Text to embed
            snapshot: Vocabulary state to weight against; the current one when omitted

        Returns:
            Unit-length vector, or a zero vector marked non-matchable when the
            text has no usable terms
        """
        tokens = tokenize(text)
        if not tokens:
            return EmbeddingVector.zeros(self.embedding_dim)

        if snapshot is None:
            snapshot = self.vocabulary.snapshot()

        counts = Counter(tokens)
        total = float(len(tokens))
        values = np.zeros(self.embedding_dim, dtype=np.float64)

        # Sorted accumulation keeps float sums identical across runs.
        for term in sorted(counts):
            weight = (counts[term] / total) * snapshot.idf(term, self.unseen_idf)
            if not math.isfinite(weight) or weight < 0:
                raise VocabularyCorruptionError(f"Invalid weight {weight!r} for term {term!r}")
            values[self.dimension_for(term)] += weight

        norm = float(np.linalg.norm(values))
        if norm == 0.0 or not math.isfinite(norm):
            return EmbeddingVector.zeros(self.embedding_dim)
        return EmbeddingVector(values=values / norm, matchable=True)

    def embed_batch(self, texts: List[str], snapshot: Optional[VocabularySnapshot] = None) -> List[EmbeddingVector]:
        """Embed several texts against a single vocabulary snapshot."""
        if not texts:
            return []
        if snapshot is None:
            snapshot = self.vocabulary.snapshot()
        return [self.embed(text, snapshot=snapshot) for text in texts]
