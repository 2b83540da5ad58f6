"""
Similarity retrieval over indexed chunks.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from embedder import HashingEmbedder
from indexer import ChunkIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrievalHit:
    chunk_id: str
    note_id: str
    ordinal: int
    text: str
    score: float
    note_updated_at: float = 0.0


class SimilarityRetriever:
    """Embeds a query and ranks every stored chunk by cosine similarity."""

    def __init__(
        self,
        embedder: HashingEmbedder,
        index: ChunkIndex,
        min_similarity: float = 0.15,
        default_top_k: int = 10,
    ):
        self.embedder = embedder
        self.index = index
        self.min_similarity = min_similarity
        self.default_top_k = default_top_k

    def corpus_size(self) -> int:
        return self.index.chunk_count()

    def find_similar(self, query: str, top_k: Optional[int] = None) -> List[RetrievalHit]:
        """
        Rank chunks against a query.

        Args:
            query: Free text
            top_k: Maximum number of hits; the configured default when omitted

        Returns:
            Hits with score >= min_similarity, best first. Ties go to the most
            recently modified parent note. Empty when nothing is relevant.
        """
        limit = self.default_top_k if top_k is None else top_k
        if limit <= 0:
            return []

        # Corruption errors from embedding propagate; the indexing pipeline
        # owns recovery.
        vector = self.embedder.embed(query)
        if not vector.matchable:
            logger.debug("Query has no matchable terms: %r", query)
            return []

        try:
            rows = self.index.scan(vector.values)
        except Exception as e:
            logger.warning("Chunk scan failed, returning no results: %s", e)
            return []

        hits = [
            RetrievalHit(
                chunk_id=meta["chunk_id"],
                note_id=meta["note_id"],
                ordinal=int(meta.get("ordinal", 0)),
                text=meta.get("text", ""),
                score=score,
                note_updated_at=float(meta.get("note_updated_at", 0.0)),
            )
            for meta, score in rows
            if score >= self.min_similarity
        ]
        hits.sort(key=lambda hit: (-hit.score, -hit.note_updated_at, hit.chunk_id))
        return hits[:limit]
