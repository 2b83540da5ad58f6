"""
Indexer module.

Persists chunk text and vectors to a JSON file and serves a full linear scan
over a dense numpy matrix for similarity retrieval.
"""

import json
import logging
import os
import threading
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from errors import StorageWriteError

logger = logging.getLogger(__name__)


class ChunkIndex:
    """Chunk metadata and vectors, keyed by chunk id."""

    def __init__(self, metadata_path: Optional[str] = None):
        """
        Initialize the index.

        Args:
            metadata_path: Path to the chunk JSON file; None keeps chunks in memory
        """
        self.metadata_path = metadata_path
        self.metadata: Dict[str, Dict] = {}
        self._lock = threading.RLock()

        self._dense_ids: List[str] = []
        self._dense_matrix: Optional[np.ndarray] = None
        self._dense_dirty = True

        self._load_metadata()

    def _load_metadata(self):
        """Load chunk metadata from JSON file."""
        if not self.metadata_path or not os.path.exists(self.metadata_path):
            self.metadata = {}
            logger.info("No existing chunk index found, starting fresh")
            return
        try:
            with open(self.metadata_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            self.metadata = payload if isinstance(payload, dict) else {}
            logger.info("Loaded metadata for %d chunks", len(self.metadata))
        except Exception as e:
            logger.warning("Failed to load chunk index from %s: %s", self.metadata_path, e)
            self.metadata = {}

    def _save_metadata(self):
        """Save chunk metadata to JSON file; raises StorageWriteError on failure."""
        if not self.metadata_path:
            return
        tmp_path = f"{self.metadata_path}.tmp"
        try:
            os.makedirs(os.path.dirname(self.metadata_path) or ".", exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self.metadata, f)
            os.replace(tmp_path, self.metadata_path)
        except OSError as e:
            raise StorageWriteError(self.metadata_path, e) from e

    def update_note(self, note_id: str, chunk_records: List[Dict]) -> int:
        """
        Replace every chunk of a note.

        Args:
            note_id: ID of the note
            chunk_records: Dicts with chunk_id, ordinal, text, embedding, matchable
                and note_updated_at

        Returns:
            Number of chunks stored for the note
        """
        with self._lock:
            self._remove_note_chunks(note_id)
            self.metadata.update(self._entries_for(note_id, chunk_records))
            self._dense_dirty = True
            self._save_metadata()
        logger.debug("Indexed %d chunks for %s", len(chunk_records), note_id)
        return len(chunk_records)

    def replace_all(self, records_by_note: Dict[str, List[Dict]]) -> int:
        """Swap in a complete set of chunks, written to disk once. Returns the chunk count."""
        metadata: Dict[str, Dict] = {}
        for note_id, chunk_records in records_by_note.items():
            metadata.update(self._entries_for(note_id, chunk_records))
        with self._lock:
            self.metadata = metadata
            self._dense_dirty = True
            self._save_metadata()
        logger.info("Chunk index replaced: %d chunks across %d notes", len(metadata), len(records_by_note))
        return len(metadata)

    @staticmethod
    def _entries_for(note_id: str, chunk_records: List[Dict]) -> Dict[str, Dict]:
        entries: Dict[str, Dict] = {}
        for record in chunk_records:
            chunk_id = record["chunk_id"]
            entries[chunk_id] = {
                "chunk_id": chunk_id,
                "note_id": note_id,
                "ordinal": int(record.get("ordinal", 0)),
                "text": record["text"],
                "embedding": [float(v) for v in record["embedding"]],
                "matchable": bool(record.get("matchable", True)),
                "note_updated_at": float(record.get("note_updated_at", 0.0)),
            }
        return entries

    def _remove_note_chunks(self, note_id: str) -> int:
        chunks_to_remove = [cid for cid, meta in self.metadata.items() if meta.get("note_id") == note_id]
        for chunk_id in chunks_to_remove:
            del self.metadata[chunk_id]
        if chunks_to_remove:
            self._dense_dirty = True
        return len(chunks_to_remove)

    def delete_notes(self, note_ids: Iterable[str]) -> int:
        """Drop all chunks owned by the given notes."""
        removed = 0
        with self._lock:
            for note_id in note_ids:
                removed += self._remove_note_chunks(note_id)
            if removed:
                self._save_metadata()
        if removed:
            logger.info("Removed %d chunks", removed)
        return removed

    def delete_note(self, note_id: str) -> int:
        return self.delete_notes([note_id])

    def get_note_chunks(self, note_id: str) -> List[Dict]:
        """Get all chunks for a specific note, in ordinal order."""
        with self._lock:
            chunks = [meta for meta in self.metadata.values() if meta.get("note_id") == note_id]
        return sorted(chunks, key=lambda meta: meta.get("ordinal", 0))

    def chunk_count(self) -> int:
        return len(self.metadata)

    def get_stats(self) -> Dict:
        with self._lock:
            chunks_per_note: Dict[str, int] = {}
            for meta in self.metadata.values():
                note_id = meta.get("note_id", "")
                chunks_per_note[note_id] = chunks_per_note.get(note_id, 0) + 1
        return {
            "total_chunks": sum(chunks_per_note.values()),
            "total_notes": len(chunks_per_note),
            "chunks_per_note": chunks_per_note,
            "metadata_file": self.metadata_path,
        }

    def _rebuild_dense_cache(self, dimension: int):
        ids: List[str] = []
        rows: List[List[float]] = []
        for chunk_id, meta in self.metadata.items():
            if not meta.get("matchable", True):
                continue
            embedding = meta.get("embedding")
            if not isinstance(embedding, list) or len(embedding) != dimension:
                continue
            ids.append(chunk_id)
            rows.append(embedding)

        self._dense_ids = ids
        if rows:
            self._dense_matrix = np.asarray(rows, dtype=np.float64)
        else:
            self._dense_matrix = np.zeros((0, dimension), dtype=np.float64)
        self._dense_dirty = False

    def scan(self, query: np.ndarray) -> List[Tuple[Dict, float]]:
        """
        Score every stored chunk against a unit-length query vector.

        Returns:
            (chunk metadata, dot product) for each matchable chunk whose
            vector has the query's dimension
        """
        query = np.asarray(query, dtype=np.float64)
        dimension = int(query.shape[0])
        with self._lock:
            if (
                self._dense_dirty
                or self._dense_matrix is None
                or self._dense_matrix.shape[1] != dimension
            ):
                self._rebuild_dense_cache(dimension)
            if not self._dense_ids:
                return []
            scores = self._dense_matrix @ query
            return [
                (self.metadata[chunk_id], float(score))
                for chunk_id, score in zip(self._dense_ids, scores)
                if np.isfinite(score)
            ]
