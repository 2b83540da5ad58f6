"""
Retrieval tests: ranking, thresholds and the end-to-end indexing path.
"""

import os
import sys
from unittest.mock import Mock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from config import Settings
from models import NoteKind, NoteRecord
from retriever import SimilarityRetriever
from services import IndexingService


def _note(note_id, content, updated_at=1.0):
    return NoteRecord(id=note_id, title=note_id, kind=NoteKind.NOTE, content=content, updated_at=updated_at)


class TestSimilarityRetriever:
    def setup_method(self):
        self.indexing = IndexingService(settings=Settings())
        self.retriever = self.indexing.retriever

    def test_empty_corpus_returns_no_results(self):
        assert self.retriever.find_similar("anything at all") == []
        assert self.indexing.find_similar("anything at all") == []

    def test_end_to_end_hiking_entry(self):
        self.indexing.index_note(_note("hike", "I went hiking in the mountains today and felt peaceful"))

        hits = self.retriever.find_similar("peaceful mountain experience", top_k=5)
        assert len(hits) == 1
        assert hits[0].note_id == "hike"
        assert hits[0].score > 0.15
        assert hits[0].score == pytest.approx(1 / 3)

        assert self.retriever.find_similar("spreadsheet formulas", top_k=5) == []

    def test_unique_terms_rank_their_chunk_first(self):
        self.indexing.index_note(_note("garden", "garden tomatoes harvest"))
        self.indexing.index_note(_note("sailing", "sailing harbor regatta wind"))
        self.indexing.index_note(_note("money", "budget invoice taxes"))

        hits = self.retriever.find_similar("tomatoes harvest garden", top_k=3)
        assert hits[0].note_id == "garden"
        others = [h.score for h in hits[1:]]
        assert all(hits[0].score > score for score in others)

    def test_scores_strictly_ordered_and_capped(self):
        self.indexing.index_note(_note("a", "garden tomatoes harvest"))
        self.indexing.index_note(_note("b", "garden tomatoes basil growing"))
        self.indexing.index_note(_note("c", "garden fence painted yellow"))

        hits = self.retriever.find_similar("garden tomatoes harvest", top_k=2)
        assert len(hits) == 2
        assert hits[0].note_id == "a"
        assert hits[0].score >= hits[1].score

    def test_top_k_zero_returns_nothing(self):
        self.indexing.index_note(_note("a", "garden tomatoes harvest"))
        assert self.retriever.find_similar("garden", top_k=0) == []

    def test_ties_prefer_recent_documents(self):
        self.indexing.index_note(_note("old", "garden tomatoes harvest", updated_at=100.0))
        self.indexing.index_note(_note("new", "garden tomatoes harvest", updated_at=200.0))

        hits = self.retriever.find_similar("garden", top_k=5)
        assert [h.note_id for h in hits] == ["new", "old"]
        assert hits[0].score == hits[1].score

    def test_threshold_is_configurable(self):
        indexing = IndexingService(settings=Settings(similarity_threshold=0.5))
        indexing.index_note(_note("hike", "I went hiking in the mountains today and felt peaceful"))
        assert indexing.find_similar("peaceful mountain experience") == []

    def test_stop_word_query_is_not_matchable(self):
        self.indexing.index_note(_note("a", "garden tomatoes harvest"))
        assert self.retriever.find_similar("the and of") == []

    def test_scan_failure_degrades_to_empty(self):
        index = Mock()
        index.scan.side_effect = OSError("disk gone")
        retriever = SimilarityRetriever(self.indexing.embedder, index)

        assert retriever.find_similar("garden tomatoes") == []

    def test_deleted_note_is_not_returned(self):
        self.indexing.index_note(_note("a", "garden tomatoes harvest"))
        self.indexing.delete_notes(["a"])
        assert self.retriever.find_similar("garden tomatoes") == []
