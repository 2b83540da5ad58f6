"""
Unit tests for the hashing embedder.
"""

import os
import sys
from types import MappingProxyType

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from embedder import HashingEmbedder, hash_dimension
from errors import VocabularyCorruptionError
from vocabulary import VocabularySnapshot, VocabularyStore


class TestHashingEmbedder:
    """Test suite for the HashingEmbedder class."""

    def setup_method(self):
        self.vocabulary = VocabularyStore()
        self.embedder = HashingEmbedder(self.vocabulary, dimension=256, unseen_idf=0.5)

    def test_embedder_initialization(self):
        assert self.embedder.get_embedding_dim() == 256
        assert self.embedder.unseen_idf == 0.5
        with pytest.raises(ValueError):
            HashingEmbedder(self.vocabulary, dimension=0)

    def test_hash_dimension_is_stable(self):
        assert hash_dimension("went", 256) == 170
        assert hash_dimension("hiking", 256) == 240
        assert hash_dimension("peaceful", 256) == 42
        assert self.embedder.dimension_for("peaceful") == 42

    def test_embed_empty_text(self):
        """Blank or stop-word-only text yields a zero vector flagged non-matchable."""
        for text in ["", "   ", "the and of it"]:
            vector = self.embedder.embed(text)
            assert vector.matchable is False
            assert vector.values.shape == (256,)
            assert not np.any(vector.values)

    def test_embed_is_unit_length(self):
        self.vocabulary.observe("doc-1", "garden tomatoes harvest season")
        vector = self.embedder.embed("garden tomatoes in late summer")

        assert vector.matchable is True
        assert np.linalg.norm(vector.values) == pytest.approx(1.0)

    def test_embed_is_deterministic(self):
        self.vocabulary.observe("doc-1", "garden tomatoes harvest season")
        text = "Harvest the garden tomatoes, then harvest again."

        first = self.embedder.embed(text)
        second = self.embedder.embed(text)
        third = HashingEmbedder(self.vocabulary).embed(text)

        assert first.values.tobytes() == second.values.tobytes()
        assert first.values.tobytes() == third.values.tobytes()

    def test_unseen_terms_still_produce_vector(self):
        vector = self.embedder.embed("spreadsheet formulas")

        assert vector.matchable is True
        assert vector.values[255] == pytest.approx(vector.values[236])
        assert vector.values[255] > 0

    def test_rare_terms_outweigh_common_terms(self):
        self.vocabulary.observe("doc-1", "garden tomatoes ripening slowly")
        self.vocabulary.observe("doc-2", "garden basil growing fast")
        self.vocabulary.observe("doc-3", "garden fence painted today")

        vector = self.embedder.embed("garden basil")
        garden = vector.values[self.embedder.dimension_for("garden")]
        basil = vector.values[self.embedder.dimension_for("basil")]
        assert basil > garden

    def test_snapshot_pins_weights(self):
        self.vocabulary.observe("doc-1", "garden tomatoes ripening slowly")
        snapshot = self.vocabulary.snapshot()
        before = self.embedder.embed("garden basil", snapshot=snapshot)

        self.vocabulary.observe("doc-2", "garden basil growing fast")
        pinned = self.embedder.embed("garden basil", snapshot=snapshot)
        current = self.embedder.embed("garden basil")

        assert before.values.tobytes() == pinned.values.tobytes()
        assert not np.array_equal(before.values, current.values)

    def test_negative_weight_raises_corruption(self):
        corrupt = VocabularySnapshot(document_frequency=MappingProxyType({"river": 10}), document_count=0)
        with pytest.raises(VocabularyCorruptionError):
            self.embedder.embed("river stones", snapshot=corrupt)

    def test_embed_batch_uses_one_snapshot(self):
        self.vocabulary.observe("doc-1", "garden tomatoes ripening slowly")
        batch = self.embedder.embed_batch(["garden tomatoes", "", "ripening"])

        assert len(batch) == 3
        assert batch[0].matchable and not batch[1].matchable and batch[2].matchable
        assert batch[0].values.tobytes() == self.embedder.embed("garden tomatoes").values.tobytes()
        assert self.embedder.embed_batch([]) == []

    def test_tolist_round_trips_values(self):
        vector = self.embedder.embed("spreadsheet formulas")
        assert len(vector.tolist()) == 256
        assert all(isinstance(v, float) for v in vector.tolist())
