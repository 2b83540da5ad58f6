"""
Unit tests for the chunk index.
"""

import json
import os
import shutil
import sys
import tempfile
from unittest.mock import patch

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from errors import StorageWriteError
from indexer import ChunkIndex


def _unit(dim, *hot):
    v = np.zeros(dim)
    for i in hot:
        v[i] = 1.0
    return v / np.linalg.norm(v)


def _record(note_id, ordinal, vector, text="chunk text", matchable=True, updated=1.0):
    return {
        "chunk_id": f"{note_id}::{ordinal}",
        "ordinal": ordinal,
        "text": text,
        "embedding": list(vector),
        "matchable": matchable,
        "note_updated_at": updated,
    }


class TestChunkIndex:
    """Test suite for ChunkIndex."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.metadata_path = os.path.join(self.temp_dir, "index", "chunks.json")
        self.index = ChunkIndex(metadata_path=self.metadata_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_starts_empty(self):
        assert self.index.chunk_count() == 0
        assert self.index.scan(_unit(4, 0)) == []

    def test_update_note_stores_chunks(self):
        stored = self.index.update_note("a", [_record("a", 0, _unit(4, 0)), _record("a", 1, _unit(4, 1))])

        assert stored == 2
        assert self.index.chunk_count() == 2
        assert self.index.get_note_chunks("a")[1]["chunk_id"] == "a::1"
        assert [c["ordinal"] for c in self.index.get_note_chunks("a")] == [0, 1]

    def test_update_replaces_previous_chunks(self):
        self.index.update_note("a", [_record("a", 0, _unit(4, 0)), _record("a", 1, _unit(4, 1))])
        self.index.update_note("a", [_record("a", 0, _unit(4, 2), text="rewritten")])

        assert self.index.chunk_count() == 1
        assert [c["chunk_id"] for c in self.index.get_note_chunks("a")] == ["a::0"]
        assert self.index.get_note_chunks("a")[0]["text"] == "rewritten"

    def test_delete_notes(self):
        self.index.update_note("a", [_record("a", 0, _unit(4, 0))])
        self.index.update_note("b", [_record("b", 0, _unit(4, 1))])

        assert self.index.delete_notes(["a", "missing"]) == 1
        assert self.index.get_stats()["chunks_per_note"] == {"b": 1}

    def test_scan_scores_dot_products(self):
        self.index.update_note("a", [_record("a", 0, _unit(4, 0))])
        self.index.update_note("b", [_record("b", 0, _unit(4, 0, 1))])

        scores = {meta["note_id"]: score for meta, score in self.index.scan(_unit(4, 0))}
        assert scores["a"] == pytest.approx(1.0)
        assert scores["b"] == pytest.approx(1 / np.sqrt(2))

    def test_scan_skips_non_matchable_and_mismatched_dimensions(self):
        self.index.update_note("zero", [_record("zero", 0, np.zeros(4), matchable=False)])
        self.index.update_note("wide", [_record("wide", 0, _unit(8, 0))])
        self.index.update_note("ok", [_record("ok", 0, _unit(4, 0))])

        ids = [meta["note_id"] for meta, _ in self.index.scan(_unit(4, 0))]
        assert ids == ["ok"]

    def test_scan_sees_updates(self):
        self.index.update_note("a", [_record("a", 0, _unit(4, 0))])
        assert len(self.index.scan(_unit(4, 0))) == 1
        self.index.update_note("b", [_record("b", 0, _unit(4, 0))])
        assert len(self.index.scan(_unit(4, 0))) == 2

    def test_persists_and_reloads(self):
        self.index.update_note("a", [_record("a", 0, _unit(4, 3), text="persisted")])

        reloaded = ChunkIndex(metadata_path=self.metadata_path)
        assert reloaded.get_note_chunks("a")[0]["text"] == "persisted"
        assert reloaded.scan(_unit(4, 3))[0][1] == pytest.approx(1.0)

    def test_unreadable_file_starts_fresh(self):
        os.makedirs(os.path.dirname(self.metadata_path), exist_ok=True)
        with open(self.metadata_path, "w", encoding="utf-8") as f:
            f.write("not json")
        assert ChunkIndex(metadata_path=self.metadata_path).chunk_count() == 0

    def test_replace_all_swaps_contents_with_one_write(self):
        self.index.update_note("old", [_record("old", 0, _unit(4, 0))])

        with patch.object(self.index, "_save_metadata", wraps=self.index._save_metadata) as save:
            total = self.index.replace_all(
                {
                    "a": [_record("a", 0, _unit(4, 1)), _record("a", 1, _unit(4, 2))],
                    "b": [_record("b", 0, _unit(4, 3))],
                }
            )

        assert total == 3
        assert save.call_count == 1
        assert self.index.get_note_chunks("old") == []
        assert [meta["note_id"] for meta, _ in self.index.scan(_unit(4, 3))] == ["a", "a", "b"]
        with open(self.metadata_path, "r", encoding="utf-8") as f:
            assert sorted(json.load(f)) == ["a::0", "a::1", "b::0"]

    def test_replace_all_with_nothing_empties_the_index(self):
        self.index.update_note("a", [_record("a", 0, _unit(4, 0))])
        assert self.index.replace_all({}) == 0
        assert self.index.chunk_count() == 0

    def test_write_failure_raises(self):
        blocker = os.path.join(self.temp_dir, "blocker")
        with open(blocker, "w", encoding="utf-8") as f:
            f.write("x")
        index = ChunkIndex(metadata_path=os.path.join(blocker, "chunks.json"))

        with pytest.raises(StorageWriteError):
            index.update_note("a", [_record("a", 0, _unit(4, 0))])

    def test_stats(self):
        self.index.update_note("a", [_record("a", 0, _unit(4, 0)), _record("a", 1, _unit(4, 1))])
        self.index.update_note("b", [_record("b", 0, _unit(4, 2))])

        stats = self.index.get_stats()
        assert stats["total_chunks"] == 3
        assert stats["total_notes"] == 2
        assert stats["chunks_per_note"] == {"a": 2, "b": 1}
