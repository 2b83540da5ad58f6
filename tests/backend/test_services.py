"""
Service layer tests: indexing lifecycle, recovery and chat answers.
"""

import json
import os
import shutil
import sys
import tempfile
import threading
from pathlib import Path
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from config import Settings
from context_service import TIER_CONVERSATION, TIER_CUSTOM, TIER_PINNED, TIER_RETRIEVED
from conversations import ConversationStore
from errors import GenerationError
from generation import GenerationResponse, ParseFailure
from indexer import ChunkIndex
from models import CreateFolderRequest, CreateNoteRequest, UpdateNoteRequest
from services import FALLBACK_ANSWER, ChatService, IndexingService, NoteService
from storage import NoteStorage
from vocabulary import VocabularyStore


class _Workspace:
    """Temp-dir backed storage, vocabulary and index wired like the app does."""

    def __init__(self, root: Path, **overrides):
        self.settings = Settings(storage_dir=root, **overrides)
        self.storage = NoteStorage(root=self.settings.notes_dir)
        self.conversations = ConversationStore(root=self.settings.conversations_dir)
        self.vocabulary = VocabularyStore(path=str(self.settings.vocabulary_path))
        self.index = ChunkIndex(metadata_path=str(self.settings.index_path))
        self.indexing = IndexingService(
            settings=self.settings,
            vocabulary=self.vocabulary,
            index=self.index,
            document_source=self.storage.list_notes,
        )
        self.notes = NoteService(storage=self.storage, indexing=self.indexing)


class TestIndexingService:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.ws = _Workspace(Path(self.temp_dir))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_saving_a_note_indexes_it(self):
        self.ws.notes.save_note(UpdateNoteRequest(note_id="garden", content="garden tomatoes harvest basil"))

        assert self.ws.vocabulary.is_processed("garden")
        assert self.ws.index.chunk_count() == 1
        hits = self.ws.indexing.find_similar("tomatoes")
        assert [h.note_id for h in hits] == ["garden"]

    def test_folders_are_not_indexed(self):
        folder = self.ws.notes.create_folder(CreateFolderRequest(folder_path="travel"))
        assert self.ws.indexing.index_note(folder) == 0
        assert self.ws.index.chunk_count() == 0

    def test_emptied_note_drops_its_chunks(self):
        self.ws.notes.save_note(UpdateNoteRequest(note_id="garden", content="garden tomatoes harvest basil"))
        self.ws.notes.save_note(UpdateNoteRequest(note_id="garden", content="   "))
        assert self.ws.index.chunk_count() == 0

    def test_delete_removes_folder_descendants_from_index(self):
        self.ws.notes.save_note(UpdateNoteRequest(note_id="travel/alps", content="snow on the mountain pass"))
        self.ws.notes.save_note(UpdateNoteRequest(note_id="travel/coast", content="sailing harbor regatta wind"))
        self.ws.notes.save_note(UpdateNoteRequest(note_id="home", content="quiet river morning walk"))

        self.ws.notes.delete_item("travel")
        assert list(self.ws.index.get_stats()["chunks_per_note"]) == ["home"]

    def test_rebuild_uses_whole_corpus_statistics(self):
        self.ws.storage.save_note_content("a", "garden tomatoes harvest")
        self.ws.storage.save_note_content("b", "sailing harbor regatta wind")
        self.ws.storage.save_note_content("empty", "")

        processed = self.ws.notes.rebuild_index()

        assert processed == 2
        assert self.ws.vocabulary.document_count == 2
        assert sorted(self.ws.index.get_stats()["chunks_per_note"]) == ["a", "b"]

    def test_rebuild_writes_each_store_once(self):
        for i in range(20):
            self.ws.storage.save_note_content(f"day-{i}", f"morning walk number {i} by the river")

        with patch.object(self.ws.vocabulary, "_persist", wraps=self.ws.vocabulary._persist) as persist, \
                patch.object(self.ws.index, "_save_metadata", wraps=self.ws.index._save_metadata) as save:
            assert self.ws.notes.rebuild_index() == 20

        assert persist.call_count == 1
        assert save.call_count == 1
        assert self.ws.index.chunk_count() == 20

    def test_search_waits_for_rebuild_swap(self):
        self.ws.notes.save_note(UpdateNoteRequest(note_id="garden", content="garden tomatoes harvest basil"))
        self.ws.storage.save_note_content("sailing", "sailing harbor regatta wind")
        results = []
        replace_all = self.ws.index.replace_all
        searcher = threading.Thread(target=lambda: results.append(self.ws.indexing.find_similar("harbor regatta")))

        def swap(records_by_note):
            searcher.start()
            searcher.join(timeout=0.2)
            assert searcher.is_alive()
            return replace_all(records_by_note)

        with patch.object(self.ws.index, "replace_all", side_effect=swap):
            self.ws.notes.rebuild_index()
        searcher.join(timeout=5)

        assert [h.note_id for h in results[0]] == ["sailing"]

    def test_stats(self):
        self.ws.notes.save_note(UpdateNoteRequest(note_id="garden", content="garden tomatoes harvest basil"))
        stats = self.ws.indexing.stats()

        assert stats["documents_observed"] == 1
        assert stats["vocabulary_size"] == 4
        assert stats["chunk_count"] == 1
        assert stats["indexed_notes"] == 1
        assert stats["embedding_dim"] == 256
        assert stats["similarity_threshold"] == 0.15

    def test_state_survives_restart(self):
        self.ws.notes.save_note(UpdateNoteRequest(note_id="garden", content="garden tomatoes harvest basil"))

        reopened = _Workspace(Path(self.temp_dir))
        assert reopened.indexing.ensure_ready() is False
        assert [h.note_id for h in reopened.indexing.find_similar("tomatoes")] == ["garden"]

    def test_corrupt_vocabulary_file_is_rebuilt_at_startup(self):
        self.ws.notes.save_note(UpdateNoteRequest(note_id="garden", content="garden tomatoes harvest basil"))
        with open(self.ws.settings.vocabulary_path, "w", encoding="utf-8") as f:
            json.dump({"document_frequency": {"garden": 7}, "processed_documents": []}, f)

        reopened = _Workspace(Path(self.temp_dir))
        assert reopened.vocabulary.needs_recovery is True
        assert reopened.indexing.ensure_ready() is True
        assert reopened.vocabulary.document_count == 1
        assert reopened.vocabulary.needs_recovery is False

    def test_corruption_during_indexing_triggers_recovery(self):
        record, _ = self.ws.storage.save_note_content("garden", "garden tomatoes harvest basil")
        # More documents counted for a term than exist drives its weight negative.
        self.ws.vocabulary._publish({"garden": 10}, frozenset())

        stored = self.ws.indexing.index_note(record)

        assert stored == 1
        assert self.ws.vocabulary.document_count == 1
        self.ws.vocabulary.validate()


class TestChatService:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.ws = _Workspace(Path(self.temp_dir))
        self.generator = Mock()
        self.generator.generate.return_value = GenerationResponse(response="That sounds like a lovely day.")
        self.chat = ChatService(
            storage=self.ws.storage,
            conversations=self.ws.conversations,
            indexing=self.ws.indexing,
            generator=self.generator,
            settings=self.ws.settings,
        )

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, note_id, content):
        return self.ws.notes.create_note(CreateNoteRequest(note_id=note_id, title=note_id.rsplit("/", 1)[-1], content=content))

    def test_answer_records_both_turns(self):
        session = self.ws.conversations.create_session()
        answer = self.chat.answer("How was my weekend?", session_id=session.id)

        assert answer.available is True
        assert answer.answer == "That sounds like a lovely day."
        messages = self.ws.conversations.get_session(session.id).messages
        assert [(m.role, m.content) for m in messages] == [
            ("user", "How was my weekend?"),
            ("assistant", "That sounds like a lovely day."),
        ]

    def test_prompt_carries_assembled_context(self):
        self._write("hike", "I went hiking in the mountains today and felt peaceful")
        answer = self.chat.answer("peaceful mountain experience")

        context_text, query = self.generator.generate.call_args[0]
        assert query == "peaceful mountain experience"
        assert context_text == answer.context.text
        assert answer.context.block(TIER_RETRIEVED) is not None
        assert "hike (" in context_text
        assert "relevance" in context_text

    def test_long_answers_are_cut_at_a_sentence(self):
        long_text = " ".join(f"Sentence number {i} is here." for i in range(200))
        self.generator.generate.return_value = GenerationResponse(response=long_text)

        answer = self.chat.answer("tell me a story")
        assert len(answer.answer) <= 1800
        assert answer.answer.endswith(".")

    def test_generation_error_falls_back(self):
        self.generator.generate.side_effect = GenerationError("connection refused")
        session = self.ws.conversations.create_session()

        answer = self.chat.answer("hello", session_id=session.id)

        assert answer.available is False
        assert answer.answer == FALLBACK_ANSWER
        assert "connection refused" in answer.reason
        roles = [m.role for m in self.ws.conversations.get_session(session.id).messages]
        assert roles == ["user"]

    def test_parse_failure_falls_back(self):
        self.generator.generate.return_value = ParseFailure(reason="response is not JSON")
        answer = self.chat.answer("hello")
        assert answer.available is False
        assert answer.reason == "response is not JSON"

    def test_missing_generator_falls_back(self):
        chat = ChatService(
            storage=self.ws.storage,
            conversations=self.ws.conversations,
            indexing=self.ws.indexing,
            settings=self.ws.settings,
        )
        answer = chat.answer("hello")
        assert answer.available is False
        assert answer.answer == FALLBACK_ANSWER

    def test_pinned_notes_and_folders(self):
        self._write("goals", "Run a marathon this year.")
        self._write("people/sister", "Her birthday is in May.")
        self._write("people/empty", "")
        self.ws.notes.set_pinned("goals", True)
        self.ws.notes.set_pinned("people", True)

        items = self.chat.pinned_items()
        assert [i.document_id for i in items] == ["goals", "people/sister"]
        assert items[1].label == "people/sister"

        block = self.chat.build_context("anything").block(TIER_PINNED)
        assert block.sources == ("goals", "people/sister")
        assert block.text.startswith("Important context you should know:")

    def test_session_selection_feeds_custom_tier(self):
        self._write("trips/lake", "Swim at the lake near the cabin.")
        self._write("trips/coast", "Sailing in the harbor.")
        self._write("budget", "Invoice and taxes for the accountant.")
        session = self.ws.conversations.create_session()
        self.ws.conversations.set_selection(session.id, ["budget", "trips", "gone"])

        context = self.chat.build_context("what should I plan", session_id=session.id)
        block = context.block(TIER_CUSTOM)

        assert block.sources[0] == "budget"
        assert set(block.sources) == {"budget", "trips/lake", "trips/coast"}
        assert block.text.startswith("Specific entries you wanted me to consider:")

    def test_conversation_history_in_context(self):
        session = self.ws.conversations.create_session()
        self.ws.conversations.append_message(session.id, "user", "I adopted a cat.")
        self.ws.conversations.append_message(session.id, "assistant", "What is its name?")

        context = self.chat.build_context("Her name is Miso.", session_id=session.id)
        block = context.block(TIER_CONVERSATION)
        assert "User: I adopted a cat." in block.text
        assert "Assistant: What is its name?" in block.text

    def test_explicit_token_budget(self):
        self._write("goals", "Run a marathon this year. " * 50)
        self.ws.notes.set_pinned("goals", True)

        context = self.chat.build_context("q", token_budget=40)
        assert context.budget.total_tokens == 40
        assert context.total_tokens <= 40
        assert context.block(TIER_PINNED) is None
