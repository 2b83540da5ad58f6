"""Service layer coordinating storage, indexing, retrieval and chat."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from budget import ContextBudget, truncate_at_sentence
from chunker import Chunker
from config import Settings
from context_service import AssembledContext, ContextAllocator, ContextItem
from conversations import ConversationStore
from embedder import HashingEmbedder
from errors import GenerationError, VocabularyCorruptionError
from generation import GenerationClient, ParseFailure
from indexer import ChunkIndex
from models import (
    CreateFolderRequest,
    CreateNoteRequest,
    NoteContentPayload,
    NoteKind,
    NoteRecord,
    NotesResponsePayload,
)
from retriever import RetrievalHit, SimilarityRetriever
from storage import NoteStorage
from vocabulary import VocabularySnapshot, VocabularyStore

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = "No answer available right now. Please try again."


class IndexingService:
    """Owns the vocabulary and chunk lifecycle; the only writer for both."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        chunker: Optional[Chunker] = None,
        vocabulary: Optional[VocabularyStore] = None,
        embedder: Optional[HashingEmbedder] = None,
        index: Optional[ChunkIndex] = None,
        document_source: Optional[Callable[[], Iterable[NoteRecord]]] = None,
    ):
        self.settings = settings or Settings()
        self.chunker = chunker or Chunker(max_words=self.settings.chunk_max_words)
        self.vocabulary = vocabulary or VocabularyStore(min_chars=self.settings.min_observe_chars)
        self.embedder = embedder or HashingEmbedder(
            self.vocabulary,
            dimension=self.settings.embedding_dim,
            unseen_idf=self.settings.unseen_term_idf,
        )
        self.index = index or ChunkIndex()
        self.retriever = SimilarityRetriever(
            self.embedder,
            self.index,
            min_similarity=self.settings.similarity_threshold,
            default_top_k=self.settings.retrieval_top_k,
        )
        self.document_source = document_source
        self._write_lock = threading.RLock()
        # Held while a rebuild swaps state and while a query reads it.
        self._swap_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def index_note(self, record: NoteRecord) -> int:
        """Re-chunk and re-embed one note. Returns number of chunks stored."""
        if record.kind != NoteKind.NOTE:
            return 0
        try:
            return self._index_note(record)
        except VocabularyCorruptionError as exc:
            if self.document_source is None:
                raise
            logger.warning("Vocabulary corruption while indexing %s: %s", record.id, exc)
            self.recover()
            return len(self.index.get_note_chunks(record.id))

    def _index_note(self, record: NoteRecord) -> int:
        with self._write_lock:
            if not record.content.strip():
                self.index.delete_note(record.id)
                return 0

            self.vocabulary.observe(record.id, record.content)
            return self.index.update_note(record.id, self._chunk_records(record, self.vocabulary.snapshot()))

    def _chunk_records(self, record: NoteRecord, snapshot: VocabularySnapshot) -> List[Dict]:
        chunks = self.chunker.chunk(record.content, record.id)
        vectors = self.embedder.embed_batch([chunk.text for chunk in chunks], snapshot=snapshot)
        return [
            {
                "chunk_id": chunk.chunk_id,
                "ordinal": chunk.ordinal,
                "text": chunk.text,
                "embedding": vector.tolist(),
                "matchable": vector.matchable,
                "note_updated_at": record.updated_at,
            }
            for chunk, vector in zip(chunks, vectors)
        ]

    def delete_notes(self, note_ids: Iterable[str]) -> int:
        with self._write_lock:
            return self.index.delete_notes(list(note_ids))

    def rebuild(self, records: Iterable[NoteRecord]) -> int:
        """Recount vocabulary and re-embed every note against whole-corpus statistics.

        The new statistics and chunks are built aside and swapped in together,
        so queries keep seeing the previous index until the swap.
        """
        notes = [r for r in records if r.kind == NoteKind.NOTE and r.content.strip()]
        with self._write_lock:
            fresh = VocabularyStore(min_chars=self.vocabulary.min_chars)
            fresh.observe_many((record.id, record.content) for record in notes)
            fresh.validate()
            snapshot = fresh.snapshot()
            records_by_note = {record.id: self._chunk_records(record, snapshot) for record in notes}

            with self._swap_lock:
                self.vocabulary.replace_with(fresh)
                chunk_total = self.index.replace_all(records_by_note)
        logger.info("Rebuilt index: %d notes, %d chunks", len(notes), chunk_total)
        return len(notes)

    def recover(self) -> int:
        """Rebuild from the document source after the vocabulary was found corrupt."""
        if self.document_source is None:
            raise VocabularyCorruptionError("Vocabulary is corrupt and no document source is available")
        logger.warning("Resetting vocabulary and re-indexing all documents")
        return self.rebuild(self.document_source())

    def ensure_ready(self) -> bool:
        """Recover at startup when persisted statistics cannot be trusted. Returns True if rebuilt."""
        needs_rebuild = self.vocabulary.needs_recovery
        if not needs_rebuild:
            try:
                self.vocabulary.validate()
            except VocabularyCorruptionError as exc:
                logger.warning("Vocabulary failed validation: %s", exc)
                needs_rebuild = True
        if needs_rebuild and self.document_source is not None:
            self.recover()
            return True
        return False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def corpus_size(self) -> int:
        return self.index.chunk_count()

    def find_similar(self, query: str, top_k: Optional[int] = None) -> List[RetrievalHit]:
        try:
            return self._search(query, top_k)
        except VocabularyCorruptionError as exc:
            logger.warning("Vocabulary corruption during retrieval: %s", exc)
            self.recover()
            return self._search(query, top_k)

    def _search(self, query: str, top_k: Optional[int]) -> List[RetrievalHit]:
        with self._swap_lock:
            return self.retriever.find_similar(query, top_k)

    def stats(self) -> Dict:
        index_stats = self.index.get_stats()
        return {
            "documents_observed": self.vocabulary.document_count,
            "vocabulary_size": self.vocabulary.vocabulary_size,
            "chunk_count": index_stats["total_chunks"],
            "indexed_notes": index_stats["total_notes"],
            "embedding_dim": self.embedder.get_embedding_dim(),
            "similarity_threshold": self.retriever.min_similarity,
        }


class NoteService:
    """Coordinates storage operations with indexing."""

    def __init__(
        self,
        storage: Optional[NoteStorage] = None,
        indexing: Optional[IndexingService] = None,
    ):
        self.storage = storage or NoteStorage()
        self.indexing = indexing or IndexingService(document_source=self.storage.list_notes)

    def tree(self) -> NotesResponsePayload:
        return self.storage.get_tree()

    def get_note(self, note_id: str) -> NoteContentPayload:
        record = self.storage.get_note(note_id)
        return NoteContentPayload(
            note_id=record.id,
            title=record.title,
            content=record.content,
            pinned=record.pinned,
            updated_at=record.updated_at,
        )

    def save_note(self, request) -> NoteRecord:
        record, _ = self.storage.save_note_content(request.note_id, request.content, request.parent_id)
        self.indexing.index_note(record)
        return record

    def create_note(self, request: CreateNoteRequest) -> NoteRecord:
        record, _ = self.storage.save_note_content(
            request.note_id,
            request.content,
            request.parent_id,
            title=request.title,
        )
        self.indexing.index_note(record)
        return record

    def create_folder(self, request: CreateFolderRequest) -> NoteRecord:
        folder, _ = self.storage.create_folder(request.folder_path)
        return folder

    def delete_item(self, note_id: str) -> List[str]:
        deleted_ids = self.storage.delete_item(note_id)
        self.indexing.delete_notes(deleted_ids)
        return deleted_ids

    def set_pinned(self, note_id: str, pinned: bool) -> NoteRecord:
        return self.storage.set_pinned(note_id, pinned)

    def rebuild_index(self) -> int:
        return self.indexing.rebuild(self.storage.list_notes())


@dataclass
class ChatAnswer:
    answer: str
    available: bool
    context: AssembledContext
    reason: Optional[str] = None
    session_id: Optional[str] = None


class ChatService:
    """Builds token-budgeted context for a message and asks the generator for an answer."""

    def __init__(
        self,
        storage: NoteStorage,
        conversations: ConversationStore,
        indexing: IndexingService,
        generator: Optional[GenerationClient] = None,
        settings: Optional[Settings] = None,
        allocator: Optional[ContextAllocator] = None,
    ):
        self.settings = settings or Settings()
        self.storage = storage
        self.conversations = conversations
        self.indexing = indexing
        self.generator = generator
        self.allocator = allocator or ContextAllocator(
            retriever=indexing,
            top_k=self.settings.retrieval_top_k,
            describe_document=self._describe_document,
        )

    def _describe_document(self, document_id: str) -> str:
        try:
            return self.storage.get_note(document_id).title
        except FileNotFoundError:
            return document_id

    def budget_for(self, token_budget: Optional[int] = None) -> ContextBudget:
        return ContextBudget.from_settings(self.settings, token_budget)

    def pinned_items(self) -> List[ContextItem]:
        """Directly pinned notes first, then notes inside pinned folders."""
        items: List[ContextItem] = []
        seen = set()
        for record in self.storage.pinned_notes():
            if record.content.strip():
                items.append(ContextItem(record.id, record.title, record.content))
                seen.add(record.id)
        for folder in self.storage.pinned_folders():
            for record in self.storage.notes_in_folder(folder.id):
                if record.id in seen or not record.content.strip():
                    continue
                items.append(ContextItem(record.id, f"{folder.title}/{record.title}", record.content))
                seen.add(record.id)
        return items

    def custom_items(self, document_ids: Iterable[str]) -> List[ContextItem]:
        items: List[ContextItem] = []
        for document_id in document_ids:
            try:
                record = self.storage.get_note(document_id)
            except FileNotFoundError:
                logger.info("Selected document %s no longer exists; skipping", document_id)
                continue
            if record.kind == NoteKind.FOLDER:
                for child in self.storage.notes_in_folder(record.id):
                    items.append(ContextItem(child.id, f"{record.title}/{child.title}", child.content))
            else:
                items.append(ContextItem(record.id, record.title, record.content))
        return items

    def build_context(
        self,
        query: str,
        session_id: Optional[str] = None,
        token_budget: Optional[int] = None,
    ) -> AssembledContext:
        history = []
        selected: List[str] = []
        if session_id:
            session = self.conversations.get_session(session_id)
            history = session.recent(self.settings.conversation_window)
            selected = session.selected_document_ids

        return self.allocator.allocate(
            query,
            self.budget_for(token_budget),
            history=history,
            pinned=self.pinned_items(),
            custom=self.custom_items(selected),
        )

    def answer(
        self,
        query: str,
        session_id: Optional[str] = None,
        token_budget: Optional[int] = None,
    ) -> ChatAnswer:
        context = self.build_context(query, session_id=session_id, token_budget=token_budget)
        if session_id:
            self.conversations.append_message(session_id, "user", query)

        if self.generator is None:
            return ChatAnswer(FALLBACK_ANSWER, False, context, "generation is not configured", session_id)

        try:
            outcome = self.generator.generate(context.text, query)
        except GenerationError as exc:
            logger.warning("Generation failed: %s", exc)
            return ChatAnswer(FALLBACK_ANSWER, False, context, str(exc), session_id)

        if isinstance(outcome, ParseFailure):
            logger.warning("Could not parse generation response: %s", outcome.reason)
            return ChatAnswer(FALLBACK_ANSWER, False, context, outcome.reason, session_id)

        text = truncate_at_sentence(
            outcome.response.strip(),
            self.settings.response_max_chars,
            self.settings.truncation_lookback,
        )
        if session_id:
            self.conversations.append_message(session_id, "assistant", text)
        return ChatAnswer(text, True, context, None, session_id)
