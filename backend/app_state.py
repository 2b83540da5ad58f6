"""Backend application state: every service wired from one Settings object."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from config import Settings
from conversations import ConversationStore
from generation import GenerationClient
from indexer import ChunkIndex
from services import ChatService, IndexingService, NoteService
from storage import NoteStorage
from vocabulary import VocabularyStore

logger = logging.getLogger(__name__)


class JournalAppState:
    """Holds the storage roots and all services built on top of them."""

    def __init__(self, settings: Optional[Settings] = None, generator: Optional[GenerationClient] = None):
        self._lock = threading.RLock()
        self.settings = settings or Settings.from_env()
        settings = self.settings

        self.storage = NoteStorage(root=settings.notes_dir)
        self.conversations = ConversationStore(root=settings.conversations_dir)

        self.vocabulary = VocabularyStore(
            path=str(settings.vocabulary_path),
            min_chars=settings.min_observe_chars,
        )
        self.index = ChunkIndex(metadata_path=str(settings.index_path))
        self.indexing = IndexingService(
            settings=settings,
            vocabulary=self.vocabulary,
            index=self.index,
            document_source=self.storage.list_notes,
        )
        self.notes = NoteService(storage=self.storage, indexing=self.indexing)

        self.generator = generator or GenerationClient(
            base_url=settings.generation_url,
            model=settings.generation_model,
            timeout=settings.generation_timeout,
            temperature=settings.generation_temperature,
        )
        self.chat = ChatService(
            storage=self.storage,
            conversations=self.conversations,
            indexing=self.indexing,
            generator=self.generator,
            settings=settings,
        )

        if self.indexing.ensure_ready():
            logger.info("Recovered index from %s", settings.notes_dir)

    def close(self):
        with self._lock:
            self.generator.close()
