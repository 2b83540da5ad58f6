"""Runtime configuration for the journal context backend.

Every tunable reads a `JOURNAL_*` environment variable and falls back to the
default when the variable is missing or unparseable.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)))
    except Exception:
        return default


def _default_storage_dir() -> Path:
    return Path(__file__).resolve().parent / "storage"


@dataclass(frozen=True)
class Settings:
    storage_dir: Path = field(default_factory=_default_storage_dir)

    # Embedding space
    embedding_dim: int = 256
    min_observe_chars: int = 10
    unseen_term_idf: float = 0.5

    # Chunking and retrieval
    chunk_max_words: int = 500
    similarity_threshold: float = 0.15
    retrieval_top_k: int = 10

    # Context budget
    total_token_budget: int = 30000
    conversation_token_cap: int = 300
    conversation_window: int = 6
    pinned_fraction: float = 1.0 / 3.0
    custom_fraction: float = 0.6

    # Response shaping
    response_max_chars: int = 1800
    truncation_lookback: int = 200

    # Downstream generation
    generation_url: str = "http://localhost:11434"
    generation_model: str = "llama3.2:3b"
    generation_timeout: float = 120.0
    generation_temperature: float = 0.5

    log_level: str = "INFO"

    @property
    def notes_dir(self) -> Path:
        return self.storage_dir / "notes"

    @property
    def conversations_dir(self) -> Path:
        return self.storage_dir / "conversations"

    @property
    def index_path(self) -> Path:
        return self.storage_dir / "index" / "chunks.json"

    @property
    def vocabulary_path(self) -> Path:
        return self.storage_dir / "index" / "vocabulary.json"

    @classmethod
    def from_env(cls) -> "Settings":
        storage = os.environ.get("JOURNAL_STORAGE_DIR")
        return cls(
            storage_dir=Path(storage).expanduser().resolve() if storage else _default_storage_dir(),
            embedding_dim=max(8, _env_int("JOURNAL_EMBEDDING_DIM", 256)),
            min_observe_chars=max(0, _env_int("JOURNAL_MIN_OBSERVE_CHARS", 10)),
            unseen_term_idf=max(0.0, _env_float("JOURNAL_UNSEEN_TERM_IDF", 0.5)),
            chunk_max_words=max(1, _env_int("JOURNAL_CHUNK_MAX_WORDS", 500)),
            similarity_threshold=_env_float("JOURNAL_SIMILARITY_THRESHOLD", 0.15),
            retrieval_top_k=max(1, _env_int("JOURNAL_RETRIEVAL_TOP_K", 10)),
            total_token_budget=max(0, _env_int("JOURNAL_CONTEXT_TOKENS", 30000)),
            conversation_token_cap=max(0, _env_int("JOURNAL_CONVERSATION_TOKENS", 300)),
            conversation_window=max(0, _env_int("JOURNAL_CONVERSATION_WINDOW", 6)),
            pinned_fraction=min(1.0, max(0.0, _env_float("JOURNAL_PINNED_FRACTION", 1.0 / 3.0))),
            custom_fraction=min(1.0, max(0.0, _env_float("JOURNAL_CUSTOM_FRACTION", 0.6))),
            response_max_chars=max(1, _env_int("JOURNAL_RESPONSE_MAX_CHARS", 1800)),
            truncation_lookback=max(0, _env_int("JOURNAL_TRUNCATION_LOOKBACK", 200)),
            generation_url=_env_str("JOURNAL_GENERATION_URL", "http://localhost:11434"),
            generation_model=_env_str("JOURNAL_GENERATION_MODEL", "llama3.2:3b"),
            generation_timeout=max(0.1, _env_float("JOURNAL_GENERATION_TIMEOUT", 120.0)),
            generation_temperature=_env_float("JOURNAL_GENERATION_TEMPERATURE", 0.5),
            log_level=_env_str("JOURNAL_LOG_LEVEL", "INFO").upper(),
        )
