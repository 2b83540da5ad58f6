"""Exception types shared across the backend."""


class JournalContextError(Exception):
    """Base class for errors raised by the context pipeline."""


class StorageWriteError(JournalContextError):
    """Persistent state could not be written."""

    def __init__(self, path: str, reason: Exception):
        super().__init__(f"Failed to write {path}: {reason}")
        self.path = path
        self.reason = reason


class VocabularyCorruptionError(JournalContextError):
    """Vocabulary statistics are inconsistent and must be rebuilt."""


class GenerationError(JournalContextError):
    """The downstream generation endpoint failed."""


class GenerationTimeout(GenerationError):
    """The downstream generation endpoint did not answer in time."""


class GenerationCancelled(GenerationError):
    """The generation request was cancelled before it completed."""
