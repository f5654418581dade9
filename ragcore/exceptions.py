"""
Exceptions Module

Every error raised by ragcore derives from RAGError, grouped by what the
caller can do about it:

- ConfigurationError: fix the settings (missing key, unknown provider)
- ProviderError: the embedding/chat backend failed (may succeed on retry)
- InputError: the request itself is invalid (never retried)
- EmptyResultError: nothing to work with yet (run ingestion first)
- PersistenceError: the index file could not be read or written
- OperationCancelled: the caller's cancel event fired
"""

from typing import Optional


class RAGError(Exception):
    """Base class for all ragcore errors."""


class ConfigurationError(RAGError, ValueError):
    """Raised when settings are missing or invalid."""


class ProviderError(RAGError):
    """Raised when an embedding or completion backend fails."""


class CompletionError(ProviderError):
    """Raised when the chat backend returns no usable completion."""


class EmbeddingBatchError(ProviderError):
    """Raised when a batch could not be embedded within the retry budget."""

    def __init__(self, start: int, end: int, attempts: int, cause: Optional[BaseException] = None):
        self.start = start
        self.end = end
        self.attempts = attempts
        self.cause = cause
        message = f"failed to embed batch [{start}:{end}] after {attempts} attempts"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class InputError(RAGError, ValueError):
    """Raised for invalid requests. These are never retried."""


class EmptyQuestionError(InputError):
    pass


class EmptyContentError(InputError):
    pass


class MissingEmbedderError(InputError):
    pass


class NoChunksError(InputError):
    pass


class NoDocumentsError(InputError):
    pass


class ServiceNotReadyError(InputError):
    pass


class EmptyResultError(RAGError):
    """Raised when retrieval has nothing to return. Retrying will not help."""


class EmptyEmbeddingError(EmptyResultError):
    pass


class NoContextError(EmptyResultError):
    pass


class PersistenceError(RAGError):
    """Raised when the vector store cannot be saved or loaded."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        if path is not None:
            message = f"{message} ({path})"
        super().__init__(message)


class StoreNotFoundError(PersistenceError):
    pass


class StorePermissionError(PersistenceError):
    pass


class StoreFormatError(PersistenceError):
    pass


class OperationCancelled(RAGError):
    """Raised when a caller-supplied cancel event is set."""


def raise_if_cancelled(cancel, operation: str = "operation") -> None:
    """Raise OperationCancelled if the cancel event has been set."""
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"{operation} cancelled")
