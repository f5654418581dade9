"""
Vector Store Module

An in-memory collection of embedded chunks that is persisted to a single
JSON file and searched exactly (brute force) by cosine similarity.

LIFECYCLE:
1. build_vector_store(): embed chunks in batches -> new VectorStore
2. store.save(path): atomic JSON write
3. VectorStore.load(path): read it back
4. store.search(query_vector, top_k): best matches, highest score first
5. store.append(chunks): add one more source's chunks in place

BUILD PIPELINE:
- Chunks are embedded in contiguous batches (default 16), one request in
  flight at a time, vectors assigned back by position.
- A failing batch is retried up to 5 times with linear backoff
  (1s, 2s, 3s, 4s). If every attempt fails the whole build fails with
  EmbeddingBatchError naming the batch range; no partial store is returned.
- Successful batches are followed by a 1s pause (except the last) so slow
  local inference servers are not flooded.

SEARCH:
Every chunk is scored, and a bounded min-heap keeps the best top_k seen so
far: O(n log k) rather than sorting all n scores. When scores tie for the
last slot the chunk that appears first in the store keeps it, and equal
scores are listed in store order.

PERSISTED FORMAT:
    {
      "metadata": {"generatedAt": "...Z", "sourceCount": 3,
                   "chunkCount": 5, "notes": []},
      "chunks": [{"id": "...", "documentId": "...", "source": "...",
                  "uri": "...", "text": "...", "index": 0,
                  "embedding": [0.1, ...]}, ...]
    }

THREAD SAFETY:
append() swaps in a new chunk list under a lock and search() works on a
snapshot, so a reader never sees a half-appended store. Builds produce a
fresh store and never touch an existing one.
"""

import heapq
import json
import logging
import os
import re
import tempfile
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from tenacity import (
    RetryError,
    Retrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from config.settings import BuildConfig, DEFAULT_TOP_K
from ragcore.chunking import Chunk
from ragcore.embeddings import cosine_similarity
from ragcore.interfaces import EmbeddingProvider
from ragcore.exceptions import (
    ConfigurationError,
    InputError,
    MissingEmbedderError,
    NoChunksError,
    OperationCancelled,
    PersistenceError,
    ProviderError,
    StoreFormatError,
    StoreNotFoundError,
    StorePermissionError,
    EmbeddingBatchError,
    raise_if_cancelled,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 16

# RFC 3339 fractions run from 1 to 9 digits; fromisoformat wants exactly 6 before 3.11
_FRACTION = re.compile(r"\.(\d+)")

INDEX_FILE_MODE = 0o644


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class Metadata:
    """
    Describes one ingestion run.

    - generated_at: UTC time of the last build or append
    - source_count: Number of documents behind the chunks
    - chunk_count: Number of chunks in the store
    - notes: Free text (e.g. which sources were skipped)
    """
    generated_at: datetime = field(default_factory=_utcnow)
    source_count: int = 0
    chunk_count: int = 0
    notes: List[str] = field(default_factory=list)

    @classmethod
    def for_run(cls, source_count: int, chunk_count: int, notes: Optional[List[str]] = None) -> "Metadata":
        """Metadata for a fresh build, stamped with the current UTC time."""
        return cls(
            generated_at=_utcnow(),
            source_count=source_count,
            chunk_count=chunk_count,
            notes=list(notes or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generatedAt": format_timestamp(self.generated_at),
            "sourceCount": self.source_count,
            "chunkCount": self.chunk_count,
            "notes": list(self.notes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Metadata":
        return cls(
            generated_at=parse_timestamp(data["generatedAt"]),
            source_count=int(data["sourceCount"]),
            chunk_count=int(data["chunkCount"]),
            notes=[str(note) for note in (data.get("notes") or [])],
        )


def chunk_to_dict(chunk: Chunk) -> Dict[str, Any]:
    return {
        "id": chunk.id,
        "documentId": chunk.document_id,
        "source": chunk.source,
        "uri": chunk.uri,
        "text": chunk.text,
        "index": chunk.index,
        "embedding": None if chunk.embedding is None else list(chunk.embedding),
    }


def chunk_from_dict(data: Dict[str, Any]) -> Chunk:
    embedding = data.get("embedding")
    return Chunk(
        id=data["id"],
        document_id=data["documentId"],
        source=data["source"],
        uri=data["uri"],
        text=data["text"],
        index=int(data["index"]),
        embedding=None if embedding is None else [float(value) for value in embedding],
    )


@dataclass
class SearchResult:
    """A chunk paired with its cosine similarity to the query."""
    chunk: Chunk
    score: float

    def __repr__(self):
        preview = self.chunk.text[:50] + "..." if len(self.chunk.text) > 50 else self.chunk.text
        return f"SearchResult(score={self.score:.4f}, text='{preview}')"


@dataclass
class VectorStore:
    """
    Embedded chunks plus the metadata of the run that produced them.

    The store owns its chunk list. Mutate it through append() only.
    """
    metadata: Metadata = field(default_factory=Metadata)
    chunks: List[Chunk] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def __len__(self):
        """Number of chunks in store."""
        return len(self.chunks)

    def search(self, query_embedding: Sequence[float], top_k: int = DEFAULT_TOP_K) -> List[SearchResult]:
        """
        Find the chunks most similar to a query vector.

        Args:
            query_embedding: The query vector
            top_k: Number of results (non-positive means 4)

        Returns:
            Up to top_k SearchResults, highest score first. Empty for an
            empty query or an empty store.
        """
        if query_embedding is None or len(query_embedding) == 0:
            return []
        if top_k <= 0:
            top_k = DEFAULT_TOP_K

        with self._lock:
            chunks = self.chunks
        if not chunks:
            return []

        # Entries are (score, -position, chunk); the root is the weakest kept match
        heap = []
        for position, chunk in enumerate(chunks):
            score = cosine_similarity(query_embedding, chunk.embedding)
            entry = (score, -position, chunk)
            if len(heap) < top_k:
                heapq.heappush(heap, entry)
            elif score > heap[0][0]:
                heapq.heapreplace(heap, entry)

        ordered = [heapq.heappop(heap) for _ in range(len(heap))]
        ordered.reverse()
        return [SearchResult(chunk=chunk, score=score) for score, _, chunk in ordered]

    def append(self, chunks: List[Chunk], source_count: int = 1) -> None:
        """
        Add embedded chunks for newly ingested source(s) and bump metadata.

        The chunk list is replaced rather than extended, so concurrent
        readers keep a consistent snapshot.
        """
        with self._lock:
            self.chunks = self.chunks + list(chunks)
            self.metadata = replace(
                self.metadata,
                generated_at=_utcnow(),
                source_count=self.metadata.source_count + source_count,
                chunk_count=self.metadata.chunk_count + len(chunks),
                notes=list(self.metadata.notes),
            )

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            metadata, chunks = self.metadata, self.chunks
        return {
            "metadata": metadata.to_dict(),
            "chunks": [chunk_to_dict(chunk) for chunk in chunks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VectorStore":
        return cls(
            metadata=Metadata.from_dict(data["metadata"]),
            chunks=[chunk_from_dict(item) for item in (data.get("chunks") or [])],
        )

    # Persistence methods

    def save(self, file_path: str, cancel: Optional[threading.Event] = None) -> None:
        """
        Save the store as JSON.

        The data goes to a temporary file in the target directory which is
        then renamed over the destination, so a crash never leaves a
        half-written index behind. The file is left readable by other users
        (0644) so a service running under another account can load it.

        Raises:
            PersistenceError: If the directory or file cannot be written
        """
        raise_if_cancelled(cancel, "save")
        path = Path(file_path)
        payload = json.dumps(self.to_dict(), indent=2, ensure_ascii=False)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"cannot create index directory: {e}", str(path.parent)) from e

        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=str(path.parent),
                prefix=f".{path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.chmod(tmp_name, INDEX_FILE_MODE)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise PersistenceError(f"cannot write vector store: {e}", str(path)) from e

        logger.info("Saved vector store with %d chunks to %s", len(self), path)

    @classmethod
    def load(cls, file_path: str, cancel: Optional[threading.Event] = None) -> "VectorStore":
        """
        Load a store saved by save().

        Raises:
            StoreNotFoundError: The file does not exist
            StorePermissionError: The file cannot be read
            StoreFormatError: The content is not a valid vector store
            PersistenceError: Any other I/O failure
        """
        raise_if_cancelled(cancel, "load")
        path = str(file_path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError as e:
            raise StoreNotFoundError("vector store not found", path) from e
        except PermissionError as e:
            raise StorePermissionError("vector store is not readable", path) from e
        except UnicodeDecodeError as e:
            raise StoreFormatError(f"vector store is not valid UTF-8: {e}", path) from e
        except OSError as e:
            raise PersistenceError(f"cannot read vector store: {e}", path) from e

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise TypeError("top-level value must be an object")
            store = cls.from_dict(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise StoreFormatError(f"malformed vector store: {e}", path) from e

        logger.info("Loaded vector store with %d chunks from %s", len(store), path)
        return store


def search(store: Optional[VectorStore], query_embedding: Sequence[float], top_k: int = DEFAULT_TOP_K) -> List[SearchResult]:
    """Search a store that may not have been loaded yet (None -> [])."""
    if store is None:
        return []
    return store.search(query_embedding, top_k)


# Build pipeline

def _pause_function(sleep: Optional[Callable[[float], None]], cancel: Optional[threading.Event]):
    """
    Return the function used for backoff and pacing delays.

    With no explicit sleep, delays wait on the cancel event so they end as
    soon as the caller cancels. An explicit sleep (a test clock) is called
    as-is with cancellation checked around it.
    """
    def pause(seconds: float) -> None:
        if seconds <= 0:
            raise_if_cancelled(cancel, "embedding")
            return
        if sleep is None:
            if cancel is None:
                time.sleep(seconds)
            elif cancel.wait(seconds):
                raise OperationCancelled("embedding cancelled")
            return
        raise_if_cancelled(cancel, "embedding")
        sleep(seconds)
        raise_if_cancelled(cancel, "embedding")

    return pause


def _request_vectors(provider: EmbeddingProvider, texts: List[str], cancel: Optional[threading.Event]) -> List[List[float]]:
    raise_if_cancelled(cancel, "embedding")
    vectors = provider.embed(texts)
    count = 0 if vectors is None else len(vectors)
    if count != len(texts):
        raise ProviderError(
            f"embedding provider returned {count} vectors for {len(texts)} texts"
        )
    return vectors


def embed_chunks(
    chunks: List[Chunk],
    provider: EmbeddingProvider,
    batch_size: int = DEFAULT_BATCH_SIZE,
    config: Optional[BuildConfig] = None,
    sleep: Optional[Callable[[float], None]] = None,
    cancel: Optional[threading.Event] = None,
    batch_delay: Optional[float] = None,
) -> List[Chunk]:
    """
    Embed chunks batch by batch with retries.

    Args:
        chunks: Chunks to embed (not modified)
        provider: EmbeddingProvider
        batch_size: Texts per request (non-positive means 16)
        config: Retry schedule; defaults to BuildConfig()
        sleep: Delay function, replaceable in tests
        cancel: Event that aborts the run with OperationCancelled
        batch_delay: Pause between batches (defaults to config.batch_delay_seconds)

    Returns:
        New Chunk objects with embeddings, in input order

    Raises:
        EmbeddingBatchError: A batch failed on every attempt
    """
    config = config or BuildConfig()
    if batch_size <= 0:
        batch_size = DEFAULT_BATCH_SIZE
    if batch_delay is None:
        batch_delay = config.batch_delay_seconds
    max_attempts = max(1, config.max_attempts)
    pause = _pause_function(sleep, cancel)

    embedded: List[Chunk] = []
    total = len(chunks)

    for start in range(0, total, batch_size):
        end = min(start + batch_size, total)
        texts = [chunk.text for chunk in chunks[start:end]]

        def log_retry(retry_state, start=start, end=end):
            logger.warning(
                "Embedding batch [%d:%d] failed (attempt %d/%d): %s; retrying in %.1fs",
                start, end, retry_state.attempt_number, max_attempts,
                retry_state.outcome.exception(), retry_state.next_action.sleep
            )

        retryer = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_incrementing(start=config.backoff_seconds, increment=config.backoff_seconds),
            retry=retry_if_not_exception_type((OperationCancelled, ConfigurationError, InputError)),
            sleep=pause,
            before_sleep=log_retry,
        )
        try:
            vectors = retryer(_request_vectors, provider, texts, cancel)
        except RetryError as e:
            last = e.last_attempt
            cause = last.exception()
            raise EmbeddingBatchError(start, end, last.attempt_number, cause) from cause

        for chunk, vector in zip(chunks[start:end], vectors):
            embedded.append(replace(chunk, embedding=list(vector)))
        logger.info("Embedded chunks %d-%d of %d", start + 1, end, total)

        if end < total:
            pause(batch_delay)

    return embedded


def build_vector_store(
    chunks: List[Chunk],
    provider: Optional[EmbeddingProvider],
    batch_size: int = DEFAULT_BATCH_SIZE,
    metadata: Optional[Metadata] = None,
    *,
    config: Optional[BuildConfig] = None,
    sleep: Optional[Callable[[float], None]] = None,
    cancel: Optional[threading.Event] = None,
) -> VectorStore:
    """
    Embed all chunks and return a ready-to-save store.

    Args:
        chunks: Output of the chunker
        provider: EmbeddingProvider
        batch_size: Texts per embedding request (non-positive means 16)
        metadata: Run metadata; derived from the chunks when omitted
        config: Retry and pacing schedule
        sleep: Delay function, replaceable in tests
        cancel: Event that aborts the build

    Raises:
        MissingEmbedderError: No provider given
        NoChunksError: Empty chunk list
        EmbeddingBatchError: A batch exhausted its retries
    """
    if provider is None:
        raise MissingEmbedderError("embedder is required")
    if not chunks:
        raise NoChunksError("no chunks supplied")

    logger.info("Building vector store from %d chunks", len(chunks))
    embedded = embed_chunks(
        chunks,
        provider,
        batch_size=batch_size,
        config=config,
        sleep=sleep,
        cancel=cancel,
    )

    if metadata is None:
        source_count = len({chunk.document_id for chunk in chunks})
        metadata = Metadata.for_run(source_count, len(embedded))

    return VectorStore(metadata=metadata, chunks=embedded)
