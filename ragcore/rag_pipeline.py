"""
RAG Pipeline - The Complete System

Wires the vector store and both providers together:

INGESTION (run_ingestion):
    collect documents -> chunk -> embed in batches -> save index

QUERY (RAGService.answer):
    question -> embed -> top-K search -> grounded prompt -> completion
             -> answer text + source attributions

APPEND (RAGService.add_source):
    one ad hoc text -> chunk (larger windows) -> embed chunk by chunk
                    -> append to the loaded store

Failures raise the errors in ragcore.exceptions; nothing is retried here
except embedding requests, which follow the same retry schedule on both the
ingestion and the append path.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Any

from config.settings import (
    AddSourceConfig,
    BuildConfig,
    DEFAULT_CONSTRAINT_NOTE,
    DEFAULT_SYSTEM_PROMPT,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOP_K,
    Settings,
    get_settings,
)
from ragcore.chunking import Chunk, Document, SlidingWindowChunker
from ragcore.documents import RemoteSource, SourceOptions, collect_documents, normalize_whitespace, slugify
from ragcore.embeddings import create_embedding_provider
from ragcore.exceptions import (
    EmptyContentError,
    EmptyEmbeddingError,
    EmptyQuestionError,
    NoContextError,
    NoDocumentsError,
    ServiceNotReadyError,
    raise_if_cancelled,
)
from ragcore.generator import build_prompt, create_completion_provider
from ragcore.interfaces import CompletionProvider, EmbeddingProvider
from ragcore.vector_store import Metadata, VectorStore, build_vector_store, embed_chunks

logger = logging.getLogger(__name__)

SNIPPET_LIMIT = 400
DEFAULT_SOURCE_TITLE = "Ad hoc source"


@dataclass
class QueryOptions:
    """Per-query overrides. Zero values fall back to the service defaults."""
    top_k: int = 0
    temperature: float = 0.0


@dataclass
class SourceAttribution:
    """Which chunk backed the answer, and how strongly it matched."""
    title: str
    uri: str
    snippet: str
    score: float


@dataclass
class Answer:
    answer: str
    sources: List[SourceAttribution] = field(default_factory=list)


@dataclass
class IngestionResult:
    """Summary of a full ingestion run."""
    source_count: int
    chunk_count: int
    index_path: str
    time_seconds: float


def make_snippet(text: str, limit: int = SNIPPET_LIMIT) -> str:
    """Trim and cap text at `limit` characters, marking truncation with '...'."""
    snippet = text.strip()
    if len(snippet) > limit:
        snippet = snippet[:limit] + "..."
    return snippet


class RAGService:
    """
    Retrieval-augmented question answering over one vector store.

    USAGE:
        service = RAGService.from_settings()
        answer = service.answer("How do rate limits work?")
        print(answer.answer)
        for source in answer.sources:
            print(source.title, source.score)

    The store is mutated only by add_source(); see VectorStore for the
    locking that keeps concurrent searches consistent.
    """

    def __init__(
        self,
        store: Optional[VectorStore],
        embedder: EmbeddingProvider,
        completer: CompletionProvider,
        system_prompt: Optional[str] = None,
        default_top_k: int = DEFAULT_TOP_K,
        *,
        default_temperature: float = DEFAULT_TEMPERATURE,
        constraint_note: str = DEFAULT_CONSTRAINT_NOTE,
        add_source_config: Optional[AddSourceConfig] = None,
        build_config: Optional[BuildConfig] = None,
        index_path: Optional[str] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize the service from already-built dependencies.

        Args:
            store: Loaded VectorStore
            embedder: EmbeddingProvider used for questions and added sources
            completer: CompletionProvider used for answers
            system_prompt: System message (defaults to DEFAULT_SYSTEM_PROMPT)
            default_top_k: Chunks per answer when the query does not say
            default_temperature: Sampling temperature when the query does not say
            constraint_note: Domain instruction added to every prompt
            add_source_config: Window profile and pacing for add_source()
            build_config: Retry schedule for embedding requests
            index_path: Where save() writes by default
            sleep: Delay function, replaceable in tests
        """
        self.store = store
        self.embedder = embedder
        self.completer = completer
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.default_top_k = default_top_k if default_top_k > 0 else DEFAULT_TOP_K
        self.default_temperature = default_temperature if default_temperature != 0 else DEFAULT_TEMPERATURE
        self.constraint_note = constraint_note
        self.add_source_config = add_source_config or AddSourceConfig()
        self.build_config = build_config or BuildConfig()
        self.index_path = index_path
        self.sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        cancel: Optional[threading.Event] = None
    ) -> "RAGService":
        """
        Load the index from disk and build providers from settings.

        Raises:
            ConfigurationError: Unsupported provider or missing credentials
            PersistenceError: The index cannot be loaded
        """
        settings = settings or get_settings()
        embedder = create_embedding_provider(settings.provider)
        completer = create_completion_provider(settings.provider)
        store = VectorStore.load(settings.retrieval.index_path, cancel=cancel)

        return cls(
            store=store,
            embedder=embedder,
            completer=completer,
            system_prompt=settings.retrieval.system_prompt,
            default_top_k=settings.retrieval.top_k,
            default_temperature=settings.retrieval.temperature,
            constraint_note=settings.retrieval.constraint_note,
            add_source_config=settings.add_source,
            build_config=settings.build,
            index_path=settings.retrieval.index_path,
        )

    def answer(
        self,
        question: str,
        options: Optional[QueryOptions] = None,
        cancel: Optional[threading.Event] = None
    ) -> Answer:
        """
        Answer a question from the indexed context.

        WHAT HAPPENS:
        1. Embed the question
        2. Find the top-K most similar chunks
        3. Ask the chat model, constrained to those chunks
        4. Attach a snippet and score for every chunk used

        Raises:
            ServiceNotReadyError: No store loaded
            EmptyQuestionError: Blank question
            EmptyEmbeddingError: The embedder returned no vector
            NoContextError: The store has nothing to search
            ProviderError: Embedding or completion backend failure
        """
        if self.store is None:
            raise ServiceNotReadyError("rag service is not initialized")
        trimmed = (question or "").strip()
        if not trimmed:
            raise EmptyQuestionError("question is required")

        options = options or QueryOptions()
        top_k = options.top_k if options.top_k > 0 else self.default_top_k
        temperature = options.temperature if options.temperature != 0 else self.default_temperature

        raise_if_cancelled(cancel, "answer")
        embeddings = self.embedder.embed([trimmed])
        if embeddings is None or len(embeddings) == 0 or len(embeddings[0]) == 0:
            raise EmptyEmbeddingError("empty query embedding")

        matches = self.store.search(embeddings[0], top_k)
        if not matches:
            raise NoContextError("no context available; run ingestion first")

        prompt = build_prompt(trimmed, matches, self.constraint_note)
        raise_if_cancelled(cancel, "answer")
        completion = self.completer.complete(self.system_prompt, prompt, temperature)

        sources = [
            SourceAttribution(
                title=match.chunk.source,
                uri=match.chunk.uri,
                snippet=make_snippet(match.chunk.text),
                score=match.score,
            )
            for match in matches
        ]
        logger.info("Answered question with %d context chunks", len(matches))
        return Answer(answer=completion.strip(), sources=sources)

    def add_source(
        self,
        title: str,
        content: str,
        uri: str = "",
        cancel: Optional[threading.Event] = None
    ) -> List[Chunk]:
        """
        Chunk, embed and append a single ad hoc text source.

        Each chunk is embedded with its own request, paced by
        add_source_config.request_delay_seconds and retried on the same
        schedule as bulk builds. Nothing is appended unless every chunk
        was embedded.

        Returns:
            The appended chunks

        Raises:
            ServiceNotReadyError: No store loaded
            EmptyContentError: Blank content
            EmbeddingBatchError: A chunk could not be embedded
        """
        if self.store is None:
            raise ServiceNotReadyError("rag service is not initialized")
        content = normalize_whitespace(content or "")
        if not content:
            raise EmptyContentError("content is required")

        title = (title or "").strip() or DEFAULT_SOURCE_TITLE
        slug = slugify(title)
        uri = (uri or "").strip() or f"manual://{slug}"
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")

        document = Document(
            id=f"{slug}-{stamp}",
            title=title,
            uri=uri,
            source="manual",
            content=content,
        )

        chunker = SlidingWindowChunker(
            chunk_size=self.add_source_config.chunk_size,
            chunk_overlap=self.add_source_config.chunk_overlap,
        )
        chunks = chunker.chunk_documents([document])

        embedded = embed_chunks(
            chunks,
            self.embedder,
            batch_size=1,
            config=self.build_config,
            sleep=self.sleep,
            cancel=cancel,
            batch_delay=self.add_source_config.request_delay_seconds,
        )

        self.store.append(embedded)
        logger.info("Added source '%s' as %d chunks", title, len(embedded))
        return embedded

    def save(self, path: Optional[str] = None, cancel: Optional[threading.Event] = None) -> str:
        """Persist the store to `path`, or to the configured index path."""
        if self.store is None:
            raise ServiceNotReadyError("rag service is not initialized")
        target = path or self.index_path
        if not target:
            raise ServiceNotReadyError("no index path configured")
        self.store.save(target, cancel=cancel)
        return target

    def stats(self) -> Dict[str, Any]:
        """Get statistics about the loaded store."""
        if self.store is None:
            return {"sources": 0, "chunks": 0, "generated_at": None}
        metadata = self.store.metadata
        return {
            "sources": metadata.source_count,
            "chunks": len(self.store),
            "generated_at": metadata.generated_at.isoformat(),
        }


def run_ingestion(
    settings: Optional[Settings] = None,
    docs_dir: Optional[str] = None,
    index_path: Optional[str] = None,
    chunk_size: Optional[int] = None,
    chunk_overlap: Optional[int] = None,
    remote_sources: Sequence[RemoteSource] = (),
    *,
    embedder: Optional[EmbeddingProvider] = None,
    sleep: Optional[Callable[[float], None]] = None,
    cancel: Optional[threading.Event] = None,
) -> IngestionResult:
    """
    Rebuild the index from scratch.

    Args:
        settings: Defaults for every omitted argument
        docs_dir: Local documents directory
        index_path: Where to save the store
        chunk_size / chunk_overlap: Window profile
        remote_sources: Extra documents fetched over HTTP
        embedder: EmbeddingProvider (built from settings when omitted)

    Raises:
        NoDocumentsError: Nothing was collected
        EmbeddingBatchError: Embedding failed after retries
        PersistenceError: The index could not be written
    """
    settings = settings or get_settings()
    start_time = time.time()

    docs_dir = docs_dir or settings.ingestion.docs_dir
    index_path = index_path or settings.retrieval.index_path
    if chunk_size is None:
        chunk_size = settings.chunking.chunk_size
    if chunk_overlap is None:
        chunk_overlap = settings.chunking.chunk_overlap

    raise_if_cancelled(cancel, "ingestion")
    documents = collect_documents(SourceOptions(
        local_docs_dir=docs_dir,
        include_extensions=settings.ingestion.include_extensions,
        remote_sources=list(remote_sources),
    ))
    if not documents:
        raise NoDocumentsError("no documents discovered for ingestion")

    chunker = SlidingWindowChunker(chunk_size=chunk_size, chunk_overlap=chunk_overlap)
    chunks = chunker.chunk_documents(documents)

    if embedder is None:
        embedder = create_embedding_provider(settings.provider)

    metadata = Metadata.for_run(len(documents), len(chunks))
    store = build_vector_store(
        chunks,
        embedder,
        settings.build.batch_size,
        metadata,
        config=settings.build,
        sleep=sleep,
        cancel=cancel,
    )
    store.save(index_path, cancel=cancel)

    elapsed = time.time() - start_time
    logger.info(
        "Ingestion complete: %d documents -> %d chunks in %.2fs (saved at %s)",
        len(documents), len(chunks), elapsed, index_path
    )
    return IngestionResult(
        source_count=len(documents),
        chunk_count=len(chunks),
        index_path=str(index_path),
        time_seconds=elapsed,
    )
