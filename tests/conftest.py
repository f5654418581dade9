"""Shared fixtures: stub providers and a recording clock, no network."""

from typing import Dict, List

import pytest

from ragcore.chunking import Chunk, Document
from ragcore.exceptions import ProviderError
from ragcore.vector_store import Metadata, VectorStore


class UnitVectorEmbedder:
    """Gives every distinct text its own basis vector, so texts are mutually orthogonal."""

    def __init__(self, dim: int = 16):
        self.dim = dim
        self.assigned: Dict[str, int] = {}
        self.calls: List[List[str]] = []

    def vector_for(self, text: str) -> List[float]:
        if text not in self.assigned:
            self.assigned[text] = len(self.assigned) % self.dim
        vector = [0.0] * self.dim
        vector[self.assigned[text]] = 1.0
        return vector

    def embed(self, texts):
        self.calls.append(list(texts))
        return [self.vector_for(text) for text in texts]


class FixedEmbedder:
    """Returns the same vector for every text."""

    def __init__(self, vector):
        self.vector = list(vector)
        self.calls: List[List[str]] = []

    def embed(self, texts):
        self.calls.append(list(texts))
        return [list(self.vector) for _ in texts]


class FlakyEmbedder:
    """Fails the first `failures` calls, then delegates."""

    def __init__(self, failures: int, inner=None):
        self.failures = failures
        self.inner = inner or UnitVectorEmbedder()
        self.attempts = 0

    def embed(self, texts):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ProviderError(f"transient failure {self.attempts}")
        return self.inner.embed(texts)


class FailingEmbedder:
    def __init__(self):
        self.attempts = 0

    def embed(self, texts):
        self.attempts += 1
        raise ProviderError("connection refused")


class StubCompleter:
    def __init__(self, reply: str = "  Rate limits apply per seller (Local: limits.md).  "):
        self.reply = reply
        self.calls = []

    def complete(self, system_prompt, prompt, temperature):
        self.calls.append({"system_prompt": system_prompt, "prompt": prompt, "temperature": temperature})
        return self.reply


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.delays)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def unit_embedder():
    return UnitVectorEmbedder()


@pytest.fixture
def completer():
    return StubCompleter()


def make_document(doc_id: str, length: int, title: str = None) -> Document:
    alphabet = "abcdefghijklmnopqrstuvwxyz"
    content = "".join(alphabet[i % len(alphabet)] for i in range(length))
    return Document(
        id=doc_id,
        title=title or f"Local: {doc_id}.md",
        uri=f"docs/{doc_id}.md",
        source="local-docs",
        content=content,
    )


@pytest.fixture
def three_documents():
    return [
        make_document("alpha", 1500),
        make_document("beta", 500),
        make_document("gamma", 1500),
    ]


def make_chunk(index: int, embedding=None, text: str = None, document_id: str = "doc") -> Chunk:
    return Chunk(
        id=f"{document_id}-chunk-{index}",
        document_id=document_id,
        source=f"Title {document_id}",
        uri=f"https://example.com/{document_id}",
        text=text if text is not None else f"chunk text {index}",
        index=index,
        embedding=embedding,
    )


@pytest.fixture
def small_store():
    chunks = [
        make_chunk(0, [1.0, 0.0, 0.0], "Rate limits are enforced per selling partner."),
        make_chunk(1, [0.0, 1.0, 0.0], "Orders API returns paginated results."),
        make_chunk(2, [0.7, 0.7, 0.0], "Burst limits allow short spikes above the rate."),
    ]
    return VectorStore(metadata=Metadata.for_run(1, len(chunks)), chunks=chunks)
