"""
Document Chunking Module

Splits normalized documents into fixed-size, overlapping windows. Each window
becomes one Chunk: the unit that gets embedded, stored and retrieved.

HOW THE WINDOWS ARE LAID OUT:

    size=10, overlap=3  ->  step=7

    content:  abcdefghijklmnopqrstu      (21 chars)
    window 0: abcdefghij                 [0:10]
    window 1:        hijklmnopq          [7:17]
    window 2:               opqrstu      [14:21]  <- clipped, loop stops

RULES:
- Lengths are counted in Unicode code points, so slicing never splits a
  multi-byte character.
- Content no longer than the window size becomes a single chunk.
- overlap >= size is clamped to size // 4; the step is never <= 0.
- Empty content produces no chunks.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1200
DEFAULT_CHUNK_OVERLAP = 0


@dataclass(frozen=True)
class Document:
    """
    A normalized text artifact ready for chunking.

    - id: Stable slug, used as the prefix of every chunk id
    - title: Human-readable name, shown in source attributions
    - uri: Where the content came from (file path or URL)
    - source: Collection the document belongs to (e.g. "local-docs")
    - content: Plain text, normalized line endings, no blank lines
    """
    id: str
    title: str
    uri: str
    source: str
    content: str


@dataclass
class Chunk:
    """
    One window of a document.

    The id is deterministic: "<document_id>-chunk-<index>". source holds
    the parent document's title. embedding stays None until the build
    pipeline assigns it.
    """
    id: str
    document_id: str
    source: str
    uri: str
    text: str
    index: int
    embedding: Optional[List[float]] = None

    def __repr__(self):
        preview = self.text[:50] + "..." if len(self.text) > 50 else self.text
        return f"Chunk({self.id}, text='{preview}')"


def chunk_id(document_id: str, index: int) -> str:
    return f"{document_id}-chunk-{index}"


def sliding_windows(content: str, size: int, step: int) -> List[str]:
    """Cut content into windows of `size` code points, advancing by `step`."""
    length = len(content)
    if length == 0:
        return []
    if length <= size:
        return [content]

    windows = []
    for start in range(0, length, step):
        end = min(start + size, length)
        windows.append(content[start:end])
        if end == length:
            break
    return windows


class SlidingWindowChunker:
    """
    Split documents into overlapping fixed-size windows.

    The constructor normalizes the options once; the effective values are
    available as chunk_size, chunk_overlap and step.
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP
    ):
        """
        Initialize the chunker.

        Args:
            chunk_size: Window length in characters (non-positive means 1200)
            chunk_overlap: Characters shared by consecutive windows
        """
        if chunk_size <= 0:
            chunk_size = DEFAULT_CHUNK_SIZE
        if chunk_overlap < 0:
            chunk_overlap = 0
        if chunk_overlap >= chunk_size:
            chunk_overlap = chunk_size // 4

        step = chunk_size - chunk_overlap
        if step <= 0:
            step = chunk_size

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.step = step

    def chunk_text(self, document: Document) -> List[Chunk]:
        """Split one document into chunks, indexed in window order."""
        windows = sliding_windows(document.content, self.chunk_size, self.step)
        return [
            Chunk(
                id=chunk_id(document.id, index),
                document_id=document.id,
                source=document.title,
                uri=document.uri,
                text=text,
                index=index,
            )
            for index, text in enumerate(windows)
        ]

    def chunk_documents(self, documents: List[Document]) -> List[Chunk]:
        """
        Split every document, keeping document order then window order.

        Returns:
            Flat list of Chunk objects without embeddings
        """
        chunks: List[Chunk] = []
        for document in documents:
            chunks.extend(self.chunk_text(document))

        logger.debug(
            "Chunked %d documents into %d chunks (size=%d, overlap=%d)",
            len(documents), len(chunks), self.chunk_size, self.chunk_overlap
        )
        return chunks


def chunk_documents(
    documents: List[Document],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP
) -> List[Chunk]:
    """
    Convenience function to chunk a batch of documents.

    Example:
        chunks = chunk_documents(docs, chunk_size=1200, chunk_overlap=200)
        for chunk in chunks:
            print(f"{chunk.id}: {chunk.text[:100]}...")
    """
    chunker = SlidingWindowChunker(chunk_size=chunk_size, chunk_overlap=chunk_overlap)
    return chunker.chunk_documents(documents)
