"""
Document Collection Module

Finds source material and turns it into normalized Documents for the chunker.

SOURCES:
1. Local files: a docs directory walked recursively (.md, .markdown, .txt,
   .pdf by default). Document ids are slugs of the relative path, so they
   stay stable across runs.
2. Remote sources: plain text / markdown / TSV / HTML fetched over HTTP. A source
   that fails to download or convert is logged and skipped; the rest of the
   collection carries on.

NORMALIZATION:
CRLF and CR become LF, every line is stripped, blank lines are dropped.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import html2text
import PyPDF2
import requests

from ragcore.chunking import Document

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = (".md", ".markdown", ".txt", ".pdf")
REMOTE_TIMEOUT = 45.0

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


def normalize_whitespace(text: str) -> str:
    """Normalize line endings, strip each line and drop blank lines."""
    cleaned = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.strip() for line in cleaned.split("\n")]
    return "\n".join(line for line in lines if line)


def slugify(text: str) -> str:
    """Lowercase, collapse non-alphanumeric runs to '-', fall back to 'doc'."""
    slug = _SLUG_PATTERN.sub("-", text.lower()).strip("-")
    return slug or "doc"


class DocumentLoader:
    """Load raw text from supported file formats."""

    @staticmethod
    def load(file_path: str) -> tuple[str, dict]:
        """
        Load a document and return (text, metadata).

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: For an unsupported file format
        """
        path = Path(file_path)

        if not path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        suffix = path.suffix.lower()

        if suffix in (".txt", ".md", ".markdown"):
            return DocumentLoader._load_txt(path)
        elif suffix == ".pdf":
            return DocumentLoader._load_pdf(path)
        else:
            raise ValueError(f"Unsupported file format: {suffix}")

    @staticmethod
    def _load_txt(path: Path) -> tuple[str, dict]:
        """Load a text or markdown file."""
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
        return text, {"source": str(path), "format": path.suffix.lower().lstrip(".")}

    @staticmethod
    def _load_pdf(path: Path) -> tuple[str, dict]:
        """Load a PDF file, one extracted text block per page."""
        text_parts = []

        with open(path, "rb") as f:
            reader = PyPDF2.PdfReader(f)
            page_count = len(reader.pages)

            for page in reader.pages:
                text_parts.append(page.extract_text() or "")

        return "\n\n".join(text_parts), {
            "source": str(path),
            "format": "pdf",
            "page_count": page_count
        }


def collect_local_documents(
    docs_dir: str,
    extensions: Iterable[str] = DEFAULT_EXTENSIONS
) -> List[Document]:
    """
    Walk a directory and load every file with an allowed extension.

    Returns [] when the directory does not exist.

    Raises:
        NotADirectoryError: If docs_dir points at a file
    """
    root = Path(docs_dir)
    if not root.exists():
        logger.info("Local docs directory %s does not exist, skipping", root)
        return []
    if not root.is_dir():
        raise NotADirectoryError(f"{root} is not a directory")

    allowed = {ext.lower() for ext in extensions}
    documents = []

    # Sorting by path parts visits entries in lexical order, directories in place
    for path in sorted(p for p in root.rglob("*") if p.is_file()):
        if path.suffix.lower() not in allowed:
            continue

        text, _ = DocumentLoader.load(str(path))
        relative = path.relative_to(root).as_posix()
        documents.append(Document(
            id=slugify(relative),
            title=f"Local: {relative}",
            uri=str(path),
            source="local-docs",
            content=normalize_whitespace(text),
        ))

    logger.info("Collected %d local documents from %s", len(documents), root)
    return documents


class RemoteFormat(str, Enum):
    MARKDOWN = "markdown"
    TEXT = "text"
    TSV = "tsv"
    HTML = "html"


@dataclass
class RemoteSource:
    """A remote artifact to download during ingestion."""
    name: str
    url: str
    format: RemoteFormat = RemoteFormat.TEXT
    description: str = ""


def convert_payload(raw: str, format: str) -> str:
    """Turn a downloaded payload into normalized text. HTML is converted to plain markdown first."""
    try:
        kind = RemoteFormat(format)
    except ValueError:
        raise ValueError(f"unsupported format {format}") from None
    if kind == RemoteFormat.HTML:
        converter = html2text.HTML2Text()
        converter.body_width = 0
        raw = converter.handle(raw)
    return normalize_whitespace(raw)


def collect_remote_documents(
    sources: Sequence[RemoteSource],
    session: Optional[requests.Session] = None,
    timeout: float = REMOTE_TIMEOUT
) -> List[Document]:
    """
    Download remote sources. Failing sources are logged and skipped.
    """
    session = session or requests.Session()
    documents = []

    for src in sources:
        try:
            response = session.get(src.url, timeout=timeout)
        except requests.exceptions.RequestException as e:
            logger.warning("Failed to fetch %s: %s", src.name, e)
            continue

        if response.status_code >= 400:
            logger.warning("%s returned status %d, skipping", src.name, response.status_code)
            continue

        try:
            text = convert_payload(response.text, src.format)
        except ValueError as e:
            logger.warning("Failed to convert %s: %s", src.name, e)
            continue

        documents.append(Document(
            id=slugify(src.name),
            title=src.name,
            uri=src.url,
            source=src.description,
            content=text,
        ))

    return documents


@dataclass
class SourceOptions:
    """Where collect_documents() looks for material."""
    local_docs_dir: str = "docs"
    include_extensions: Sequence[str] = DEFAULT_EXTENSIONS
    remote_sources: List[RemoteSource] = field(default_factory=list)


def collect_documents(opts: SourceOptions) -> List[Document]:
    """Collect local documents, then remote ones."""
    documents = collect_local_documents(opts.local_docs_dir, opts.include_extensions)
    if opts.remote_sources:
        documents.extend(collect_remote_documents(opts.remote_sources))
    return documents
