"""
ragcore command line.

USAGE:
    ragcore ingest --docs docs --chunk-size 1400 --chunk-overlap 200
    ragcore query "How do rate limits work?" --top-k 4
    ragcore add-source --title "Release notes" --file notes.md

Provider, models and the default index path come from the environment
(see config/settings.py); --index overrides the index path.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from config.settings import load_settings
from ragcore.documents import DocumentLoader
from ragcore.exceptions import RAGError
from ragcore.logging_config import configure_logging
from ragcore.rag_pipeline import QueryOptions, RAGService, run_ingestion

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ragcore", description="Grounded document Q&A")
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="rebuild the index from documents")
    ingest.add_argument("--docs", help="local docs directory to include")
    ingest.add_argument("--index", help="path to the rag index (JSON file)")
    ingest.add_argument("--chunk-size", type=int, default=1400, help="characters per chunk")
    ingest.add_argument("--chunk-overlap", type=int, default=200, help="character overlap between chunks")

    query = subparsers.add_parser("query", help="answer a question from the index")
    query.add_argument("question", nargs="+", help="question to ask")
    query.add_argument("--index", help="path to the rag index (JSON file)")
    query.add_argument("--top-k", type=int, default=0, help="number of chunks to send to the LLM")
    query.add_argument("--temperature", type=float, default=0.0, help="sampling temperature")

    add = subparsers.add_parser("add-source", help="append one text source to the index")
    add.add_argument("--title", default="", help="source title")
    add.add_argument("--uri", default="", help="source URI")
    content = add.add_mutually_exclusive_group(required=True)
    content.add_argument("--file", help="file to read the content from")
    content.add_argument("--text", help="content given inline")
    add.add_argument("--index", help="path to the rag index (JSON file)")

    return parser


def run_ingest(args, settings) -> None:
    result = run_ingestion(
        settings,
        docs_dir=args.docs,
        index_path=args.index,
        chunk_size=args.chunk_size,
        chunk_overlap=args.chunk_overlap,
    )
    print(
        f"Ingestion complete: {result.source_count} documents -> "
        f"{result.chunk_count} chunks (saved at {result.index_path})"
    )


def run_query(args, settings) -> None:
    service = RAGService.from_settings(settings)
    question = " ".join(args.question).strip()
    answer = service.answer(question, QueryOptions(top_k=args.top_k, temperature=args.temperature))

    print("Answer:\n", answer.answer)
    print("\nSources:")
    for src in answer.sources:
        print(f"- ({src.score:.3f}) {src.title} => {src.uri}")


def run_add_source(args, settings) -> None:
    if args.file:
        content, _ = DocumentLoader.load(args.file)
        title = args.title or Path(args.file).name
    else:
        content, title = args.text, args.title

    service = RAGService.from_settings(settings)
    chunks = service.add_source(title, content, args.uri)
    path = service.save()
    print(f"Added {len(chunks)} chunks from '{title or 'Ad hoc source'}' (saved at {path})")
    stats = service.stats()
    print(f"Index now holds {stats['chunks']} chunks from {stats['sources']} sources")


COMMANDS = {
    "ingest": run_ingest,
    "query": run_query,
    "add-source": run_add_source,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        settings = load_settings()
        if getattr(args, "index", None):
            settings.retrieval.index_path = args.index
        COMMANDS[args.command](args, settings)
    except (RAGError, OSError, ValueError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
