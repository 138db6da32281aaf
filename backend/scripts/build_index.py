#!/usr/bin/env python3
"""
Sparse Index Build Script.

Builds the BM25 index from a JSON-lines file of already extracted and
chunked documents, writes every document to the Redis document cache and
persists the index to the configured store path. Optionally runs a sparse
search against the fresh index.

Each input line is a JSON object: {"text": "...", "source_ref": "..."}

Usage:
    python -m scripts.build_index INPUT.jsonl [--store PATH] [--query Q] [--limit N] [--verbose]

Options:
    --store     Index file path (defaults to BM25_INDEX_PATH)
    --query     Search the new index and print the hits
    --limit     Number of hits to print (default 10)
    --verbose   Show debug logging
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from hybridrag.core.config import Settings, get_settings
from hybridrag.logging_utils import bind_request_context, setup_logging
from hybridrag.retrieval.bm25_store import SparseIndexEngine
from hybridrag.retrieval.tokenizer import pipeline_from_settings
from hybridrag.retrieval.types import Document, ScoredDocument
from hybridrag.services.cache_service import DocumentCache


@dataclass
class BuildReport:
    """Report of an index build."""

    store_path: Path
    document_count: int = 0
    skipped_lines: List[int] = field(default_factory=list)
    hits: List[ScoredDocument] = field(default_factory=list)
    query: Optional[str] = None

    def summary(self) -> str:
        """Generate a human-readable summary."""
        lines = [
            "=" * 60,
            "SPARSE INDEX BUILD REPORT",
            "=" * 60,
            f"Index file:         {self.store_path}",
            f"Indexed documents:  {self.document_count}",
        ]
        if self.skipped_lines:
            lines.append(f"Skipped lines:      {len(self.skipped_lines)}")
            for line_no in self.skipped_lines:
                lines.append(f"    - line {line_no}")

        if self.query is not None:
            lines.append("-" * 60)
            lines.append(f"Query: {self.query}")
            if not self.hits:
                lines.append("  (no hits)")
            for hit in self.hits:
                preview = hit.document.text[:60].replace("\n", " ")
                lines.append(f"  [{hit.document_id}] {hit.score:.4f} {preview}")

        lines.append("=" * 60)
        return "\n".join(lines)


def read_documents(path: Path, report: BuildReport) -> List[Document]:
    """Read JSON-lines documents; malformed lines are recorded and skipped."""
    documents: List[Document] = []
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
                text = record["text"]
            except (ValueError, KeyError, TypeError):
                report.skipped_lines.append(line_no)
                continue
            if not isinstance(text, str):
                report.skipped_lines.append(line_no)
                continue
            documents.append(Document(text=text, source_ref=str(record.get("source_ref") or "")))
    return documents


async def run_build(
    input_path: Path,
    store_path: Path,
    cache,
    query: Optional[str] = None,
    limit: int = 10,
) -> BuildReport:
    """Build (and optionally query) the sparse index."""
    settings = get_settings()
    report = BuildReport(store_path=store_path, query=query)

    documents = read_documents(input_path, report)
    engine = SparseIndexEngine.from_settings(cache, settings)
    await engine.build_index(documents, store_path, pipeline_from_settings(settings))
    report.document_count = engine.document_count

    if query is not None:
        report.hits = await engine.search(query, limit=limit)
    return report


def configure_logging(settings: Settings, verbose: bool = False) -> None:
    """Configure logging for the script from the packaged logging.yaml."""
    if verbose:
        settings = settings.model_copy(update={"log_level": "DEBUG"})
    setup_logging(settings)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the build script.

    Returns:
        Exit code: 0 on success, 1 if lines were skipped, 2 on error
    """
    parser = argparse.ArgumentParser(
        description="Build the sparse BM25 index",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("input", type=Path, help="JSON-lines file of documents")
    parser.add_argument("--store", type=Path, default=None, help="Index file path")
    parser.add_argument("--query", default=None, help="Run a search after building")
    parser.add_argument("--limit", type=int, default=10, help="Number of hits to show")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show detailed information",
    )

    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(settings, args.verbose)
    bind_request_context(f"build-{uuid.uuid4().hex[:8]}")

    logger = logging.getLogger("hybridrag.scripts.build_index")
    store_path = args.store or settings.bm25_index_path

    async def _run() -> BuildReport:
        cache = DocumentCache.from_settings(settings)
        try:
            return await run_build(args.input, store_path, cache, args.query, args.limit)
        finally:
            await cache.close()

    try:
        report = asyncio.run(_run())
    except Exception as e:
        logger.error(f"Index build failed: {e}")
        return 2

    print(report.summary())
    return 1 if report.skipped_lines else 0


if __name__ == "__main__":
    sys.exit(main())
