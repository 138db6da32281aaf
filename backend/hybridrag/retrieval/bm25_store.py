"""
Sparse (BM25) index engine with JSON persistence.

Builds an index over an ordered list of documents, writes each document to
the document cache under its position in the list, persists the exported
BM25 state to a single JSON file and serves searches that resolve hits back
through the cache.

One engine governs one persisted index. Builds are not serialized: callers
must not run two builds against the same engine or store path at once.
"""

import asyncio
import json
import logging
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

from ..logging_utils import bind_index_context
from .bm25_service import BM25Service
from .protocols import DocumentCacheProtocol
from .tokenizer import TokenizationPipeline
from .types import Document, ScoredDocument


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class IndexState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BUILT = "built"
    PERSISTED = "persisted"


def _write_state(store_path: Path, state: Mapping) -> None:
    """Replace store_path with the serialized state."""
    store_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=store_path.parent, prefix=f".{store_path.name}.", suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(state, f, ensure_ascii=False)
        os.replace(tmp_name, store_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class SparseIndexEngine:
    """
    BM25 index engine backed by a document cache.

    Example:
        >>> engine = SparseIndexEngine(cache=DocumentCache())
        >>> await engine.build_index(documents, "bm25-index.json", pipeline)
        >>> hits = await engine.search("proof of work", limit=5)

        # in a fresh process
        >>> engine = SparseIndexEngine(cache=DocumentCache())
        >>> engine.load_index("bm25-index.json", pipeline)
        True
    """

    def __init__(
        self,
        cache: DocumentCacheProtocol,
        field_weights: Optional[Mapping[str, float]] = None,
        k1: float = 1.5,
        b: float = 0.75,
        epsilon: float = 0.25,
    ) -> None:
        self._cache = cache
        self._field_weights: Optional[Dict[str, float]] = (
            dict(field_weights) if field_weights is not None else None
        )
        self._k1 = k1
        self._b = b
        self._epsilon = epsilon
        self._service: Optional[BM25Service] = None
        self._state = IndexState.UNINITIALIZED
        self._is_loaded = False

    @classmethod
    def from_settings(cls, cache: DocumentCacheProtocol, settings) -> "SparseIndexEngine":
        return cls(
            cache=cache,
            field_weights=settings.bm25_field_weights,
            k1=settings.bm25_k1,
            b=settings.bm25_b,
            epsilon=settings.bm25_epsilon,
        )

    @property
    def state(self) -> IndexState:
        return self._state

    @property
    def is_loaded(self) -> bool:
        """True once the engine can answer queries (after a build or a load)."""
        return self._is_loaded

    @property
    def document_count(self) -> int:
        return self._service.document_count if self._service is not None else 0

    async def build_index(
        self,
        documents: Sequence[Document],
        store_path: PathLike,
        pipeline: TokenizationPipeline,
    ) -> None:
        """
        Build, persist and activate a new index.

        Document ids are positions in ``documents``. Cache write failures
        are logged and skipped. The file at ``store_path`` is overwritten.

        Args:
            documents: Ordered documents to index (may be empty)
            store_path: Where to write the exported index
            pipeline: Tokenization pipeline; queries must use the same one
        """
        store_path = Path(store_path)
        bind_index_context(str(store_path))
        service = BM25Service(k1=self._k1, b=self._b, epsilon=self._epsilon)
        service.configure(pipeline, self._field_weights)

        cache_failures = 0
        for doc_id, document in enumerate(documents):
            service.add_document(doc_id, {"text": document.text})
            if not await self._cache_set(doc_id, document):
                cache_failures += 1

        service.consolidate()
        self._service = service
        self._state = IndexState.BUILT
        self._is_loaded = True
        logger.info(
            "BM25 index consolidation complete",
            extra={"document_count": service.document_count, "cache_failures": cache_failures},
        )

        state = service.export_state()
        await asyncio.to_thread(_write_state, store_path, state)
        self._state = IndexState.PERSISTED
        logger.info(
            "BM25 index persisted",
            extra={"store_path": str(store_path), "document_count": service.document_count},
        )

    def start_build(
        self,
        documents: Sequence[Document],
        store_path: PathLike,
        pipeline: TokenizationPipeline,
    ) -> "asyncio.Task[None]":
        """Schedule build_index on the running loop and return its task."""
        return asyncio.create_task(
            self.build_index(documents, store_path, pipeline),
            name=f"bm25-build:{store_path}",
        )

    def load_index(self, store_path: PathLike, pipeline: TokenizationPipeline) -> bool:
        """
        Load a persisted index.

        A second call once loaded is a no-op. The pipeline is re-applied
        because the persisted state does not contain it.

        Returns:
            True if the engine is loaded, False if the file is missing or
            could not be parsed
        """
        if self._is_loaded:
            return True

        store_path = Path(store_path)
        bind_index_context(str(store_path))
        if not store_path.exists():
            logger.warning(
                "BM25 index file not found, engine not loaded",
                extra={"store_path": str(store_path)},
            )
            return False

        try:
            with open(store_path, "r", encoding="utf-8") as f:
                state = json.load(f)
            service = BM25Service()
            service.import_state(state)
            service.configure(pipeline)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(
                f"Failed to load BM25 index: {e}",
                extra={"store_path": str(store_path)},
            )
            return False

        self._service = service
        self._state = IndexState.PERSISTED
        self._is_loaded = True
        logger.info(
            "BM25 index loaded",
            extra={"store_path": str(store_path), "document_count": service.document_count},
        )
        return True

    async def search(self, query: str, limit: int = 10) -> List[ScoredDocument]:
        """
        Search the index and resolve hits through the document cache.

        Returns fewer than ``limit`` results when cached documents are
        missing. Returns an empty list when no index is loaded.
        """
        if not self._is_loaded or self._service is None:
            logger.warning("BM25 search called, but index is not loaded. Returning empty results.")
            return []

        hits = self._service.search(query, limit=limit)
        if not hits:
            return []

        documents = await asyncio.gather(
            *(self._cache_get(doc_id) for doc_id, _ in hits)
        )

        results: List[ScoredDocument] = []
        for (doc_id, score), document in zip(hits, documents):
            if document is None:
                continue
            results.append(ScoredDocument(document_id=doc_id, document=document, score=score))

        dropped = len(hits) - len(results)
        if dropped:
            logger.info(
                "Dropped BM25 hits missing from document cache",
                extra={"dropped": dropped, "requested": limit},
            )
        return results

    async def _cache_set(self, doc_id: int, document: Document) -> bool:
        try:
            stored = await self._cache.set(doc_id, document)
        except Exception as e:
            logger.error(
                f"Error setting document in cache: {e}",
                extra={"document_id": doc_id},
            )
            return False
        if not stored:
            logger.warning("Document not written to cache", extra={"document_id": doc_id})
        return bool(stored)

    async def _cache_get(self, doc_id: int) -> Optional[Document]:
        try:
            return await self._cache.get(doc_id)
        except Exception as e:
            logger.error(
                f"Error getting document from cache: {e}",
                extra={"document_id": doc_id},
            )
            return None
