"""
Hybrid retriever combining dense (vector) search and sparse (BM25) search.

For each query both sources are called concurrently with the pre-rerank
window, their results are deduplicated by content hash and fused with
Reciprocal Rank Fusion or weighted score fusion, and the top ``final_k``
results are returned.

A source that raises is logged and treated as empty so the other source
can still answer. Only invalid options, cancellation and timeouts reach
the caller as errors.
"""

import asyncio
import logging
import time
import uuid
from typing import List, Optional, Sequence

from ..logging_utils import bind_query_context, reset_query_context
from ..metrics import RETRIEVAL_LATENCY, RETRIEVAL_SOURCE_FAILURES
from .bm25_store import SparseIndexEngine
from .fusion import fuse, merge_candidates
from .protocols import DenseRetriever
from .types import RetrievalOptions, RetrievalResult, RetrievedDocument


logger = logging.getLogger(__name__)


class RetrievalCancelledError(Exception):
    """Raised when a caller's cancel event aborts an in-flight query."""


class HybridRetriever:
    """
    Hybrid retriever over a sparse index engine and a dense retriever.

    Example:
        >>> retriever = HybridRetriever(sparse_engine, ChromaDenseRetriever(collection))
        >>> results = await retriever.retrieve(
        ...     "What is proof of work?",
        ...     RetrievalOptions(final_k=3, pre_rerank_k=10, fusion_mode="rrf"),
        ... )
        >>> for r in results:
        ...     print(f"{r.content_hash[:8]}: {r.fused_score:.4f}")
    """

    def __init__(
        self,
        sparse_engine: SparseIndexEngine,
        dense_retriever: DenseRetriever,
        options: Optional[RetrievalOptions] = None,
    ) -> None:
        """
        Args:
            sparse_engine: Loaded (or freshly built) sparse index engine
            dense_retriever: Collaborator implementing retrieve(query, k)
            options: Default options for queries that do not pass their own
        """
        self._sparse = sparse_engine
        self._dense = dense_retriever
        self._options = options or RetrievalOptions()

    @property
    def options(self) -> RetrievalOptions:
        return self._options

    async def retrieve(
        self,
        query: str,
        options: Optional[RetrievalOptions] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> List[RetrievalResult]:
        """
        Run dense and sparse retrieval concurrently and fuse the results.

        Args:
            query: The search query string
            options: Per-query options; defaults to the retriever's options
            cancel_event: Setting this event aborts both sub-calls
            timeout: Seconds to wait for both sources before aborting

        Returns:
            Up to options.final_k results sorted by fused score (descending)

        Raises:
            RetrievalCancelledError: If cancel_event was set before both sources finished
            TimeoutError: If the sources did not finish within timeout
        """
        options = options or self._options
        token = bind_query_context(uuid.uuid4().hex[:12])
        try:
            return await self._retrieve(query, options, cancel_event, timeout)
        finally:
            reset_query_context(token)

    async def _retrieve(
        self,
        query: str,
        options: RetrievalOptions,
        cancel_event: Optional[asyncio.Event],
        timeout: Optional[float],
    ) -> List[RetrievalResult]:
        start = time.perf_counter()

        if cancel_event is not None and cancel_event.is_set():
            raise RetrievalCancelledError("Retrieval cancelled before it started")

        dense_results, sparse_results = await self._gather_sources(
            query, options.pre_rerank_k, cancel_event, timeout,
        )

        if not dense_results and not sparse_results:
            logger.info("Both retrieval sources returned no results")
            RETRIEVAL_LATENCY.labels(source="hybrid").observe(time.perf_counter() - start)
            return []

        candidates = merge_candidates(dense_results, sparse_results, options.pre_rerank_k)
        fused = fuse(candidates, options)
        results = [RetrievalResult.from_candidate(c) for c in fused]

        RETRIEVAL_LATENCY.labels(source="hybrid").observe(time.perf_counter() - start)
        logger.info(
            "Hybrid retrieval complete",
            extra={
                "dense_count": len(dense_results),
                "sparse_count": len(sparse_results),
                "candidate_count": len(candidates),
                "result_count": len(results),
                "fusion_mode": options.fusion_mode.value,
            },
        )
        return results

    async def _gather_sources(
        self,
        query: str,
        k: int,
        cancel_event: Optional[asyncio.Event],
        timeout: Optional[float],
    ):
        sources = asyncio.gather(
            self._dense_search(query, k),
            self._sparse_search(query, k),
        )
        if cancel_event is None:
            try:
                return await asyncio.wait_for(sources, timeout)
            except asyncio.TimeoutError:
                logger.warning("Hybrid retrieval timed out", extra={"timeout": timeout})
                raise TimeoutError(f"Hybrid retrieval exceeded {timeout}s") from None

        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {sources, cancelled},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            sources.cancel()
            raise
        finally:
            cancelled.cancel()

        if sources in done:
            return sources.result()

        sources.cancel()
        try:
            await sources
        except asyncio.CancelledError:
            pass
        if cancelled in done:
            logger.info("Hybrid retrieval cancelled by caller")
            raise RetrievalCancelledError("Retrieval cancelled")
        logger.warning("Hybrid retrieval timed out", extra={"timeout": timeout})
        raise TimeoutError(f"Hybrid retrieval exceeded {timeout}s")

    async def _dense_search(self, query: str, k: int) -> List[RetrievedDocument]:
        start = time.perf_counter()
        try:
            results: Sequence[RetrievedDocument] = await self._dense.retrieve(query, k)
        except Exception as e:
            RETRIEVAL_SOURCE_FAILURES.labels(source="dense").inc()
            logger.warning(
                f"Dense retrieval failed, continuing with sparse results only: {e}",
                extra={"source": "dense"},
            )
            return []
        finally:
            RETRIEVAL_LATENCY.labels(source="dense").observe(time.perf_counter() - start)
        return list(results or [])

    async def _sparse_search(self, query: str, k: int) -> List[RetrievedDocument]:
        start = time.perf_counter()
        try:
            hits = await self._sparse.search(query, limit=k)
        except Exception as e:
            RETRIEVAL_SOURCE_FAILURES.labels(source="sparse").inc()
            logger.warning(
                f"Sparse retrieval failed, continuing with dense results only: {e}",
                extra={"source": "sparse"},
            )
            return []
        finally:
            RETRIEVAL_LATENCY.labels(source="sparse").observe(time.perf_counter() - start)

        return [
            RetrievedDocument(
                text=hit.document.text,
                metadata={
                    "document_id": hit.document_id,
                    "source_ref": hit.document.source_ref,
                    "bm25_score": hit.score,
                },
            )
            for hit in hits
        ]
