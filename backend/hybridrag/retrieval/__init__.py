"""
Retrieval module for hybrid search.

Contains:
- Tokenization pipeline shared by BM25 indexing and querying
- BM25 scoring engine and the persisted sparse index engine
- Content-hash deduplication and rank fusion (RRF, weighted)
- Dense retriever protocol and a ChromaDB adapter
- Hybrid retriever orchestrating both sources
"""

from .tokenizer import (
    PipelineConfig,
    TokenizationPipeline,
    default_pipeline,
    is_chinese_text,
    tokenize,
)
from .types import (
    Document,
    FusionCandidate,
    FusionMode,
    RetrievalOptions,
    RetrievalResult,
    RetrievedDocument,
    ScoredDocument,
    content_hash,
)
from .protocols import (
    DenseRetriever,
    DocumentCacheProtocol,
)
from .bm25_service import BM25Service
from .bm25_store import IndexState, SparseIndexEngine
from .fusion import (
    fuse,
    merge_candidates,
    reciprocal_rank_fusion,
    weighted_score_fusion,
)
from .dense import ChromaDenseRetriever
from .hybrid_retriever import HybridRetriever, RetrievalCancelledError

__all__ = [
    "PipelineConfig",
    "TokenizationPipeline",
    "default_pipeline",
    "is_chinese_text",
    "tokenize",
    "Document",
    "FusionCandidate",
    "FusionMode",
    "RetrievalOptions",
    "RetrievalResult",
    "RetrievedDocument",
    "ScoredDocument",
    "content_hash",
    "DenseRetriever",
    "DocumentCacheProtocol",
    "BM25Service",
    "IndexState",
    "SparseIndexEngine",
    "fuse",
    "merge_candidates",
    "reciprocal_rank_fusion",
    "weighted_score_fusion",
    "ChromaDenseRetriever",
    "HybridRetriever",
    "RetrievalCancelledError",
]
