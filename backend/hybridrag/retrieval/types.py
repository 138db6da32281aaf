"""
Core types shared by the sparse index, the fusion layer and the orchestrator.
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def content_hash(text: str) -> str:
    """SHA-256 of the exact document text; the dedup key across sources."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Document:
    """A cached document: original text plus where it came from."""
    text: str
    source_ref: str = ""


@dataclass(frozen=True)
class ScoredDocument:
    """A sparse hit resolved against the document cache."""
    document_id: int
    document: Document
    score: float


@dataclass
class RetrievedDocument:
    """A document as handed to fusion by either retrieval source."""
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FusionCandidate:
    """
    One distinct document (by content hash) seen during a query.

    ``None`` on a rank/score field means the source did not return the
    document. Defaults for absent fields are applied at fusion time only.
    """
    content_hash: str
    document: RetrievedDocument
    dense_rank: Optional[int] = None
    dense_score: Optional[float] = None
    sparse_rank: Optional[int] = None
    sparse_score: Optional[float] = None
    fused_score: Optional[float] = None


@dataclass
class RetrievalResult:
    """Final, fused retrieval result."""
    text: str
    content_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    dense_rank: Optional[int] = None
    sparse_rank: Optional[int] = None
    dense_score: Optional[float] = None
    sparse_score: Optional[float] = None
    fused_score: float = 0.0

    @classmethod
    def from_candidate(cls, candidate: FusionCandidate) -> "RetrievalResult":
        return cls(
            text=candidate.document.text,
            content_hash=candidate.content_hash,
            metadata=dict(candidate.document.metadata),
            dense_rank=candidate.dense_rank,
            sparse_rank=candidate.sparse_rank,
            dense_score=candidate.dense_score,
            sparse_score=candidate.sparse_score,
            fused_score=candidate.fused_score or 0.0,
        )


class FusionMode(str, Enum):
    """Available fusion algorithms."""
    RRF = "rrf"
    WEIGHTED = "weighted"


class RetrievalOptions(BaseModel):
    """Per-query options for hybrid retrieval."""
    final_k: int = Field(default=3, gt=0, description="Number of fused results to return")
    pre_rerank_k: int = Field(
        default=10, ge=1, le=1000,
        description="Number of documents requested from each source before fusion",
    )
    fusion_mode: FusionMode = FusionMode.RRF
    alpha: float = Field(default=0.5, ge=0.0, le=1.0, description="Dense weight in weighted mode")
    rrf_constant: int = Field(default=60, gt=0)
    absent_rank: Optional[int] = Field(
        default=None, ge=0,
        description="Rank assumed for a source that did not return a document "
                    "(RRF only). None means pre_rerank_k.",
    )

    @property
    def effective_absent_rank(self) -> int:
        return self.pre_rerank_k if self.absent_rank is None else self.absent_rank

    def merged(self, **overrides: Any) -> "RetrievalOptions":
        """Return a validated copy with the non-None overrides applied."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return RetrievalOptions.model_validate(data)

    @classmethod
    def from_settings(cls, settings: Any) -> "RetrievalOptions":
        return cls(
            final_k=settings.retrieval_final_k,
            pre_rerank_k=settings.retrieval_pre_rerank_k,
            fusion_mode=settings.fusion_mode,
            alpha=settings.fusion_alpha,
            rrf_constant=settings.rrf_constant,
            absent_rank=settings.rrf_absent_rank,
        )
