"""
Deduplication and rank fusion for hybrid retrieval.

Candidates are keyed by the SHA-256 of their text so the same passage
returned by both sources is fused once. Two algorithms are available:

Reciprocal Rank Fusion:
    RRF(d) = 1 / (k + dense_rank(d)) + 1 / (k + sparse_rank(d))

Weighted score fusion:
    S(d) = alpha * dense_score(d) + (1 - alpha) * sparse_score(d)

Ranks are zero-based list positions. Source scores are rank-derived
proxies (``pre_rerank_k - rank``) because the dense collaborator does not
expose comparable relevance magnitudes.
"""

from typing import Dict, Iterable, List, Sequence

from .types import (
    FusionCandidate,
    FusionMode,
    RetrievalOptions,
    RetrievedDocument,
    content_hash,
)


DEFAULT_RRF_CONSTANT = 60


def merge_candidates(
    dense_results: Sequence[RetrievedDocument],
    sparse_results: Sequence[RetrievedDocument],
    pre_rerank_k: int,
) -> Dict[str, FusionCandidate]:
    """
    Deduplicate both result lists into one candidate per content hash.

    Dense results are visited first. A hash seen again only gains the
    other source's rank and score; its document payload is never replaced.
    Fields of a source that did not return the document stay None.

    Args:
        dense_results: Dense results, most relevant first
        sparse_results: Sparse results, most relevant first
        pre_rerank_k: Retrieval window; each list is truncated to it

    Returns:
        Insertion-ordered mapping of content hash -> FusionCandidate
    """
    candidates: Dict[str, FusionCandidate] = {}

    for rank, document in enumerate(dense_results[:pre_rerank_k]):
        key = content_hash(document.text)
        candidate = candidates.get(key)
        if candidate is None:
            candidate = FusionCandidate(content_hash=key, document=document)
            candidates[key] = candidate
        if candidate.dense_rank is None:
            candidate.dense_rank = rank
            candidate.dense_score = float(pre_rerank_k - rank)

    for rank, document in enumerate(sparse_results[:pre_rerank_k]):
        key = content_hash(document.text)
        candidate = candidates.get(key)
        if candidate is None:
            candidate = FusionCandidate(content_hash=key, document=document)
            candidates[key] = candidate
        if candidate.sparse_rank is None:
            candidate.sparse_rank = rank
            candidate.sparse_score = float(pre_rerank_k - rank)

    return candidates


def _validate_final_k(final_k: int) -> None:
    if final_k <= 0:
        raise ValueError("final_k must be greater than 0")


def _rank_and_truncate(candidates: Iterable[FusionCandidate], final_k: int) -> List[FusionCandidate]:
    # sorted() is stable: equal scores keep first-seen order
    ranked = sorted(candidates, key=lambda c: c.fused_score, reverse=True)
    return ranked[:final_k]


def reciprocal_rank_fusion(
    candidates: Dict[str, FusionCandidate],
    final_k: int,
    rrf_constant: int = DEFAULT_RRF_CONSTANT,
    absent_rank: int = 0,
) -> List[FusionCandidate]:
    """
    Fuse candidates with Reciprocal Rank Fusion.

    Args:
        candidates: Output of merge_candidates
        final_k: Maximum number of candidates to return
        rrf_constant: RRF k; dampens the weight of top ranks
        absent_rank: Rank used for a source that did not return the
            document. 0 treats it as that source's top hit; a value of
            pre_rerank_k places it just outside the retrieved window.

    Returns:
        Candidates sorted by descending fused score, at most final_k
    """
    _validate_final_k(final_k)
    if rrf_constant <= 0:
        raise ValueError("rrf_constant must be greater than 0")
    if absent_rank < 0:
        raise ValueError("absent_rank must be non-negative")

    for candidate in candidates.values():
        dense_rank = absent_rank if candidate.dense_rank is None else candidate.dense_rank
        sparse_rank = absent_rank if candidate.sparse_rank is None else candidate.sparse_rank
        candidate.fused_score = (
            1.0 / (rrf_constant + dense_rank) + 1.0 / (rrf_constant + sparse_rank)
        )

    return _rank_and_truncate(candidates.values(), final_k)


def weighted_score_fusion(
    candidates: Dict[str, FusionCandidate],
    final_k: int,
    alpha: float = 0.5,
) -> List[FusionCandidate]:
    """
    Fuse candidates with a convex combination of source scores.

    A source that did not return the document contributes 0. alpha=1
    orders by dense score only, alpha=0 by sparse score only.

    Raises:
        ValueError: If alpha is outside [0, 1] or final_k <= 0
    """
    _validate_final_k(final_k)
    if not 0.0 <= alpha <= 1.0:
        raise ValueError("alpha must be between 0.0 and 1.0")

    for candidate in candidates.values():
        dense_score = candidate.dense_score or 0.0
        sparse_score = candidate.sparse_score or 0.0
        candidate.fused_score = alpha * dense_score + (1.0 - alpha) * sparse_score

    return _rank_and_truncate(candidates.values(), final_k)


def fuse(
    candidates: Dict[str, FusionCandidate],
    options: RetrievalOptions,
) -> List[FusionCandidate]:
    """Run the fusion algorithm selected by options.fusion_mode."""
    if options.fusion_mode == FusionMode.WEIGHTED:
        return weighted_score_fusion(candidates, options.final_k, alpha=options.alpha)
    return reciprocal_rank_fusion(
        candidates,
        options.final_k,
        rrf_constant=options.rrf_constant,
        absent_rank=options.effective_absent_rank,
    )
