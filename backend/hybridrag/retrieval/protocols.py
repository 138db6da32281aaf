"""
Protocol definitions for the collaborators of the retrieval module.

The sparse index depends on a document cache and the orchestrator on a
dense retriever; both are addressed only through these contracts.
"""

from typing import Optional, Protocol, Sequence, runtime_checkable

from .types import Document, RetrievedDocument


@runtime_checkable
class DocumentCacheProtocol(Protocol):
    """Key-value store mapping a document id to its cached document."""

    async def get(self, document_id: int) -> Optional[Document]:
        """Fetch a document.

        Returns:
            The document, or None on a miss. Backend failures are reported
            as misses and never raised.
        """
        ...

    async def set(self, document_id: int, document: Document) -> bool:
        """Store a document.

        Returns:
            True on success, False if the write failed (never raises)
        """
        ...


@runtime_checkable
class DenseRetriever(Protocol):
    """Vector-similarity retriever supplied by the caller."""

    async def retrieve(self, query: str, k: int) -> Sequence[RetrievedDocument]:
        """Return up to k documents, most relevant first."""
        ...
