"""
ChromaDB-backed dense retriever.

Adapts a Chroma collection to the DenseRetriever protocol. Chroma's client
is synchronous, so queries run in a worker thread to keep the event loop
free for the concurrent sparse search.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import chromadb
from chromadb.config import Settings as ChromaSettings

from ..core.config import Settings
from .types import RetrievedDocument


logger = logging.getLogger(__name__)


class ChromaDenseRetriever:
    """
    Dense retriever over a Chroma collection.

    The collection's embedding function embeds the query text, so the
    collection must have been populated with the same embedding model.
    """

    def __init__(
        self,
        collection: Any,
        where: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Args:
            collection: Chroma collection (or any object with a compatible query())
            where: Optional metadata filter applied to every query
        """
        self._collection = collection
        self._where = where

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        where: Optional[Dict[str, Any]] = None,
    ) -> "ChromaDenseRetriever":
        if settings.chroma_server_host:
            client = chromadb.HttpClient(
                host=settings.chroma_server_host,
                port=settings.chroma_server_port,
                ssl=settings.chroma_server_ssl,
                headers={"Authorization": f"Bearer {settings.chroma_server_api_key}"}
                if settings.chroma_server_api_key else None,
            )
        elif settings.chroma_persist_directory:
            persist_dir = Path(settings.chroma_persist_directory)
            client = chromadb.PersistentClient(
                path=str(persist_dir),
                settings=ChromaSettings(anonymized_telemetry=False),
            )
        else:
            client = chromadb.Client(settings=ChromaSettings(anonymized_telemetry=False))

        collection = client.get_or_create_collection(settings.chroma_collection or "documents")
        return cls(collection, where=where)

    async def retrieve(self, query: str, k: int) -> List[RetrievedDocument]:
        """
        Return up to k documents ordered by similarity.

        Errors from Chroma propagate; the orchestrator decides how to degrade.
        """
        if k <= 0 or not query or not query.strip():
            return []

        query_kwargs: Dict[str, Any] = {
            "query_texts": [query],
            "n_results": k,
            "include": ["documents", "metadatas", "distances"],
        }
        if self._where:
            query_kwargs["where"] = self._where

        results = await asyncio.to_thread(self._collection.query, **query_kwargs)

        if not results.get("ids") or not results["ids"][0]:
            return []

        documents = results.get("documents") or [[]]
        metadatas = results.get("metadatas") or [[]]
        distances = results.get("distances") or [[]]

        retrieved: List[RetrievedDocument] = []
        for idx, chunk_id in enumerate(results["ids"][0]):
            text = documents[0][idx] if idx < len(documents[0]) else None
            if text is None:
                logger.debug("Skipping dense hit without document text", extra={"chunk_id": chunk_id})
                continue
            metadata: Dict[str, Any] = dict(metadatas[0][idx] or {}) if idx < len(metadatas[0]) else {}
            metadata["chunk_id"] = chunk_id
            if idx < len(distances[0]):
                distance = distances[0][idx]
                metadata["distance"] = distance
                # Lower distance = higher similarity
                metadata["similarity"] = 1.0 / (1.0 + distance)
            retrieved.append(RetrievedDocument(text=text, metadata=metadata))

        return retrieved
