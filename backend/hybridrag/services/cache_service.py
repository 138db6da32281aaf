from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from redis.asyncio import Redis

from ..core.config import Settings, get_settings
from ..metrics import DOCUMENT_CACHE_LOOKUPS, DOCUMENT_CACHE_WRITE_FAILURES
from ..retrieval.types import Document

logger = logging.getLogger(__name__)


def document_cache_key(document_id: int) -> str:
    return f"doc:{document_id}"


class DocumentCache:
    """Redis-backed document cache with simple hit/miss metrics."""

    def __init__(self, redis_client: Optional[Redis] = None, ttl: Optional[int] = None):
        if redis_client is not None:
            self.redis = redis_client
        else:
            settings = get_settings()
            self.redis = Redis.from_url(settings.redis_url, decode_responses=True)
            if ttl is None:
                ttl = settings.document_cache_ttl
        self.ttl = ttl
        self.metrics: Dict[str, int] = {"hit": 0, "miss": 0, "error": 0}

    @classmethod
    def from_settings(cls, settings: Settings) -> "DocumentCache":
        client = Redis.from_url(settings.redis_url, decode_responses=True)
        return cls(redis_client=client, ttl=settings.document_cache_ttl)

    async def get(self, document_id: int) -> Optional[Document]:
        key = document_cache_key(document_id)
        try:
            raw = await self.redis.get(key)
        except Exception as exc:
            self._record("error")
            logger.error(
                "Document cache get failed, treating as miss",
                extra={"document_id": document_id, "error": str(exc)},
            )
            return None

        if raw is None:
            self._record("miss")
            logger.debug("Document cache miss", extra={"document_id": document_id})
            return None

        document = self._decode(raw)
        if document is None:
            self._record("error")
            logger.warning(
                "Malformed document cache entry, treating as miss",
                extra={"document_id": document_id},
            )
            return None

        self._record("hit")
        return document

    async def set(self, document_id: int, document: Document) -> bool:
        key = document_cache_key(document_id)
        payload = json.dumps(
            {"text": document.text, "source_ref": document.source_ref},
            ensure_ascii=False,
        )
        try:
            if self.ttl:
                await self.redis.setex(key, self.ttl, payload)
            else:
                await self.redis.set(key, payload)
        except Exception as exc:
            DOCUMENT_CACHE_WRITE_FAILURES.inc()
            logger.error(
                "Document cache set failed",
                extra={"document_id": document_id, "error": str(exc)},
            )
            return False
        return True

    async def close(self) -> None:
        await self.redis.aclose()

    @staticmethod
    def _decode(raw: Any) -> Optional[Document]:
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            data = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict) or not isinstance(data.get("text"), str):
            return None
        return Document(text=data["text"], source_ref=str(data.get("source_ref") or ""))

    # --- Metrics helpers -------------------------------------------------
    def _record(self, outcome: str) -> None:
        self.metrics[outcome] += 1
        DOCUMENT_CACHE_LOOKUPS.labels(outcome=outcome).inc()
