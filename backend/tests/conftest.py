import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from hybridrag.core.config import get_settings
from hybridrag.retrieval.tokenizer import TokenizationPipeline
from hybridrag.retrieval.types import Document, RetrievedDocument
from hybridrag.services.cache_service import DocumentCache


class FakeAsyncRedis:
    """In-memory stand-in for redis.asyncio.Redis (get/set/setex only)."""

    def __init__(self, fail_on_get: bool = False, fail_on_set: bool = False):
        self.store: Dict[str, str] = {}
        self.fail_on_get = fail_on_get
        self.fail_on_set = fail_on_set
        self.ttls: Dict[str, int] = {}

    async def get(self, key):
        if self.fail_on_get:
            raise ConnectionError("Simulated Redis outage")
        return self.store.get(key)

    async def set(self, key, value):
        if self.fail_on_set:
            raise ConnectionError("Simulated Redis outage")
        self.store[key] = value
        return True

    async def setex(self, key, ttl, value):
        if self.fail_on_set:
            raise ConnectionError("Simulated Redis outage")
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def aclose(self):
        return None


class DictDocumentCache:
    """Minimal cache satisfying DocumentCacheProtocol, with optional holes."""

    def __init__(self, missing: Sequence[int] = ()):
        self.documents: Dict[int, Document] = {}
        self.missing = set(missing)
        self.get_calls: List[int] = []

    async def get(self, document_id: int) -> Optional[Document]:
        self.get_calls.append(document_id)
        if document_id in self.missing:
            return None
        return self.documents.get(document_id)

    async def set(self, document_id: int, document: Document) -> bool:
        self.documents[document_id] = document
        return True


class StaticDenseRetriever:
    """Dense retriever returning a fixed ranked list."""

    def __init__(self, texts: Sequence[str] = (), fail: bool = False):
        self.texts = list(texts)
        self.fail = fail
        self.calls: List[tuple] = []

    async def retrieve(self, query: str, k: int) -> List[RetrievedDocument]:
        self.calls.append((query, k))
        if self.fail:
            raise RuntimeError("Simulated vector store failure")
        return [
            RetrievedDocument(text=text, metadata={"source": "dense", "position": i})
            for i, text in enumerate(self.texts[:k])
        ]


CORPUS = [
    Document(text="Bitcoin uses proof of work to secure its blockchain", source_ref="btc.pdf#1"),
    Document(text="Ethereum executes smart contracts on a virtual machine", source_ref="eth.pdf#1"),
    Document(text="Proof of stake validators lock collateral to produce blocks", source_ref="pos.pdf#1"),
    Document(text="Lightning channels enable fast off-chain payments", source_ref="ln.pdf#1"),
    Document(text="Merkle trees summarise every transaction in a block", source_ref="btc.pdf#2"),
    Document(text="Gas fees pay for computation of smart contracts", source_ref="eth.pdf#2"),
]


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def pipeline() -> TokenizationPipeline:
    return TokenizationPipeline()


@pytest.fixture
def fake_redis() -> FakeAsyncRedis:
    return FakeAsyncRedis()


@pytest.fixture
def document_cache(fake_redis: FakeAsyncRedis) -> DocumentCache:
    return DocumentCache(redis_client=fake_redis)


@pytest.fixture
def temp_index_dir():
    """Create a temporary directory for BM25 index files."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
