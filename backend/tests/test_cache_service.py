import json

from hybridrag.retrieval.types import Document
from hybridrag.services.cache_service import DocumentCache, document_cache_key

from conftest import FakeAsyncRedis, run


def test_document_cache_key():
    assert document_cache_key(0) == "doc:0"
    assert document_cache_key(42) == "doc:42"


def test_document_cache_set_and_get(fake_redis):
    cache = DocumentCache(redis_client=fake_redis)
    document = Document(text="Proof of work secures Bitcoin", source_ref="btc.pdf#1")

    assert run(cache.set(3, document)) is True
    assert json.loads(fake_redis.store["doc:3"]) == {
        "text": "Proof of work secures Bitcoin",
        "source_ref": "btc.pdf#1",
    }
    assert run(cache.get(3)) == document
    assert cache.metrics["hit"] == 1


def test_document_cache_keeps_non_ascii_text(fake_redis):
    cache = DocumentCache(redis_client=fake_redis)
    document = Document(text="工作量证明保护比特币")
    run(cache.set(1, document))
    assert "工作量证明" in fake_redis.store["doc:1"]
    assert run(cache.get(1)) == document


def test_document_cache_miss(document_cache):
    assert run(document_cache.get(99)) is None
    assert document_cache.metrics["miss"] == 1


def test_document_cache_ttl_uses_setex(fake_redis):
    cache = DocumentCache(redis_client=fake_redis, ttl=3600)
    run(cache.set(5, Document(text="cached with expiry")))
    assert fake_redis.ttls == {"doc:5": 3600}


def test_document_cache_without_ttl_never_expires(fake_redis):
    cache = DocumentCache(redis_client=fake_redis)
    run(cache.set(5, Document(text="cached forever")))
    assert fake_redis.ttls == {}
    assert "doc:5" in fake_redis.store


def test_document_cache_get_failure_is_a_miss():
    cache = DocumentCache(redis_client=FakeAsyncRedis(fail_on_get=True))
    assert run(cache.get(1)) is None
    assert cache.metrics["error"] == 1


def test_document_cache_set_failure_returns_false():
    cache = DocumentCache(redis_client=FakeAsyncRedis(fail_on_set=True))
    assert run(cache.set(1, Document(text="lost write"))) is False


def test_document_cache_malformed_entry(fake_redis):
    cache = DocumentCache(redis_client=fake_redis)
    fake_redis.store["doc:1"] = "{not json"
    fake_redis.store["doc:2"] = json.dumps({"source_ref": "no text"})
    fake_redis.store["doc:3"] = json.dumps(["a", "list"])

    assert run(cache.get(1)) is None
    assert run(cache.get(2)) is None
    assert run(cache.get(3)) is None
    assert cache.metrics["error"] == 3


def test_document_cache_decodes_bytes(fake_redis):
    cache = DocumentCache(redis_client=fake_redis)
    fake_redis.store["doc:7"] = json.dumps({"text": "raw bytes"}).encode("utf-8")
    assert run(cache.get(7)) == Document(text="raw bytes", source_ref="")


def test_document_cache_invalid_utf8_is_a_miss(fake_redis):
    cache = DocumentCache(redis_client=fake_redis)
    fake_redis.store["doc:3"] = b"\xff\xfe{not utf8"
    assert run(cache.get(3)) is None
    assert cache.metrics["error"] == 1


def test_document_cache_close(fake_redis):
    cache = DocumentCache(redis_client=fake_redis)
    run(cache.close())
