from ledger_ingest.domain.ingestion.header_cache import HeaderCache, cache_key
from ledger_ingest.domain.ingestion.types import BlobReference


def test_entry_expires_after_ttl(clock):
    cache = HeaderCache(ttl_seconds=300, clock=clock)
    key = cache_key(BlobReference("bucket", "uploads/gl.csv"))
    cache.set(key, ["Account", "Amount"])

    clock.advance(299)
    assert cache.get(key) == ["Account", "Amount"]

    clock.advance(2)
    assert cache.get(key) is None
    assert len(cache) == 0


def test_cache_key_combines_location_and_key():
    assert cache_key(BlobReference("bucket", "uploads/gl.csv")) == "bucket:uploads/gl.csv:headers"


def test_cached_list_is_a_copy(clock):
    cache = HeaderCache(clock=clock)
    cache.set("k", ["A"])

    cache.get("k").append("B")

    assert cache.get("k") == ["A"]


def test_per_entry_ttl_override(clock):
    cache = HeaderCache(ttl_seconds=300, clock=clock)
    cache.set("short", ["A"], ttl_seconds=10)

    clock.advance(11)

    assert cache.get("short") is None
