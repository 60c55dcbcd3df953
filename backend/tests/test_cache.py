"""Tests for cache.py -- request fingerprints and the response cache."""

from cache import ResponseCache, request_fingerprint
from models.schemas import WorkflowRequest


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Fingerprint
# ---------------------------------------------------------------------------


class TestRequestFingerprint:
    def test_whitespace_is_collapsed(self) -> None:
        assert request_fingerprint("p1", "code a  hello\n world agent ") == (
            request_fingerprint("p1", "code a hello world agent")
        )

    def test_project_is_part_of_the_key(self) -> None:
        assert request_fingerprint("p1", "same") != request_fingerprint("p2", "same")

    def test_case_is_preserved(self) -> None:
        assert request_fingerprint("p1", "Build") != request_fingerprint("p1", "build")

    def test_sha256_hex(self) -> None:
        key = request_fingerprint("p1", "hello")
        assert len(key) == 64
        int(key, 16)

    def test_request_property(self) -> None:
        request = WorkflowRequest(raw_prompt="hello   world", project_id="p1")
        assert request.fingerprint == request_fingerprint("p1", "hello world")


# ---------------------------------------------------------------------------
# ResponseCache
# ---------------------------------------------------------------------------


class TestResponseCache:
    def test_get_missing(self) -> None:
        assert ResponseCache().get("nope") is None

    def test_set_then_get(self) -> None:
        cache = ResponseCache()
        cache.set("k", {"title": "Hello Agent"})
        assert cache.get("k") == {"title": "Hello Agent"}

    def test_entry_expires_after_ttl(self) -> None:
        clock = FakeClock()
        cache = ResponseCache(ttl_seconds=300, clock=clock)
        cache.set("k", "v")

        clock.now += 299.5
        assert cache.get("k") == "v"

        clock.now += 0.5
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_entry_at_exact_ttl_is_stale(self) -> None:
        clock = FakeClock()
        cache = ResponseCache(ttl_seconds=300, clock=clock)
        cache.set("k", "v")

        clock.now = 1300.0
        assert cache.get("k") is None

    def test_capacity_evicts_oldest(self) -> None:
        cache = ResponseCache(capacity=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)

        assert cache.get("a") is None
        assert cache.get("b") == 2
        assert cache.get("c") == 3
        assert len(cache) == 2

    def test_default_capacity_evicts_first_key_only(self) -> None:
        cache = ResponseCache()
        for i in range(101):
            cache.set(f"key-{i}", i)

        assert len(cache) == 100
        assert cache.get("key-0") is None
        assert cache.get("key-1") == 1
        assert cache.get("key-100") == 100

    def test_reinsert_moves_key_to_newest(self) -> None:
        cache = ResponseCache(capacity=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        cache.set("c", 3)

        assert cache.get("a") == 10
        assert cache.get("b") is None

    def test_reinsert_refreshes_timestamp(self) -> None:
        clock = FakeClock()
        cache = ResponseCache(ttl_seconds=10, clock=clock)
        cache.set("k", 1)
        clock.now += 8
        cache.set("k", 2)
        clock.now += 8
        assert cache.get("k") == 2

    def test_clear(self) -> None:
        cache = ResponseCache()
        cache.set("k", 1)
        cache.clear()
        assert len(cache) == 0
