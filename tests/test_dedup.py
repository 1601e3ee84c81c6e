from __future__ import annotations

from bugspotter.capture.dedup import (
    ProcessedErrorCache,
    RecentSignalCache,
    _rolling_hash,
    fingerprint,
    fingerprint_fields,
)
from bugspotter.capture.log_model import LogEntry
from bugspotter.capture.persist import KEY_PROCESSED, MemoryStateStore

from fakes import FakeClock

DAY_MS = 24 * 60 * 60 * 1000


def _error(*, ts: str = "2024-01-01T00:00:00.000Z", body: str = '{"error":"boom"}') -> LogEntry:
    return LogEntry(
        kind="http-error-with-body",
        level="error",
        text="[HTTP ERROR] 500",
        timestamp=ts,
        url="https://x/a",
        method="POST",
        status=500,
        response_body=body,
    )


def test_recent_signal_within_window_is_duplicate() -> None:
    cache = RecentSignalCache(window_ms=5_000)
    assert cache.is_duplicate("s1", "https://x/a", 500, 1_000) is False
    assert cache.is_duplicate("s1", "https://x/a", 500, 4_000) is True


def test_recent_signal_after_window_is_not_duplicate() -> None:
    cache = RecentSignalCache(window_ms=5_000)
    assert cache.is_duplicate("s1", "https://x/a", 500, 1_000) is False
    assert cache.is_duplicate("s1", "https://x/a", 500, 6_001) is False


def test_recent_signal_is_scoped_by_session_url_and_status() -> None:
    cache = RecentSignalCache(window_ms=5_000)
    assert cache.is_duplicate("s1", "https://x/a", 500, 1_000) is False
    assert cache.is_duplicate("s2", "https://x/a", 500, 1_000) is False
    assert cache.is_duplicate("s1", "https://x/a", 502, 1_000) is False
    assert cache.is_duplicate("s1", "https://x/b", 500, 1_000) is False
    assert cache.size() == 4


def test_recent_signal_prune_and_forget() -> None:
    cache = RecentSignalCache(window_ms=5_000)
    cache.is_duplicate("s1", "https://x/a", 500, 1_000)
    cache.is_duplicate("s2", "https://x/a", 500, 9_000)
    assert cache.prune(10_000) == 1
    assert cache.size("s1") == 0
    cache.forget("s2")
    assert cache.size() == 0


def test_rolling_hash_matches_java_string_hash() -> None:
    assert _rolling_hash("") == 0
    assert _rolling_hash("a") == 97
    assert _rolling_hash("hello") == 99162322
    # Overflow wraps to a signed 32-bit value.
    assert _rolling_hash("polygenelubricants") == -2147483648


def test_fingerprint_ignores_timestamp() -> None:
    a = _error(ts="2024-01-01T00:00:00.000Z")
    b = _error(ts="2024-06-30T12:00:00.000Z")
    assert fingerprint(a) == fingerprint(b)


def test_fingerprint_uses_only_first_200_body_chars() -> None:
    prefix = "x" * 200
    a = _error(body=prefix + "tail-one")
    b = _error(body=prefix + "tail-two")
    c = _error(body="y" + prefix)
    assert fingerprint(a) == fingerprint(b)
    assert fingerprint(a) != fingerprint(c)


def test_fingerprint_distinguishes_method_and_status() -> None:
    base = fingerprint_fields(url="https://x/a", status=500, method="POST", body="")
    assert base != fingerprint_fields(url="https://x/a", status=500, method="GET", body="")
    assert base != fingerprint_fields(url="https://x/a", status=502, method="POST", body="")
    assert fingerprint_fields(url="https://x/a", status=500, method=None, body="") == fingerprint_fields(
        url="https://x/a", status=500, method="GET", body=""
    )


def test_processed_cache_is_processed_until_ttl_elapses() -> None:
    clock = FakeClock()
    cache = ProcessedErrorCache(MemoryStateStore(), ttl_ms=DAY_MS, clock=clock)
    cache.mark_processed("h1")
    clock.advance(DAY_MS)
    assert cache.is_processed("h1") is True
    clock.advance(1)
    assert cache.is_processed("h1") is False
    assert "h1" not in cache


def test_processed_cache_writes_through() -> None:
    clock = FakeClock()
    store = MemoryStateStore()
    cache = ProcessedErrorCache(store, ttl_ms=DAY_MS, clock=clock)
    cache.mark_processed("h1")
    assert store.get(KEY_PROCESSED) == {"h1": clock.now}

    reloaded = ProcessedErrorCache(store, ttl_ms=DAY_MS, clock=clock)
    assert reloaded.load() == 1
    assert reloaded.is_processed("h1") is True


def test_processed_cache_load_drops_expired_and_persists_cleaned_map() -> None:
    clock = FakeClock()
    store = MemoryStateStore({KEY_PROCESSED: {"fresh": clock.now - 1_000, "stale": clock.now - DAY_MS - 1}})
    cache = ProcessedErrorCache(store, ttl_ms=DAY_MS, clock=clock)
    assert cache.load() == 1
    assert store.get(KEY_PROCESSED) == {"fresh": clock.now - 1_000}


def test_mark_processed_sweeps_expired_entries() -> None:
    clock = FakeClock()
    store = MemoryStateStore()
    cache = ProcessedErrorCache(store, ttl_ms=DAY_MS, clock=clock)
    cache.mark_processed("old")
    clock.advance(DAY_MS + 1)
    cache.mark_processed("new")
    assert set(store.get(KEY_PROCESSED)) == {"new"}


def test_unmark_allows_retry() -> None:
    store = MemoryStateStore()
    cache = ProcessedErrorCache(store, clock=FakeClock())
    cache.mark_processed("h1")
    assert cache.unmark("h1") is True
    assert cache.is_processed("h1") is False
    assert store.get(KEY_PROCESSED) == {}
    assert cache.unmark("h1") is False


def test_expired_lookup_is_persisted() -> None:
    clock = FakeClock()
    store = MemoryStateStore()
    cache = ProcessedErrorCache(store, ttl_ms=DAY_MS, clock=clock)
    cache.mark_processed("h1")
    clock.advance(DAY_MS + 1)
    assert cache.is_processed("h1") is False
    assert store.get(KEY_PROCESSED) == {}

    reloaded = ProcessedErrorCache(store, ttl_ms=DAY_MS, clock=clock)
    assert reloaded.load() == 0
