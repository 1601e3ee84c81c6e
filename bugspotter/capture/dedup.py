"""Two independent dedup stores.

- `RecentSignalCache`: per-session short sliding window over raw HTTP error
  signals, so one failure seen by two capture paths is handled once.
- `ProcessedErrorCache`: global long-TTL fingerprint map, persisted
  write-through, so an error that already produced a report is not triaged
  again (also across restarts).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .log_model import Clock, LogEntry, now_ms
from .persist import KEY_PROCESSED, StateStore

_LOGGER = logging.getLogger("bugspotter.capture.dedup")

SNIPPET_CHARS = 200


@dataclass(frozen=True, slots=True)
class RecentSignal:
    url: str
    status: int
    timestamp_ms: int


class RecentSignalCache:
    def __init__(self, *, window_ms: int = 5_000) -> None:
        self.window_ms = max(0, int(window_ms))
        self._signals: dict[str, list[RecentSignal]] = {}

    def is_duplicate(self, session_key: str, url: str, status: int, timestamp_ms: int) -> bool:
        """Classify a signal; records it when it is new."""
        ts = int(timestamp_ms)
        valid = [s for s in self._signals.get(session_key, []) if ts - s.timestamp_ms <= self.window_ms]
        duplicate = any(
            s.url == url and s.status == status and abs(ts - s.timestamp_ms) <= self.window_ms for s in valid
        )
        if not duplicate:
            valid.append(RecentSignal(url=url, status=int(status), timestamp_ms=ts))
        self._signals[session_key] = valid
        return duplicate

    def forget(self, session_key: str) -> None:
        self._signals.pop(session_key, None)

    def prune(self, now_ms: int) -> int:
        removed = 0
        for key in list(self._signals.keys()):
            cur = self._signals[key]
            kept = [s for s in cur if int(now_ms) - s.timestamp_ms <= self.window_ms]
            removed += len(cur) - len(kept)
            if kept:
                self._signals[key] = kept
            else:
                del self._signals[key]
        return removed

    def size(self, session_key: str | None = None) -> int:
        if session_key is not None:
            return len(self._signals.get(session_key, []))
        return sum(len(v) for v in self._signals.values())


def _rolling_hash(text: str) -> int:
    """32-bit signed `h = h*31 + c` over UTF-16 code units."""
    h = 0
    data = text.encode("utf-16-le", errors="surrogatepass")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def fingerprint_fields(
    *, url: str | None, status: int | None, method: str | None, body: str | None
) -> str:
    data: dict[str, Any] = {}
    if url is not None:
        data["url"] = url
    if status is not None:
        data["status"] = status
    data["method"] = method or "GET"
    data["responseSnippet"] = str(body or "")[:SNIPPET_CHARS]
    text = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return str(_rolling_hash(text))


def fingerprint(entry: LogEntry) -> str:
    """Stable key for "the same error" (timestamps excluded)."""
    body = entry.response_body or entry.decoded_body or ""
    return fingerprint_fields(url=entry.url, status=entry.status, method=entry.method, body=body)


class ProcessedErrorCache:
    def __init__(self, store: StateStore, *, ttl_ms: int = 24 * 60 * 60 * 1000, clock: Clock = now_ms) -> None:
        self._store = store
        self.ttl_ms = max(0, int(ttl_ms))
        self._clock = clock
        self._seen: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, digest: object) -> bool:
        return digest in self._seen

    def _save(self) -> None:
        self._store.set(KEY_PROCESSED, dict(self._seen))

    def load(self) -> int:
        """Load persisted fingerprints; expired ones are dropped (and the cleaned map saved)."""
        raw = self._store.get(KEY_PROCESSED, {})
        now = self._clock()
        loaded = 0
        expired = 0
        self._seen = {}
        if isinstance(raw, Mapping):
            for digest, ts in raw.items():
                if not isinstance(digest, str) or isinstance(ts, bool) or not isinstance(ts, (int, float)):
                    expired += 1
                    continue
                if now - int(ts) <= self.ttl_ms:
                    self._seen[digest] = int(ts)
                    loaded += 1
                else:
                    expired += 1
        if expired:
            self._save()
        _LOGGER.info("processed_errors_loaded count=%s expired=%s", loaded, expired)
        return loaded

    def is_processed(self, digest: str) -> bool:
        ts = self._seen.get(digest)
        if ts is None:
            return False
        if self._clock() - ts > self.ttl_ms:
            self._seen.pop(digest, None)
            self._save()
            return False
        return True

    def mark_processed(self, digest: str) -> None:
        self._seen[digest] = self._clock()
        self._save()
        self.sweep()

    def unmark(self, digest: str) -> bool:
        if self._seen.pop(digest, None) is None:
            return False
        self._save()
        return True

    def sweep(self) -> int:
        now = self._clock()
        stale = [d for d, ts in self._seen.items() if now - ts > self.ttl_ms]
        for digest in stale:
            del self._seen[digest]
        if stale:
            _LOGGER.info("processed_errors_swept removed=%s remaining=%s", len(stale), len(self._seen))
            self._save()
        return len(stale)


__all__ = [
    "ProcessedErrorCache",
    "RecentSignal",
    "RecentSignalCache",
    "SNIPPET_CHARS",
    "fingerprint",
    "fingerprint_fields",
]
