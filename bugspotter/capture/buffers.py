"""Bounded per-session log buffers and the longer-lived persistent record.

All mutation happens on the event loop thread; nothing here awaits.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from .log_model import LogEntry

DEFAULT_CAP = 200


def append_bounded(buf: list[LogEntry], entry: LogEntry, cap: int = DEFAULT_CAP) -> None:
    buf.append(entry)
    cap = max(1, int(cap))
    if len(buf) > cap:
        del buf[: len(buf) - cap]


def prepend_bounded(buf: list[LogEntry], entries: Iterable[LogEntry], cap: int = DEFAULT_CAP) -> None:
    """Insert older entries at the front; overflow still evicts the oldest."""
    items = list(entries)
    if not items:
        return
    buf[:0] = items
    cap = max(1, int(cap))
    if len(buf) > cap:
        del buf[: len(buf) - cap]


def replace_where(
    buf: list[LogEntry],
    predicate: Callable[[LogEntry], bool],
    fn: Callable[[LogEntry], LogEntry],
) -> LogEntry | None:
    """Replace the newest matching entry in place; returns the replacement."""
    for idx in range(len(buf) - 1, -1, -1):
        cur = buf[idx]
        if predicate(cur):
            new = fn(cur)
            buf[idx] = new
            return new
    return None


def find_last(buf: list[LogEntry], predicate: Callable[[LogEntry], bool]) -> LogEntry | None:
    for entry in reversed(buf):
        if predicate(entry):
            return entry
    return None


@dataclass(slots=True)
class SessionBuffers:
    """Live capture lists owned by one attached session."""

    cap: int = DEFAULT_CAP
    logs: list[LogEntry] = field(default_factory=list)
    network_requests: list[LogEntry] = field(default_factory=list)
    errors: list[LogEntry] = field(default_factory=list)

    def add_log(self, entry: LogEntry) -> None:
        append_bounded(self.logs, entry, self.cap)

    def add_request(self, entry: LogEntry) -> None:
        append_bounded(self.network_requests, entry, self.cap)

    def add_error(self, entry: LogEntry) -> None:
        append_bounded(self.errors, entry, self.cap)


@dataclass(slots=True)
class PersistentLogRecord:
    """Per-target accumulation that survives re-attachment."""

    cap: int = DEFAULT_CAP
    logs: list[LogEntry] = field(default_factory=list)
    network_requests: list[LogEntry] = field(default_factory=list)
    errors: list[LogEntry] = field(default_factory=list)
    last_activity_ms: int = 0

    def touch(self, now_ms: int) -> None:
        self.last_activity_ms = max(self.last_activity_ms, int(now_ms))

    def add_log(self, entry: LogEntry, now_ms: int) -> None:
        append_bounded(self.logs, entry, self.cap)
        self.touch(now_ms)

    def add_request(self, entry: LogEntry, now_ms: int) -> None:
        append_bounded(self.network_requests, entry, self.cap)
        self.touch(now_ms)

    def add_error(self, entry: LogEntry, now_ms: int) -> None:
        append_bounded(self.errors, entry, self.cap)
        self.touch(now_ms)

    def is_empty(self) -> bool:
        return not (self.logs or self.network_requests or self.errors)

    def lists(self) -> tuple[list[LogEntry], list[LogEntry], list[LogEntry]]:
        return self.logs, self.network_requests, self.errors


def _keep_recent(buf: list[LogEntry], cutoff_ms: int) -> int:
    kept: list[LogEntry] = []
    for entry in buf:
        ts = entry.timestamp_ms
        # Unparseable timestamps are treated as current.
        if ts is None or ts >= cutoff_ms:
            kept.append(entry)
    removed = len(buf) - len(kept)
    if removed:
        buf[:] = kept
    return removed


class PersistentLogStore:
    def __init__(self, *, cap: int = DEFAULT_CAP) -> None:
        self.cap = max(1, int(cap))
        self._records: dict[str, PersistentLogRecord] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._records.keys()))

    def get(self, key: str) -> PersistentLogRecord | None:
        return self._records.get(key)

    def ensure(self, key: str) -> PersistentLogRecord:
        rec = self._records.get(key)
        if rec is None:
            rec = PersistentLogRecord(cap=self.cap)
            self._records[key] = rec
        return rec

    def drop(self, key: str) -> bool:
        return self._records.pop(key, None) is not None

    def keys(self) -> list[str]:
        return list(self._records.keys())

    def age_out_key(self, key: str, *, now_ms: int, max_age_ms: int) -> int:
        """Purge entries older than `max_age_ms`; drops the record once empty."""
        rec = self._records.get(key)
        if rec is None:
            return 0
        cutoff = int(now_ms) - int(max_age_ms)
        removed = sum(_keep_recent(buf, cutoff) for buf in rec.lists())
        if rec.is_empty():
            self._records.pop(key, None)
        return removed

    def age_out(self, *, now_ms: int, max_age_ms: int) -> int:
        return sum(self.age_out_key(key, now_ms=now_ms, max_age_ms=max_age_ms) for key in self.keys())

    def is_stale_closed(self, key: str, *, now_ms: int, grace_ms: int, alive: Callable[[str], bool]) -> bool:
        rec = self._records.get(key)
        if rec is None:
            return False
        if alive(key):
            return False
        return int(now_ms) - rec.last_activity_ms > int(grace_ms)

    def sweep_closed(self, *, now_ms: int, grace_ms: int, alive: Callable[[str], bool]) -> list[str]:
        removed: list[str] = []
        for key in self.keys():
            if self.is_stale_closed(key, now_ms=now_ms, grace_ms=grace_ms, alive=alive):
                self._records.pop(key, None)
                removed.append(key)
        return removed


def dedupe_by_text(entries: Iterable[LogEntry]) -> list[LogEntry]:
    """Drop repeats of the same (timestamp, text); result ordered by timestamp."""
    seen: set[tuple[str, str]] = set()
    out: list[LogEntry] = []
    for entry in entries:
        key = (entry.timestamp, entry.text)
        if key in seen:
            continue
        seen.add(key)
        out.append(entry)
    # Stable sort keeps arrival order for equal timestamps.
    out.sort(key=lambda e: e.timestamp_ms if e.timestamp_ms is not None else 0)
    return out


def _passes(entry: LogEntry, domain_filter: str | None, *, require_url: bool) -> bool:
    if not domain_filter:
        return True
    if not entry.url:
        return not require_url
    return domain_filter in entry.url


def merged_view(
    record: PersistentLogRecord | None,
    session: SessionBuffers | None,
    domain_filter: str | None = None,
) -> dict[str, list[LogEntry]]:
    """Persistent and live entries combined, optionally filtered by URL substring."""
    logs: list[LogEntry] = []
    requests: list[LogEntry] = []
    errors: list[LogEntry] = []
    if record is not None:
        logs.extend(record.logs)
        requests.extend(record.network_requests)
        errors.extend(record.errors)
    if session is not None:
        logs.extend(session.logs)
        requests.extend(session.network_requests)
        errors.extend(session.errors)
        errors.extend(e for e in session.logs if e.is_error)

    return {
        "logs": [e for e in dedupe_by_text(logs) if _passes(e, domain_filter, require_url=False)],
        "networkRequests": [e for e in dedupe_by_text(requests) if _passes(e, domain_filter, require_url=True)],
        "errors": [e for e in dedupe_by_text(errors) if _passes(e, domain_filter, require_url=False)],
    }


def view_to_dict(view: dict[str, list[LogEntry]]) -> dict[str, Any]:
    return {name: [e.to_dict() for e in entries] for name, entries in view.items()}


__all__ = [
    "DEFAULT_CAP",
    "PersistentLogRecord",
    "PersistentLogStore",
    "SessionBuffers",
    "append_bounded",
    "dedupe_by_text",
    "find_last",
    "merged_view",
    "prepend_bounded",
    "replace_where",
    "view_to_dict",
]
