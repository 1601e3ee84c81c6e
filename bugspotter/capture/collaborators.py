"""Report storage, notification and unread-counter collaborators.

The pipeline only depends on the Protocols; the `State*` defaults persist into
the shared `StateStore` so a UI process can read them back.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, Protocol
from urllib.parse import urlsplit

from .log_model import Clock, LogEntry, iso_from_ms, now_ms
from .persist import KEY_NOTIFICATIONS, KEY_UNREAD, REPORTS_PREFIX, StateStore
from .redaction import redact_url_brief

_LOGGER = logging.getLogger("bugspotter.capture.collaborators")

MAX_REPORTS_PER_SESSION = 50
MAX_NOTIFICATIONS = 50


class ReportSink(Protocol):
    async def store(self, report: dict[str, Any], entry: LogEntry, session_key: str) -> dict[str, Any]: ...


class Notifier(Protocol):
    async def notify_report(self, report: dict[str, Any], entry: LogEntry) -> None: ...

    async def notify_http_error(self, entry: LogEntry, session_key: str) -> None: ...


def _hostname(url: str | None) -> str:
    try:
        return urlsplit(url or "").hostname or "unknown"
    except ValueError:
        return "unknown"


class UnreadCounter:
    def __init__(self, store: StateStore) -> None:
        self._store = store

    def get(self) -> int:
        raw = self._store.get(KEY_UNREAD, 0)
        try:
            return max(0, int(raw))
        except (TypeError, ValueError):
            return 0

    def increment(self) -> int:
        count = self.get() + 1
        self._store.set(KEY_UNREAD, count)
        _LOGGER.info("unread_reports count=%s", count)
        return count

    def clear(self) -> None:
        self._store.set(KEY_UNREAD, 0)


class StateReportSink:
    def __init__(self, store: StateStore, *, clock: Clock = now_ms, max_reports: int = MAX_REPORTS_PER_SESSION) -> None:
        self._store = store
        self._clock = clock
        self._max = max(1, int(max_reports))

    @staticmethod
    def key_for(session_key: str) -> str:
        return f"{REPORTS_PREFIX}{session_key}"

    async def store(self, report: dict[str, Any], entry: LogEntry, session_key: str) -> dict[str, Any]:
        now = self._clock()
        record = {
            "id": f"ai-report-{now}-{secrets.token_hex(5)}",
            "type": "ai-generated",
            "title": report.get("title"),
            "description": report.get("description"),
            "severity": report.get("severity"),
            "category": report.get("category"),
            "report": report,
            "originalError": {
                "url": entry.url,
                "status": entry.status,
                "statusText": entry.status_text,
                "timestamp": entry.timestamp,
            },
            "sessionKey": session_key,
            "createdAt": iso_from_ms(now),
            "source": "ai-auto-generated",
        }
        key = self.key_for(session_key)
        reports = self._store.get(key, [])
        if not isinstance(reports, list):
            reports = []
        reports.append(record)
        if len(reports) > self._max:
            del reports[: len(reports) - self._max]
        self._store.set(key, reports)
        return record

    def reports(self, session_key: str) -> list[dict[str, Any]]:
        reports = self._store.get(self.key_for(session_key), [])
        return reports if isinstance(reports, list) else []


class StateNotifier:
    """Logs notifications and keeps a bounded newest-first history."""

    def __init__(
        self,
        store: StateStore,
        *,
        enabled: bool = True,
        http_errors: bool = True,
        threshold: int = 400,
        critical_only: bool = False,
        clock: Clock = now_ms,
        max_history: int = MAX_NOTIFICATIONS,
    ) -> None:
        self._store = store
        self.enabled = enabled
        self.http_errors = http_errors
        self.threshold = int(threshold)
        self.critical_only = critical_only
        self._clock = clock
        self._max = max(1, int(max_history))

    def _remember(self, item: dict[str, Any]) -> None:
        history = self._store.get(KEY_NOTIFICATIONS, [])
        if not isinstance(history, list):
            history = []
        history.insert(0, item)
        del history[self._max :]
        self._store.set(KEY_NOTIFICATIONS, history)

    def history(self) -> list[dict[str, Any]]:
        history = self._store.get(KEY_NOTIFICATIONS, [])
        return history if isinstance(history, list) else []

    def clear_history(self) -> None:
        self._store.delete(KEY_NOTIFICATIONS)

    async def notify_report(self, report: dict[str, Any], entry: LogEntry) -> None:
        if not self.enabled:
            return
        severity = str(report.get("severity") or "unknown")
        if self.critical_only and severity != "critical":
            return
        now = self._clock()
        _LOGGER.info(
            "notify_report severity=%s status=%s host=%s title=%s",
            severity,
            entry.status,
            _hostname(entry.url),
            report.get("title"),
        )
        self._remember(
            {
                "id": f"ai-report-{now}",
                "type": "ai-report",
                "severity": severity,
                "title": report.get("title"),
                "message": f"{entry.status} {entry.status_text or ''}".strip(),
                "url": redact_url_brief(entry.url or ""),
                "timestamp": now,
            }
        )

    async def notify_http_error(self, entry: LogEntry, session_key: str) -> None:
        if not (self.enabled and self.http_errors):
            return
        if entry.status is None or entry.status < self.threshold:
            return
        now = self._clock()
        severity = "high" if entry.status >= 500 else "medium"
        _LOGGER.info("notify_http_error status=%s host=%s key=%s", entry.status, _hostname(entry.url), session_key)
        self._remember(
            {
                "id": f"error-{now}",
                "type": "http-error",
                "severity": severity,
                "title": f"HTTP Error {entry.status}",
                "message": entry.status_text or "",
                "url": redact_url_brief(entry.url or ""),
                "timestamp": now,
                "sessionKey": session_key,
            }
        )


__all__ = [
    "MAX_NOTIFICATIONS",
    "MAX_REPORTS_PER_SESSION",
    "Notifier",
    "ReportSink",
    "StateNotifier",
    "StateReportSink",
    "UnreadCounter",
]
