from __future__ import annotations

import dataclasses
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

Clock = Callable[[], int]

KIND_CONSOLE = "console"
KIND_CONSOLE_API = "console-api"
KIND_CONSOLE_EXISTING = "console-existing"
KIND_EXCEPTION = "exception"
KIND_NETWORK_REQUEST = "network-request"
KIND_NETWORK_RESPONSE = "network-response"
KIND_NETWORK_FAILED = "network-failed"
KIND_NETWORK_ERROR = "network-error"
KIND_HTTP_ERROR = "http-error"
KIND_HTTP_ERROR_WITH_BODY = "http-error-with-body"

HTTP_ERROR_KINDS = frozenset({KIND_HTTP_ERROR, KIND_HTTP_ERROR_WITH_BODY})


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_from_ms(ms: int) -> str:
    dt = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso() -> str:
    return iso_from_ms(now_ms())


def parse_ts_ms(value: Any) -> int | None:
    """Best-effort timestamp parse (ISO-8601 string or epoch milliseconds)."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def normalize_level(raw: Any) -> str:
    lv = str(raw or "").strip().lower()
    if lv in {"error", "assert"}:
        return "error"
    if lv in {"warn", "warning"}:
        return "warn"
    return "info"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


@dataclass(frozen=True, slots=True)
class LogEntry:
    """One normalized diagnostic record. Immutable once built."""

    kind: str
    level: str
    text: str
    timestamp: str
    url: str | None = None
    request_id: str | None = None
    method: str | None = None
    status: int | None = None
    status_text: str | None = None
    mime_type: str | None = None
    resource_type: str | None = None
    headers: dict[str, Any] | None = None
    post_data: str | None = None
    error_text: str | None = None
    canceled: bool | None = None
    encoded_data_length: int | None = None
    response_body: str | None = None
    decoded_body: str | None = None
    base64_encoded: bool | None = None
    note: str | None = None
    line: int | None = None
    column: int | None = None
    source: str | None = None
    stack_top: dict[str, Any] | None = None
    args: tuple[str, ...] | None = None

    def merged(self, **changes: Any) -> LogEntry:
        return dataclasses.replace(self, **changes)

    @property
    def timestamp_ms(self) -> int | None:
        return parse_ts_ms(self.timestamp)

    @property
    def is_error(self) -> bool:
        return self.level == "error"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if value is None or value == "":
                continue
            if f.name == "kind":
                out["type"] = value
                continue
            if isinstance(value, tuple):
                value = list(value)
            out[_camel(f.name)] = value
        return out


__all__ = [
    "Clock",
    "HTTP_ERROR_KINDS",
    "KIND_CONSOLE",
    "KIND_CONSOLE_API",
    "KIND_CONSOLE_EXISTING",
    "KIND_EXCEPTION",
    "KIND_HTTP_ERROR",
    "KIND_HTTP_ERROR_WITH_BODY",
    "KIND_NETWORK_ERROR",
    "KIND_NETWORK_FAILED",
    "KIND_NETWORK_REQUEST",
    "KIND_NETWORK_RESPONSE",
    "LogEntry",
    "iso_from_ms",
    "normalize_level",
    "now_iso",
    "now_ms",
    "parse_ts_ms",
]
