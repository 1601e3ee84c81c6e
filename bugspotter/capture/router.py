"""Protocol event router.

Turns raw CDP events into `LogEntry` values, correlates request/response pairs
by `requestId`, and hands qualifying HTTP errors to the triage/notification
side through `on_http_error`.

Events for one target are processed strictly in arrival order. Everything up
to the response-body fetch runs synchronously inside `ingest`; the fetch and
the collaborator hand-off run as background tasks.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .buffers import PersistentLogRecord, PersistentLogStore, SessionBuffers, find_last, replace_where
from .dedup import RecentSignalCache
from .errors import is_target_gone
from .host import ProtocolHost
from .log_model import (
    KIND_CONSOLE,
    KIND_CONSOLE_API,
    KIND_EXCEPTION,
    KIND_HTTP_ERROR,
    KIND_HTTP_ERROR_WITH_BODY,
    KIND_NETWORK_ERROR,
    KIND_NETWORK_FAILED,
    KIND_NETWORK_REQUEST,
    KIND_NETWORK_RESPONSE,
    Clock,
    LogEntry,
    iso_from_ms,
    normalize_level,
    now_ms,
    parse_ts_ms,
)
from .redaction import redact_url_brief
from .tasks import BackgroundTasks

_LOGGER = logging.getLogger("bugspotter.capture.router")

HttpErrorCallback = Callable[[LogEntry, str], Awaitable[None]]
SessionLookup = Callable[[str], SessionBuffers | None]

BODY_UNAVAILABLE_NOTE = "Response body could not be retrieved"
BODY_DECODE_FAILED = "Could not decode base64 response"

_NETWORK_KINDS = frozenset({KIND_NETWORK_REQUEST, KIND_NETWORK_RESPONSE})


def _str(x: Any, *, max_len: int = 2000) -> str:
    try:
        s = str(x)
    except Exception:
        s = "<unstringifiable>"
    if len(s) <= max_len:
        return s
    return s[:max_len] + f"… <truncated len={len(s)}>"


def _opt_str(x: Any) -> str | None:
    return x if isinstance(x, str) and x else None


def _opt_int(x: Any) -> int | None:
    if isinstance(x, bool):
        return None
    if isinstance(x, int):
        return x
    if isinstance(x, float) and x.is_integer():
        return int(x)
    return None


def _status(x: Any) -> int | None:
    if isinstance(x, bool):
        return None
    try:
        return int(x) if x is not None else None
    except (TypeError, ValueError):
        return None


def _remote_obj_to_str(obj: Any) -> str:
    """Console API argument rendering (RemoteObject -> text)."""
    if not isinstance(obj, dict):
        return _str(obj)
    if "value" in obj:
        value = obj.get("value")
        if isinstance(value, str):
            return value
        if value is None:
            return "null"
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return _str(value)
        try:
            return json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError):
            return _str(value)
    for k in ("description", "unserializableValue"):
        if obj.get(k) is not None:
            return _str(obj.get(k))
    if obj.get("objectId"):
        return "[Object]"
    try:
        return json.dumps(obj, ensure_ascii=False)
    except (TypeError, ValueError):
        return _str(obj)


def _stack_top(params: dict[str, Any]) -> dict[str, Any] | None:
    st = params.get("stackTrace")
    if not isinstance(st, dict):
        return None
    frames = st.get("callFrames")
    if not isinstance(frames, list) or not frames or not isinstance(frames[0], dict):
        return None
    f0 = frames[0]
    out: dict[str, Any] = {}
    if isinstance(f0.get("url"), str) and f0.get("url"):
        out["url"] = redact_url_brief(f0["url"])
    if isinstance(f0.get("functionName"), str) and f0.get("functionName"):
        out["function"] = _str(f0["functionName"], max_len=120)
    if isinstance(f0.get("lineNumber"), int):
        out["line"] = int(f0["lineNumber"])
    if isinstance(f0.get("columnNumber"), int):
        out["col"] = int(f0["columnNumber"])
    return out or None


def decode_body(body: str, base64_encoded: bool) -> str:
    if not base64_encoded:
        return body
    try:
        return base64.b64decode(body, validate=False).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return BODY_DECODE_FAILED


def http_error_text(status: int, status_text: str | None, url: str) -> str:
    return f"[HTTP ERROR] {status} {status_text or ''} - {url}"


class EventRouter:
    def __init__(
        self,
        *,
        host: ProtocolHost,
        sessions: SessionLookup,
        persistent: PersistentLogStore,
        recent: RecentSignalCache,
        tasks: BackgroundTasks,
        on_http_error: HttpErrorCallback | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self._host = host
        self._sessions = sessions
        self._persistent = persistent
        self._recent = recent
        self._tasks = tasks
        self._on_http_error = on_http_error
        self._clock = clock

    # ──────────────────────────────────────────────────────────────────
    # Sinks
    # ──────────────────────────────────────────────────────────────────

    def _add_log(self, session: SessionBuffers | None, record: PersistentLogRecord, entry: LogEntry, now: int) -> None:
        if session is not None:
            session.add_log(entry)
        record.add_log(entry, now)

    def _add_error(self, session: SessionBuffers | None, record: PersistentLogRecord, entry: LogEntry, now: int) -> None:
        if session is not None:
            session.add_error(entry)
        record.add_error(entry, now)

    def _add_request(
        self, session: SessionBuffers | None, record: PersistentLogRecord, entry: LogEntry, now: int
    ) -> None:
        if session is not None:
            session.add_request(entry)
        record.add_request(entry, now)

    # ──────────────────────────────────────────────────────────────────
    # Dispatch
    # ──────────────────────────────────────────────────────────────────

    def handle_event(self, target: str, method: str, params: dict[str, Any]) -> None:
        """`ProtocolHost.on_event` adapter."""
        self.ingest(target, {"method": method, "params": params})

    def ingest(self, target: str, event: dict[str, Any]) -> None:
        """Ingest one raw CDP event for an attached target (unknown methods are ignored)."""
        if not isinstance(event, dict):
            return
        method = event.get("method")
        if not isinstance(method, str) or not method:
            return
        params = event.get("params")
        if not isinstance(params, dict):
            params = {}

        session = self._sessions(target)
        if session is None:
            return
        record = self._persistent.ensure(target)
        now = self._clock()
        ts = iso_from_ms(now)

        if method == "Console.messageAdded":
            msg = params.get("message")
            if not isinstance(msg, dict):
                return
            entry = LogEntry(
                kind=KIND_CONSOLE,
                level=normalize_level(msg.get("level")),
                text=_str(msg.get("text") or ""),
                timestamp=ts,
                url=_opt_str(msg.get("url")),
                line=_opt_int(msg.get("line")),
                column=_opt_int(msg.get("column")),
                source=_opt_str(msg.get("source")),
            )
            self._add_log(session, record, entry, now)
            if entry.is_error:
                self._add_error(session, record, entry, now)
            return

        if method == "Runtime.consoleAPICalled":
            raw_type = params.get("type")
            args = params.get("args")
            parts = [_remote_obj_to_str(a) for a in args] if isinstance(args, list) else []
            entry = LogEntry(
                kind=KIND_CONSOLE_API,
                level=normalize_level(raw_type),
                text=_str(" ".join(parts)),
                timestamp=ts,
                source=_opt_str(raw_type) or "log",
                stack_top=_stack_top(params),
                args=tuple(parts),
            )
            self._add_log(session, record, entry, now)
            if entry.is_error:
                self._add_error(session, record, entry, now)
            return

        if method == "Runtime.exceptionThrown":
            details = params.get("exceptionDetails")
            if not isinstance(details, dict):
                details = {}
            entry = LogEntry(
                kind=KIND_EXCEPTION,
                level="error",
                text=_str(details.get("text") or "Runtime Exception"),
                timestamp=ts,
                url=_opt_str(details.get("url")),
                line=_opt_int(details.get("lineNumber")),
                column=_opt_int(details.get("columnNumber")),
                stack_top=_stack_top(details),
            )
            self._add_log(session, record, entry, now)
            self._add_error(session, record, entry, now)
            return

        if method == "Network.requestWillBeSent":
            req = params.get("request")
            request_id = params.get("requestId")
            if not isinstance(req, dict) or not isinstance(request_id, str):
                return
            url = _opt_str(req.get("url")) or ""
            http_method = _opt_str(req.get("method")) or "GET"
            headers = req.get("headers")
            entry = LogEntry(
                kind=KIND_NETWORK_REQUEST,
                level="info",
                text=f"[NETWORK] {http_method} {url}",
                timestamp=ts,
                url=url,
                request_id=request_id,
                method=http_method,
                headers=dict(headers) if isinstance(headers, dict) else None,
                post_data=_opt_str(req.get("postData")),
                resource_type=_opt_str(params.get("type")),
            )
            self._add_request(session, record, entry, now)
            self._add_log(session, record, entry, now)
            return

        if method == "Network.responseReceived":
            self._on_response(target, session, record, params, now)
            return

        if method == "Network.loadingFailed":
            request_id = params.get("requestId")
            if not isinstance(request_id, str):
                return
            original = find_last(session.network_requests, lambda e: e.request_id == request_id) or find_last(
                record.network_requests, lambda e: e.request_id == request_id
            )
            url = original.url if original is not None and original.url else "Unknown URL"
            canceled = bool(params.get("canceled"))
            error_text = _str(params.get("errorText") or "")
            failed = LogEntry(
                kind=KIND_NETWORK_FAILED,
                level="info" if canceled else "error",
                text=f"[NETWORK] FAILED {error_text} - {url}",
                timestamp=ts,
                url=url,
                request_id=request_id,
                method=original.method if original is not None else None,
                error_text=error_text,
                canceled=canceled,
            )
            self._add_request(session, record, failed, now)
            if not canceled:
                err = LogEntry(
                    kind=KIND_NETWORK_ERROR,
                    level="error",
                    text=f"Network request failed: {error_text} - {url}",
                    timestamp=ts,
                    url=url,
                    request_id=request_id,
                    error_text=error_text,
                )
                self._add_log(session, record, err, now)
                self._add_error(session, record, err, now)
            return

        if method == "Network.loadingFinished":
            request_id = params.get("requestId")
            if not isinstance(request_id, str):
                return
            length = _opt_int(params.get("encodedDataLength"))

            def _match(e: LogEntry) -> bool:
                return e.request_id == request_id and e.kind in _NETWORK_KINDS

            def _finish(e: LogEntry) -> LogEntry:
                return e.merged(encoded_data_length=length)

            for buf in (session.network_requests, session.logs, record.network_requests, record.logs):
                replace_where(buf, _match, _finish)
            return

    def _on_response(
        self,
        target: str,
        session: SessionBuffers,
        record: PersistentLogRecord,
        params: dict[str, Any],
        now: int,
    ) -> None:
        resp = params.get("response")
        request_id = params.get("requestId")
        if not isinstance(resp, dict) or not isinstance(request_id, str):
            return
        status = _status(resp.get("status"))
        if status is None:
            return
        url = _opt_str(resp.get("url")) or ""
        status_text = _str(resp.get("statusText") or "", max_len=200)
        headers = resp.get("headers")
        level = "error" if status >= 400 else "info"

        def _match(e: LogEntry) -> bool:
            return e.request_id == request_id and e.kind in _NETWORK_KINDS

        original = find_last(session.network_requests, _match) or find_last(record.network_requests, _match)
        http_method = original.method if original is not None and original.method else "GET"

        def _combine(e: LogEntry) -> LogEntry:
            return e.merged(
                kind=KIND_NETWORK_RESPONSE,
                level=level,
                text=f"[NETWORK] {e.method or http_method} {status} {status_text} - {url}",
                timestamp=iso_from_ms(now),
                url=url,
                status=status,
                status_text=status_text,
                mime_type=_opt_str(resp.get("mimeType")),
                headers=dict(headers) if isinstance(headers, dict) else e.headers,
            )

        for buf in (session.network_requests, session.logs, record.network_requests, record.logs):
            replace_where(buf, _match, _combine)

        if status < 400:
            return

        if self._recent.is_duplicate(target, url, status, now):
            _LOGGER.info("http_error_duplicate target=%s status=%s url=%s", target, status, redact_url_brief(url))
            return

        basic = LogEntry(
            kind=KIND_HTTP_ERROR,
            level="error",
            text=http_error_text(status, status_text, url),
            timestamp=iso_from_ms(now),
            url=url,
            request_id=request_id,
            method=http_method,
            status=status,
            status_text=status_text,
            mime_type=_opt_str(resp.get("mimeType")),
            note=BODY_UNAVAILABLE_NOTE,
        )
        self._tasks.spawn(self._capture_error_body(target, basic), name=f"bugspotter-body-{request_id}")

    async def _capture_error_body(self, target: str, basic: LogEntry) -> None:
        entry = basic
        try:
            res = await self._host.send_command(target, "Network.getResponseBody", {"requestId": basic.request_id})
        except Exception as exc:  # noqa: BLE001
            if is_target_gone(exc):
                _LOGGER.info("response_body_target_gone target=%s request=%s", target, basic.request_id)
            else:
                _LOGGER.warning("response_body_failed target=%s request=%s error=%s", target, basic.request_id, exc)
        else:
            body = res.get("body") if isinstance(res, dict) else None
            if isinstance(body, str):
                encoded = bool(res.get("base64Encoded"))
                decoded = decode_body(body, encoded)
                entry = basic.merged(
                    kind=KIND_HTTP_ERROR_WITH_BODY,
                    text=f"{basic.text}\nResponse Body: {decoded}",
                    response_body=body,
                    base64_encoded=encoded,
                    decoded_body=decoded,
                    note=None,
                )

        # The session may have been destroyed while the fetch was in flight.
        session = self._sessions(target)
        record = self._persistent.ensure(target)
        now = self._clock()
        self._add_log(session, record, entry, now)
        self._add_error(session, record, entry, now)
        self._hand_off(entry, target)

    def _hand_off(self, entry: LogEntry, session_key: str) -> None:
        cb = self._on_http_error
        if cb is None:
            return
        self._tasks.spawn(self._run_callback(cb, entry, session_key), name="bugspotter-http-error")

    @staticmethod
    async def _run_callback(cb: HttpErrorCallback, entry: LogEntry, session_key: str) -> None:
        try:
            await cb(entry, session_key)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("http_error_handler_failed url=%s", redact_url_brief(entry.url or ""))

    # ──────────────────────────────────────────────────────────────────
    # In-page capture path
    # ──────────────────────────────────────────────────────────────────

    def ingest_page_signal(self, session_key: str, payload: dict[str, Any]) -> LogEntry | None:
        """Accept an HTTP_ERROR / NETWORK_ERROR report from the injected page script.

        Returns the recorded entry, or None for duplicates and malformed payloads.
        """
        if not isinstance(payload, dict):
            return None
        sig_type = payload.get("type")
        data = payload.get("data")
        if sig_type not in {"HTTP_ERROR", "NETWORK_ERROR"} or not isinstance(data, dict):
            return None

        now = self._clock()
        ts_ms = parse_ts_ms(data.get("timestamp"))
        if ts_ms is None:
            ts_ms = now
        url = _opt_str(data.get("url")) or ""
        status = _status(data.get("status"))

        if sig_type == "HTTP_ERROR":
            if status is None:
                return None
            if self._recent.is_duplicate(session_key, url, status, ts_ms):
                _LOGGER.info("page_signal_duplicate key=%s status=%s url=%s", session_key, status, redact_url_brief(url))
                return None

        raw_body = data.get("responseBody")
        body: str | None
        if raw_body is None or raw_body == "":
            body = None
        elif isinstance(raw_body, str):
            body = raw_body
        else:
            try:
                body = json.dumps(raw_body, ensure_ascii=False)
            except (TypeError, ValueError):
                body = _str(raw_body)
        status_text = _opt_str(data.get("statusText"))

        if sig_type == "HTTP_ERROR":
            text = f"HTTP {status} {status_text or ''} - {url}"
            if body:
                text = f"{text} | Response: {body}"
            kind = KIND_HTTP_ERROR
        else:
            text = f"Network Error: {_str(data.get('error') or '')} - {url}"
            kind = KIND_NETWORK_ERROR

        entry = LogEntry(
            kind=kind,
            level="error",
            text=_str(text, max_len=4000),
            timestamp=iso_from_ms(ts_ms),
            url=url,
            method=_opt_str(data.get("method")) or "GET",
            status=status,
            status_text=status_text,
            response_body=body,
            decoded_body=_opt_str(data.get("responseText")),
            error_text=_opt_str(data.get("error")),
            source="content-script",
        )
        record = self._persistent.ensure(session_key)
        record.add_log(entry, now)
        record.add_error(entry, now)
        self._hand_off(entry, session_key)
        return entry


__all__ = [
    "BODY_DECODE_FAILED",
    "BODY_UNAVAILABLE_NOTE",
    "EventRouter",
    "HttpErrorCallback",
    "decode_body",
    "http_error_text",
]
