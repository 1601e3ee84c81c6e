"""Error triage pipeline.

`process()` never raises. For a qualifying error it always yields a report:
the generated one when the upstream call succeeds, otherwise a deterministic
basic report. Non-qualifying and duplicate errors are skipped without one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ..buffers import PersistentLogStore
from ..collaborators import Notifier, ReportSink, UnreadCounter
from ..config import TriageConfig
from ..dedup import ProcessedErrorCache, fingerprint
from ..errors import (
    CaptureError,
    ParseFailure,
    Paused,
    RateLimited,
    UpstreamPermanent,
    UpstreamTransient,
    is_target_gone,
)
from ..host import ProtocolHost
from ..log_model import Clock, LogEntry, iso_from_ms, now_ms
from ..rate_limit import PauseState, RateLimiter
from ..redaction import redact_url_brief
from .client import GenerationClient
from .parsing import parse_report
from .reports import basic_report, build_prompt

_LOGGER = logging.getLogger("bugspotter.capture.triage.pipeline")

REPORT_VERSION = "1.0.0"
RECENT_LOG_WINDOW_MS = 30_000
RECENT_LOG_LIMIT = 10

PAGE_INFO_EXPRESSION = "({url: location.href, title: document.title, userAgent: navigator.userAgent})"

STATUS_REPORTED = "reported"
STATUS_FALLBACK = "fallback"
STATUS_SKIPPED = "skipped"
STATUS_ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class TriageResult:
    status: str
    report: dict[str, Any] | None = None
    reason: str = ""
    fingerprint: str | None = None
    failure: CaptureError | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"status": self.status, "reason": self.reason}
        if self.fingerprint:
            out["fingerprint"] = self.fingerprint
        if self.report is not None:
            out["report"] = self.report
        if self.failure is not None:
            out["failure"] = self.failure.to_dict()
        return out


class TriagePipeline:
    def __init__(
        self,
        config: TriageConfig,
        *,
        host: ProtocolHost,
        persistent: PersistentLogStore,
        processed: ProcessedErrorCache,
        limiter: RateLimiter,
        pause: PauseState,
        client: GenerationClient,
        sink: ReportSink,
        notifier: Notifier,
        unread: UnreadCounter,
        clock: Clock = now_ms,
    ) -> None:
        self._cfg = config
        self._host = host
        self._persistent = persistent
        self._processed = processed
        self._limiter = limiter
        self._pause = pause
        self._client = client
        self._sink = sink
        self._notifier = notifier
        self._unread = unread
        self._clock = clock

    async def _target_alive(self, session_key: str) -> bool:
        try:
            return bool(await self._host.target_exists(session_key))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.info("target_check_failed key=%s error=%s", session_key, exc)
            return False

    async def process(self, entry: LogEntry, session_key: str) -> TriageResult:
        digest: str | None = None
        url = redact_url_brief(entry.url or "")
        try:
            if not await self._target_alive(session_key):
                _LOGGER.info("triage_aborted reason=target_gone key=%s url=%s", session_key, url)
                return TriageResult(STATUS_ABORTED, reason="target_gone")

            if not self._cfg.is_domain_allowed(entry.url or ""):
                return TriageResult(STATUS_SKIPPED, reason="domain_not_allowed")
            if entry.status is None or entry.status < self._cfg.min_status:
                return TriageResult(STATUS_SKIPPED, reason="below_min_status")

            digest = fingerprint(entry)
            if self._processed.is_processed(digest):
                _LOGGER.info("triage_skipped reason=duplicate status=%s url=%s", entry.status, url)
                return TriageResult(STATUS_SKIPPED, reason="duplicate", fingerprint=digest)

            # Marked before any await so concurrent identical errors collapse to one call.
            self._processed.mark_processed(digest)
            self._unread.increment()

            if not await self._target_alive(session_key):
                self._processed.unmark(digest)
                _LOGGER.info("triage_aborted reason=target_gone_after_mark key=%s url=%s", session_key, url)
                return TriageResult(STATUS_ABORTED, reason="target_gone", fingerprint=digest)

            context = await self.collect_context(entry, session_key)
            result = await self._generate(entry, context, digest)

            if result.report is not None:
                await self._sink.store(result.report, entry, session_key)
                if self._cfg.auto_notify:
                    await self._notifier.notify_report(result.report, entry)
            return result
        except Exception as exc:  # noqa: BLE001
            if digest is not None:
                self._processed.unmark(digest)
            if is_target_gone(exc):
                _LOGGER.info("triage_aborted reason=target_gone key=%s error=%s", session_key, exc)
            else:
                _LOGGER.exception("triage_failed key=%s url=%s", session_key, url)
            return TriageResult(STATUS_ABORTED, reason=str(exc), fingerprint=digest)

    async def _generate(self, entry: LogEntry, context: dict[str, Any], digest: str) -> TriageResult:
        if not self._cfg.is_configured():
            return self._fallback(entry, context, digest, "disabled")
        if self._pause.is_paused():
            remaining = self._pause.remaining_ms()
            _LOGGER.info("triage_fallback reason=paused remaining_ms=%s", remaining)
            failure = Paused("upstream calls paused", {"remainingMs": remaining})
            return self._fallback(entry, context, digest, failure.kind, failure=failure)
        if not self._limiter.can_proceed():
            reset_in = self._limiter.time_until_reset_ms()
            _LOGGER.info("triage_fallback reason=rate_limited reset_in_ms=%s", reset_in)
            failure = RateLimited("request window exhausted", {"resetInMs": reset_in})
            return self._fallback(entry, context, digest, failure.kind, failure=failure)

        self._limiter.record_attempt()
        prompt = build_prompt(entry, context)
        try:
            generated = await self._client.generate(prompt)
        except (UpstreamTransient, UpstreamPermanent, ParseFailure) as exc:
            _LOGGER.warning("triage_fallback reason=%s detail=%s", exc.kind, exc.reason)
            return self._fallback(entry, context, digest, exc.kind, failure=exc)
        except Exception as exc:  # noqa: BLE001
            failure = UpstreamTransient(f"upstream call failed: {exc!r}")
            _LOGGER.warning("triage_fallback reason=%s detail=%s", failure.kind, failure.reason)
            return self._fallback(entry, context, digest, failure.kind, failure=failure)

        report, parsed = parse_report(generated.text)
        report["metadata"] = {
            "generatedAt": iso_from_ms(self._clock()),
            "aiProvider": self._cfg.provider,
            "model": generated.model,
            "version": REPORT_VERSION,
        }
        return TriageResult(
            STATUS_REPORTED,
            report=report,
            reason="generated" if parsed else "unparseable_response",
            fingerprint=digest,
        )

    def _fallback(
        self,
        entry: LogEntry,
        context: dict[str, Any],
        digest: str,
        reason: str,
        *,
        failure: CaptureError | None = None,
    ) -> TriageResult:
        report = basic_report(entry, context, reason)
        return TriageResult(STATUS_FALLBACK, report=report, reason=reason, fingerprint=digest, failure=failure)

    # ──────────────────────────────────────────────────────────────────
    # Context
    # ──────────────────────────────────────────────────────────────────

    async def collect_context(self, entry: LogEntry, session_key: str) -> dict[str, Any]:
        ctx: dict[str, Any] = {
            "url": entry.url,
            "method": entry.method,
            "status": entry.status,
            "statusText": entry.status_text,
            "timestamp": entry.timestamp,
            "responseBody": entry.response_body or entry.decoded_body,
            "responseText": entry.decoded_body,
        }
        try:
            if await self._host.target_exists(session_key):
                res = await self._host.send_command(
                    session_key, "Runtime.evaluate", {"expression": PAGE_INFO_EXPRESSION, "returnByValue": True}
                )
                result = res.get("result") if isinstance(res, dict) else None
                info = result.get("value") if isinstance(result, dict) else None
                if not isinstance(info, dict):
                    info = {}
                ctx["pageUrl"] = info.get("url") or entry.url
                ctx["pageTitle"] = info.get("title") or "Unknown"
                if isinstance(info.get("userAgent"), str):
                    ctx["userAgent"] = info["userAgent"]
            else:
                ctx["pageUrl"] = entry.url
                ctx["pageTitle"] = "Tab closed"
        except Exception as exc:  # noqa: BLE001
            ctx["pageUrl"] = entry.url
            ctx["pageTitle"] = "Tab closed" if is_target_gone(exc) else "Unknown"
            _LOGGER.info("context_page_info_unavailable key=%s error=%s", session_key, exc)

        recent = self.recent_related_logs(entry, session_key)
        if recent:
            ctx["recentLogs"] = recent
        return ctx

    def recent_related_logs(self, entry: LogEntry, session_key: str) -> list[LogEntry]:
        record = self._persistent.get(session_key)
        err_ts = entry.timestamp_ms
        if record is None or err_ts is None:
            return []
        lo = err_ts - RECENT_LOG_WINDOW_MS
        related = [
            e for e in record.logs if e is not entry and e.timestamp_ms is not None and lo <= e.timestamp_ms <= err_ts
        ]
        return related[-RECENT_LOG_LIMIT:]


__all__ = [
    "PAGE_INFO_EXPRESSION",
    "REPORT_VERSION",
    "STATUS_ABORTED",
    "STATUS_FALLBACK",
    "STATUS_REPORTED",
    "STATUS_SKIPPED",
    "TriagePipeline",
    "TriageResult",
]
