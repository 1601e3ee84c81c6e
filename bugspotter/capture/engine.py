"""Capture engine: the single owner of every capture component.

Typical use::

    host = await CdpHost.connect_url(capture.cdp_url)
    engine = CaptureEngine(host, capture=capture, triage=triage)
    engine.start()
    await engine.attach(target_id)
    ...
    await engine.close()
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from .buffers import PersistentLogStore
from .collaborators import Notifier, ReportSink, StateNotifier, StateReportSink, UnreadCounter
from .config import CaptureConfig, TriageConfig
from .dedup import ProcessedErrorCache, RecentSignalCache
from .errors import Outcome
from .host import ProtocolHost
from .log_model import Clock, LogEntry, now_ms
from .maintenance import MaintenanceLoop
from .persist import JsonStateStore, StateStore
from .rate_limit import PauseState, RateLimiter
from .registry import SessionRegistry
from .router import EventRouter
from .tasks import BackgroundTasks
from .triage.client import GenerationClient, Sleep, Transport
from .triage.pipeline import TriagePipeline, TriageResult

_LOGGER = logging.getLogger("bugspotter.capture.engine")


class CaptureEngine:
    def __init__(
        self,
        host: ProtocolHost,
        *,
        capture: CaptureConfig,
        triage: TriageConfig,
        store: StateStore | None = None,
        sink: ReportSink | None = None,
        notifier: Notifier | None = None,
        transport: Transport | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = now_ms,
    ) -> None:
        self.host = host
        self.capture_config = capture
        self.triage_config = triage
        self._clock = clock
        self.store: StateStore = store if store is not None else JsonStateStore.in_dir(Path(capture.state_dir))

        self.tasks = BackgroundTasks()
        self.persistent = PersistentLogStore(cap=capture.max_logs_per_session)
        self.recent = RecentSignalCache(window_ms=capture.dedup_window_ms)
        self.processed = ProcessedErrorCache(self.store, ttl_ms=capture.processed_ttl_ms, clock=clock)
        self.limiter = RateLimiter(
            max_per_window=triage.max_requests_per_window, window_ms=triage.window_ms, clock=clock
        )
        self.pause = PauseState(self.store, clock=clock)
        self.unread = UnreadCounter(self.store)
        self.sink: ReportSink = sink if sink is not None else StateReportSink(self.store, clock=clock)
        self.notifier: Notifier = (
            notifier
            if notifier is not None
            else StateNotifier(
                self.store,
                http_errors=capture.notify_http_errors,
                threshold=capture.notify_threshold,
                critical_only=triage.critical_only,
                clock=clock,
            )
        )

        self.registry = SessionRegistry(
            host=host,
            persistent=self.persistent,
            recent=self.recent,
            store=self.store,
            max_logs=capture.max_logs_per_session,
            async_stack_depth=capture.async_stack_depth,
            clock=clock,
        )
        self.router = EventRouter(
            host=host,
            sessions=self.registry.buffers,
            persistent=self.persistent,
            recent=self.recent,
            tasks=self.tasks,
            on_http_error=self._on_http_error,
            clock=clock,
        )
        self.client = GenerationClient(triage, pause=self.pause, transport=transport, sleep=sleep)
        self.pipeline = TriagePipeline(
            triage,
            host=host,
            persistent=self.persistent,
            processed=self.processed,
            limiter=self.limiter,
            pause=self.pause,
            client=self.client,
            sink=self.sink,
            notifier=self.notifier,
            unread=self.unread,
            clock=clock,
        )
        self.maintenance = MaintenanceLoop(
            host=host,
            persistent=self.persistent,
            processed=self.processed,
            recent=self.recent,
            is_live=self.registry.is_live,
            interval_s=capture.maintenance_interval_s,
            max_age_ms=capture.persistent_max_age_ms,
            grace_ms=capture.closed_target_grace_ms,
            slice_size=capture.maintenance_slice,
            clock=clock,
        )

        self.results: list[TriageResult] = []
        self._started = False

    # ──────────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────────

    def start(self, *, maintenance: bool = True) -> None:
        """Subscribe to host events and load persisted state. Requires a running loop."""
        if self._started:
            return
        self._started = True
        if self.triage_config.enabled and not self.triage_config.is_configured():
            _LOGGER.warning("triage_disabled reason=missing_api_key")
        self.processed.load()
        stale = self.registry.reset_previous_sessions()
        if stale:
            _LOGGER.info("previous_sessions_cleared count=%s", stale)
        self.host.on_event(self.router.handle_event)
        self.host.on_detach(self.registry.on_target_gone)
        if maintenance:
            self.maintenance.start()

    async def close(self) -> None:
        await self.maintenance.stop()
        await self.registry.close()
        await self.tasks.cancel_all()
        self._started = False

    async def pending(self) -> None:
        """Wait until every in-flight body fetch and triage task has finished."""
        await self.tasks.drain()

    # ──────────────────────────────────────────────────────────────────
    # Operations
    # ──────────────────────────────────────────────────────────────────

    async def attach(self, target: str) -> Outcome[dict[str, Any]]:
        return await self.registry.attach(target)

    async def detach(self, target: str) -> Outcome[dict[str, Any]]:
        return await self.registry.detach(target)

    def logs(self, target: str, domain_filter: str | None = None) -> dict[str, Any]:
        return self.registry.get_logs(target, domain_filter)

    def ingest_page_signal(self, session_key: str, payload: dict[str, Any]) -> LogEntry | None:
        return self.router.ingest_page_signal(session_key, payload)

    def status(self) -> dict[str, Any]:
        return {
            "attached": self.registry.attached_targets(),
            "records": len(self.persistent),
            "processedErrors": len(self.processed),
            "unreadReports": self.unread.get(),
            "paused": self.pause.is_paused(),
            "pauseRemainingMs": self.pause.remaining_ms(),
            "rateLimitRemaining": self.limiter.remaining(),
            "pendingTasks": len(self.tasks),
        }

    async def _on_http_error(self, entry: LogEntry, session_key: str) -> None:
        await self.notifier.notify_http_error(entry, session_key)
        result = await self.pipeline.process(entry, session_key)
        self.results.append(result)
        del self.results[: max(0, len(self.results) - 100)]


__all__ = ["CaptureEngine"]
