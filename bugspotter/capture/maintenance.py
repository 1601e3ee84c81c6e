from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass

from .buffers import PersistentLogStore
from .dedup import ProcessedErrorCache, RecentSignalCache
from .host import ProtocolHost
from .log_model import Clock, now_ms

_LOGGER = logging.getLogger("bugspotter.capture.maintenance")


@dataclass(frozen=True, slots=True)
class MaintenanceStats:
    aged_entries: int = 0
    closed_records: int = 0
    expired_fingerprints: int = 0
    pruned_signals: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "agedEntries": self.aged_entries,
            "closedRecords": self.closed_records,
            "expiredFingerprints": self.expired_fingerprints,
            "prunedSignals": self.pruned_signals,
        }


class MaintenanceLoop:
    """Periodic cleanup of per-target records and dedup caches.

    One pass:
    - purge persistent entries older than `max_age_ms` (empty records go away)
    - drop records of targets that no longer exist once their last activity
      is older than `grace_ms`
    - expire processed fingerprints and prune recent signals

    Records are handled in slices of `slice_size`, yielding to the event loop
    between slices so event ingestion is never starved.
    """

    def __init__(
        self,
        *,
        host: ProtocolHost,
        persistent: PersistentLogStore,
        processed: ProcessedErrorCache,
        recent: RecentSignalCache,
        is_live: Callable[[str], bool],
        interval_s: float = 300.0,
        max_age_ms: int = 15 * 60 * 1000,
        grace_ms: int = 2 * 60 * 60 * 1000,
        slice_size: int = 25,
        clock: Clock = now_ms,
    ) -> None:
        self._host = host
        self._persistent = persistent
        self._processed = processed
        self._recent = recent
        self._is_live = is_live
        self._interval_s = max(0.01, float(interval_s))
        self._max_age_ms = int(max_age_ms)
        self._grace_ms = int(grace_ms)
        self._slice = max(1, int(slice_size))
        self._clock = clock

        self._stop: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None
        self.last_stats: MaintenanceStats | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.running:
            return True
        self._stop = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run(), name="bugspotter-maintenance")
        return True

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        if self._stop is not None:
            self._stop.set()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._task = None

    async def _run(self) -> None:
        stop = self._stop
        if stop is None:
            return
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval_s)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.run_once()
            except Exception:  # noqa: BLE001
                _LOGGER.exception("maintenance_failed")

    async def _target_alive(self, key: str) -> bool:
        if self._is_live(key):
            return True
        try:
            return bool(await self._host.target_exists(key))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.info("maintenance_liveness_unknown key=%s error=%s", key, exc)
            # Unknown liveness keeps the record until the next pass.
            return True

    async def run_once(self) -> MaintenanceStats:
        aged = 0
        closed: list[str] = []
        keys = self._persistent.keys()
        for idx, key in enumerate(keys):
            if idx and idx % self._slice == 0:
                await asyncio.sleep(0)
            now = self._clock()
            if key not in self._persistent:
                continue
            alive = await self._target_alive(key)
            if self._persistent.is_stale_closed(key, now_ms=now, grace_ms=self._grace_ms, alive=lambda _k: alive):
                self._persistent.drop(key)
                closed.append(key)
                continue
            aged += self._persistent.age_out_key(key, now_ms=now, max_age_ms=self._max_age_ms)

        expired = self._processed.sweep()
        pruned = self._recent.prune(self._clock())
        stats = MaintenanceStats(
            aged_entries=aged, closed_records=len(closed), expired_fingerprints=expired, pruned_signals=pruned
        )
        self.last_stats = stats
        if aged or closed or expired or pruned:
            _LOGGER.info(
                "maintenance_pass aged=%s closed=%s expired=%s pruned=%s records=%s",
                aged,
                len(closed),
                expired,
                pruned,
                len(self._persistent),
            )
        return stats


__all__ = ["MaintenanceLoop", "MaintenanceStats"]
