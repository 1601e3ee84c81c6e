from __future__ import annotations

import asyncio

from bugspotter.capture.buffers import PersistentLogStore
from bugspotter.capture.dedup import ProcessedErrorCache, RecentSignalCache
from bugspotter.capture.log_model import LogEntry, iso_from_ms
from bugspotter.capture.maintenance import MaintenanceLoop
from bugspotter.capture.persist import MemoryStateStore

from fakes import FakeClock, FakeHost

MIN = 60_000
HOUR = 60 * MIN


def _log(ts: int, text: str = "x") -> LogEntry:
    return LogEntry(kind="console", level="info", text=text, timestamp=iso_from_ms(ts))


def _loop(
    host: FakeHost, clock: FakeClock, live: set[str], *, fingerprint_ttl_ms: int = 24 * HOUR, **kw
) -> tuple[MaintenanceLoop, PersistentLogStore, ProcessedErrorCache, RecentSignalCache]:
    persistent = PersistentLogStore()
    processed = ProcessedErrorCache(MemoryStateStore(), ttl_ms=fingerprint_ttl_ms, clock=clock)
    recent = RecentSignalCache(window_ms=5_000)
    loop = MaintenanceLoop(
        host=host,
        persistent=persistent,
        processed=processed,
        recent=recent,
        is_live=live.__contains__,
        max_age_ms=15 * MIN,
        grace_ms=2 * HOUR,
        clock=clock,
        **kw,
    )
    return loop, persistent, processed, recent


def test_run_once_ages_out_and_sweeps_closed_targets() -> None:
    clock = FakeClock()
    host = FakeHost(targets=("open-tab",))
    loop, persistent, processed, recent = _loop(host, clock, live={"attached"}, fingerprint_ttl_ms=HOUR)

    start = clock.now
    for key in ("attached", "open-tab", "closed-tab", "closed-recent"):
        persistent.ensure(key).add_log(_log(start, "old"), start)
    processed.mark_processed("stale")
    clock.advance(2 * HOUR + 1)
    now = clock.now
    persistent.get("attached").add_log(_log(now, "fresh"), now)
    persistent.get("closed-recent").add_log(_log(now, "fresh"), now)
    recent.is_duplicate("attached", "https://x/a", 500, now - 10_000)

    stats = asyncio.run(loop.run_once())

    assert "closed-tab" not in persistent
    assert [e.text for e in persistent.get("attached").logs] == ["fresh"]
    assert [e.text for e in persistent.get("closed-recent").logs] == ["fresh"]
    # A live target whose entries all aged out loses its record too.
    assert "open-tab" not in persistent
    assert stats.closed_records == 1
    assert stats.aged_entries == 3
    assert stats.expired_fingerprints == 1
    assert stats.pruned_signals == 1
    assert "stale" not in processed
    assert loop.last_stats == stats


def test_unknown_liveness_keeps_record() -> None:
    class _BrokenHost(FakeHost):
        async def target_exists(self, target: str) -> bool:
            raise RuntimeError("connection lost")

    clock = FakeClock()
    loop, persistent, _, _ = _loop(_BrokenHost(), clock, live=set())
    persistent.ensure("t1").add_log(_log(clock.now), clock.now)
    clock.advance(3 * HOUR)
    persistent.get("t1").add_log(_log(clock.now), clock.now - 3 * HOUR)

    stats = asyncio.run(loop.run_once())

    assert "t1" in persistent
    assert stats.closed_records == 0


def test_run_once_yields_between_slices() -> None:
    clock = FakeClock()
    loop, persistent, _, _ = _loop(FakeHost(targets=()), clock, live=set(), slice_size=2)
    for n in range(5):
        persistent.ensure(f"t{n}").add_log(_log(clock.now), clock.now)

    async def scenario():
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0)

        task = asyncio.create_task(ticker())
        await asyncio.sleep(0)
        before = ticks
        await loop.run_once()
        after = ticks
        task.cancel()
        return after - before

    assert asyncio.run(scenario()) >= 2
    assert len(persistent) == 5


def test_start_and_stop() -> None:
    async def scenario():
        clock = FakeClock()
        loop, _, _, _ = _loop(FakeHost(), clock, live=set(), interval_s=0.01)
        assert loop.start() is True
        assert loop.running is True
        await asyncio.sleep(0.05)
        await loop.stop()
        return loop

    loop = asyncio.run(scenario())
    assert loop.running is False
    assert loop.last_stats is not None


def test_run_without_start_returns_immediately() -> None:
    loop, _, _, _ = _loop(FakeHost(), FakeClock(), live=set(), interval_s=60.0)
    asyncio.run(asyncio.wait_for(loop._run(), timeout=1.0))
    assert loop.last_stats is None
