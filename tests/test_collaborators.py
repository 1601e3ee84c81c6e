from __future__ import annotations

import asyncio

from bugspotter.capture.collaborators import StateNotifier, StateReportSink, UnreadCounter
from bugspotter.capture.log_model import LogEntry
from bugspotter.capture.persist import KEY_NOTIFICATIONS, KEY_UNREAD, MemoryStateStore

from fakes import FakeClock


def _entry(status: int = 500) -> LogEntry:
    return LogEntry(
        kind="http-error",
        level="error",
        text="x",
        timestamp="2024-01-01T00:00:00.000Z",
        url="https://shop.example.com/api?token=abc",
        status=status,
        status_text="Server Error",
    )


def test_unread_counter_persists() -> None:
    store = MemoryStateStore()
    counter = UnreadCounter(store)
    assert counter.get() == 0
    assert counter.increment() == 1
    assert counter.increment() == 2
    assert store.get(KEY_UNREAD) == 2
    counter.clear()
    assert UnreadCounter(store).get() == 0


def test_report_sink_keeps_last_reports_per_session() -> None:
    store = MemoryStateStore()
    sink = StateReportSink(store, clock=FakeClock(), max_reports=3)

    async def scenario():
        for n in range(5):
            await sink.store({"title": f"r{n}", "description": "d", "severity": "high"}, _entry(), "t1")
        await sink.store({"title": "other", "description": "d"}, _entry(), "t2")

    asyncio.run(scenario())

    assert [r["title"] for r in sink.reports("t1")] == ["r2", "r3", "r4"]
    assert [r["title"] for r in sink.reports("t2")] == ["other"]
    assert StateReportSink.key_for("t1") in store.keys()
    assert sink.reports("t1")[0]["source"] == "ai-auto-generated"


def test_notifier_history_is_newest_first_and_bounded() -> None:
    store = MemoryStateStore()
    clock = FakeClock()
    notifier = StateNotifier(store, clock=clock, max_history=2)

    async def scenario():
        for n in range(3):
            clock.advance(1)
            await notifier.notify_report({"title": f"r{n}", "severity": "high"}, _entry())

    asyncio.run(scenario())

    history = notifier.history()
    assert [h["title"] for h in history] == ["r2", "r1"]
    assert "token" not in history[0]["url"]
    notifier.clear_history()
    assert KEY_NOTIFICATIONS not in store.keys()


def test_notifier_honours_threshold_and_critical_only() -> None:
    store = MemoryStateStore()
    notifier = StateNotifier(store, threshold=500, critical_only=True, clock=FakeClock())

    async def scenario():
        await notifier.notify_http_error(_entry(404), "t1")
        await notifier.notify_http_error(_entry(503), "t1")
        await notifier.notify_report({"title": "minor", "severity": "high"}, _entry())
        await notifier.notify_report({"title": "major", "severity": "critical"}, _entry())

    asyncio.run(scenario())

    assert [(h["type"], h["title"]) for h in notifier.history()] == [("ai-report", "major"), ("http-error", "HTTP Error 503")]


def test_disabled_notifier_records_nothing() -> None:
    store = MemoryStateStore()
    notifier = StateNotifier(store, enabled=False)

    async def scenario():
        await notifier.notify_http_error(_entry(), "t1")
        await notifier.notify_report({"title": "x"}, _entry())

    asyncio.run(scenario())
    assert notifier.history() == []
