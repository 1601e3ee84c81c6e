from __future__ import annotations

import asyncio
import json
from typing import Any

from bugspotter.capture.errors import TargetGoneError
from bugspotter.capture.http_client import HttpClientError


class FakeClock:
    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += int(ms)


class FakeHost:
    """In-memory ProtocolHost: targets, canned command replies, event injection."""

    def __init__(self, targets: tuple[str, ...] = ("t1",)) -> None:
        self.targets: set[str] = set(targets)
        self.attached: set[str] = set()
        self.commands: list[tuple[str, str, dict[str, Any] | None]] = []
        self.replies: dict[str, Any] = {}
        self._event_handlers: list[Any] = []
        self._detach_handlers: list[Any] = []

    async def attach(self, target: str) -> None:
        if target not in self.targets:
            raise TargetGoneError(target, "No tab with given id")
        self.attached.add(target)

    async def detach(self, target: str) -> None:
        self.attached.discard(target)

    async def send_command(self, target: str, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self.commands.append((target, method, params))
        # Real hosts suspend on every command; let other tasks interleave.
        await asyncio.sleep(0)
        if target not in self.targets:
            raise TargetGoneError(target, "No tab with given id")
        reply = self.replies.get(method)
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(target, params)
        return dict(reply) if isinstance(reply, dict) else {}

    def on_event(self, handler: Any) -> None:
        self._event_handlers.append(handler)

    def on_detach(self, handler: Any) -> None:
        self._detach_handlers.append(handler)

    async def target_exists(self, target: str) -> bool:
        return target in self.targets

    def emit(self, target: str, method: str, params: dict[str, Any]) -> None:
        for handler in list(self._event_handlers):
            handler(target, method, params)

    def close_target(self, target: str, reason: str = "target_closed") -> None:
        self.targets.discard(target)
        self.attached.discard(target)
        for handler in list(self._detach_handlers):
            handler(target, reason)

    def sent(self, method: str) -> list[tuple[str, str, dict[str, Any] | None]]:
        return [c for c in self.commands if c[1] == method]


def gemini_ok(text: str) -> dict[str, Any]:
    body = {"candidates": [{"content": {"parts": [{"text": text}]}}]}
    return {"status": 200, "headers": {}, "body": json.dumps(body)}


def http_error(status: int | None, message: str = "", *, retry_after: str | None = None) -> HttpClientError:
    body = json.dumps({"error": {"code": status, "message": message}}) if message else ""
    return HttpClientError(f"HTTP {status}", status=status, body=body, retry_after=retry_after)


class FakeTransport:
    """Replays queued upstream replies; the last one repeats once the queue runs dry."""

    def __init__(self, *replies: Any) -> None:
        self.replies = list(replies)
        self.calls: list[dict[str, Any]] = []

    def __call__(self, url: str, payload: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
        self.calls.append({"url": url, "payload": payload, **kwargs})
        if not self.replies:
            raise AssertionError("unexpected upstream call")
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply

    @property
    def models(self) -> list[str]:
        return [c["url"].rsplit("/", 1)[-1].split(":", 1)[0] for c in self.calls]


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


REPORT_JSON = json.dumps(
    {
        "title": "Checkout API returns 500",
        "description": "POST /api/checkout fails with an internal server error.",
        "category": "Server Error",
        "severity": "high",
        "stepsToReproduce": ["Open cart", "Click pay"],
    }
)


__all__ = [
    "FakeClock",
    "FakeHost",
    "FakeTransport",
    "REPORT_JSON",
    "RecordingSleep",
    "gemini_ok",
    "http_error",
]
