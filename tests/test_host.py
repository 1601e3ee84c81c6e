from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from bugspotter.capture.errors import TargetGoneError
from bugspotter.capture.host import DETACH_CONNECTION_CLOSED, DETACH_TARGET_CLOSED, CdpError, CdpHost


class _FakeSocket:
    """Answers each sent command on the next loop iteration via `responder`."""

    def __init__(self, host: CdpHost, responder) -> None:
        self.host = host
        self.responder = responder
        self.sent: list[dict[str, Any]] = []

    async def send(self, raw: str) -> None:
        msg = json.loads(raw)
        self.sent.append(msg)
        reply = self.responder(msg)
        if reply is not None:
            asyncio.get_running_loop().call_soon(self.host._on_message, {"id": msg["id"], **reply})


def _responder(msg: dict[str, Any]) -> dict[str, Any] | None:
    method = msg["method"]
    if method == "Target.attachToTarget":
        if msg["params"]["targetId"] == "gone":
            return {"error": {"code": -32602, "message": "No target with given id found"}}
        return {"result": {"sessionId": f"S-{msg['params']['targetId']}"}}
    if method == "Target.getTargets":
        return {"result": {"targetInfos": [{"targetId": "t1", "type": "page"}]}}
    if method == "Network.getResponseBody":
        return {"error": {"code": -32000, "message": "Target closed"}}
    return {"result": {}}


def _host() -> tuple[CdpHost, _FakeSocket]:
    host = CdpHost("ws://127.0.0.1:9222/devtools/browser/x", command_timeout=1.0)
    sock = _FakeSocket(host, _responder)
    host._ws = sock
    return host, sock


def test_events_are_routed_by_session() -> None:
    async def scenario():
        host, sock = _host()
        seen: list[tuple[str, str, dict[str, Any]]] = []
        host.on_event(lambda target, method, params: seen.append((target, method, params)))
        await host.attach("t1")
        host._on_message({"sessionId": "S-t1", "method": "Runtime.exceptionThrown", "params": {"x": 1}})
        host._on_message({"sessionId": "S-other", "method": "Runtime.exceptionThrown", "params": {}})
        host._on_message({"method": "Runtime.exceptionThrown", "params": {}})
        await host.send_command("t1", "Runtime.enable")
        return host, sock, seen

    host, sock, seen = asyncio.run(scenario())

    assert seen == [("t1", "Runtime.exceptionThrown", {"x": 1})]
    assert host.is_attached("t1")
    assert sock.sent[0]["params"] == {"targetId": "t1", "flatten": True}
    assert sock.sent[-1]["sessionId"] == "S-t1"


def test_missing_target_errors_become_target_gone() -> None:
    async def scenario():
        host, _ = _host()
        with pytest.raises(TargetGoneError):
            await host.attach("gone")
        with pytest.raises(TargetGoneError):
            await host.send_command("never-attached", "Runtime.enable")
        await host.attach("t1")
        with pytest.raises(TargetGoneError):
            await host.send_command("t1", "Network.getResponseBody", {"requestId": "r1"})
        assert await host.target_exists("t1") is True
        assert await host.target_exists("t2") is False

    asyncio.run(scenario())


def test_target_destroyed_notifies_detach_handlers() -> None:
    async def scenario():
        host, _ = _host()
        gone: list[tuple[str, str]] = []
        host.on_detach(lambda target, reason: gone.append((target, reason)))
        await host.attach("t1")
        await host.attach("t2")
        host._on_message({"method": "Target.targetDestroyed", "params": {"targetId": "t1"}})
        host._on_message({"method": "Target.detachedFromTarget", "params": {"sessionId": "S-t2"}})
        host._on_message({"method": "Target.targetDestroyed", "params": {"targetId": "unrelated"}})
        return host, gone

    host, gone = asyncio.run(scenario())

    assert gone == [("t1", DETACH_TARGET_CLOSED), ("t2", DETACH_TARGET_CLOSED)]
    assert not host.is_attached("t1")
    assert not host.is_attached("t2")


def test_failing_event_handler_does_not_stop_others() -> None:
    async def scenario():
        host, _ = _host()
        seen: list[str] = []

        def broken(target: str, method: str, params: dict[str, Any]) -> None:
            raise RuntimeError("boom")

        host.on_event(broken)
        host.on_event(lambda target, method, params: seen.append(method))
        await host.attach("t1")
        host._on_message({"sessionId": "S-t1", "method": "Console.messageAdded", "params": {}})
        return seen

    assert asyncio.run(scenario()) == ["Console.messageAdded"]


class _DroppingSocket(_FakeSocket):
    """Delivers nothing, then fails the way a reset TCP connection does."""

    def __aiter__(self):
        return self

    async def __anext__(self):
        await asyncio.sleep(0)
        raise ConnectionResetError("connection reset by peer")


def test_lost_connection_marks_host_disconnected() -> None:
    async def scenario():
        host = CdpHost("ws://127.0.0.1:9222/devtools/browser/x", command_timeout=1.0)
        sock = _DroppingSocket(host, _responder)
        host._ws = sock
        gone: list[tuple[str, str]] = []
        host.on_detach(lambda target, reason: gone.append((target, reason)))
        await host.attach("t1")

        await host._read_loop()

        assert host.connected is False
        assert host.is_attached("t1") is False
        assert await host.target_exists("t1") is False
        with pytest.raises(CdpError):
            await host.list_targets()
        return gone

    assert asyncio.run(scenario()) == [("t1", DETACH_CONNECTION_CLOSED)]


class _ClosedSocket(_FakeSocket):
    async def send(self, raw: str) -> None:
        raise ConnectionResetError("socket is closed")


def test_send_failure_is_reported_as_protocol_error() -> None:
    async def scenario():
        host = CdpHost("ws://127.0.0.1:9222/devtools/browser/x", command_timeout=1.0)
        host._ws = _ClosedSocket(host, _responder)
        with pytest.raises(CdpError, match="send failed"):
            await host.list_targets()
        assert await host.target_exists("t1") is False

    asyncio.run(scenario())
