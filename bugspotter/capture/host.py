"""Protocol host abstraction plus a Chrome DevTools implementation.

The router, registry and pipeline only see `ProtocolHost`; tests plug in a fake.
`CdpHost` talks to the browser-level DevTools WebSocket and multiplexes page
targets over flattened sessions (`Target.attachToTarget(flatten=true)`).
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from collections.abc import Callable
from typing import Any, Protocol

from .errors import TargetGoneError, is_target_gone
from .http_client import HttpClientError, http_get_json

_LOGGER = logging.getLogger("bugspotter.capture.host")

EventHandler = Callable[[str, str, dict[str, Any]], None]
DetachHandler = Callable[[str, str], None]

DETACH_TARGET_CLOSED = "target_closed"
DETACH_CONNECTION_CLOSED = "connection_closed"


class ProtocolHost(Protocol):
    async def attach(self, target: str) -> None: ...

    async def detach(self, target: str) -> None: ...

    async def send_command(self, target: str, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]: ...

    def on_event(self, handler: EventHandler) -> None: ...

    def on_detach(self, handler: DetachHandler) -> None: ...

    async def target_exists(self, target: str) -> bool: ...


class CdpError(Exception):
    def __init__(self, method: str, message: str, *, code: int | None = None) -> None:
        super().__init__(f"{method}: {message}")
        self.method = method
        self.code = code


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "CDP capture requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


def discover_browser_ws_url(cdp_url: str, *, timeout: float = 2.0) -> str:
    """Resolve the browser WebSocket endpoint from `<cdp_url>/json/version`."""
    base = cdp_url.rstrip("/")
    if base.startswith(("ws://", "wss://")):
        return base
    info = http_get_json(f"{base}/json/version", timeout=timeout)
    ws_url = info.get("webSocketDebuggerUrl") if isinstance(info, dict) else None
    if not isinstance(ws_url, str) or not ws_url:
        raise HttpClientError(f"No webSocketDebuggerUrl at {base}/json/version")
    return ws_url


def list_page_targets(cdp_url: str, *, timeout: float = 2.0) -> list[dict[str, Any]]:
    base = cdp_url.rstrip("/")
    data = http_get_json(f"{base}/json", timeout=timeout)
    if not isinstance(data, list):
        return []
    return [t for t in data if isinstance(t, dict) and t.get("type") == "page" and isinstance(t.get("id"), str)]


class CdpHost:
    """asyncio DevTools client (one browser connection, many page sessions)."""

    def __init__(self, ws_url: str, *, command_timeout: float = 10.0, open_timeout: float = 5.0) -> None:
        self.ws_url = ws_url
        self.command_timeout = max(0.1, float(command_timeout))
        self.open_timeout = max(0.1, float(open_timeout))

        self._ws: Any | None = None
        self._reader: asyncio.Task[None] | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}

        # targetId <-> sessionId for attached page targets.
        self._sessions: dict[str, str] = {}
        self._targets_by_session: dict[str, str] = {}

        self._event_handlers: list[EventHandler] = []
        self._detach_handlers: list[DetachHandler] = []

    @classmethod
    async def connect_url(cls, cdp_url: str, *, command_timeout: float = 10.0) -> CdpHost:
        ws_url = await asyncio.to_thread(discover_browser_ws_url, cdp_url)
        host = cls(ws_url, command_timeout=command_timeout)
        await host.connect()
        return host

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        if self._ws is not None:
            return
        websockets = _import_websockets()
        self._ws = await websockets.connect(
            self.ws_url, ping_interval=None, open_timeout=self.open_timeout, max_size=None
        )
        self._reader = asyncio.create_task(self._read_loop(), name="bugspotter-cdp-reader")
        # Needed for Target.targetDestroyed notifications.
        await self._call("Target.setDiscoverTargets", {"discover": True})
        _LOGGER.info("cdp_connected url=%s", self.ws_url)

    async def close(self) -> None:
        ws = self._ws
        reader = self._reader
        self._ws = None
        self._reader = None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        if reader is not None:
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await reader
        self._fail_pending(CdpError("close", "connection closed"))

    def on_event(self, handler: EventHandler) -> None:
        self._event_handlers.append(handler)

    def on_detach(self, handler: DetachHandler) -> None:
        self._detach_handlers.append(handler)

    def is_attached(self, target: str) -> bool:
        return target in self._sessions

    async def list_targets(self) -> list[dict[str, Any]]:
        res = await self._call("Target.getTargets", {})
        infos = res.get("targetInfos")
        return [t for t in infos if isinstance(t, dict)] if isinstance(infos, list) else []

    async def target_exists(self, target: str) -> bool:
        if self._ws is None:
            return False
        try:
            infos = await self.list_targets()
        except (CdpError, asyncio.TimeoutError):
            return False
        return any(t.get("targetId") == target for t in infos)

    async def attach(self, target: str) -> None:
        if target in self._sessions:
            return
        try:
            res = await self._call("Target.attachToTarget", {"targetId": target, "flatten": True})
        except CdpError as exc:
            if is_target_gone(exc):
                raise TargetGoneError(target, str(exc)) from exc
            raise
        session_id = res.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            raise CdpError("Target.attachToTarget", "no sessionId in response")
        self._sessions[target] = session_id
        self._targets_by_session[session_id] = target

    async def detach(self, target: str) -> None:
        session_id = self._sessions.pop(target, None)
        if session_id is None:
            return
        self._targets_by_session.pop(session_id, None)
        with contextlib.suppress(CdpError, asyncio.TimeoutError):
            await self._call("Target.detachFromTarget", {"sessionId": session_id})

    async def send_command(self, target: str, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        session_id = self._sessions.get(target)
        if session_id is None:
            raise TargetGoneError(target, "No target with given id")
        try:
            return await self._call(method, params or {}, session_id=session_id)
        except CdpError as exc:
            if is_target_gone(exc):
                raise TargetGoneError(target, str(exc)) from exc
            raise

    async def _call(self, method: str, params: dict[str, Any], *, session_id: str | None = None) -> dict[str, Any]:
        ws = self._ws
        if ws is None:
            raise CdpError(method, "not connected")
        msg_id = next(self._ids)
        msg: dict[str, Any] = {"id": msg_id, "method": method, "params": params}
        if session_id:
            msg["sessionId"] = session_id
        fut: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = fut
        try:
            try:
                await ws.send(json.dumps(msg, ensure_ascii=False))
            except Exception as exc:  # noqa: BLE001
                raise CdpError(method, f"send failed: {exc}") from exc
            return await asyncio.wait_for(fut, timeout=self.command_timeout)
        finally:
            self._pending.pop(msg_id, None)

    async def _read_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except Exception:
                    continue
                if isinstance(msg, dict):
                    self._on_message(msg)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("cdp_connection_lost error=%s", exc)
        finally:
            if self._ws is ws:
                self._ws = None
            self._fail_pending(CdpError("connection", "connection closed"))
            for target in list(self._sessions.keys()):
                self._forget_target(target, DETACH_CONNECTION_CLOSED)

    def _on_message(self, msg: dict[str, Any]) -> None:
        raw_id = msg.get("id")
        if isinstance(raw_id, int):
            fut = self._pending.get(raw_id)
            if fut is None or fut.done():
                return
            err = msg.get("error")
            if isinstance(err, dict):
                message = err.get("message") if isinstance(err.get("message"), str) else "CDP error"
                code = err.get("code") if isinstance(err.get("code"), int) else None
                fut.set_exception(CdpError(str(msg.get("method") or "command"), message, code=code))
                return
            result = msg.get("result")
            fut.set_result(result if isinstance(result, dict) else {})
            return

        method = msg.get("method")
        if not isinstance(method, str) or not method:
            return
        params = msg.get("params")
        if not isinstance(params, dict):
            params = {}

        if method == "Target.detachedFromTarget":
            session_id = params.get("sessionId")
            target = self._targets_by_session.get(session_id) if isinstance(session_id, str) else None
            if target is None and isinstance(params.get("targetId"), str):
                target = params["targetId"]
            if target and target in self._sessions:
                self._forget_target(target, DETACH_TARGET_CLOSED)
            return

        if method == "Target.targetDestroyed":
            target = params.get("targetId")
            if isinstance(target, str) and target in self._sessions:
                self._forget_target(target, DETACH_TARGET_CLOSED)
            return

        session_id = msg.get("sessionId")
        if not isinstance(session_id, str):
            return
        target = self._targets_by_session.get(session_id)
        if target is None:
            return
        for handler in list(self._event_handlers):
            try:
                handler(target, method, params)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("cdp_event_handler_failed method=%s", method)

    def _forget_target(self, target: str, reason: str) -> None:
        session_id = self._sessions.pop(target, None)
        if session_id is not None:
            self._targets_by_session.pop(session_id, None)
        for handler in list(self._detach_handlers):
            try:
                handler(target, reason)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("cdp_detach_handler_failed target=%s", target)

    def _fail_pending(self, exc: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(exc)


__all__ = [
    "CdpError",
    "CdpHost",
    "DETACH_CONNECTION_CLOSED",
    "DETACH_TARGET_CLOSED",
    "DetachHandler",
    "EventHandler",
    "ProtocolHost",
    "discover_browser_ws_url",
    "list_page_targets",
]
