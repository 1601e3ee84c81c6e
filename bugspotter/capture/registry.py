"""Session registry: attach/detach lifecycle per target.

States per target: detached -> attaching -> attached -> detaching -> detached.
A host detach notification forces `detached` from any state and discards the
live session; the persistent record stays and ages out on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .buffers import PersistentLogStore, SessionBuffers, dedupe_by_text, merged_view, prepend_bounded, view_to_dict
from .dedup import RecentSignalCache
from .errors import AttachmentFailure, Outcome, TargetGone, is_target_gone
from .host import ProtocolHost
from .log_model import KIND_CONSOLE_EXISTING, Clock, LogEntry, iso_from_ms, normalize_level, now_ms, parse_ts_ms
from .persist import KEY_ACTIVE_SESSIONS, KEY_RECORDING_STATES, StateStore

_LOGGER = logging.getLogger("bugspotter.capture.registry")

HISTORY_EXPRESSION = """
(function() {
  if (window.bugSpotterLogs) {
    return window.bugSpotterLogs;
  }
  if (console.history) {
    return console.history;
  }
  return [];
})()
"""

ENABLE_COMMANDS = ("Runtime.enable", "Console.enable", "Network.enable")


class SessionState(str, Enum):
    DETACHED = "detached"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    DETACHING = "detaching"


@dataclass(slots=True)
class Session:
    session_id: str
    buffers: SessionBuffers
    attached_at_ms: int
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "attachedAt": iso_from_ms(self.attached_at_ms),
            "logs": len(self.buffers.logs),
            "networkRequests": len(self.buffers.network_requests),
            "errors": len(self.buffers.errors),
        }


def history_to_entries(raw: Any, *, now: int) -> list[LogEntry]:
    """Normalize page-side console history into `console-existing` entries."""
    if not isinstance(raw, list):
        return []
    out: list[LogEntry] = []
    for item in raw:
        if isinstance(item, dict):
            ts_raw = item.get("timestamp")
            ts_ms = parse_ts_ms(ts_raw)
            text = item.get("message")
            if not isinstance(text, str):
                text = item.get("text") if isinstance(item.get("text"), str) else str(item)
            url = item.get("url")
            out.append(
                LogEntry(
                    kind=KIND_CONSOLE_EXISTING,
                    level=normalize_level(item.get("level")),
                    text=text,
                    timestamp=iso_from_ms(ts_ms if ts_ms is not None else now),
                    url=url if isinstance(url, str) and url else None,
                    source="browser-console",
                )
            )
        elif item is not None:
            out.append(
                LogEntry(
                    kind=KIND_CONSOLE_EXISTING,
                    level="info",
                    text=str(item),
                    timestamp=iso_from_ms(now),
                    source="browser-console",
                )
            )
    return dedupe_by_text(out)


class SessionRegistry:
    def __init__(
        self,
        *,
        host: ProtocolHost,
        persistent: PersistentLogStore,
        recent: RecentSignalCache,
        store: StateStore,
        max_logs: int = 200,
        async_stack_depth: int = 32,
        clock: Clock = now_ms,
    ) -> None:
        self._host = host
        self._persistent = persistent
        self._recent = recent
        self._store = store
        self._max_logs = max(1, int(max_logs))
        self._async_stack_depth = max(0, int(async_stack_depth))
        self._clock = clock

        self._states: dict[str, SessionState] = {}
        self._sessions: dict[str, Session] = {}

    # ──────────────────────────────────────────────────────────────────
    # Introspection
    # ──────────────────────────────────────────────────────────────────

    def state(self, target: str) -> SessionState:
        return self._states.get(target, SessionState.DETACHED)

    def session(self, target: str) -> Session | None:
        return self._sessions.get(target)

    def buffers(self, target: str) -> SessionBuffers | None:
        sess = self._sessions.get(target)
        return sess.buffers if sess is not None else None

    def attached_targets(self) -> list[str]:
        return [t for t, st in self._states.items() if st is SessionState.ATTACHED]

    def is_live(self, target: str) -> bool:
        return target in self._sessions

    def get_logs(self, target: str, domain_filter: str | None = None) -> dict[str, Any]:
        view = merged_view(self._persistent.get(target), self.buffers(target), domain_filter)
        return view_to_dict(view)

    # ──────────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────────

    def _still_attaching(self, target: str) -> bool:
        return self._states.get(target) is SessionState.ATTACHING

    async def attach(self, target: str) -> Outcome[dict[str, Any]]:
        current = self.state(target)
        if current is SessionState.ATTACHING:
            return Outcome.fail(AttachmentFailure("attach already in progress", {"target": target}))
        if current is SessionState.ATTACHED:
            return Outcome.fail(AttachmentFailure("already attached", {"target": target}))
        if current is SessionState.DETACHING:
            return Outcome.fail(AttachmentFailure("detach in progress", {"target": target}))

        self._states[target] = SessionState.ATTACHING
        try:
            if not await self._host.target_exists(target):
                self._states.pop(target, None)
                _LOGGER.info("attach_target_gone target=%s stage=precheck", target)
                return Outcome.fail(TargetGone("target does not exist", {"target": target}))
            if not self._still_attaching(target):
                return self._gone_during_attach(target, "precheck")

            await self._host.attach(target)
            for cmd in ENABLE_COMMANDS:
                await self._host.send_command(target, cmd, {})
                if not self._still_attaching(target):
                    return self._gone_during_attach(target, cmd)
            await self._host.send_command(
                target, "Runtime.setAsyncCallStackDepth", {"maxDepth": self._async_stack_depth}
            )
            if not self._still_attaching(target):
                return self._gone_during_attach(target, "setAsyncCallStackDepth")

            history = await self._collect_history(target)
            if not self._still_attaching(target):
                return self._gone_during_attach(target, "history")
        except Exception as exc:  # noqa: BLE001
            self._states.pop(target, None)
            self._sessions.pop(target, None)
            if is_target_gone(exc):
                _LOGGER.info("attach_target_gone target=%s error=%s", target, exc)
                return Outcome.fail(TargetGone(str(exc), {"target": target}))
            _LOGGER.warning("attach_failed target=%s error=%s", target, exc)
            try:
                await self._host.detach(target)
            except Exception as detach_exc:  # noqa: BLE001
                _LOGGER.info("attach_cleanup_failed target=%s error=%s", target, detach_exc)
            return Outcome.fail(AttachmentFailure(str(exc), {"target": target}))

        now = self._clock()
        buffers = SessionBuffers(cap=self._max_logs)
        prepend_bounded(buffers.logs, history, self._max_logs)
        prepend_bounded(buffers.errors, [e for e in history if e.is_error], self._max_logs)
        self._sessions[target] = Session(session_id=target, buffers=buffers, attached_at_ms=now)

        record = self._persistent.ensure(target)
        if history:
            prepend_bounded(record.logs, history, record.cap)
            prepend_bounded(record.errors, [e for e in history if e.is_error], record.cap)
        record.touch(now)

        self._states[target] = SessionState.ATTACHED
        self._remember_active(target, now)
        _LOGGER.info("attached target=%s existing_logs=%s", target, len(history))
        return Outcome.success({"target": target, "existingLogs": len(history)})

    def _gone_during_attach(self, target: str, stage: str) -> Outcome[dict[str, Any]]:
        # A detach notification already moved the target to detached.
        self._states.pop(target, None)
        self._sessions.pop(target, None)
        _LOGGER.info("attach_target_gone target=%s stage=%s", target, stage)
        return Outcome.fail(TargetGone("target vanished during attach", {"target": target, "stage": stage}))

    async def _collect_history(self, target: str) -> list[LogEntry]:
        try:
            res = await self._host.send_command(
                target, "Runtime.evaluate", {"expression": HISTORY_EXPRESSION, "returnByValue": True}
            )
        except Exception as exc:  # noqa: BLE001
            if is_target_gone(exc):
                raise
            _LOGGER.info("history_unavailable target=%s error=%s", target, exc)
            return []
        result = res.get("result") if isinstance(res, dict) else None
        value = result.get("value") if isinstance(result, dict) else None
        return history_to_entries(value, now=self._clock())

    async def detach(self, target: str) -> Outcome[dict[str, Any]]:
        current = self.state(target)
        if current is not SessionState.ATTACHED:
            return Outcome.success({"target": target, "detached": False, "state": current.value})
        self._states[target] = SessionState.DETACHING
        try:
            await self._host.detach(target)
        except Exception as exc:  # noqa: BLE001
            if is_target_gone(exc):
                _LOGGER.info("detach_target_gone target=%s", target)
            else:
                _LOGGER.warning("detach_failed target=%s error=%s", target, exc)
        self._destroy(target)
        _LOGGER.info("detached target=%s", target)
        return Outcome.success({"target": target, "detached": True})

    def on_target_gone(self, target: str, reason: str) -> None:
        """Host notification: the target vanished or the debugger was detached."""
        had = target in self._states or target in self._sessions
        self._destroy(target)
        if had:
            _LOGGER.info("target_gone target=%s reason=%s", target, reason)

    def _destroy(self, target: str) -> None:
        self._states.pop(target, None)
        self._sessions.pop(target, None)
        self._recent.forget(target)
        self._forget_active(target)

    async def close(self) -> None:
        for target in list(self._sessions.keys()):
            await self.detach(target)

    # ──────────────────────────────────────────────────────────────────
    # Persisted metadata
    # ──────────────────────────────────────────────────────────────────

    def _remember_active(self, target: str, now: int) -> None:
        active = self._store.get(KEY_ACTIVE_SESSIONS, {})
        if not isinstance(active, dict):
            active = {}
        active[target] = {"attachedAt": now, "state": SessionState.ATTACHED.value}
        self._store.set(KEY_ACTIVE_SESSIONS, active)

    def _forget_active(self, target: str) -> None:
        active = self._store.get(KEY_ACTIVE_SESSIONS, {})
        if isinstance(active, dict) and target in active:
            active.pop(target, None)
            self._store.set(KEY_ACTIVE_SESSIONS, active)

    def previous_sessions(self) -> dict[str, Any]:
        """Attachment metadata left behind by a previous process."""
        active = self._store.get(KEY_ACTIVE_SESSIONS, {})
        return active if isinstance(active, dict) else {}

    def reset_previous_sessions(self) -> int:
        stale = self.previous_sessions()
        live = {t: v for t, v in stale.items() if t in self._sessions}
        if len(live) != len(stale):
            self._store.set(KEY_ACTIVE_SESSIONS, live)
        return len(stale) - len(live)

    def set_recording_state(self, target: str, state: dict[str, Any]) -> None:
        states = self._store.get(KEY_RECORDING_STATES, {})
        if not isinstance(states, dict):
            states = {}
        states[target] = {**state, "updatedAt": self._clock()}
        self._store.set(KEY_RECORDING_STATES, states)

    def get_recording_state(self, target: str) -> dict[str, Any] | None:
        states = self._store.get(KEY_RECORDING_STATES, {})
        if not isinstance(states, dict):
            return None
        state = states.get(target)
        return state if isinstance(state, dict) else None

    def clear_recording_state(self, target: str) -> bool:
        states = self._store.get(KEY_RECORDING_STATES, {})
        if not isinstance(states, dict) or target not in states:
            return False
        states.pop(target, None)
        self._store.set(KEY_RECORDING_STATES, states)
        return True


__all__ = ["ENABLE_COMMANDS", "HISTORY_EXPRESSION", "Session", "SessionRegistry", "SessionState", "history_to_entries"]
