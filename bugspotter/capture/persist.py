"""Persisted capture state (disk-backed key-value store).

Design
- One small JSON document under `data/state/` (gitignored).
- Write-through: every `set`/`delete` rewrites the document.
- Atomic writes: write temp file then replace; keep a best-effort `.bak`.
- Fail-soft loading: a corrupt or missing file reads as empty.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import shutil
import time
from contextlib import suppress
from pathlib import Path
from typing import Any, Protocol

_LOGGER = logging.getLogger("bugspotter.capture.persist")

STATE_FILENAME = "state.json"

KEY_PROCESSED = "processedAIErrors"
KEY_PAUSE_UNTIL = "ai_pause_until"
KEY_ACTIVE_SESSIONS = "activeSessions"
KEY_RECORDING_STATES = "recordingStates"
KEY_UNREAD = "unreadAIReports"
KEY_NOTIFICATIONS = "notifications"
REPORTS_PREFIX = "ai-reports-"


class StateStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


def load_state(path: Path) -> dict[str, Any]:
    try:
        if not path.exists() or not path.is_file():
            return {}
        raw = path.read_text(encoding="utf-8", errors="replace")
        obj = json.loads(raw)
    except Exception:
        return {}

    if not isinstance(obj, dict):
        return {}
    items = obj.get("items")
    if not isinstance(items, dict):
        return {}
    return {k: v for k, v in items.items() if isinstance(k, str) and k.strip()}


def save_state(path: Path, items: dict[str, Any]) -> dict[str, Any]:
    path.parent.mkdir(parents=True, exist_ok=True)

    now_ms = int(time.time() * 1000)
    payload = {"version": 1, "updatedAt": now_ms, "items": items}
    text = json.dumps(payload, ensure_ascii=True, indent=2, sort_keys=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    bak = path.with_suffix(path.suffix + ".bak")

    with suppress(Exception):
        if path.exists() and path.is_file():
            shutil.copyfile(path, bak)

    tmp.write_text(text, encoding="utf-8")
    with suppress(Exception):
        os.chmod(tmp, 0o600)
    tmp.replace(path)
    with suppress(Exception):
        os.chmod(path, 0o600)

    return {"ok": True, "path": str(path), "updatedAt": now_ms, "keys": len(items)}


class MemoryStateStore:
    """In-process store with the same contract as `JsonStateStore`."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._items: dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self.writes = 0

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._items:
            return default
        return copy.deepcopy(self._items[key])

    def set(self, key: str, value: Any) -> None:
        self._items[key] = copy.deepcopy(value)
        self.writes += 1

    def delete(self, key: str) -> None:
        if key in self._items:
            del self._items[key]
            self.writes += 1

    def keys(self) -> list[str]:
        return list(self._items.keys())


class JsonStateStore(MemoryStateStore):
    """Write-through JSON file store."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        super().__init__(load_state(self.path))

    @classmethod
    def in_dir(cls, state_dir: Path | str) -> JsonStateStore:
        return cls(Path(state_dir) / STATE_FILENAME)

    def _flush(self) -> None:
        try:
            save_state(self.path, self._items)
        except OSError as exc:
            # Best-effort: the in-memory view stays authoritative for this process.
            _LOGGER.warning("state_write_failed path=%s error=%s", self.path, exc)

    def set(self, key: str, value: Any) -> None:
        super().set(key, value)
        self._flush()

    def delete(self, key: str) -> None:
        existed = key in self._items
        super().delete(key)
        if existed:
            self._flush()


__all__ = [
    "JsonStateStore",
    "KEY_ACTIVE_SESSIONS",
    "KEY_NOTIFICATIONS",
    "KEY_PAUSE_UNTIL",
    "KEY_PROCESSED",
    "KEY_RECORDING_STATES",
    "KEY_UNREAD",
    "MemoryStateStore",
    "REPORTS_PREFIX",
    "STATE_FILENAME",
    "StateStore",
    "load_state",
    "save_state",
]
