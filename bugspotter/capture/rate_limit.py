from __future__ import annotations

import logging
import math
import re
from email.utils import parsedate_to_datetime
from typing import Any

from .log_model import Clock, iso_from_ms, now_ms
from .persist import KEY_PAUSE_UNTIL, StateStore

_LOGGER = logging.getLogger("bugspotter.capture.rate_limit")

_RETRY_IN_RE = re.compile(r"retry\s+in\s+(\d+(?:\.\d+)?)\s*s", re.IGNORECASE)


class RateLimiter:
    """Fixed-window request counter.

    The counter resets only when `now > window_start + window_ms`.
    """

    def __init__(self, *, max_per_window: int = 10, window_ms: int = 60_000, clock: Clock = now_ms) -> None:
        self.max_per_window = max(1, int(max_per_window))
        self.window_ms = max(1, int(window_ms))
        self._clock = clock
        self.window_start = clock()
        self.request_count = 0

    def _roll(self) -> int:
        now = self._clock()
        if now > self.window_start + self.window_ms:
            self.window_start = now
            self.request_count = 0
        return now

    def can_proceed(self) -> bool:
        self._roll()
        return self.request_count < self.max_per_window

    def record_attempt(self) -> None:
        self._roll()
        self.request_count += 1

    def remaining(self) -> int:
        self._roll()
        return max(0, self.max_per_window - self.request_count)

    def time_until_reset_ms(self) -> int:
        now = self._roll()
        return max(0, self.window_start + self.window_ms - now)


class PauseState:
    """Persisted upstream pause window; survives restarts."""

    def __init__(self, store: StateStore, *, clock: Clock = now_ms) -> None:
        self._store = store
        self._clock = clock

    def pause_until(self) -> int | None:
        raw: Any = self._store.get(KEY_PAUSE_UNTIL)
        if raw is None or isinstance(raw, bool):
            return None
        try:
            return int(float(raw))
        except (TypeError, ValueError):
            return None

    def is_paused(self) -> bool:
        until = self.pause_until()
        return until is not None and self._clock() < until

    def remaining_ms(self) -> int:
        until = self.pause_until()
        if until is None:
            return 0
        return max(0, until - self._clock())

    def set_pause(self, minutes: float) -> int:
        until = self._clock() + int(max(0.0, float(minutes)) * 60_000)
        self._store.set(KEY_PAUSE_UNTIL, until)
        _LOGGER.warning("upstream_paused minutes=%s until=%s", minutes, iso_from_ms(until))
        return until

    def clear(self) -> None:
        self._store.delete(KEY_PAUSE_UNTIL)


def parse_retry_after_seconds(message: str | None = None, header: str | None = None) -> float | None:
    """Read a retry hint from an error message ("retry in 37s") or a Retry-After header."""
    if isinstance(message, str) and message:
        m = _RETRY_IN_RE.search(message)
        if m:
            try:
                return float(m.group(1))
            except ValueError:
                pass
    if isinstance(header, str) and header.strip():
        raw = header.strip()
        try:
            return max(0.0, float(raw))
        except ValueError:
            pass
        try:
            dt = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            return None
        if dt is None:
            return None
        return max(0.0, dt.timestamp() - now_ms() / 1000.0)
    return None


def quota_pause_minutes(retry_after_s: float | None, *, default: int = 10) -> int:
    if retry_after_s is None:
        return int(default)
    return max(1, math.ceil(retry_after_s / 60.0))


__all__ = ["PauseState", "RateLimiter", "parse_retry_after_seconds", "quota_pause_minutes"]
