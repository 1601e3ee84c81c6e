from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

DEFAULT_MODELS: list[str] = ["gemini-2.5-flash", "gemini-2.0-flash"]
DEFAULT_AI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models"


def _repo_root() -> Path:
    # bugspotter/capture/config.py -> repo root is parents[2]
    return Path(__file__).resolve().parents[2]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _bool_env(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


def _int_env(name: str, *, default: int, lo: int, hi: int) -> int:
    try:
        val = int(float(os.environ.get(name) or default))
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _list_env(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class CaptureConfig:
    state_dir: str
    cdp_url: str = "http://127.0.0.1:9222"
    max_logs_per_session: int = 200
    dedup_window_ms: int = 5_000
    processed_ttl_ms: int = 24 * 60 * 60 * 1000
    persistent_max_age_ms: int = 15 * 60 * 1000
    closed_target_grace_ms: int = 2 * 60 * 60 * 1000
    maintenance_interval_s: float = 300.0
    maintenance_slice: int = 25
    async_stack_depth: int = 32
    command_timeout: float = 10.0
    notify_http_errors: bool = True
    notify_threshold: int = 400

    @classmethod
    def from_env(cls) -> CaptureConfig:
        state_dir = os.environ.get("BUGSPOTTER_STATE_DIR")
        if not (isinstance(state_dir, str) and state_dir.strip()):
            state_dir = str(_repo_root() / "data" / "state")
        return cls(
            state_dir=expand_path(state_dir.strip()),
            cdp_url=(os.environ.get("BUGSPOTTER_CDP_URL") or "http://127.0.0.1:9222").strip(),
            max_logs_per_session=_int_env("BUGSPOTTER_MAX_LOGS", default=200, lo=10, hi=10_000),
            dedup_window_ms=_int_env("BUGSPOTTER_DEDUP_WINDOW_MS", default=5_000, lo=100, hi=600_000),
            processed_ttl_ms=_int_env(
                "BUGSPOTTER_PROCESSED_TTL_MS", default=24 * 60 * 60 * 1000, lo=1_000, hi=30 * 24 * 60 * 60 * 1000
            ),
            persistent_max_age_ms=_int_env(
                "BUGSPOTTER_LOG_MAX_AGE_MS", default=15 * 60 * 1000, lo=1_000, hi=7 * 24 * 60 * 60 * 1000
            ),
            closed_target_grace_ms=_int_env(
                "BUGSPOTTER_CLOSED_GRACE_MS", default=2 * 60 * 60 * 1000, lo=0, hi=7 * 24 * 60 * 60 * 1000
            ),
            maintenance_interval_s=_float_env("BUGSPOTTER_MAINTENANCE_INTERVAL", default=300.0, lo=1.0, hi=3600.0),
            maintenance_slice=_int_env("BUGSPOTTER_MAINTENANCE_SLICE", default=25, lo=1, hi=10_000),
            async_stack_depth=_int_env("BUGSPOTTER_ASYNC_STACK_DEPTH", default=32, lo=0, hi=256),
            command_timeout=_float_env("BUGSPOTTER_COMMAND_TIMEOUT", default=10.0, lo=0.5, hi=120.0),
            notify_http_errors=_bool_env("BUGSPOTTER_NOTIFY_HTTP_ERRORS", default=True),
            notify_threshold=_int_env("BUGSPOTTER_NOTIFY_THRESHOLD", default=400, lo=100, hi=599),
        )


@dataclass
class TriageConfig:
    enabled: bool = False
    api_key: str | None = None
    allow_domains: list[str] = field(default_factory=list)
    min_status: int = 400
    max_requests_per_window: int = 10
    window_ms: int = 60_000
    base_delay_ms: int = 1_000
    max_delay_ms: int = 30_000
    max_retries: int = 3
    models: list[str] = field(default_factory=lambda: list(DEFAULT_MODELS))
    endpoint: str = DEFAULT_AI_ENDPOINT
    provider: str = "gemini"
    timeout: float = 30.0
    max_response_bytes: int = 1_000_000
    quota_pause_minutes: int = 10
    overload_pause_minutes: int = 15
    auto_notify: bool = True
    critical_only: bool = False

    @classmethod
    def from_env(cls) -> TriageConfig:
        api_key = (os.environ.get("BUGSPOTTER_AI_API_KEY") or "").strip() or None
        domains = [d.lower().lstrip(".").rstrip(".") for d in _list_env("BUGSPOTTER_AI_DOMAINS") if d != "*"]
        models = _list_env("BUGSPOTTER_AI_MODELS") or list(DEFAULT_MODELS)
        return cls(
            enabled=_bool_env("BUGSPOTTER_AI_ENABLED", default=False),
            api_key=api_key,
            allow_domains=domains,
            min_status=_int_env("BUGSPOTTER_AI_MIN_STATUS", default=400, lo=100, hi=599),
            max_requests_per_window=_int_env("BUGSPOTTER_AI_MAX_PER_WINDOW", default=10, lo=1, hi=10_000),
            window_ms=_int_env("BUGSPOTTER_AI_WINDOW_MS", default=60_000, lo=1_000, hi=24 * 60 * 60 * 1000),
            base_delay_ms=_int_env("BUGSPOTTER_AI_BASE_DELAY_MS", default=1_000, lo=0, hi=60_000),
            max_delay_ms=_int_env("BUGSPOTTER_AI_MAX_DELAY_MS", default=30_000, lo=0, hi=600_000),
            max_retries=_int_env("BUGSPOTTER_AI_MAX_RETRIES", default=3, lo=0, hi=10),
            models=models,
            endpoint=(os.environ.get("BUGSPOTTER_AI_ENDPOINT") or DEFAULT_AI_ENDPOINT).strip().rstrip("/"),
            timeout=_float_env("BUGSPOTTER_AI_TIMEOUT", default=30.0, lo=1.0, hi=300.0),
            auto_notify=_bool_env("BUGSPOTTER_AI_AUTO_NOTIFY", default=True),
            critical_only=_bool_env("BUGSPOTTER_NOTIFY_CRITICAL_ONLY", default=False),
        )

    def is_configured(self) -> bool:
        return bool(self.enabled and isinstance(self.api_key, str) and self.api_key.strip() and self.models)

    def is_domain_allowed(self, url: str) -> bool:
        try:
            host = (urlsplit(url or "").hostname or "").strip().lower().rstrip(".")
        except Exception:
            return False
        if not host:
            return False
        if not self.allow_domains:
            return True
        for raw_allowed in self.allow_domains:
            allowed = (raw_allowed or "").strip().lower().lstrip(".").rstrip(".")
            if not allowed:
                continue
            if host == allowed:
                return True
            if host.endswith("." + allowed):
                return True
        return False


__all__ = ["CaptureConfig", "DEFAULT_AI_ENDPOINT", "DEFAULT_MODELS", "TriageConfig", "expand_path"]
