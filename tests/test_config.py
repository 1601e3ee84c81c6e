from __future__ import annotations

import os

import pytest

from bugspotter.capture.config import DEFAULT_MODELS, CaptureConfig, TriageConfig


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("BUGSPOTTER_"):
            monkeypatch.delenv(name, raising=False)


def test_capture_defaults(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("BUGSPOTTER_STATE_DIR", str(tmp_path))
    cfg = CaptureConfig.from_env()
    assert cfg.state_dir == str(tmp_path)
    assert cfg.cdp_url == "http://127.0.0.1:9222"
    assert cfg.max_logs_per_session == 200
    assert cfg.dedup_window_ms == 5_000
    assert cfg.processed_ttl_ms == 24 * 60 * 60 * 1000
    assert cfg.persistent_max_age_ms == 15 * 60 * 1000
    assert cfg.closed_target_grace_ms == 2 * 60 * 60 * 1000


def test_capture_values_are_clamped(monkeypatch) -> None:
    monkeypatch.setenv("BUGSPOTTER_MAX_LOGS", "3")
    monkeypatch.setenv("BUGSPOTTER_DEDUP_WINDOW_MS", "not-a-number")
    monkeypatch.setenv("BUGSPOTTER_MAINTENANCE_INTERVAL", "99999")
    monkeypatch.setenv("BUGSPOTTER_NOTIFY_HTTP_ERRORS", "off")
    cfg = CaptureConfig.from_env()
    assert cfg.max_logs_per_session == 10
    assert cfg.dedup_window_ms == 5_000
    assert cfg.maintenance_interval_s == 3600.0
    assert cfg.notify_http_errors is False


def test_triage_defaults_are_disabled() -> None:
    cfg = TriageConfig.from_env()
    assert cfg.enabled is False
    assert cfg.api_key is None
    assert cfg.models == DEFAULT_MODELS
    assert cfg.max_requests_per_window == 10
    assert cfg.is_configured() is False


def test_triage_from_env(monkeypatch) -> None:
    monkeypatch.setenv("BUGSPOTTER_AI_ENABLED", "1")
    monkeypatch.setenv("BUGSPOTTER_AI_API_KEY", "  secret  ")
    monkeypatch.setenv("BUGSPOTTER_AI_DOMAINS", " .Example.com , *, api.partner.io ")
    monkeypatch.setenv("BUGSPOTTER_AI_MODELS", "model-a,model-b")
    monkeypatch.setenv("BUGSPOTTER_AI_MIN_STATUS", "500")
    cfg = TriageConfig.from_env()
    assert cfg.api_key == "secret"
    assert cfg.allow_domains == ["example.com", "api.partner.io"]
    assert cfg.models == ["model-a", "model-b"]
    assert cfg.min_status == 500
    assert cfg.is_configured() is True


def test_domain_allow_list_matches_suffixes() -> None:
    cfg = TriageConfig(allow_domains=["example.com"])
    assert cfg.is_domain_allowed("https://example.com/a")
    assert cfg.is_domain_allowed("https://shop.example.com/a")
    assert not cfg.is_domain_allowed("https://badexample.com/a")
    assert not cfg.is_domain_allowed("not a url")
    assert TriageConfig().is_domain_allowed("https://anything.test/")
