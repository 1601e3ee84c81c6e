from __future__ import annotations

import asyncio

import pytest

from bugspotter.capture.config import TriageConfig
from bugspotter.capture.errors import ParseFailure, UpstreamPermanent, UpstreamTransient
from bugspotter.capture.http_client import HttpClientError
from bugspotter.capture.persist import KEY_PAUSE_UNTIL, MemoryStateStore
from bugspotter.capture.rate_limit import PauseState
from bugspotter.capture.triage.client import GenerationClient, backoff_delay_ms, extract_candidate_text

from fakes import FakeClock, FakeTransport, RecordingSleep, gemini_ok, http_error


def _client(transport: FakeTransport, **cfg) -> tuple[GenerationClient, RecordingSleep, MemoryStateStore, FakeClock]:
    config = TriageConfig(enabled=True, api_key="test-key", **cfg)
    clock = FakeClock()
    store = MemoryStateStore()
    sleep = RecordingSleep()
    client = GenerationClient(config, pause=PauseState(store, clock=clock), transport=transport, sleep=sleep)
    return client, sleep, store, clock


def test_backoff_delay_schedule() -> None:
    assert backoff_delay_ms(0) == 1_000
    assert backoff_delay_ms(1) == 2_000
    assert backoff_delay_ms(4) == 16_000
    assert backoff_delay_ms(5) == 30_000
    assert backoff_delay_ms(9) == 30_000


def test_success_sends_key_header_and_generation_config() -> None:
    transport = FakeTransport(gemini_ok('{"title":"t","description":"d"}'))
    client, sleep, _, _ = _client(transport, models=["m1"], endpoint="https://ai.example/v1beta/models")

    result = asyncio.run(client.generate("prompt text"))

    assert result.text == '{"title":"t","description":"d"}'
    assert (result.model, result.attempts) == ("m1", 1)
    [call] = transport.calls
    assert call["url"] == "https://ai.example/v1beta/models/m1:generateContent"
    assert call["headers"] == {"x-goog-api-key": "test-key"}
    assert "test-key" not in call["url"]
    assert call["payload"]["contents"][0]["parts"][0]["text"] == "prompt text"
    assert call["payload"]["generationConfig"]["temperature"] == 0.1
    assert call["payload"]["generationConfig"]["responseMimeType"] == "application/json"
    assert sleep.delays == []


def test_404_falls_back_to_next_model() -> None:
    transport = FakeTransport(http_error(404), gemini_ok("{}"))
    client, _, _, _ = _client(transport, models=["m1", "m2"])

    result = asyncio.run(client.generate("p"))

    assert transport.models == ["m1", "m2"]
    assert result.model == "m2"


def test_404_on_every_model_is_permanent() -> None:
    transport = FakeTransport(http_error(404))
    client, sleep, _, _ = _client(transport, models=["m1", "m2"])

    with pytest.raises(UpstreamPermanent) as exc_info:
        asyncio.run(client.generate("p"))

    assert transport.models == ["m1", "m2"]
    assert "model not found" in exc_info.value.reason
    assert sleep.delays == []


def test_429_retries_with_backoff_then_sets_quota_pause() -> None:
    transport = FakeTransport(http_error(429, "Resource exhausted"))
    client, sleep, store, clock = _client(transport, models=["m1"], max_retries=3)

    with pytest.raises(UpstreamTransient):
        asyncio.run(client.generate("p"))

    assert len(transport.calls) == 4
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert store.get(KEY_PAUSE_UNTIL) == clock.now + 10 * 60_000


def test_429_retry_hint_is_capped_and_sizes_the_pause() -> None:
    transport = FakeTransport(http_error(429, "Quota exceeded. Please retry in 90s."))
    client, sleep, store, clock = _client(transport, models=["m1"], max_retries=1)

    with pytest.raises(UpstreamTransient) as exc_info:
        asyncio.run(client.generate("p"))

    assert sleep.delays == [30.0]
    assert exc_info.value.details["pauseMinutes"] == 2
    assert store.get(KEY_PAUSE_UNTIL) == clock.now + 2 * 60_000


def test_429_then_success_does_not_pause() -> None:
    transport = FakeTransport(http_error(429), gemini_ok("{}"))
    client, sleep, store, _ = _client(transport, models=["m1"])

    result = asyncio.run(client.generate("p"))

    assert result.attempts == 2
    assert sleep.delays == [1.0]
    assert store.get(KEY_PAUSE_UNTIL) is None


def test_503_uses_doubled_backoff_then_sets_overload_pause() -> None:
    transport = FakeTransport(http_error(503))
    client, sleep, store, clock = _client(transport, models=["m1", "m2"], max_retries=3)

    with pytest.raises(UpstreamTransient):
        asyncio.run(client.generate("p"))

    assert sleep.delays == [2.0, 4.0, 8.0]
    # Overload is not a model problem: no fallback to m2.
    assert transport.models == ["m1"] * 4
    assert store.get(KEY_PAUSE_UNTIL) == clock.now + 15 * 60_000


def test_transport_errors_retry_on_plain_schedule() -> None:
    transport = FakeTransport(HttpClientError("connection refused"), HttpClientError("timed out"), gemini_ok("{}"))
    client, sleep, store, _ = _client(transport, models=["m1"])

    result = asyncio.run(client.generate("p"))

    assert result.attempts == 3
    assert sleep.delays == [1.0, 2.0]
    assert store.get(KEY_PAUSE_UNTIL) is None


def test_transport_errors_exhausted_are_transient() -> None:
    transport = FakeTransport(HttpClientError("connection refused"))
    client, sleep, _, _ = _client(transport, models=["m1"], max_retries=2)

    with pytest.raises(UpstreamTransient):
        asyncio.run(client.generate("p"))

    assert sleep.delays == [1.0, 2.0]


def test_other_status_is_permanent_without_retry() -> None:
    transport = FakeTransport(http_error(403, "API key not valid"))
    client, sleep, store, _ = _client(transport, models=["m1", "m2"])

    with pytest.raises(UpstreamPermanent) as exc_info:
        asyncio.run(client.generate("p"))

    assert len(transport.calls) == 1
    assert exc_info.value.details["message"] == "API key not valid"
    assert sleep.delays == []
    assert store.get(KEY_PAUSE_UNTIL) is None


def test_missing_key_is_permanent_without_network() -> None:
    transport = FakeTransport(gemini_ok("{}"))
    client = GenerationClient(
        TriageConfig(enabled=True, api_key=None), pause=PauseState(MemoryStateStore()), transport=transport
    )
    with pytest.raises(UpstreamPermanent):
        asyncio.run(client.generate("p"))
    assert transport.calls == []


def test_extract_candidate_text_rejects_malformed_payloads() -> None:
    assert extract_candidate_text({"candidates": [{"content": {"parts": [{"text": "x"}]}}]}) == "x"
    with pytest.raises(ParseFailure):
        extract_candidate_text({"candidates": []})
    with pytest.raises(ParseFailure):
        extract_candidate_text({"candidates": [{"content": {"parts": [{"text": "  "}]}}]})


def test_non_json_body_is_parse_failure() -> None:
    transport = FakeTransport({"status": 200, "headers": {}, "body": "<html>"})
    client, _, _, _ = _client(transport, models=["m1"])
    with pytest.raises(ParseFailure):
        asyncio.run(client.generate("p"))
