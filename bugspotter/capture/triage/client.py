"""Upstream generation client (Gemini-style `generateContent`).

Retry policy per call:
- 429: retry with backoff (or the server's retry hint, capped); once exhausted,
  persist a quota pause and raise `UpstreamTransient`.
- 503: retry with doubled backoff; once exhausted, persist an overload pause.
- 404: the model is unsupported; move on to the next configured model.
- transport errors: retry on the plain backoff schedule.
- any other status: `UpstreamPermanent`, no retry.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from ..config import TriageConfig
from ..errors import ParseFailure, UpstreamPermanent, UpstreamTransient
from ..http_client import HttpClientError, http_post_json
from ..rate_limit import PauseState, parse_retry_after_seconds, quota_pause_minutes

_LOGGER = logging.getLogger("bugspotter.capture.triage.client")

Sleep = Callable[[float], Awaitable[None]]
Transport = Callable[..., dict[str, Any]]

GENERATION_CONFIG: dict[str, Any] = {
    "temperature": 0.1,
    "topK": 1,
    "topP": 1,
    "maxOutputTokens": 1000,
    "responseMimeType": "application/json",
}

SAFETY_SETTINGS: list[dict[str, str]] = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
]


def backoff_delay_ms(attempt: int, *, base_ms: int = 1_000, max_ms: int = 30_000) -> int:
    return int(min(base_ms * (2 ** max(0, int(attempt))), max_ms))


def _error_message(body: str) -> str:
    try:
        obj = json.loads(body) if body else None
    except ValueError:
        return body[:500] if body else ""
    if isinstance(obj, dict):
        err = obj.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
    return body[:500] if body else ""


def extract_candidate_text(data: Any) -> str:
    """`candidates[0].content.parts[0].text` or ParseFailure."""
    try:
        text = data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ParseFailure("invalid generation response: no candidate text") from exc
    if not isinstance(text, str) or not text.strip():
        raise ParseFailure("invalid generation response: empty candidate text")
    return text


@dataclass(frozen=True, slots=True)
class GenerationResult:
    text: str
    model: str
    attempts: int


class GenerationClient:
    def __init__(
        self,
        config: TriageConfig,
        *,
        pause: PauseState,
        transport: Transport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._cfg = config
        self._pause = pause
        self._transport = transport or http_post_json
        self._sleep = sleep

    def build_payload(self, prompt: str) -> dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": dict(GENERATION_CONFIG),
            "safetySettings": [dict(s) for s in SAFETY_SETTINGS],
        }

    def _url(self, model: str) -> str:
        return f"{self._cfg.endpoint.rstrip('/')}/{quote(model, safe='.-_')}:generateContent"

    def _post(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._transport(
            self._url(model),
            payload,
            timeout=self._cfg.timeout,
            max_bytes=self._cfg.max_response_bytes,
            headers={"x-goog-api-key": self._cfg.api_key or ""},
        )

    def _delay(self, attempt: int) -> int:
        return backoff_delay_ms(attempt, base_ms=self._cfg.base_delay_ms, max_ms=self._cfg.max_delay_ms)

    async def generate(self, prompt: str) -> GenerationResult:
        if not (isinstance(self._cfg.api_key, str) and self._cfg.api_key.strip()):
            raise UpstreamPermanent("api key not configured")
        models = [m for m in self._cfg.models if isinstance(m, str) and m.strip()]
        if not models:
            raise UpstreamPermanent("no models configured")

        payload = self.build_payload(prompt)
        max_retries = max(0, int(self._cfg.max_retries))
        total_attempts = 0

        for model in models:
            attempt = 0
            while True:
                total_attempts += 1
                try:
                    resp = await asyncio.to_thread(self._post, model, payload)
                except HttpClientError as exc:
                    status = exc.status
                    if status == 404:
                        _LOGGER.warning("upstream_model_unsupported model=%s", model)
                        break

                    if status == 429:
                        message = _error_message(exc.body)
                        hint_s = parse_retry_after_seconds(message, exc.retry_after)
                        if attempt < max_retries:
                            if hint_s is not None:
                                delay = int(min(hint_s * 1000, self._cfg.max_delay_ms))
                            else:
                                delay = self._delay(attempt)
                            _LOGGER.warning(
                                "upstream_rate_limited model=%s attempt=%s/%s delay_ms=%s",
                                model,
                                attempt + 1,
                                max_retries,
                                delay,
                            )
                            await self._sleep(delay / 1000.0)
                            attempt += 1
                            continue
                        minutes = quota_pause_minutes(hint_s, default=self._cfg.quota_pause_minutes)
                        self._pause.set_pause(minutes)
                        raise UpstreamTransient(
                            "quota exhausted", {"status": 429, "model": model, "pauseMinutes": minutes}
                        ) from exc

                    if status == 503:
                        if attempt < max_retries:
                            delay = self._delay(attempt) * 2
                            _LOGGER.warning(
                                "upstream_overloaded model=%s attempt=%s/%s delay_ms=%s",
                                model,
                                attempt + 1,
                                max_retries,
                                delay,
                            )
                            await self._sleep(delay / 1000.0)
                            attempt += 1
                            continue
                        minutes = self._cfg.overload_pause_minutes
                        self._pause.set_pause(minutes)
                        raise UpstreamTransient(
                            "upstream overloaded", {"status": 503, "model": model, "pauseMinutes": minutes}
                        ) from exc

                    if status is None:
                        if attempt < max_retries:
                            delay = self._delay(attempt)
                            _LOGGER.warning(
                                "upstream_transport_error model=%s attempt=%s/%s delay_ms=%s error=%s",
                                model,
                                attempt + 1,
                                max_retries,
                                delay,
                                exc,
                            )
                            await self._sleep(delay / 1000.0)
                            attempt += 1
                            continue
                        raise UpstreamTransient(f"transport error: {exc}", {"model": model}) from exc

                    raise UpstreamPermanent(
                        f"HTTP {status}", {"status": status, "model": model, "message": _error_message(exc.body)}
                    ) from exc

                try:
                    data = json.loads(resp.get("body") or "")
                except ValueError as exc:
                    raise ParseFailure("generation response is not JSON", {"model": model}) from exc
                text = extract_candidate_text(data)
                return GenerationResult(text=text, model=model, attempts=total_attempts)

        raise UpstreamPermanent("model not found or unsupported", {"status": 404, "models": models})


__all__ = [
    "GENERATION_CONFIG",
    "GenerationClient",
    "GenerationResult",
    "Sleep",
    "Transport",
    "backoff_delay_ms",
    "extract_candidate_text",
]
