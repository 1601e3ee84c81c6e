from __future__ import annotations

import http.client
import json
import ssl
import urllib.parse
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import HTTPSHandler, Request, build_opener


class HttpClientError(Exception):
    """Transport or HTTP status failure.

    `status` is None for transport errors (DNS, refused, timeout, truncated reads).
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        body: str = "",
        retry_after: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.retry_after = retry_after


def _check_scheme(url: str) -> None:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise HttpClientError("Only http/https are supported")


def _opener():  # noqa: ANN202
    ctx = ssl.create_default_context()
    return build_opener(HTTPSHandler(context=ctx))


def http_post_json(
    url: str,
    payload: dict[str, Any],
    *,
    timeout: float,
    max_bytes: int = 1_000_000,
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    _check_scheme(url)
    data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    req = Request(
        url,
        data=data,
        method="POST",
        headers={"User-Agent": "bugspotter-capture/1.0", "Content-Type": "application/json", **(headers or {})},
    )
    try:
        with _opener().open(req, timeout=timeout) as resp:
            body = resp.read(max_bytes + 1)
            if len(body) > max_bytes:
                body = body[:max_bytes]
            return {
                "status": resp.status,
                "headers": dict(resp.headers),
                "body": body.decode(errors="replace"),
            }
    except HTTPError as exc:
        try:
            text = exc.read(max_bytes).decode(errors="replace")
        except Exception:
            text = ""
        retry_after = exc.headers.get("Retry-After") if exc.headers is not None else None
        raise HttpClientError(
            f"HTTP {exc.code}: {exc.reason}", status=int(exc.code), body=text, retry_after=retry_after
        ) from exc
    except (TimeoutError, URLError, OSError, http.client.HTTPException) as exc:
        raise HttpClientError(str(exc)) from exc


def http_get_json(url: str, *, timeout: float, max_bytes: int = 1_000_000) -> Any:
    _check_scheme(url)
    req = Request(url, headers={"User-Agent": "bugspotter-capture/1.0"})
    try:
        with _opener().open(req, timeout=timeout) as resp:
            body = resp.read(max_bytes + 1)[:max_bytes]
    except HTTPError as exc:
        raise HttpClientError(f"HTTP {exc.code}: {exc.reason}", status=int(exc.code)) from exc
    except (TimeoutError, URLError, OSError, http.client.HTTPException) as exc:
        raise HttpClientError(str(exc)) from exc
    try:
        return json.loads(body.decode(errors="replace"))
    except ValueError as exc:
        raise HttpClientError(f"Invalid JSON from {url}") from exc


__all__ = ["HttpClientError", "http_get_json", "http_post_json"]
