"""Redaction utilities for log lines and outbound triage prompts.

Prefers safety over fidelity: anything that looks like a credential or personal
identifier is masked before it leaves the process or lands in a log.
"""

from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

REDACTED = "[REDACTED]"

_SENSITIVE_SUBSTRINGS = (
    "token",
    "secret",
    "password",
    "passwd",
    "authorization",
    "cookie",
    "session",
    "jwt",
    "bearer",
    "api-key",
    "api_key",
    "apikey",
    "email",
)

_SENSITIVE_EXACT = {
    # Avoid false-positives like "author"/"authorship".
    "auth",
    "pwd",
}

_EMAIL_RE = re.compile(r"([A-Z0-9._%+-])[A-Z0-9._%+-]*?@([A-Z0-9.-]+\.[A-Z]{2,})", re.IGNORECASE)
_JWT_RE = re.compile(r"\beyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\b")
_API_KEY_RE = re.compile(r"\b(?:sk-|rk-|pk_)[A-Za-z0-9_\-]{10,}\b")
_HEX_RE = re.compile(r"\b[0-9a-f]{32,}\b", re.IGNORECASE)
_AUTH_HEADER_RE = re.compile(r"(\b(?:authorization|cookie|set-cookie)\b\s*[:=]\s*)([^\s,;]+)", re.IGNORECASE)
_BEARER_RE = re.compile(r"(\bBearer\s+)([A-Za-z0-9._\-]{10,})")
_SECRET_KV_RE = re.compile(
    r"(\b(?:password|passwd|pwd|passcode|secret|api[_-]?key|access[_-]?token|refresh[_-]?token|id[_-]?token|token)"
    r"\b\s*[:=]\s*)([^\s,;]+)",
    re.IGNORECASE,
)
_PHONE_RE = re.compile(r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b")
_CARD_RE = re.compile(r"\b(?:\d[ -]*?){13,19}\b")
_JWT_PREFIX_RE = re.compile(r"eyJ[A-Za-z0-9_-]{10,}\.")
_HEX_FULL_RE = re.compile(r"^[0-9a-f]{32,}$", re.IGNORECASE)


def is_sensitive_key(key: str) -> bool:
    k = (key or "").strip().lower()
    if not k:
        return False
    if k in _SENSITIVE_EXACT:
        return True
    return any(s in k for s in _SENSITIVE_SUBSTRINGS)


def _mask_card(match: re.Match[str]) -> str:
    raw = match.group(0)
    digits = re.sub(r"\D", "", raw)
    if len(digits) < 13 or len(digits) > 19:
        return raw
    return f"**** **** **** {digits[-4:]}"


def redact_text(value: Any) -> str:
    """Mask credentials and personal identifiers inside free text."""
    if value is None:
        return ""
    if isinstance(value, str):
        s = value
    else:
        try:
            s = json.dumps(value, ensure_ascii=False, default=str)
        except Exception:
            return ""

    s = _EMAIL_RE.sub(lambda m: f"{m.group(1)}***@{m.group(2)}", s)
    s = _JWT_RE.sub(lambda m: f"{m.group(0)[:8]}…{m.group(0)[-6:]}", s)
    s = _API_KEY_RE.sub(lambda m: f"{m.group(0)[:6]}…{m.group(0)[-4:]}", s)
    s = _HEX_RE.sub(lambda m: f"{m.group(0)[:6]}…{m.group(0)[-4:]}", s)
    # Bearer first: the header pattern stops at the first space and would leave the token.
    s = _BEARER_RE.sub(lambda m: f"{m.group(1)}{REDACTED}", s)
    s = _AUTH_HEADER_RE.sub(lambda m: f"{m.group(1)}{REDACTED}", s)
    s = _SECRET_KV_RE.sub(lambda m: f"{m.group(1)}{REDACTED}", s)
    s = _PHONE_RE.sub(lambda m: f"{m.group(0)[:2]}…{m.group(0)[-2:]}", s)
    s = _CARD_RE.sub(_mask_card, s)
    return s


def redact_object(value: Any, *, depth: int = 0, max_depth: int = 6, max_items: int = 50, max_keys: int = 80) -> Any:
    """Recursively redact a JSON-like value (bounded depth and width)."""
    if value is None:
        return None
    if depth > max_depth:
        return "[TRUNCATED]"
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (list, tuple)):
        return [
            redact_object(v, depth=depth + 1, max_depth=max_depth, max_items=max_items, max_keys=max_keys)
            for v in list(value)[:max_items]
        ]
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in list(value.items())[:max_keys]:
            key = str(k)
            if is_sensitive_key(key):
                out[key] = REDACTED
            else:
                out[key] = redact_object(v, depth=depth + 1, max_depth=max_depth, max_items=max_items, max_keys=max_keys)
        return out
    return str(value)


def sanitize_url(url: Any) -> str:
    """Redact sensitive query values, shorten the rest, drop the fragment."""
    if not isinstance(url, str) or not url:
        return url or ""
    try:
        parts = urlsplit(url)
        if not parts.scheme or not parts.netloc:
            return url
        netloc = parts.netloc.split("@", 1)[1] if "@" in parts.netloc else parts.netloc
        out_pairs: list[tuple[str, str]] = []
        for k, v in parse_qsl(parts.query, keep_blank_values=True):
            if is_sensitive_key(k):
                out_pairs.append((k, REDACTED))
                continue
            looks_sensitive = bool(_JWT_PREFIX_RE.search(v)) or bool(_HEX_FULL_RE.match(v)) or len(v) > 64
            out_pairs.append((k, REDACTED if looks_sensitive else v[:32]))
        return urlunsplit((parts.scheme, netloc, parts.path, urlencode(out_pairs), ""))
    except Exception:
        return url


def redact_url_brief(url: str) -> str:
    """Low-noise URL redaction (drops query+fragment; removes userinfo)."""
    if not isinstance(url, str) or not url:
        return url
    try:
        parts = urlsplit(url)
        netloc = parts.netloc.split("@", 1)[1] if "@" in parts.netloc else parts.netloc
        return urlunsplit((parts.scheme, netloc, parts.path, "", ""))
    except Exception:
        return url


__all__ = ["REDACTED", "is_sensitive_key", "redact_object", "redact_text", "redact_url_brief", "sanitize_url"]
