from __future__ import annotations

import json
import logging
import re
from typing import Any

from ..errors import ParseFailure
from .reports import fallback_report

_LOGGER = logging.getLogger("bugspotter.capture.triage.parsing")

UNKNOWN = "Unknown"

_FENCE_JSON_RE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_FENCE_RE = re.compile(r"```([\s\S]*?)```")

_UNDEFINED_SUBS = (
    (re.compile(r":\s*undefined\b"), f': "{UNKNOWN}"'),
    (re.compile(r'"undefined"'), f'"{UNKNOWN}"'),
    (re.compile(r",\s*undefined\b"), f', "{UNKNOWN}"'),
    (re.compile(r"\[\s*undefined\b"), f'["{UNKNOWN}"'),
    (re.compile(r"\bundefined,"), f'"{UNKNOWN}",'),
)


def strip_code_fences(text: str) -> str:
    s = (text or "").strip()
    s = _FENCE_JSON_RE.sub(r"\1", s)
    s = _FENCE_RE.sub(r"\1", s)
    return s.strip()


def extract_json_object(text: str) -> str | None:
    """First balanced `{...}` substring; braces inside strings are ignored."""
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_str = False
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]
    # Unbalanced (truncated output): fall back to the last closing brace.
    end = text.rfind("}")
    if end > start:
        return text[start : end + 1]
    return None


def replace_undefined_tokens(text: str) -> str:
    for pattern, repl in _UNDEFINED_SUBS:
        text = pattern.sub(repl, text)
    return text


def deep_sanitize(value: Any) -> Any:
    """Replace null values at any depth with a sentinel string."""
    if value is None:
        return UNKNOWN
    if isinstance(value, list):
        return [deep_sanitize(v) for v in value]
    if isinstance(value, dict):
        return {str(k): deep_sanitize(v) for k, v in value.items()}
    return value


def try_parse_report(text: str) -> dict[str, Any]:
    if not isinstance(text, str) or not text.strip():
        raise ParseFailure("empty response")
    cleaned = strip_code_fences(text)
    candidate = extract_json_object(cleaned)
    if candidate is None:
        raise ParseFailure("no JSON object in response")
    candidate = replace_undefined_tokens(candidate)
    try:
        parsed = json.loads(candidate)
    except ValueError as exc:
        raise ParseFailure(f"invalid JSON: {exc}") from exc
    report = deep_sanitize(parsed)
    if not isinstance(report, dict):
        raise ParseFailure("response is not a JSON object")
    for required in ("title", "description"):
        val = report.get(required)
        if not isinstance(val, str) or not val.strip():
            raise ParseFailure(f"missing {required}")
    return report


def parse_report(text: str) -> tuple[dict[str, Any], bool]:
    """Parsed report and True, or the raw-text fallback report and False."""
    try:
        return try_parse_report(text), True
    except ParseFailure as exc:
        _LOGGER.warning("report_parse_failed reason=%s", exc.reason)
        return fallback_report(text), False


__all__ = [
    "UNKNOWN",
    "deep_sanitize",
    "extract_json_object",
    "parse_report",
    "replace_undefined_tokens",
    "strip_code_fences",
    "try_parse_report",
]
