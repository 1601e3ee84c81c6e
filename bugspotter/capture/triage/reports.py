"""Prompt construction and deterministic (non-AI) reports."""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import urlsplit

from ..log_model import LogEntry, now_iso
from ..redaction import redact_object, redact_text, sanitize_url

BASIC_REPORT_NOTE = "Report generated without AI due to quota limitations"

PROMPT_TEMPLATE = """You are a web debugging expert. Analyze this HTTP error and generate a structured bug report in English.

Strict instructions:
- Use only real information present in the provided context. Do not invent data.
- Limit stepsToReproduce to a maximum of 7 items.
- If a field is unknown, use "N/A" or an empty string.

**ERROR CONTEXT (sanitized):**
{context}

Output ONLY a valid JSON object with fields:
{{
  "title": "Short, clear title summarizing the issue",
  "description": "Detailed description of what happened",
  "category": "Network Error|API Error|Server Error|Client Error",
  "stepsToReproduce": ["Step 1", "Step 2", "Step 3"],
  "expectedBehavior": "What should have happened",
  "actualBehavior": "What actually happened",
  "errorType": "HTTP Error",
  "severity": "low|medium|high",
  "details": {{ "url": "...", "method": "...", "status": "...", "statusText": "...", "responseBody": "...", "probableCause": "short hypothesis based on context" }}
}}"""


def severity_for_status(status: Any) -> str:
    try:
        return "high" if int(status) >= 500 else "medium"
    except (TypeError, ValueError):
        return "medium"


def _pick(*values: Any, default: Any) -> Any:
    for v in values:
        if v is not None and v != "":
            return v
    return default


def _recent_log_view(items: Any) -> list[dict[str, Any]]:
    if not isinstance(items, list):
        return []
    out: list[dict[str, Any]] = []
    for it in items:
        if isinstance(it, LogEntry):
            it = it.to_dict()
        if not isinstance(it, dict):
            continue
        out.append(
            {
                "type": it.get("type"),
                "level": it.get("level"),
                "text": it.get("text"),
                "timestamp": it.get("timestamp"),
                "url": sanitize_url(it.get("url") or ""),
            }
        )
    return out


def build_prompt(error: LogEntry, context: dict[str, Any] | None = None) -> str:
    """Redacted, size-bounded prompt for the upstream generator."""
    ctx = context or {}
    data = redact_object(
        {
            "url": sanitize_url(_pick(error.url, ctx.get("url"), default="Unknown")),
            "method": _pick(error.method, ctx.get("method"), default="GET"),
            "status": _pick(error.status, ctx.get("status"), default="Unknown"),
            "statusText": redact_text(_pick(error.status_text, ctx.get("statusText"), default="Unknown")),
            "timestamp": _pick(error.timestamp, ctx.get("timestamp"), default=now_iso()),
            "headers": redact_object(error.headers or ctx.get("headers") or {}),
            "responseBody": redact_object(
                _pick(error.decoded_body, error.response_body, ctx.get("responseBody"), default="N/A")
            ),
            "userAgent": _pick(ctx.get("userAgent"), default="N/A"),
            "pageUrl": sanitize_url(_pick(ctx.get("pageUrl"), default="N/A")),
            "pageTitle": redact_text(_pick(ctx.get("pageTitle"), default="N/A")),
            "consoleLogs": _recent_log_view(ctx.get("recentLogs")),
        }
    )
    return PROMPT_TEMPLATE.format(context=json.dumps(data, ensure_ascii=False, indent=2))


def basic_report(error: LogEntry, context: dict[str, Any] | None = None, reason: str = "fallback") -> dict[str, Any]:
    """Deterministic report built from the error's own fields."""
    ctx = context or {}
    url = _pick(error.url, ctx.get("url"), default="URL not available")
    status = _pick(error.status, ctx.get("status"), default="Status not available")
    status_text = _pick(error.status_text, ctx.get("statusText"), default="Status text not available")
    method = _pick(error.method, ctx.get("method"), default="GET")
    body = _pick(
        error.response_body, error.decoded_body, ctx.get("responseBody"), ctx.get("responseText"),
        default="Response not available",
    )
    if not isinstance(body, str):
        try:
            body = json.dumps(body, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            body = str(body)
    try:
        hostname = urlsplit(str(url)).hostname or "unknown host"
    except ValueError:
        hostname = "unknown host"

    return {
        "title": f"HTTP Error {status} - {method} {hostname}",
        "description": f"An HTTP error {status} ({status_text}) was detected on a {method} request to {url}.",
        "category": "Network Error",
        "stepsToReproduce": [
            "1. Navigate to the page where the error occurred",
            "2. Reproduce the action that caused the error",
            "3. Observe the error in network/console",
        ],
        "expectedBehavior": "The request should be processed successfully",
        "actualBehavior": f"HTTP Error {status}: {status_text}",
        "details": {
            "url": url,
            "method": method,
            "status": status,
            "statusText": status_text,
            "responseBody": body,
            "timestamp": _pick(error.timestamp, ctx.get("timestamp"), default=now_iso()),
            "userAgent": _pick(ctx.get("userAgent"), default="N/A"),
        },
        "severity": severity_for_status(status),
        "errorType": "HTTP Error",
        "note": BASIC_REPORT_NOTE,
        "fallbackReason": reason,
    }


def fallback_report(raw: Any) -> dict[str, Any]:
    """Second-level fallback when the generated text is not a usable report."""
    return {
        "title": "HTTP Error Detected",
        "description": (
            "An HTTP error was automatically detected by BugSpotter. The AI could not fully process the data."
        ),
        "category": "Network Error",
        "stepsToReproduce": [
            "Navigate to the page where the error occurred",
            "Reproduce the action that caused the error",
            "Observe the error in network/console",
        ],
        "expectedBehavior": "Request should be processed successfully",
        "actualBehavior": "Request failed with an HTTP error",
        "errorType": "HTTP Error",
        "severity": "medium",
        "details": {
            "url": "Unknown",
            "method": "GET",
            "status": "Unknown",
            "statusText": "Unknown",
            "rawAIResponse": raw[:200] if isinstance(raw, str) else "N/A",
        },
    }


__all__ = ["BASIC_REPORT_NOTE", "PROMPT_TEMPLATE", "basic_report", "build_prompt", "fallback_report", "severity_for_status"]
