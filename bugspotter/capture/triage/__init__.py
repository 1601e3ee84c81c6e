"""Error triage: upstream generation, response parsing and report fallbacks.

Keep this package import light: the pipeline pulls in the host and buffer
modules, so it is only loaded on first attribute access.
"""

from __future__ import annotations

from typing import Any

__all__ = ["GenerationClient", "TriagePipeline", "TriageResult"]


def __getattr__(name: str) -> Any:  # pragma: no cover
    if name == "GenerationClient":
        from .client import GenerationClient

        return GenerationClient
    if name in {"TriagePipeline", "TriageResult"}:
        from .pipeline import TriagePipeline, TriageResult

        return {"TriagePipeline": TriagePipeline, "TriageResult": TriageResult}[name]
    raise AttributeError(name)
