"""Typed failures for the capture core.

Public operations return an `Outcome` instead of raising; the exception classes
below double as the `failure` payload so callers can branch on type.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")

_TARGET_GONE_MARKERS = (
    "no tab with given id",
    "no target with given id",
    "target closed",
    "target not found",
    "session with given id not found",
    "cannot find context with specified id",
    "inspected target navigated or closed",
)


@dataclass(eq=False)
class CaptureError(Exception):
    """Structured failure with a stable `kind` tag."""

    reason: str
    details: dict[str, Any] = field(default_factory=dict)

    kind = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.reason)

    def __reduce__(self):
        return (type(self), (self.reason, self.details))

    def __str__(self) -> str:
        return f"[{self.kind}] {self.reason}"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": True, "kind": self.kind, "reason": self.reason}
        if self.details:
            out["details"] = self.details
        return out


class TargetGone(CaptureError):
    kind = "target_gone"


class AttachmentFailure(CaptureError):
    kind = "attachment_failure"


class RateLimited(CaptureError):
    kind = "rate_limited"


class Paused(CaptureError):
    kind = "paused"


class UpstreamTransient(CaptureError):
    kind = "upstream_transient"


class UpstreamPermanent(CaptureError):
    kind = "upstream_permanent"


class ParseFailure(CaptureError):
    kind = "parse_failure"


class TargetGoneError(Exception):
    """Raised by protocol hosts when the target disappeared mid-operation."""

    def __init__(self, target: str, message: str = "Target closed") -> None:
        super().__init__(f"{message}: {target}")
        self.target = target


def is_target_gone(exc: BaseException) -> bool:
    if isinstance(exc, TargetGoneError):
        return True
    try:
        msg = str(exc).lower()
    except Exception:
        return False
    return any(marker in msg for marker in _TARGET_GONE_MARKERS)


@dataclass(slots=True)
class Outcome(Generic[T]):
    """Success value or typed failure."""

    ok: bool
    value: T | None = None
    failure: CaptureError | None = None

    @classmethod
    def success(cls, value: T | None = None) -> Outcome[T]:
        return cls(ok=True, value=value)

    @classmethod
    def fail(cls, failure: CaptureError) -> Outcome[T]:
        return cls(ok=False, failure=failure)

    @property
    def kind(self) -> str:
        return "ok" if self.ok else (self.failure.kind if self.failure is not None else "error")

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "value": self.value}
        return {"ok": False, **(self.failure.to_dict() if self.failure is not None else {})}


__all__ = [
    "AttachmentFailure",
    "CaptureError",
    "Outcome",
    "ParseFailure",
    "Paused",
    "RateLimited",
    "TargetGone",
    "TargetGoneError",
    "UpstreamPermanent",
    "UpstreamTransient",
    "is_target_gone",
]
