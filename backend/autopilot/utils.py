"""
Shared utility functions and the Result type returned across seams.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, Iterator, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AutopilotError(Exception):
    """Base error. `context` carries the entity or call site the error belongs to."""

    def __init__(self, message: str, context: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict:
        return {"type": type(self).__name__, "message": self.message, "context": self.context}


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Either a value or an error, never raised.
    The orchestrator decides whether an error is fatal (config/gate)
    or recoverable (per-entity/transport).
    """
    value: Optional[T] = None
    error: Optional[AutopilotError] = None
    meta: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T = None, **meta) -> "Result[T]":
        return cls(value=value, meta=meta)

    @classmethod
    def failure(cls, error: AutopilotError, **meta) -> "Result[T]":
        return cls(error=error, meta=meta)


def utcnow() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def stable_hash(*args) -> str:
    """Generate a stable hash from arguments for deterministic ids."""
    combined = "|".join(str(a) for a in args)
    return hashlib.sha256(combined.encode()).hexdigest()[:12]


def chunked(rows: list, size: int) -> Iterator[list]:
    """Yield consecutive slices of at most `size` rows."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def safe_float(val: Any, default: float = 0.0) -> float:
    try:
        return float(val) if val is not None and val != "" else default
    except (ValueError, TypeError):
        return default


def safe_int(val: Any, default: int = 0) -> int:
    try:
        return int(float(val)) if val is not None and val != "" else default
    except (ValueError, TypeError):
        return default


def truncate(text: str, limit: int = 120) -> str:
    text = str(text or "")
    return text if len(text) <= limit else text[:limit]
