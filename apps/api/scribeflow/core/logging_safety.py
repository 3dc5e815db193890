"""Utilities for safe structured logging fields and cross-system correlation."""

from __future__ import annotations

from collections.abc import MutableMapping
import hashlib
from typing import Any
from uuid import uuid4

CORRELATION_HEADER = "X-Correlation-Id"


def safe_log_identifier(value: Any, *, prefix: str) -> str:
    """Return a deterministic non-reversible token for log correlation fields."""
    text = str(value or "").strip()
    if not text:
        return f"{prefix}-missing"

    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]
    return f"{prefix}-{digest}"


def new_correlation_id() -> str:
    return f"req-{uuid4()}"


def ensure_correlation_id(headers: MutableMapping[str, str]) -> str:
    """Reuse the correlation header when present, otherwise stamp a fresh one."""
    wanted = CORRELATION_HEADER.lower()
    existing = next((value for name, value in headers.items() if name.lower() == wanted and value), None)
    if existing:
        return existing
    correlation_id = new_correlation_id()
    headers[CORRELATION_HEADER] = correlation_id
    return correlation_id
