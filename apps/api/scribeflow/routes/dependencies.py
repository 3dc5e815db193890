"""Dependency wiring for routes."""

from __future__ import annotations

from fastapi import Request

from scribeflow.core.logging_safety import CORRELATION_HEADER, new_correlation_id
from scribeflow.services.orchestrator import JobQueue


def _request_correlation_id(request: Request) -> str:
    existing = getattr(request.state, "correlation_id", None)
    if isinstance(existing, str) and existing:
        return existing

    correlation_id = request.headers.get(CORRELATION_HEADER)
    if correlation_id:
        request.state.correlation_id = correlation_id
        return correlation_id

    generated = new_correlation_id()
    request.state.correlation_id = generated
    return generated


def get_request_correlation_id(request: Request) -> str:
    return _request_correlation_id(request)


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue
