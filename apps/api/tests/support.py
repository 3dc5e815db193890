"""Shared fixtures for the queue and executor tests."""

from __future__ import annotations

import asyncio
from pathlib import Path

from scribeflow.core.config import Settings


def make_settings(root: Path, **overrides) -> Settings:
    values = {
        "provider": "mock",
        "media_toolkit": "mock",
        "transcripts_dir": root / "transcripts",
        "work_dir": root / "work",
        "poll_interval_seconds": 0.01,
        "max_job_attempts": 3,
    }
    values.update(overrides)
    return Settings(**values)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
