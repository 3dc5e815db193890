"""Schemas shared with the media toolkit and transcription provider adapters."""

from typing import Any
from typing import Literal

from pydantic import BaseModel, Field


class SilencePeriod(BaseModel):
    start: float
    end: float

    @property
    def duration(self) -> float:
        return max(0.0, self.end - self.start)


class TranscriptionOptions(BaseModel):
    language_code: str | None = None
    speaker_labels: bool = True
    extra: dict[str, Any] = Field(default_factory=dict)


class ProviderStatus(BaseModel):
    phase: Literal["queued", "processing", "completed", "error", "cancelled"]
    percent: float | None = None
    error: str | None = None
