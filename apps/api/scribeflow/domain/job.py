"""Mutable job record owned by a single phase executor."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from scribeflow.domain.job_fsm import ensure_transition, is_terminal
from scribeflow.domain.progress import (
    clamp_percent,
    empty_stage_progress,
    overall_progress,
    status_text,
)
from scribeflow.schemas.job import JobPhase, JobView, Stage


@dataclass(slots=True, eq=False)
class Job:
    file_path: str
    id: str = field(default_factory=lambda: str(uuid4()))
    content_hash: str | None = None
    phase: JobPhase = JobPhase.QUEUED
    stage_progress: dict[Stage, float] = field(default_factory=empty_stage_progress)
    overall_override: float | None = None
    attempt_count: int = 0
    last_attempt_time: datetime | None = None
    output_file_path: str | None = None
    remote_job_id: str | None = None
    is_verified: bool = False
    last_error: str | None = None
    removal_requested: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def file_name(self) -> str:
        return Path(self.file_path).name

    @property
    def overall_progress(self) -> float:
        return overall_progress(self.phase, self.stage_progress, self.overall_override)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.phase)

    def can_be_processed(self, max_attempts: int) -> bool:
        return self.phase is JobPhase.QUEUED or (
            self.phase is JobPhase.FAILED and self.attempt_count < max_attempts
        )

    def transition(self, new_phase: JobPhase, *, max_attempts: int | None = None) -> None:
        """Apply an FSM-validated phase change."""
        ensure_transition(
            self.phase,
            new_phase,
            attempt_count=self.attempt_count,
            max_attempts=max_attempts,
        )
        self.phase = new_phase
        if new_phase is JobPhase.COMPLETED:
            for stage in Stage:
                self.stage_progress[stage] = 100.0
        elif new_phase is JobPhase.QUEUED:
            self.stage_progress = empty_stage_progress()
            self.overall_override = None

    def report(self, stage: Stage, percent: float) -> None:
        self.stage_progress[stage] = clamp_percent(percent)

    def snapshot(self) -> JobView:
        return JobView(
            id=self.id,
            file_path=self.file_path,
            file_name=self.file_name,
            content_hash=self.content_hash,
            phase=self.phase,
            stage_progress=dict(self.stage_progress),
            overall_progress=self.overall_progress,
            attempt_count=self.attempt_count,
            status_text=status_text(self.phase, self.stage_progress, self.last_error),
            last_error=self.last_error,
            last_attempt_time=self.last_attempt_time,
            output_file_path=self.output_file_path,
            remote_job_id=self.remote_job_id,
            is_verified=self.is_verified,
            created_at=self.created_at,
        )
