"""Weighted progress aggregation and display text for jobs."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from scribeflow.schemas.job import JobPhase, Stage

# phase -> (stage feeding it, band start, band width); bands add up to 100.
_PHASE_BANDS: dict[JobPhase, tuple[Stage, float, float]] = {
    JobPhase.SILENCE_DETECTION: (Stage.SILENCE_DETECTION, 0.0, 20.0),
    JobPhase.AUDIO_EXTRACTION: (Stage.AUDIO_EXTRACTION, 20.0, 20.0),
    JobPhase.UPLOADING: (Stage.UPLOAD, 40.0, 20.0),
    JobPhase.SUBMITTED: (Stage.TRANSCRIBE, 60.0, 30.0),
    JobPhase.PROCESSING: (Stage.TRANSCRIBE, 60.0, 30.0),
    JobPhase.DOWNLOADING: (Stage.DOWNLOAD, 90.0, 10.0),
}

_STAGE_LABELS: dict[JobPhase, str] = {
    JobPhase.SILENCE_DETECTION: "Silence Detection",
    JobPhase.AUDIO_EXTRACTION: "Extracting Audio",
    JobPhase.UPLOADING: "Uploading",
    JobPhase.PROCESSING: "Transcribing",
    JobPhase.DOWNLOADING: "Downloading",
}


def clamp_percent(value: float) -> float:
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(100.0, float(value)))


def empty_stage_progress() -> dict[Stage, float]:
    return {stage: 0.0 for stage in Stage}


def overall_progress(
    phase: JobPhase,
    stage_progress: Mapping[Stage, float],
    override: float | None = None,
) -> float:
    """Return 0-100 progress for a job, honouring an explicit override when set."""
    if override is not None:
        return clamp_percent(override)
    if phase is JobPhase.COMPLETED:
        return 100.0
    band = _PHASE_BANDS.get(phase)
    if band is None:
        return 0.0
    stage, start, width = band
    return round(start + clamp_percent(stage_progress.get(stage, 0.0)) * width / 100.0, 2)


def status_text(phase: JobPhase, stage_progress: Mapping[Stage, float], last_error: str | None = None) -> str:
    if phase in (JobPhase.FAILED, JobPhase.FAILED_PERMANENTLY):
        prefix = "Failed" if phase is JobPhase.FAILED else "Failed permanently"
        return f"{prefix}: {last_error}" if last_error else prefix
    if phase is JobPhase.QUEUED:
        return "Queued"
    if phase is JobPhase.SUBMITTED:
        return "Submitted to Provider"
    if phase is JobPhase.COMPLETED:
        return "Completed"
    if phase is JobPhase.CANCELLED:
        return "Cancelled"
    stage, _, _ = _PHASE_BANDS[phase]
    return f"{_STAGE_LABELS[phase]} ({clamp_percent(stage_progress.get(stage, 0.0)):.0f}%)"


def aggregate_progress(values: Iterable[float]) -> float:
    """Mean overall progress across jobs; 0 for an empty queue."""
    items = list(values)
    if not items:
        return 0.0
    return round(sum(items) / len(items), 2)
