"""Job and queue schemas."""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class JobPhase(str, Enum):
    QUEUED = "QUEUED"
    SILENCE_DETECTION = "SILENCE_DETECTION"
    AUDIO_EXTRACTION = "AUDIO_EXTRACTION"
    UPLOADING = "UPLOADING"
    SUBMITTED = "SUBMITTED"
    PROCESSING = "PROCESSING"
    DOWNLOADING = "DOWNLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    FAILED_PERMANENTLY = "FAILED_PERMANENTLY"
    CANCELLED = "CANCELLED"


class Stage(str, Enum):
    SILENCE_DETECTION = "SILENCE_DETECTION"
    AUDIO_EXTRACTION = "AUDIO_EXTRACTION"
    UPLOAD = "UPLOAD"
    TRANSCRIBE = "TRANSCRIBE"
    DOWNLOAD = "DOWNLOAD"


SkipReason = Literal["ALREADY_QUEUED", "DUPLICATE_CONTENT", "ALREADY_PROCESSED"]


class JobView(BaseModel):
    """Read-only snapshot of a job, safe to hand to observers."""

    id: str
    file_path: str
    file_name: str
    content_hash: str | None = None
    phase: JobPhase
    stage_progress: dict[Stage, float]
    overall_progress: float
    attempt_count: int
    status_text: str
    last_error: str | None = None
    last_attempt_time: datetime | None = None
    output_file_path: str | None = None
    remote_job_id: str | None = None
    is_verified: bool = False
    created_at: datetime


class AddFileRequest(BaseModel):
    path: str = Field(min_length=1)


class AddFileResult(BaseModel):
    file_path: str
    added: bool
    reason: SkipReason | None = None
    job: JobView | None = None


class AddFolderRequest(BaseModel):
    path: str = Field(min_length=1)


class AddFolderResult(BaseModel):
    folder_path: str
    added_count: int
    skipped_count: int
    results: list[AddFileResult]


class ProcessAllResult(BaseModel):
    launched: int
    outcomes: dict[JobPhase, int]


class ProcessQueueResponse(BaseModel):
    accepted: bool
    eligible_count: int


class CancelAllResult(BaseModel):
    signalled_active: int
    cancelled_queued: int


class CancelJobResult(BaseModel):
    job_id: str
    cancellation_requested: bool
    phase: JobPhase


class RemoveJobResult(BaseModel):
    job_id: str
    removed: bool
    cancellation_requested: bool


class ClearQueueResult(BaseModel):
    removed_count: int
    remaining_active: int


class QueueStats(BaseModel):
    total: int
    active: int
    processing: bool
    counts: dict[JobPhase, int]
    overall_progress: float
