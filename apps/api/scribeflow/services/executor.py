"""Drives a single job through the transcription phase state machine."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
import logging
from pathlib import Path
import shutil

from scribeflow.adapters.media.base import MediaToolkit, ProgressCallback
from scribeflow.adapters.provider.base import TranscriptionProvider
from scribeflow.core.config import Settings
from scribeflow.core.logging_safety import safe_log_identifier
from scribeflow.domain.job import Job
from scribeflow.errors import (
    CancellationRequested,
    DuplicateContentError,
    InputError,
    PipelineError,
    ProviderRejection,
    TransientRemoteError,
    VerificationError,
)
from scribeflow.schemas.job import JobPhase, JobView, Stage
from scribeflow.schemas.provider import TranscriptionOptions
from scribeflow.services.content_identity import ContentIdentityService

logger = logging.getLogger(__name__)

JobListener = Callable[[JobView], None]
ContentClaim = Callable[[Job, str], bool]

# Share of the remaining Transcribe band credited per poll when the provider reports no percentage.
_ESTIMATE_STEP = 0.1
_ESTIMATE_CEILING = 95.0


class CancellationHandle:
    """Cooperative cancellation flag that also wakes tasks waiting on it.

    ``cancel`` may be called from any thread; waiters run on the loop that created the handle.
    """

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self._loop = asyncio.get_running_loop()
        self._event = asyncio.Event()
        self._cancelled = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Request cancellation; returns False when it had already been requested."""
        if self._cancelled:
            return False
        self._cancelled = True
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._event.set()
        else:
            self._loop.call_soon_threadsafe(self._event.set)
        return True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationRequested(f"Cancellation requested for job {self.job_id}")

    async def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, returning early (True) once cancelled."""
        if self._cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except TimeoutError:
            pass
        return self._cancelled


class PhaseExecutor:
    """Single writer for one job's phase and progress for the duration of a run."""

    def __init__(
        self,
        job: Job,
        handle: CancellationHandle,
        *,
        identity: ContentIdentityService,
        media: MediaToolkit,
        provider: TranscriptionProvider,
        settings: Settings,
        on_change: JobListener | None = None,
        options: TranscriptionOptions | None = None,
        claim_content: ContentClaim | None = None,
    ) -> None:
        self.job = job
        self.handle = handle
        self.identity = identity
        self.media = media
        self.provider = provider
        self.settings = settings
        self.options = options or TranscriptionOptions()
        self._on_change = on_change
        self._claim_content = claim_content
        self._log_job_id = safe_log_identifier(job.id, prefix="job")

    async def run(self) -> JobPhase:
        """Run the pipeline to a resting phase. Failures are recorded on the job, not raised."""
        if self.job.is_terminal:
            return self.job.phase
        try:
            await self._pipeline()
        except CancellationRequested:
            await self._finish_cancelled()
        except asyncio.CancelledError:
            await self._finish_cancelled()
            raise
        except Exception as exc:
            await self._finish_failed(exc)
        finally:
            await asyncio.to_thread(shutil.rmtree, self._work_dir(), True)
        return self.job.phase

    async def _pipeline(self) -> None:
        job = self.job
        limit = self.settings.max_job_attempts
        self.handle.raise_if_cancelled()
        if job.phase is JobPhase.FAILED:
            job.transition(JobPhase.QUEUED, max_attempts=limit)
            job.last_error = None
            self._notify()

        if job.content_hash is None:
            content_hash = await asyncio.to_thread(self.identity.hash, job.file_path)
            if self._claim_content is not None and not self._claim_content(job, content_hash):
                raise DuplicateContentError(f"Identical content to {job.file_name} is already queued")
            job.content_hash = content_hash
        self.handle.raise_if_cancelled()

        if await asyncio.to_thread(self.identity.is_already_processed, job.file_path, job.content_hash):
            record = await asyncio.to_thread(self.identity.store.get, job.content_hash)
            if record is not None:
                job.output_file_path = record.output_path
                job.remote_job_id = record.remote_job_id or None
            job.is_verified = True
            self._advance(JobPhase.COMPLETED)
            logger.info("executor.already_processed job_id=%s file=%s", self._log_job_id, job.file_name)
            return

        job.attempt_count += 1
        job.last_attempt_time = datetime.now(UTC)
        job.output_file_path = self.identity.expected_output_path(job.file_path)
        await asyncio.to_thread(
            self.identity.register,
            job.file_path,
            job.content_hash,
            "",
            job.output_file_path,
            JobPhase.QUEUED.value,
        )
        logger.info(
            "executor.attempt_started job_id=%s file=%s attempt=%s",
            self._log_job_id,
            job.file_name,
            job.attempt_count,
        )

        self._enter(JobPhase.SILENCE_DETECTION)
        await self._detect_silence()

        self._enter(JobPhase.AUDIO_EXTRACTION)
        audio_path = await asyncio.to_thread(
            self.media.extract_audio,
            Path(job.file_path),
            self._work_dir(),
            self._threadsafe_progress(Stage.AUDIO_EXTRACTION),
        )

        self._enter(JobPhase.UPLOADING)
        upload_url = await self.provider.upload(audio_path, self._progress(Stage.UPLOAD))
        self.handle.raise_if_cancelled()
        remote_job_id = await self.provider.submit(upload_url, self.options)
        job.remote_job_id = remote_job_id
        self._advance(JobPhase.SUBMITTED)
        await self._sync_record(JobPhase.SUBMITTED.value, verified=False)

        self._enter(JobPhase.PROCESSING)
        await self._poll_until_transcribed(remote_job_id)

        self._enter(JobPhase.DOWNLOADING)
        output_path = Path(job.output_file_path)
        await self.provider.download_result(remote_job_id, output_path, self._progress(Stage.DOWNLOAD))
        self.handle.raise_if_cancelled()
        if not await asyncio.to_thread(self.identity.verify_output, str(output_path)):
            raise VerificationError(f"Transcript for {job.file_name} is incomplete")

        job.is_verified = True
        await self._sync_record(JobPhase.COMPLETED.value, verified=True)
        self._advance(JobPhase.COMPLETED)
        logger.info(
            "executor.completed job_id=%s file=%s attempt=%s",
            self._log_job_id,
            job.file_name,
            job.attempt_count,
        )

    async def _detect_silence(self) -> None:
        """Advisory stage: when disabled or failing it reports complete and the run goes on."""
        if not self.settings.enable_silence_detection:
            logger.info("executor.silence_detection_skipped job_id=%s", self._log_job_id)
            self._report(Stage.SILENCE_DETECTION, 100.0)
            return
        try:
            silences = await asyncio.to_thread(
                self.media.detect_silence,
                Path(self.job.file_path),
                self.settings.silence_threshold_db,
                self.settings.min_silence_duration_seconds,
                self._threadsafe_progress(Stage.SILENCE_DETECTION),
            )
        except InputError:
            raise
        except PipelineError as exc:
            logger.warning(
                "executor.silence_detection_failed job_id=%s reason=%s",
                self._log_job_id,
                type(exc).__name__,
            )
            self._report(Stage.SILENCE_DETECTION, 100.0)
            return
        logger.info("executor.silence_detected job_id=%s periods=%s", self._log_job_id, len(silences))

    async def _poll_until_transcribed(self, remote_job_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.max_poll_duration_seconds
        while True:
            status = await self.provider.get_status(remote_job_id)
            self.handle.raise_if_cancelled()
            if status.phase == "completed":
                self._report(Stage.TRANSCRIBE, 100.0)
                return
            if status.phase == "error":
                raise ProviderRejection(status.error or "Provider reported a transcription error")
            if status.phase == "cancelled":
                raise CancellationRequested(f"Provider cancelled transcript for job {self.job.id}")

            current = self.job.stage_progress[Stage.TRANSCRIBE]
            if status.percent is not None:
                self._report(Stage.TRANSCRIBE, status.percent)
            elif status.phase == "processing":
                self._report(Stage.TRANSCRIBE, current + (_ESTIMATE_CEILING - current) * _ESTIMATE_STEP)
            self._advance(JobPhase.PROCESSING)

            if loop.time() >= deadline:
                raise TransientRemoteError(
                    f"Provider did not finish within {self.settings.max_poll_duration_seconds:g}s"
                )
            if await self.handle.wait(self.settings.poll_interval_seconds):
                self.handle.raise_if_cancelled()

    async def _finish_failed(self, exc: Exception) -> None:
        job = self.job
        if job.is_terminal:
            logger.error(
                "executor.error_after_terminal job_id=%s phase=%s reason=%s",
                self._log_job_id,
                job.phase.value,
                type(exc).__name__,
                exc_info=exc,
            )
            return
        if not isinstance(exc, PipelineError):
            logger.exception("executor.unexpected_error job_id=%s", self._log_job_id, exc_info=exc)
        job.last_error = str(exc) or type(exc).__name__
        job.is_verified = False
        if job.phase is not JobPhase.FAILED:
            job.transition(JobPhase.FAILED)
        fatal = isinstance(exc, PipelineError) and not exc.retryable
        if fatal or job.attempt_count >= self.settings.max_job_attempts:
            job.transition(JobPhase.FAILED_PERMANENTLY)
        logger.warning(
            "executor.failed job_id=%s file=%s phase=%s attempt=%s reason=%s",
            self._log_job_id,
            job.file_name,
            job.phase.value,
            job.attempt_count,
            type(exc).__name__,
        )
        await self._record_outcome()
        self._notify()

    async def _finish_cancelled(self) -> None:
        job = self.job
        if job.is_terminal:
            return
        if self.settings.cancel_remote_on_abort and job.remote_job_id:
            try:
                await self.provider.cancel(job.remote_job_id)
            except PipelineError as exc:
                logger.warning(
                    "executor.remote_cancel_failed job_id=%s reason=%s",
                    self._log_job_id,
                    type(exc).__name__,
                )
        job.is_verified = False
        job.transition(JobPhase.CANCELLED)
        logger.info("executor.cancelled job_id=%s file=%s", self._log_job_id, job.file_name)
        await self._record_outcome()
        self._notify()

    async def _record_outcome(self) -> None:
        try:
            await self._sync_record(self.job.phase.value, verified=False)
        except (OSError, ValueError) as exc:
            logger.error(
                "executor.record_update_failed job_id=%s reason=%s",
                self._log_job_id,
                type(exc).__name__,
            )

    async def _sync_record(self, status: str, *, verified: bool) -> None:
        job = self.job
        if job.content_hash is None or job.attempt_count == 0:
            return
        await asyncio.to_thread(
            self.identity.update_status,
            job.content_hash,
            job.remote_job_id or "",
            status,
            verified,
            output_path=job.output_file_path,
        )

    def _enter(self, phase: JobPhase) -> None:
        self.handle.raise_if_cancelled()
        self._advance(phase)

    def _advance(self, phase: JobPhase) -> None:
        previous = self.job.phase
        self.job.transition(phase, max_attempts=self.settings.max_job_attempts)
        if previous is not phase:
            logger.info(
                "executor.phase_changed job_id=%s from=%s to=%s",
                self._log_job_id,
                previous.value,
                phase.value,
            )
        self._notify()

    def _report(self, stage: Stage, percent: float) -> None:
        self.job.report(stage, percent)
        self._notify()

    def _progress(self, stage: Stage) -> ProgressCallback:
        return lambda percent: self._report(stage, percent)

    def _threadsafe_progress(self, stage: Stage) -> ProgressCallback:
        loop = asyncio.get_running_loop()
        return lambda percent: loop.call_soon_threadsafe(self._report, stage, percent)

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self.job.snapshot())

    def _work_dir(self) -> Path:
        return Path(self.settings.work_dir) / self.job.id
