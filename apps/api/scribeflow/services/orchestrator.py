"""Job queue: ordered jobs, dedup on add, concurrent execution and cancellation."""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Callable
import logging
from pathlib import Path
import threading

from scribeflow.adapters.media.base import MediaToolkit
from scribeflow.adapters.provider.base import TranscriptionProvider
from scribeflow.core.config import Settings
from scribeflow.core.logging_safety import safe_log_identifier
from scribeflow.domain.job import Job
from scribeflow.domain.progress import aggregate_progress
from scribeflow.errors import ApiError, InputError
from scribeflow.schemas.job import (
    AddFileResult,
    AddFolderResult,
    CancelAllResult,
    CancelJobResult,
    ClearQueueResult,
    JobPhase,
    JobView,
    ProcessAllResult,
    QueueStats,
    RemoveJobResult,
    SkipReason,
)
from scribeflow.services.content_identity import ContentIdentityService
from scribeflow.services.executor import CancellationHandle, JobListener, PhaseExecutor

logger = logging.getLogger(__name__)

# Jobs in these phases no longer claim their content for in-flight dedup.
_RELEASED_PHASES = frozenset({JobPhase.CANCELLED, JobPhase.FAILED_PERMANENTLY})


def _not_found() -> ApiError:
    return ApiError(status_code=404, code="RESOURCE_NOT_FOUND", message="Resource not found")


def _requeue_conflict(code: str, message: str, job_id: str) -> ApiError:
    return ApiError(status_code=409, code=code, message=message, details={"job_id": job_id})


class JobQueue:
    """Owns the ordered job collection and the cancellation handle map.

    ``_lock`` guards ``_jobs``, ``_handles`` and the processing flag. It is a plain
    threading lock and is never held across an ``await``.
    """

    def __init__(
        self,
        *,
        identity: ContentIdentityService,
        media: MediaToolkit,
        provider: TranscriptionProvider,
        settings: Settings,
    ) -> None:
        self.identity = identity
        self.media = media
        self.provider = provider
        self.settings = settings
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}
        self._handles: dict[str, CancellationHandle] = {}
        self._listeners: list[JobListener] = []
        self._processing = False

    @property
    def is_processing(self) -> bool:
        with self._lock:
            return self._processing

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        """Register a progress listener; returns a callable that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    async def add_file(self, path: str) -> AddFileResult:
        file_path = Path(path).expanduser().resolve()
        if not file_path.is_file():
            raise InputError(f"File not found: {file_path.name}")
        resolved = str(file_path)

        with self._lock:
            if self._find_by_path(resolved) is not None:
                return self._skipped(resolved, "ALREADY_QUEUED")

        try:
            content_hash: str | None = await asyncio.to_thread(self.identity.hash, resolved)
        except InputError as exc:
            # The executor retries hashing and fails the job if the file stays unreadable.
            logger.warning("queue.hash_deferred file=%s reason=%s", file_path.name, exc)
            content_hash = None

        if content_hash is not None and await asyncio.to_thread(
            self.identity.is_already_processed, resolved, content_hash
        ):
            return self._skipped(resolved, "ALREADY_PROCESSED")

        with self._lock:
            if self._find_by_path(resolved) is not None:
                return self._skipped(resolved, "ALREADY_QUEUED")
            if content_hash is not None and self._find_by_hash(content_hash) is not None:
                return self._skipped(resolved, "DUPLICATE_CONTENT")
            job = Job(file_path=resolved, content_hash=content_hash)
            self._jobs[job.id] = job
            view = job.snapshot()

        logger.info(
            "queue.job_added job_id=%s file=%s hash=%s",
            safe_log_identifier(job.id, prefix="job"),
            job.file_name,
            safe_log_identifier(content_hash, prefix="hash"),
        )
        self._dispatch(view)
        return AddFileResult(file_path=resolved, added=True, job=view)

    async def add_folder(self, path: str) -> AddFolderResult:
        folder = Path(path).expanduser().resolve()
        if not folder.is_dir():
            raise InputError(f"Folder not found: {folder.name}")
        extensions = {ext.lower() for ext in self.settings.media_extensions}
        candidates = await asyncio.to_thread(
            lambda: sorted(
                candidate
                for candidate in folder.rglob("*")
                if candidate.is_file() and candidate.suffix.lower() in extensions
            )
        )

        results: list[AddFileResult] = []
        for candidate in candidates:
            try:
                results.append(await self.add_file(str(candidate)))
            except InputError as exc:
                # Vanished between the directory walk and the add.
                logger.warning("queue.folder_entry_skipped file=%s reason=%s", candidate.name, exc)
        added = sum(1 for result in results if result.added)
        logger.info(
            "queue.folder_added folder=%s added=%s skipped=%s",
            folder.name,
            added,
            len(results) - added,
        )
        return AddFolderResult(
            folder_path=str(folder),
            added_count=added,
            skipped_count=len(results) - added,
            results=results,
        )

    def begin_processing(self) -> int:
        """Claim the processing flag; raises 409 while a run is active."""
        with self._lock:
            if self._processing:
                raise ApiError(
                    status_code=409,
                    code="QUEUE_ALREADY_PROCESSING",
                    message="Queue is already processing",
                )
            self._processing = True
            return len(self._eligible_jobs())

    async def process_all(self, *, claimed: bool = False) -> ProcessAllResult:
        """Run every eligible job concurrently and wait for all of them.

        ``claimed`` is set by callers that already hold the flag via ``begin_processing``.
        """
        if not claimed:
            self.begin_processing()
        try:
            with self._lock:
                launched = []
                for job in self._eligible_jobs():
                    handle = CancellationHandle(job.id)
                    self._handles[job.id] = handle
                    launched.append((job, handle))
            logger.info("queue.processing_started launched=%s", len(launched))
            phases = await asyncio.gather(
                *(self._execute(job, handle) for job, handle in launched)
            )
        finally:
            with self._lock:
                self._processing = False

        outcomes = dict(Counter(phases))
        logger.info(
            "queue.processing_finished launched=%s outcomes=%s",
            len(launched),
            {phase.value: count for phase, count in outcomes.items()},
        )
        return ProcessAllResult(launched=len(launched), outcomes=outcomes)

    async def cancel_all(self) -> CancelAllResult:
        cancelled_queued: list[Job] = []
        with self._lock:
            for handle in self._handles.values():
                handle.cancel()
            signalled = len(self._handles)
            for job in self._jobs.values():
                if job.id not in self._handles and job.phase is JobPhase.QUEUED:
                    job.transition(JobPhase.CANCELLED)
                    cancelled_queued.append(job)
            views = [job.snapshot() for job in cancelled_queued]

        for job in cancelled_queued:
            await self._mark_record_cancelled(job)
        for view in views:
            self._dispatch(view)
        logger.info(
            "queue.cancel_all signalled_active=%s cancelled_queued=%s",
            signalled,
            len(cancelled_queued),
        )
        return CancelAllResult(signalled_active=signalled, cancelled_queued=len(cancelled_queued))

    async def cancel_one(self, job_id: str) -> CancelJobResult:
        cancelled_idle = False
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise _not_found()
            handle = self._handles.get(job_id)
            if handle is not None:
                handle.cancel()
                requested = True
            elif job.phase is JobPhase.QUEUED:
                job.transition(JobPhase.CANCELLED)
                requested = cancelled_idle = True
            else:
                requested = False
            view = job.snapshot()

        if cancelled_idle:
            await self._mark_record_cancelled(job)
            self._dispatch(view)
        logger.info(
            "queue.cancel_one job_id=%s requested=%s phase=%s",
            safe_log_identifier(job_id, prefix="job"),
            requested,
            view.phase.value,
        )
        return CancelJobResult(job_id=job_id, cancellation_requested=requested, phase=view.phase)

    def remove_one(self, job_id: str) -> RemoveJobResult:
        """Remove an idle job; an executing job is cancelled and removed once it stops."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise _not_found()
            handle = self._handles.get(job_id)
            if handle is None:
                del self._jobs[job_id]
                removed = True
            else:
                job.removal_requested = True
                handle.cancel()
                removed = False
        logger.info(
            "queue.remove_one job_id=%s removed=%s",
            safe_log_identifier(job_id, prefix="job"),
            removed,
        )
        return RemoveJobResult(job_id=job_id, removed=removed, cancellation_requested=not removed)

    def clear_queue(self) -> ClearQueueResult:
        with self._lock:
            idle = [job_id for job_id in self._jobs if job_id not in self._handles]
            for job_id in idle:
                del self._jobs[job_id]
            remaining = len(self._handles)
        logger.info("queue.cleared removed=%s remaining_active=%s", len(idle), remaining)
        return ClearQueueResult(removed_count=len(idle), remaining_active=remaining)

    async def requeue(self, job_id: str) -> JobView:
        """Replace a permanently failed or cancelled job with a fresh one for the same file."""
        with self._lock:
            old = self._jobs.get(job_id)
            if old is None:
                raise _not_found()
            self._ensure_requeueable(old)
            file_path = old.file_path

        try:
            content_hash: str | None = await asyncio.to_thread(self.identity.hash, file_path)
        except InputError:
            content_hash = None

        if content_hash is not None and await asyncio.to_thread(
            self.identity.is_already_processed, file_path, content_hash
        ):
            raise _requeue_conflict("ALREADY_PROCESSED", "Content has already been transcribed", job_id)

        with self._lock:
            old = self._jobs.get(job_id)
            if old is None:
                raise _not_found()
            self._ensure_requeueable(old)
            if content_hash is not None and self._find_by_hash(content_hash) is not None:
                raise _requeue_conflict("DUPLICATE_CONTENT", "Identical content is already queued", job_id)
            del self._jobs[job_id]
            job = Job(file_path=file_path, content_hash=content_hash)
            self._jobs[job.id] = job
            view = job.snapshot()

        logger.info(
            "queue.requeued old_job_id=%s job_id=%s file=%s",
            safe_log_identifier(job_id, prefix="job"),
            safe_log_identifier(job.id, prefix="job"),
            job.file_name,
        )
        self._dispatch(view)
        return view

    def get_job(self, job_id: str) -> JobView:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise _not_found()
            return job.snapshot()

    def list_jobs(self) -> list[JobView]:
        with self._lock:
            return [job.snapshot() for job in self._jobs.values()]

    def stats(self) -> QueueStats:
        with self._lock:
            jobs = list(self._jobs.values())
            counts = Counter(job.phase for job in jobs)
            return QueueStats(
                total=len(jobs),
                active=len(self._handles),
                processing=self._processing,
                counts={phase: counts.get(phase, 0) for phase in JobPhase},
                overall_progress=aggregate_progress(job.overall_progress for job in jobs),
            )

    async def _execute(self, job: Job, handle: CancellationHandle) -> JobPhase:
        executor = PhaseExecutor(
            job,
            handle,
            identity=self.identity,
            media=self.media,
            provider=self.provider,
            settings=self.settings,
            on_change=self._dispatch,
            claim_content=self._claim_content,
        )
        try:
            return await executor.run()
        finally:
            with self._lock:
                self._handles.pop(job.id, None)
                removed = job.removal_requested and self._jobs.pop(job.id, None) is not None
            if removed:
                logger.info(
                    "queue.removed_after_stop job_id=%s",
                    safe_log_identifier(job.id, prefix="job"),
                )

    async def _mark_record_cancelled(self, job: Job) -> None:
        if job.content_hash is None:
            return
        record = await asyncio.to_thread(self.identity.store.get, job.content_hash)
        if record is None:
            return
        await asyncio.to_thread(
            self.identity.update_status,
            job.content_hash,
            record.remote_job_id,
            JobPhase.CANCELLED.value,
            False,
        )

    def _claim_content(self, job: Job, content_hash: str) -> bool:
        """Attach a hash computed at run time unless another live job already owns it."""
        with self._lock:
            owner = self._find_by_hash(content_hash)
            if owner is not None and owner is not job:
                return False
            job.content_hash = content_hash
            return True

    def _eligible_jobs(self) -> list[Job]:
        limit = self.settings.max_job_attempts
        return [
            job
            for job in self._jobs.values()
            if job.id not in self._handles and not job.removal_requested and job.can_be_processed(limit)
        ]

    def _ensure_requeueable(self, job: Job) -> None:
        if job.id in self._handles or job.phase not in _RELEASED_PHASES:
            raise ApiError(
                status_code=409,
                code="JOB_NOT_REQUEUEABLE",
                message="Only cancelled or permanently failed jobs can be requeued",
                details={"job_id": job.id, "phase": job.phase.value},
            )

    def _find_by_path(self, file_path: str) -> Job | None:
        return next((job for job in self._jobs.values() if job.file_path == file_path), None)

    def _find_by_hash(self, content_hash: str) -> Job | None:
        return next(
            (
                job
                for job in self._jobs.values()
                if job.content_hash == content_hash and job.phase not in _RELEASED_PHASES
            ),
            None,
        )

    def _skipped(self, file_path: str, reason: SkipReason) -> AddFileResult:
        logger.info("queue.add_skipped file=%s reason=%s", Path(file_path).name, reason)
        return AddFileResult(file_path=file_path, added=False, reason=reason)

    def _dispatch(self, view: JobView) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(view)
            except Exception:
                logger.exception(
                    "queue.listener_failed job_id=%s",
                    safe_log_identifier(view.id, prefix="job"),
                )
