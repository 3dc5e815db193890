"""Job queue tests: dedup on add, concurrent processing and cancellation."""

from __future__ import annotations

import asyncio
from pathlib import Path
import shutil
import tempfile
import unittest

from scribeflow.adapters.media.mock_media import MockMediaToolkit
from scribeflow.adapters.provider.mock_provider import MockProvider
from scribeflow.errors import ApiError, InputError
from scribeflow.repositories.memory import InMemoryContentStore
from scribeflow.schemas.job import JobPhase, JobView
from scribeflow.services.content_identity import ContentIdentityService
from scribeflow.services.orchestrator import JobQueue

from support import make_settings, wait_until


class _UnreadableOnceIdentity(ContentIdentityService):
    def __init__(self, *args, unreadable: set[str]) -> None:
        super().__init__(*args)
        self.unreadable = unreadable

    def hash(self, file_path: str) -> str:
        if file_path in self.unreadable:
            self.unreadable.discard(file_path)
            raise InputError(f"Cannot read {Path(file_path).name}")
        return super().hash(file_path)


class JobQueueTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.store = InMemoryContentStore()
        self.provider = MockProvider()
        self.queue = self._queue(self.provider)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _queue(self, provider: MockProvider, **settings_overrides) -> JobQueue:
        settings = make_settings(self.root, **settings_overrides)
        return JobQueue(
            identity=ContentIdentityService(self.store, settings.transcripts_dir),
            media=MockMediaToolkit(),
            provider=provider,
            settings=settings,
        )

    def media(self, name: str, payload: bytes | None = None) -> Path:
        path = self.root / "inbox" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload if payload is not None else f"media:{name}".encode())
        return path

    def _phases(self) -> list[JobPhase]:
        return [job.phase for job in self.queue.list_jobs()]

    async def test_identical_content_at_different_paths_is_submitted_once(self) -> None:
        first = self.media("hearing.mp3", b"identical bytes")
        copy = self.media("copy/hearing-renamed.mp3", b"identical bytes")

        added = await self.queue.add_file(str(first))
        skipped = await self.queue.add_file(str(copy))
        result = await self.queue.process_all()

        self.assertTrue(added.added)
        self.assertFalse(skipped.added)
        self.assertEqual(skipped.reason, "DUPLICATE_CONTENT")
        self.assertEqual(result.launched, 1)
        self.assertEqual(result.outcomes, {JobPhase.COMPLETED: 1})
        self.assertEqual(len(self.provider.submissions), 1)

    async def test_copy_added_while_original_in_flight_is_skipped(self) -> None:
        self.provider.hold = asyncio.Event()
        original = self.media("a.mp3", b"same content")
        await self.queue.add_file(str(original))
        run = asyncio.create_task(self.queue.process_all())
        await wait_until(lambda: self._phases() == [JobPhase.PROCESSING])

        copy = self.root / "elsewhere" / "b.mp3"
        copy.parent.mkdir()
        shutil.copyfile(original, copy)
        result = await self.queue.add_file(str(copy))

        self.assertFalse(result.added)
        self.assertEqual(result.reason, "DUPLICATE_CONTENT")
        self.assertEqual(len(self.queue.list_jobs()), 1)

        self.provider.hold.set()
        await asyncio.wait_for(run, timeout=5.0)
        self.assertEqual(len(self.provider.submissions), 1)

    async def test_processed_content_and_repeated_paths_are_skipped(self) -> None:
        path = self.media("a.mp3")
        await self.queue.add_file(str(path))

        again = await self.queue.add_file(str(path))
        self.assertEqual(again.reason, "ALREADY_QUEUED")

        await self.queue.process_all()
        self.queue.clear_queue()
        after_completion = await self.queue.add_file(str(path))

        self.assertFalse(after_completion.added)
        self.assertEqual(after_completion.reason, "ALREADY_PROCESSED")

    async def test_missing_file_raises_input_error(self) -> None:
        with self.assertRaises(InputError):
            await self.queue.add_file(str(self.root / "nope.mp3"))

    async def test_add_folder_walks_recursively_and_filters_extensions(self) -> None:
        self.media("a.mp3")
        self.media("nested/deeper/b.WAV")
        self.media("notes.txt")
        self.media("nested/dup.mp4", b"media:a.mp3")

        result = await self.queue.add_folder(str(self.root / "inbox"))

        self.assertEqual(result.added_count, 2)
        self.assertEqual(result.skipped_count, 1)
        self.assertEqual(len(result.results), 3)
        names = sorted(Path(job.file_path).name for job in self.queue.list_jobs())
        self.assertEqual(names, ["a.mp3", "b.WAV"])

    async def test_add_folder_requires_a_directory(self) -> None:
        with self.assertRaises(InputError):
            await self.queue.add_folder(str(self.root / "missing-folder"))

    async def test_cancel_all_cancels_running_and_never_started_jobs(self) -> None:
        self.provider.hold = asyncio.Event()
        for index in range(3):
            await self.queue.add_file(str(self.media(f"running-{index}.mp3")))
        run = asyncio.create_task(self.queue.process_all())
        await wait_until(lambda: self._phases() == [JobPhase.PROCESSING] * 3)
        for index in range(2):
            await self.queue.add_file(str(self.media(f"waiting-{index}.mp3")))

        result = await self.queue.cancel_all()
        summary = await asyncio.wait_for(run, timeout=5.0)

        self.assertEqual(result.signalled_active, 3)
        self.assertEqual(result.cancelled_queued, 2)
        self.assertEqual(self._phases(), [JobPhase.CANCELLED] * 5)
        self.assertEqual(summary.outcomes, {JobPhase.CANCELLED: 3})
        self.assertEqual(len(self.provider.submissions), 3)
        self.assertEqual(self.queue.stats().active, 0)

    async def test_process_all_is_not_reentrant(self) -> None:
        self.provider.hold = asyncio.Event()
        await self.queue.add_file(str(self.media("a.mp3")))
        run = asyncio.create_task(self.queue.process_all())
        await wait_until(lambda: self.queue.stats().active == 1)

        with self.assertRaises(ApiError) as context:
            await self.queue.process_all()
        self.assertEqual(context.exception.status_code, 409)
        self.assertEqual(context.exception.payload.code, "QUEUE_ALREADY_PROCESSING")

        self.provider.hold.set()
        await asyncio.wait_for(run, timeout=5.0)
        self.assertFalse(self.queue.is_processing)

    async def test_cancel_one_on_queued_job_makes_no_remote_calls(self) -> None:
        added = await self.queue.add_file(str(self.media("a.mp3")))

        result = await self.queue.cancel_one(added.job.id)
        summary = await self.queue.process_all()

        self.assertTrue(result.cancellation_requested)
        self.assertIs(result.phase, JobPhase.CANCELLED)
        self.assertEqual(summary.launched, 0)
        self.assertEqual(self.provider.remote_calls, 0)

    async def test_cancel_one_on_terminal_job_is_not_requested(self) -> None:
        added = await self.queue.add_file(str(self.media("a.mp3")))
        await self.queue.process_all()

        result = await self.queue.cancel_one(added.job.id)

        self.assertFalse(result.cancellation_requested)
        self.assertIs(result.phase, JobPhase.COMPLETED)

    async def test_unknown_job_ids_return_no_leak_404(self) -> None:
        for call in (
            lambda: self.queue.get_job("job-missing"),
            lambda: self.queue.remove_one("job-missing"),
        ):
            with self.assertRaises(ApiError) as context:
                call()
            self.assertEqual(context.exception.status_code, 404)
            self.assertEqual(context.exception.payload.code, "RESOURCE_NOT_FOUND")
        with self.assertRaises(ApiError):
            await self.queue.cancel_one("job-missing")

    async def test_remove_active_job_removes_it_once_stopped(self) -> None:
        self.provider.hold = asyncio.Event()
        added = await self.queue.add_file(str(self.media("a.mp3")))
        run = asyncio.create_task(self.queue.process_all())
        await wait_until(lambda: self._phases() == [JobPhase.PROCESSING])

        result = self.queue.remove_one(added.job.id)
        self.assertFalse(result.removed)
        self.assertTrue(result.cancellation_requested)

        await asyncio.wait_for(run, timeout=5.0)
        self.assertEqual(self.queue.list_jobs(), [])

    async def test_clear_queue_keeps_active_jobs(self) -> None:
        self.provider.hold = asyncio.Event()
        await self.queue.add_file(str(self.media("running.mp3")))
        run = asyncio.create_task(self.queue.process_all())
        await wait_until(lambda: self._phases() == [JobPhase.PROCESSING])
        await self.queue.add_file(str(self.media("idle.mp3")))

        result = self.queue.clear_queue()

        self.assertEqual(result.removed_count, 1)
        self.assertEqual(result.remaining_active, 1)
        self.assertEqual(self._phases(), [JobPhase.PROCESSING])

        await self.queue.cancel_all()
        await asyncio.wait_for(run, timeout=5.0)

    async def test_failed_jobs_retry_until_limit_then_requeue_starts_fresh(self) -> None:
        self.provider.status_script = ["error"]
        added = await self.queue.add_file(str(self.media("a.mp3")))

        outcomes = [(await self.queue.process_all()).outcomes for _ in range(4)]

        self.assertEqual(
            outcomes,
            [
                {JobPhase.FAILED: 1},
                {JobPhase.FAILED: 1},
                {JobPhase.FAILED_PERMANENTLY: 1},
                {},
            ],
        )
        failed = self.queue.get_job(added.job.id)
        self.assertEqual(failed.attempt_count, 3)

        fresh = await self.queue.requeue(added.job.id)
        self.assertNotEqual(fresh.id, added.job.id)
        self.assertEqual(fresh.attempt_count, 0)
        self.assertIs(fresh.phase, JobPhase.QUEUED)
        self.assertEqual([job.id for job in self.queue.list_jobs()], [fresh.id])

        self.provider.status_script = ["completed"]
        result = await self.queue.process_all()
        self.assertEqual(result.outcomes, {JobPhase.COMPLETED: 1})

    async def test_requeue_rejects_jobs_that_are_not_finished_unsuccessfully(self) -> None:
        added = await self.queue.add_file(str(self.media("a.mp3")))

        with self.assertRaises(ApiError) as context:
            await self.queue.requeue(added.job.id)

        self.assertEqual(context.exception.status_code, 409)
        self.assertEqual(context.exception.payload.code, "JOB_NOT_REQUEUEABLE")

    async def test_requeue_rejects_content_now_queued_under_another_path(self) -> None:
        original = await self.queue.add_file(str(self.media("a.mp3", b"shared bytes")))
        await self.queue.cancel_one(original.job.id)
        copy = await self.queue.add_file(str(self.media("copy/a-renamed.mp3", b"shared bytes")))

        with self.assertRaises(ApiError) as context:
            await self.queue.requeue(original.job.id)
        result = await self.queue.process_all()

        self.assertTrue(copy.added)
        self.assertEqual(context.exception.status_code, 409)
        self.assertEqual(context.exception.payload.code, "DUPLICATE_CONTENT")
        self.assertEqual(result.launched, 1)
        self.assertEqual(len(self.provider.submissions), 1)

    async def test_requeue_rejects_content_already_transcribed(self) -> None:
        original = await self.queue.add_file(str(self.media("a.mp3", b"shared bytes")))
        await self.queue.cancel_one(original.job.id)
        copy = await self.queue.add_file(str(self.media("copy/a-renamed.mp3", b"shared bytes")))
        await self.queue.process_all()
        self.queue.remove_one(copy.job.id)

        with self.assertRaises(ApiError) as context:
            await self.queue.requeue(original.job.id)

        self.assertEqual(context.exception.status_code, 409)
        self.assertEqual(context.exception.payload.code, "ALREADY_PROCESSED")
        self.assertIs(self.queue.get_job(original.job.id).phase, JobPhase.CANCELLED)

    async def test_job_hashed_late_yields_to_queued_copy(self) -> None:
        first = self.media("a.mp3", b"shared bytes")
        identity = _UnreadableOnceIdentity(
            self.store,
            self.root / "transcripts",
            unreadable={str(first.resolve())},
        )
        queue = JobQueue(
            identity=identity,
            media=MockMediaToolkit(),
            provider=self.provider,
            settings=make_settings(self.root),
        )
        deferred = await queue.add_file(str(first))
        copy = await queue.add_file(str(self.media("copy/a-renamed.mp3", b"shared bytes")))

        result = await queue.process_all()

        self.assertIsNone(deferred.job.content_hash)
        self.assertTrue(copy.added)
        self.assertEqual(result.outcomes, {JobPhase.COMPLETED: 1, JobPhase.FAILED_PERMANENTLY: 1})
        self.assertEqual(len(self.provider.submissions), 1)
        late = queue.get_job(deferred.job.id)
        self.assertIs(late.phase, JobPhase.FAILED_PERMANENTLY)
        self.assertIn("already queued", late.last_error)

    async def test_listeners_receive_snapshots_and_stats_aggregate(self) -> None:
        events: list[JobView] = []
        unsubscribe = self.queue.subscribe(events.append)
        await self.queue.add_file(str(self.media("a.mp3")))
        await self.queue.add_file(str(self.media("b.mp3")))
        waiting = self.queue.stats()

        await self.queue.process_all()
        unsubscribe()
        await self.queue.add_file(str(self.media("c.mp3")))
        done = self.queue.stats()

        self.assertEqual(waiting.total, 2)
        self.assertEqual(waiting.counts[JobPhase.QUEUED], 2)
        self.assertEqual(waiting.overall_progress, 0.0)
        self.assertEqual(done.counts[JobPhase.COMPLETED], 2)
        self.assertEqual(done.counts[JobPhase.QUEUED], 1)
        self.assertFalse(done.processing)
        self.assertTrue(all(isinstance(event, JobView) for event in events))
        self.assertIn(JobPhase.COMPLETED, {event.phase for event in events})
        self.assertNotIn("c.mp3", {event.file_name for event in events})

    async def test_failing_listener_does_not_break_processing(self) -> None:
        def broken(_: JobView) -> None:
            raise RuntimeError("observer crashed")

        self.queue.subscribe(broken)
        await self.queue.add_file(str(self.media("a.mp3")))

        result = await self.queue.process_all()

        self.assertEqual(result.outcomes, {JobPhase.COMPLETED: 1})


if __name__ == "__main__":
    unittest.main()
