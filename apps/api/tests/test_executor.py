"""Phase executor tests against mock adapters and a mocked provider wire."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
import tempfile
import unittest

import httpx

from scribeflow.adapters.media.mock_media import MockMediaToolkit
from scribeflow.adapters.provider.assemblyai import AssemblyAIProvider
from scribeflow.adapters.provider.mock_provider import MockProvider, sample_transcript
from scribeflow.domain.job import Job
from scribeflow.errors import PipelineError, TransientRemoteError
from scribeflow.repositories.memory import InMemoryContentStore
from scribeflow.schemas.job import JobPhase, JobView, Stage
from scribeflow.services.content_identity import ContentIdentityService
from scribeflow.services.executor import CancellationHandle, PhaseExecutor

from support import make_settings, wait_until


class _BrokenSilenceToolkit(MockMediaToolkit):
    def detect_silence(self, path, threshold_db, min_duration_sec, progress):
        progress(40.0)
        raise PipelineError("silencedetect filter failed")


class _IncompleteTranscriptProvider(MockProvider):
    async def download_result(self, remote_job_id, out_path, progress) -> bool:
        self.downloads.append(remote_job_id)
        Path(out_path).parent.mkdir(parents=True, exist_ok=True)
        Path(out_path).write_text(json.dumps({"status": "completed", "text": ""}), encoding="utf-8")
        return True


class PhaseExecutorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.media_file = self.root / "hearing.mp3"
        self.media_file.write_bytes(b"ID3 fake mp3 payload for hashing")
        self.store = InMemoryContentStore()
        self.identity = ContentIdentityService(self.store, self.root / "transcripts")
        self.media = MockMediaToolkit()
        self.events: list[JobView] = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _executor(self, job: Job, provider, *, claim_content=None, **settings_overrides) -> PhaseExecutor:
        return PhaseExecutor(
            job,
            CancellationHandle(job.id),
            identity=self.identity,
            media=self.media,
            provider=provider,
            settings=make_settings(self.root, **settings_overrides),
            on_change=self.events.append,
            claim_content=claim_content,
        )

    def _silence_stage_peak(self) -> float:
        return max(
            event.stage_progress[Stage.SILENCE_DETECTION]
            for event in self.events
            if event.phase is JobPhase.SILENCE_DETECTION
        )

    def _observed_phases(self) -> list[JobPhase]:
        phases: list[JobPhase] = []
        for event in self.events:
            if not phases or phases[-1] is not event.phase:
                phases.append(event.phase)
        return phases

    async def test_job_walks_every_phase_to_verified_completion(self) -> None:
        provider = MockProvider(status_script=["queued", "processing", "completed"])
        job = Job(file_path=str(self.media_file))

        phase = await self._executor(job, provider).run()

        self.assertIs(phase, JobPhase.COMPLETED)
        self.assertEqual(
            self._observed_phases(),
            [
                JobPhase.SILENCE_DETECTION,
                JobPhase.AUDIO_EXTRACTION,
                JobPhase.UPLOADING,
                JobPhase.SUBMITTED,
                JobPhase.PROCESSING,
                JobPhase.DOWNLOADING,
                JobPhase.COMPLETED,
            ],
        )
        self.assertTrue(job.is_verified)
        self.assertEqual(job.attempt_count, 1)
        self.assertEqual(job.remote_job_id, "mock-1")
        self.assertEqual(job.overall_progress, 100.0)
        self.assertTrue(self.identity.verify_output(job.output_file_path))
        record = self.store.get(job.content_hash)
        self.assertTrue(record.verified)
        self.assertEqual(record.status, "COMPLETED")
        self.assertTrue(self.identity.is_already_processed(job.file_path, job.content_hash))
        self.assertFalse((self.root / "work" / job.id).exists())

    async def test_overall_progress_never_regresses_during_a_run(self) -> None:
        job = Job(file_path=str(self.media_file))

        await self._executor(job, MockProvider(status_script=["processing", "processing", "completed"])).run()

        progress = [event.overall_progress for event in self.events]
        self.assertEqual(progress, sorted(progress))

    async def test_already_processed_content_short_circuits_without_remote_calls(self) -> None:
        content_hash = self.identity.hash(str(self.media_file))
        output = self.root / "transcripts" / "previous.json"
        output.parent.mkdir(parents=True)
        output.write_text(json.dumps(sample_transcript("old-1", "previously transcribed words")), encoding="utf-8")
        self.identity.register(str(self.media_file), content_hash, "old-1", str(output), "COMPLETED")
        self.identity.update_status(content_hash, "old-1", "COMPLETED", True)
        provider = MockProvider()
        job = Job(file_path=str(self.media_file))

        phase = await self._executor(job, provider).run()

        self.assertIs(phase, JobPhase.COMPLETED)
        self.assertTrue(job.is_verified)
        self.assertEqual(job.attempt_count, 0)
        self.assertEqual(job.output_file_path, str(output))
        self.assertEqual(provider.remote_calls, 0)
        self.assertEqual(self.media.calls, [])

    async def test_provider_error_fails_then_retry_completes(self) -> None:
        provider = MockProvider(status_script=["error"])
        job = Job(file_path=str(self.media_file))

        phase = await self._executor(job, provider).run()

        self.assertIs(phase, JobPhase.FAILED)
        self.assertEqual(job.attempt_count, 1)
        self.assertIn("mock provider failure", job.last_error)
        self.assertEqual(job.snapshot().status_text, "Failed: mock provider failure")
        record = self.store.get(job.content_hash)
        self.assertEqual(record.status, "FAILED")
        self.assertFalse(record.verified)

        provider.status_script = ["completed"]
        phase = await self._executor(job, provider).run()

        self.assertIs(phase, JobPhase.COMPLETED)
        self.assertEqual(job.attempt_count, 2)
        self.assertIsNone(job.last_error)

    async def test_attempt_count_never_exceeds_limit(self) -> None:
        provider = MockProvider(status_script=["error"])
        job = Job(file_path=str(self.media_file))

        phases = [await self._executor(job, provider).run() for _ in range(4)]

        self.assertEqual(
            phases,
            [JobPhase.FAILED, JobPhase.FAILED, JobPhase.FAILED_PERMANENTLY, JobPhase.FAILED_PERMANENTLY],
        )
        self.assertEqual(job.attempt_count, 3)
        self.assertEqual(len(provider.submissions), 3)

    async def test_unreadable_input_fails_permanently(self) -> None:
        provider = MockProvider()
        job = Job(file_path=str(self.root / "missing.mp3"))

        phase = await self._executor(job, provider).run()

        self.assertIs(phase, JobPhase.FAILED_PERMANENTLY)
        self.assertEqual(job.attempt_count, 0)
        self.assertIn("missing.mp3", job.last_error)
        self.assertEqual(provider.remote_calls, 0)

    async def test_incomplete_transcript_fails_verification(self) -> None:
        job = Job(file_path=str(self.media_file))

        phase = await self._executor(job, _IncompleteTranscriptProvider()).run()

        self.assertIs(phase, JobPhase.FAILED)
        self.assertFalse(job.is_verified)
        self.assertIn("incomplete", job.last_error)
        self.assertFalse(self.store.get(job.content_hash).verified)

    async def test_transient_errors_after_retries_fail_the_attempt(self) -> None:
        provider = MockProvider(failures={"upload": [TransientRemoteError("HTTP 503", status_code=503)]})
        job = Job(file_path=str(self.media_file))

        phase = await self._executor(job, provider).run()

        self.assertIs(phase, JobPhase.FAILED)
        self.assertEqual(provider.submissions, [])

    async def test_cancel_before_start_makes_no_remote_calls(self) -> None:
        provider = MockProvider()
        job = Job(file_path=str(self.media_file))
        executor = self._executor(job, provider)
        executor.handle.cancel()

        phase = await executor.run()

        self.assertIs(phase, JobPhase.CANCELLED)
        self.assertEqual(provider.remote_calls, 0)

    async def test_cancel_while_processing_stops_polling(self) -> None:
        provider = MockProvider(hold=asyncio.Event())
        job = Job(file_path=str(self.media_file))
        executor = self._executor(job, provider)
        task = asyncio.create_task(executor.run())

        await wait_until(lambda: job.phase is JobPhase.PROCESSING)
        executor.handle.cancel()
        phase = await asyncio.wait_for(task, timeout=5.0)

        self.assertIs(phase, JobPhase.CANCELLED)
        self.assertEqual(provider.cancelled, [])
        self.assertEqual(provider.downloads, [])
        record = self.store.get(job.content_hash)
        self.assertEqual(record.status, "CANCELLED")
        self.assertFalse(record.verified)

    async def test_cancel_remote_on_abort_asks_provider_to_cancel(self) -> None:
        provider = MockProvider(hold=asyncio.Event())
        job = Job(file_path=str(self.media_file))
        executor = self._executor(job, provider, cancel_remote_on_abort=True)
        task = asyncio.create_task(executor.run())

        await wait_until(lambda: job.phase is JobPhase.PROCESSING)
        executor.handle.cancel()
        await asyncio.wait_for(task, timeout=5.0)

        self.assertEqual(provider.cancelled, ["mock-1"])

    async def test_poll_deadline_fails_attempt(self) -> None:
        provider = MockProvider(hold=asyncio.Event())
        job = Job(file_path=str(self.media_file))

        phase = await self._executor(job, provider, max_poll_duration_seconds=0.05).run()

        self.assertIs(phase, JobPhase.FAILED)
        self.assertIn("did not finish", job.last_error)

    async def test_silence_detection_failure_does_not_stop_transcription(self) -> None:
        self.media = _BrokenSilenceToolkit()
        provider = MockProvider()
        job = Job(file_path=str(self.media_file))

        phase = await self._executor(job, provider).run()

        self.assertIs(phase, JobPhase.COMPLETED)
        self.assertEqual(len(provider.submissions), 1)
        self.assertEqual(self._silence_stage_peak(), 100.0)
        self.assertIsNone(job.last_error)

    async def test_disabled_silence_detection_skips_the_analysis(self) -> None:
        job = Job(file_path=str(self.media_file))

        phase = await self._executor(job, MockProvider(), enable_silence_detection=False).run()

        self.assertIs(phase, JobPhase.COMPLETED)
        self.assertEqual([name for name, _ in self.media.calls], ["extract_audio"])
        self.assertIn(JobPhase.SILENCE_DETECTION, self._observed_phases())
        self.assertEqual(self._silence_stage_peak(), 100.0)

    async def test_late_hash_owned_by_another_job_fails_permanently(self) -> None:
        provider = MockProvider()
        job = Job(file_path=str(self.media_file))
        claims: list[str] = []

        def already_owned(claimant: Job, content_hash: str) -> bool:
            claims.append(content_hash)
            return False

        phase = await self._executor(job, provider, claim_content=already_owned).run()

        self.assertIs(phase, JobPhase.FAILED_PERMANENTLY)
        self.assertEqual(claims, [self.identity.hash(str(self.media_file))])
        self.assertIsNone(job.content_hash)
        self.assertEqual(job.attempt_count, 0)
        self.assertEqual(provider.remote_calls, 0)
        self.assertEqual(self.media.calls, [])


class ExecutorOverProviderWireTests(unittest.IsolatedAsyncioTestCase):
    async def test_rate_limited_submission_completes_on_first_attempt(self) -> None:
        submit_responses = [
            httpx.Response(429, headers={"Retry-After": "0"}),
            httpx.Response(429, headers={"Retry-After": "0"}),
            httpx.Response(200, json={"id": "t-1"}),
        ]
        submit_requests: list[httpx.Request] = []
        transcript = sample_transcript("t-1", "the witness was sworn in and testified")

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["authorization"] == "test-key"
            if request.method == "POST" and request.url.path == "/v2/upload":
                return httpx.Response(200, json={"upload_url": "https://cdn.provider.test/u-1"})
            if request.method == "POST" and request.url.path == "/v2/transcript":
                submit_requests.append(request)
                return submit_responses.pop(0)
            if request.method == "GET" and request.url.path == "/v2/transcript/t-1":
                return httpx.Response(200, json=transcript)
            return httpx.Response(404, json={"error": "not found"})

        async def no_sleep(_: float) -> None:
            return None

        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            media_file = root / "deposition.wav"
            media_file.write_bytes(b"RIFF" + b"\x00" * 512)
            settings = make_settings(
                root,
                provider="assemblyai",
                provider_api_key="test-key",
                provider_base_url="https://provider.test/v2",
            )
            provider = AssemblyAIProvider.from_settings(
                settings,
                transport=httpx.MockTransport(handler),
                sleep=no_sleep,
            )
            store = InMemoryContentStore()
            job = Job(file_path=str(media_file))
            executor = PhaseExecutor(
                job,
                CancellationHandle(job.id),
                identity=ContentIdentityService(store, settings.transcripts_dir),
                media=MockMediaToolkit(),
                provider=provider,
                settings=settings,
            )

            phase = await executor.run()
            await provider.aclose()

            self.assertIs(phase, JobPhase.COMPLETED, job.last_error)
            self.assertEqual(job.attempt_count, 1)
            self.assertEqual(len(submit_requests), 3)
            self.assertEqual(json.loads(submit_requests[-1].content)["audio_url"], "https://cdn.provider.test/u-1")
            self.assertEqual(job.remote_job_id, "t-1")
            self.assertTrue(store.get(job.content_hash).verified)


if __name__ == "__main__":
    unittest.main()
