"""Mock transcription provider for local development and tests."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

from scribeflow.adapters.media.base import ProgressCallback
from scribeflow.adapters.provider.base import TranscriptionProvider
from scribeflow.errors import ProviderRejection
from scribeflow.schemas.provider import ProviderStatus, TranscriptionOptions


def sample_transcript(remote_job_id: str, text: str) -> dict:
    words = [
        {"text": word, "start": index * 500, "end": index * 500 + 400, "confidence": 0.98, "speaker": "A"}
        for index, word in enumerate(text.split())
    ]
    return {
        "id": remote_job_id,
        "status": "completed",
        "text": text,
        "words": words,
        "utterances": [
            {
                "speaker": "A",
                "text": text,
                "start": words[0]["start"] if words else 0,
                "end": words[-1]["end"] if words else 0,
                "words": words,
            }
        ],
    }


class MockProvider(TranscriptionProvider):
    """In-process provider that completes every job after a scripted series of polls.

    ``failures`` maps an operation name (``upload``, ``submit``, ``get_status``,
    ``download_result``) to exceptions raised by successive calls before it succeeds.
    While ``hold`` is set to an unset event, status polls keep reporting ``processing``.
    """

    def __init__(
        self,
        *,
        status_script: list[str] | None = None,
        transcript_text: str = "the quick brown fox jumps over the lazy dog while the court reporter listens",
        failures: dict[str, list[BaseException]] | None = None,
        hold: asyncio.Event | None = None,
    ) -> None:
        self.status_script = list(status_script or ["processing", "completed"])
        self.transcript_text = transcript_text
        self.failures = {name: list(errors) for name, errors in (failures or {}).items()}
        self.hold = hold
        self.uploads: list[str] = []
        self.submissions: list[str] = []
        self.status_calls: dict[str, int] = {}
        self.downloads: list[str] = []
        self.cancelled: list[str] = []

    @property
    def remote_calls(self) -> int:
        return (
            len(self.uploads)
            + len(self.submissions)
            + sum(self.status_calls.values())
            + len(self.downloads)
            + len(self.cancelled)
        )

    def _maybe_fail(self, operation: str) -> None:
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    async def upload(self, audio_path: Path, progress: ProgressCallback) -> str:
        await asyncio.sleep(0)
        self._maybe_fail("upload")
        self.uploads.append(Path(audio_path).name)
        for percent in (0.0, 50.0, 100.0):
            progress(percent)
        return f"mock://upload/{len(self.uploads)}"

    async def submit(self, upload_url: str, options: TranscriptionOptions) -> str:
        await asyncio.sleep(0)
        self._maybe_fail("submit")
        self.submissions.append(upload_url)
        remote_job_id = f"mock-{len(self.submissions)}"
        self.status_calls[remote_job_id] = 0
        return remote_job_id

    async def get_status(self, remote_job_id: str) -> ProviderStatus:
        await asyncio.sleep(0)
        self._maybe_fail("get_status")
        if remote_job_id not in self.status_calls:
            raise ProviderRejection(f"Unknown transcript {remote_job_id}", status_code=404)
        calls = self.status_calls[remote_job_id]
        self.status_calls[remote_job_id] = calls + 1
        if remote_job_id in self.cancelled:
            return ProviderStatus(phase="cancelled")
        if self.hold is not None and not self.hold.is_set():
            return ProviderStatus(phase="processing", percent=50.0)
        phase = self.status_script[min(calls, len(self.status_script) - 1)]
        if phase == "error":
            return ProviderStatus(phase="error", error="mock provider failure")
        percent = 100.0 if phase == "completed" else min(90.0, (calls + 1) * 100.0 / len(self.status_script))
        return ProviderStatus(phase=phase, percent=percent)

    async def download_result(self, remote_job_id: str, out_path: Path, progress: ProgressCallback) -> bool:
        await asyncio.sleep(0)
        self._maybe_fail("download_result")
        self.downloads.append(remote_job_id)
        target = Path(out_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        progress(0.0)
        target.write_text(json.dumps(sample_transcript(remote_job_id, self.transcript_text), indent=2), encoding="utf-8")
        progress(100.0)
        return True

    async def cancel(self, remote_job_id: str) -> bool:
        self.cancelled.append(remote_job_id)
        return True
