"""AssemblyAI transcription provider over the resilient HTTP client."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import logging
import os
from pathlib import Path

from scribeflow.adapters.media.base import ProgressCallback
from scribeflow.adapters.provider.base import TranscriptionProvider
from scribeflow.core.config import Settings
from scribeflow.core.logging_safety import safe_log_identifier
from scribeflow.errors import ProviderRejection
from scribeflow.schemas.provider import ProviderStatus, TranscriptionOptions
from scribeflow.services.resilience import ResilientRemoteClient

logger = logging.getLogger(__name__)

_UPLOAD_CHUNK_BYTES = 256 * 1024
_KNOWN_STATUSES = {"queued", "processing", "completed", "error"}


class AssemblyAIProvider(TranscriptionProvider):
    def __init__(self, client: ResilientRemoteClient) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings, **client_kwargs) -> AssemblyAIProvider:
        if not settings.provider_api_key:
            raise ValueError("SCRIBEFLOW_PROVIDER_API_KEY is required for the assemblyai provider")
        client = ResilientRemoteClient.from_settings(
            settings,
            headers={"authorization": settings.provider_api_key},
            **client_kwargs,
        )
        return cls(client)

    @property
    def client(self) -> ResilientRemoteClient:
        return self._client

    async def aclose(self) -> None:
        await self._client.aclose()

    async def upload(self, audio_path: Path, progress: ProgressCallback) -> str:
        total = await asyncio.to_thread(os.path.getsize, audio_path)

        async def body() -> AsyncIterator[bytes]:
            sent = 0
            progress(0.0)
            handle = await asyncio.to_thread(open, audio_path, "rb")
            try:
                while chunk := await asyncio.to_thread(handle.read, _UPLOAD_CHUNK_BYTES):
                    sent += len(chunk)
                    yield chunk
                    if total:
                        progress(sent * 100.0 / total)
            finally:
                await asyncio.to_thread(handle.close)

        response = await self._client.request(
            "POST",
            "/upload",
            headers={"content-type": "application/octet-stream"},
            content_factory=body,
        )
        upload_url = response.json().get("upload_url")
        if not upload_url:
            raise ProviderRejection("Provider upload response did not include upload_url")
        progress(100.0)
        return upload_url

    async def submit(self, upload_url: str, options: TranscriptionOptions) -> str:
        payload = {"audio_url": upload_url, "speaker_labels": options.speaker_labels, **options.extra}
        if options.language_code:
            payload["language_code"] = options.language_code
        response = await self._client.request("POST", "/transcript", json=payload)
        remote_job_id = response.json().get("id")
        if not remote_job_id:
            raise ProviderRejection("Provider submit response did not include a transcript id")
        logger.info(
            "assemblyai.submitted remote_job_id=%s",
            safe_log_identifier(remote_job_id, prefix="rjob"),
        )
        return remote_job_id

    async def get_status(self, remote_job_id: str) -> ProviderStatus:
        response = await self._client.request("GET", f"/transcript/{remote_job_id}")
        body = response.json()
        status = body.get("status")
        if status not in _KNOWN_STATUSES:
            raise ProviderRejection(f"Provider reported unknown transcript status {status!r}")
        return ProviderStatus(
            phase=status,
            percent=100.0 if status == "completed" else None,
            error=body.get("error"),
        )

    async def download_result(self, remote_job_id: str, out_path: Path, progress: ProgressCallback) -> bool:
        received = await self._client.download(f"/transcript/{remote_job_id}", Path(out_path), progress=progress)
        return received > 0

    async def cancel(self, remote_job_id: str) -> bool:
        try:
            await self._client.request("DELETE", f"/transcript/{remote_job_id}")
        except ProviderRejection as exc:
            logger.warning(
                "assemblyai.cancel_rejected remote_job_id=%s status=%s",
                safe_log_identifier(remote_job_id, prefix="rjob"),
                exc.status_code,
            )
            return False
        return True
