"""Transcription provider interfaces."""

from abc import ABC, abstractmethod
from pathlib import Path

from scribeflow.adapters.media.base import ProgressCallback
from scribeflow.schemas.provider import ProviderStatus, TranscriptionOptions


class TranscriptionProvider(ABC):
    """Provider-neutral remote transcription interface.

    Failures surface as ``TransientRemoteError`` (after resilience policies are exhausted)
    or ``ProviderRejection``.
    """

    @abstractmethod
    async def upload(self, audio_path: Path, progress: ProgressCallback) -> str:
        """Upload local audio and return a provider URL referencing it."""

    @abstractmethod
    async def submit(self, upload_url: str, options: TranscriptionOptions) -> str:
        """Start transcription of uploaded audio and return the remote job id."""

    @abstractmethod
    async def get_status(self, remote_job_id: str) -> ProviderStatus:
        """Return the provider's current view of a remote job."""

    @abstractmethod
    async def download_result(self, remote_job_id: str, out_path: Path, progress: ProgressCallback) -> bool:
        """Write the finished transcript document to ``out_path``."""

    @abstractmethod
    async def cancel(self, remote_job_id: str) -> bool:
        """Ask the provider to abandon a remote job; False when it refused."""

    async def aclose(self) -> None:
        return None


__all__ = ["TranscriptionProvider"]
