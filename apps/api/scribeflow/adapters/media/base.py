"""Media toolkit interfaces."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

from scribeflow.schemas.provider import SilencePeriod

ProgressCallback = Callable[[float], None]


class MediaToolkit(ABC):
    """Local media operations run before a file is sent to the provider.

    Implementations are blocking; callers run them in a worker thread.
    """

    @abstractmethod
    def detect_silence(
        self,
        path: Path,
        threshold_db: float,
        min_duration_sec: float,
        progress: ProgressCallback,
    ) -> list[SilencePeriod]:
        """Return silent spans of at least ``min_duration_sec`` below ``threshold_db``."""

    @abstractmethod
    def extract_audio(self, path: Path, output_dir: Path, progress: ProgressCallback) -> Path:
        """Write the audio track of ``path`` into ``output_dir`` and return its location."""


__all__ = ["MediaToolkit", "ProgressCallback"]
