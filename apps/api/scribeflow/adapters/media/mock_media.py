"""Mock media toolkit for local development and tests."""

from __future__ import annotations

from pathlib import Path
import shutil

from scribeflow.adapters.media.base import MediaToolkit, ProgressCallback
from scribeflow.errors import InputError
from scribeflow.schemas.provider import SilencePeriod


class MockMediaToolkit(MediaToolkit):
    """Deterministic toolkit: reports no silence and copies the input as its audio track."""

    def __init__(self, silences: list[SilencePeriod] | None = None) -> None:
        self.silences = list(silences or [])
        self.calls: list[tuple[str, str]] = []

    def detect_silence(
        self,
        path: Path,
        threshold_db: float,
        min_duration_sec: float,
        progress: ProgressCallback,
    ) -> list[SilencePeriod]:
        source = Path(path)
        if not source.is_file():
            raise InputError(f"Media file not found: {source.name}")
        self.calls.append(("detect_silence", source.name))
        for percent in (0.0, 50.0, 100.0):
            progress(percent)
        return [period for period in self.silences if period.duration >= min_duration_sec]

    def extract_audio(self, path: Path, output_dir: Path, progress: ProgressCallback) -> Path:
        source = Path(path)
        if not source.is_file():
            raise InputError(f"Media file not found: {source.name}")
        self.calls.append(("extract_audio", source.name))
        output_dir.mkdir(parents=True, exist_ok=True)
        progress(0.0)
        output = output_dir / f"{source.stem}.audio{source.suffix}"
        shutil.copyfile(source, output)
        progress(100.0)
        return output
