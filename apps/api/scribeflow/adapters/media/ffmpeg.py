"""ffmpeg-backed media toolkit."""

from __future__ import annotations

from collections.abc import Callable
import hashlib
import logging
from pathlib import Path
import re
import shutil
import subprocess

from scribeflow.adapters.media.base import MediaToolkit, ProgressCallback
from scribeflow.errors import InputError, PipelineError
from scribeflow.schemas.provider import SilencePeriod

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_OUT_TIME_RE = re.compile(r"^out_time_(?:us|ms)=(\d+)$")
_SILENCE_START_RE = re.compile(r"silence_start:\s*(-?\d+(?:\.\d+)?)")
_SILENCE_END_RE = re.compile(r"silence_end:\s*(-?\d+(?:\.\d+)?)")


class FfmpegMediaToolkit(MediaToolkit):
    def __init__(self, ffmpeg_path: str = "ffmpeg") -> None:
        self.ffmpeg_path = ffmpeg_path

    def _executable(self) -> str:
        resolved = shutil.which(self.ffmpeg_path)
        if resolved is None:
            raise PipelineError(f"ffmpeg not found at {self.ffmpeg_path!r}; install ffmpeg and try again")
        return resolved

    def detect_silence(
        self,
        path: Path,
        threshold_db: float,
        min_duration_sec: float,
        progress: ProgressCallback,
    ) -> list[SilencePeriod]:
        source = _existing_input(path)
        cmd = [
            self._executable(),
            "-hide_banner",
            "-nostats",
            "-i", str(source),
            "-af", f"silencedetect=noise={threshold_db:g}dB:d={min_duration_sec:g}",
            "-f", "null",
            "-progress", "pipe:2",
            "-",
        ]
        periods: list[SilencePeriod] = []
        pending_start: float | None = None

        def on_line(line: str) -> None:
            nonlocal pending_start
            start = _SILENCE_START_RE.search(line)
            if start:
                pending_start = max(0.0, float(start.group(1)))
                return
            end = _SILENCE_END_RE.search(line)
            if end and pending_start is not None:
                periods.append(SilencePeriod(start=pending_start, end=float(end.group(1))))
                pending_start = None

        duration = self._run(cmd, progress, on_line, operation="silence_detection", source=source)
        if pending_start is not None and duration:
            # Trailing silence runs to the end of the media without a silence_end line.
            periods.append(SilencePeriod(start=pending_start, end=duration))
        logger.info("media.silence_detected file=%s periods=%s", source.name, len(periods))
        return periods

    def extract_audio(self, path: Path, output_dir: Path, progress: ProgressCallback) -> Path:
        source = _existing_input(path)
        output_dir.mkdir(parents=True, exist_ok=True)
        digest = hashlib.sha256(str(source).encode("utf-8")).hexdigest()[:8]
        output = output_dir / f"{source.stem}_{digest}.wav"
        cmd = [
            self._executable(),
            "-hide_banner",
            "-nostats",
            "-y",
            "-i", str(source),
            "-vn",
            "-ac", "1",
            "-ar", "16000",
            "-c:a", "pcm_s16le",
            "-progress", "pipe:2",
            str(output),
        ]
        self._run(cmd, progress, None, operation="audio_extraction", source=source)
        if not output.exists() or output.stat().st_size == 0:
            raise PipelineError(f"ffmpeg reported success but produced no audio for {source.name}")
        return output

    def _run(
        self,
        cmd: list[str],
        progress: ProgressCallback,
        on_line: Callable[[str], None] | None,
        *,
        operation: str,
        source: Path,
    ) -> float | None:
        """Run ffmpeg, feeding progress from ``-progress`` output; returns media duration."""
        duration: float | None = None
        tail: list[str] = []
        progress(0.0)
        with subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        ) as proc:
            assert proc.stderr is not None
            for raw in proc.stderr:
                line = raw.strip()
                if not line:
                    continue
                tail = (tail + [line])[-20:]
                if duration is None:
                    match = _DURATION_RE.search(line)
                    if match:
                        hours, minutes, seconds = match.groups()
                        duration = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
                        continue
                out_time = _OUT_TIME_RE.match(line)
                if out_time and duration:
                    # ffmpeg reports both out_time_us and out_time_ms in microseconds.
                    progress(min(100.0, int(out_time.group(1)) / 1_000_000 / duration * 100.0))
                    continue
                if on_line is not None:
                    on_line(line)
            returncode = proc.wait()
        if returncode != 0:
            logger.warning(
                "media.ffmpeg_failed operation=%s file=%s returncode=%s",
                operation,
                source.name,
                returncode,
            )
            raise PipelineError(f"ffmpeg {operation} failed for {source.name}: {' | '.join(tail[-3:])}")
        progress(100.0)
        return duration


def _existing_input(path: Path) -> Path:
    source = Path(path).expanduser().resolve()
    if not source.is_file():
        raise InputError(f"Media file not found: {source.name}")
    return source
