"""Media toolkit adapters."""

from .base import MediaToolkit, ProgressCallback
from .ffmpeg import FfmpegMediaToolkit
from .mock_media import MockMediaToolkit

__all__ = [
    "FfmpegMediaToolkit",
    "MediaToolkit",
    "MockMediaToolkit",
    "ProgressCallback",
]
