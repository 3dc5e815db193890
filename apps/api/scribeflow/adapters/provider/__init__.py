"""Transcription provider adapters."""

from .assemblyai import AssemblyAIProvider
from .base import TranscriptionProvider
from .mock_provider import MockProvider

__all__ = [
    "AssemblyAIProvider",
    "MockProvider",
    "TranscriptionProvider",
]
