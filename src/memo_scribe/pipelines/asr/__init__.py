"""Transcription client and transcript segment types."""

from __future__ import annotations

from .segments import (
    SEGMENT_FIELDS,
    SegmentFormatError,
    TranscriptionResult,
    TranscriptSegment,
    normalise_segment,
)
from .transcription_api import TranscriptionClient, build_transcription_client

__all__ = [
    "SEGMENT_FIELDS",
    "SegmentFormatError",
    "TranscriptSegment",
    "TranscriptionClient",
    "TranscriptionResult",
    "build_transcription_client",
    "normalise_segment",
]
