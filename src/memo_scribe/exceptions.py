"""Exception types for memo-scribe."""

from __future__ import annotations

__all__ = [
    "ConversionFailure",
    "FileSystemFailure",
    "MemoScribeError",
    "TranscriptionConnectivityFailure",
    "TranscriptionError",
    "TranscriptionMalformedResponse",
    "TranscriptionRateLimited",
    "TranscriptionSkipped",
]


class MemoScribeError(RuntimeError):
    """Base class for failures attributable to a single source file."""

    def __init__(self, message: str, *, source_filename: str | None = None) -> None:
        super().__init__(message)
        self.source_filename = source_filename


class ConversionFailure(MemoScribeError):
    """Raised when audio could not be normalised into the staging area."""


class TranscriptionError(MemoScribeError):
    """Base class for transcription endpoint failures."""


class TranscriptionRateLimited(TranscriptionError):
    """The transcription host answered with HTTP 429."""


class TranscriptionConnectivityFailure(TranscriptionError):
    """The transcription host was unreachable, timed out or returned a non-success status."""


class TranscriptionMalformedResponse(TranscriptionError):
    """The transcription host returned a payload that could not be interpreted."""


class FileSystemFailure(MemoScribeError):
    """Raised when the composed note or its audio could not be placed on disk."""


class TranscriptionSkipped(Exception):
    """
    Raised by a pipeline stage to stop processing an item without marking it
    complete or failed (e.g. the transcription came back without any segments).
    """

    pass
