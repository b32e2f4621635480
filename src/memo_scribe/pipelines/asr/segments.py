"""Canonical transcript segment types and wire-format normalisation."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

__all__ = [
    "SEGMENT_FIELDS",
    "SegmentFormatError",
    "TranscriptSegment",
    "TranscriptionResult",
    "normalise_segment",
]

# Order of the positional wire form; never reorder.
SEGMENT_FIELDS = (
    "id",
    "seek",
    "start",
    "end",
    "text",
    "tokens",
    "temperature",
    "avg_logprob",
    "compression_ratio",
    "no_speech_prob",
)


class SegmentFormatError(ValueError):
    """Raised when a segment is neither the positional nor the named form."""


def _coerce_float(value: object | None, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return default
    return default


def _coerce_int(value: object | None, default: int = 0) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            try:
                return int(float(value))
            except ValueError:
                return default
    return default


@dataclass(frozen=True, slots=True)
class TranscriptSegment:
    """A single transcribed segment."""

    sequence_id: int
    seek_offset: int
    start_time: float
    end_time: float
    text: str
    token_ids: tuple[int, ...] = ()
    temperature: float = 0.0
    avg_log_prob: float = 0.0
    compression_ratio: float = 0.0
    no_speech_prob: float = 0.0


@dataclass(frozen=True, slots=True)
class TranscriptionResult:
    """Parsed transcription response."""

    text: str = ""
    language: str | None = None
    segments: tuple[TranscriptSegment, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.segments


def normalise_segment(raw: object) -> TranscriptSegment:
    """Turn either wire representation into a :class:`TranscriptSegment`.

    Long transcripts arrive as 10 element arrays; short snippets may arrive as
    objects keyed by the same field names.
    """
    if isinstance(raw, Mapping):
        if "text" not in raw:
            raise SegmentFormatError("Named segment is missing 'text'.")
        values = {name: raw.get(name) for name in SEGMENT_FIELDS}
    elif isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)):
        if len(raw) != len(SEGMENT_FIELDS):
            raise SegmentFormatError(
                f"Positional segment has {len(raw)} fields, expected {len(SEGMENT_FIELDS)}."
            )
        values = dict(zip(SEGMENT_FIELDS, raw))
    else:
        raise SegmentFormatError(f"Unsupported segment type {type(raw).__name__}.")

    text = values["text"]
    tokens = values["tokens"]
    token_ids: tuple[int, ...] = ()
    if isinstance(tokens, Sequence) and not isinstance(tokens, (str, bytes)):
        token_ids = tuple(_coerce_int(token) for token in tokens)

    return TranscriptSegment(
        sequence_id=_coerce_int(values["id"]),
        seek_offset=_coerce_int(values["seek"]),
        start_time=_coerce_float(values["start"]),
        end_time=_coerce_float(values["end"]),
        text=str(text) if text is not None else "",
        token_ids=token_ids,
        temperature=_coerce_float(values["temperature"]),
        avg_log_prob=_coerce_float(values["avg_logprob"]),
        compression_ratio=_coerce_float(values["compression_ratio"]),
        no_speech_prob=_coerce_float(values["no_speech_prob"]),
    )
