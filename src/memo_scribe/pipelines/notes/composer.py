"""Compose markdown notes with front matter from a transcript."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ...config.settings import NoteSettings
from ...storage.dedup import ORIGINAL_FILE_HASH_KEY, ORIGINAL_FILE_NAME_KEY
from ...storage.front_matter import render_front_matter
from ...storage.naming import FileDetail, file_creation_datetime
from ...storage.paths import AUDIO_SUBDIRECTORY
from ...utils.categorize import categorize_voice_memo, strip_category_prefix
from ...utils.logging import get_logger
from ...utils.tags import extract_tags
from ..asr.segments import TranscriptionResult

LOGGER = get_logger(__name__)

__all__ = [
    "MARKDOWN_DATE_FORMAT",
    "PARAGRAPH_PERIOD",
    "MarkdownNote",
    "NoteComposer",
    "render_transcript_body",
    "start_case",
]

MARKDOWN_DATE_FORMAT = "%Y-%m-%d %H:%M"
NOTE_TYPE = "transcribed"
TRANSCRIBED_TAG = "#transcribed"

# A sentence-ending segment starts a new paragraph when its index is a multiple of this.
PARAGRAPH_PERIOD = 8

_APOSTROPHE_RE = re.compile("['\u2019]")
# Runs of letters and digits in any script; case and digit boundaries are split afterwards.
_CHUNK_RE = re.compile(r"[^\W_]+")


@dataclass(frozen=True, slots=True)
class MarkdownNote:
    title: str
    content: str

    @property
    def filename(self) -> str:
        return f"{self.title}.md"


def _split_chunk(chunk: str) -> list[str]:
    words: list[str] = []
    start = 0
    for index in range(1, len(chunk)):
        previous, current = chunk[index - 1], chunk[index]
        following = chunk[index + 1 : index + 2]
        if (
            previous.isdigit() != current.isdigit()
            or (previous.islower() and current.isupper())
            or (previous.isupper() and current.isupper() and following.islower())
        ):
            words.append(chunk[start:index])
            start = index
    words.append(chunk[start:])
    return words


def start_case(text: str) -> str:
    """Split ``text`` into words and capitalise each one.

    Apostrophes are dropped before splitting so contractions stay one word.

    >>> start_case("my-day at theZoo")
    'My Day At The Zoo'
    >>> start_case("don't forget the Café")
    'Dont Forget The Café'
    """
    words = (
        word
        for chunk in _CHUNK_RE.findall(_APOSTROPHE_RE.sub("", text))
        for word in _split_chunk(chunk)
    )
    return " ".join(word[0].upper() + word[1:] for word in words)


def render_transcript_body(transcript: TranscriptionResult) -> str:
    """Join segment texts, opening a paragraph after periodic sentence ends."""
    parts: list[str] = []
    for index, segment in enumerate(transcript.segments):
        text = segment.text.strip()
        parts.append(f"{text} ")
        if text.endswith(".") and index % PARAGRAPH_PERIOD == 0:
            parts.append("\n\n")
    return "".join(parts)


class NoteComposer:
    """Builds the markdown note for a transcribed memo.

    Output is deterministic for a given original file, staged audio,
    transcript and settings; ``recorded_at`` and ``clock`` are injectable so
    the two timestamps can be pinned.
    """

    def __init__(
        self,
        settings: NoteSettings,
        *,
        recorded_at: Callable[[str], datetime] = file_creation_datetime,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings
        self._recorded_at = recorded_at
        self._clock = clock

    def build_title(self, original: FileDetail, recorded_at: datetime) -> str:
        tidy = strip_category_prefix(original.name, self.settings.category_map).strip()
        date_part = recorded_at.strftime("%Y-%m-%d")
        prefix = self.settings.title_prefix.strip()
        head = f"{prefix} - {date_part}" if prefix else date_part
        name = start_case(tidy)
        return f"{head} {name}" if name else head

    def compose(
        self,
        original: FileDetail,
        staged_audio: FileDetail,
        content_digest: str,
        transcript: TranscriptionResult,
    ) -> MarkdownNote:
        LOGGER.info("Generating markdown content: %s", original.filename)

        recorded_at = self._recorded_at(original.filepath)
        title = self.build_title(original, recorded_at)

        body: list[str] = [f"\n# {title}\n\n"]
        if self.settings.extract_tags:
            text = transcript.text or " ".join(segment.text for segment in transcript.segments)
            tags = [TRANSCRIBED_TAG, *extract_tags(text, self.settings.tags, self.settings.tag_limit)]
            body.append(f"{' '.join(tags)}\n\n")

        body.append(f"![](./{AUDIO_SUBDIRECTORY}/{staged_audio.filename})\n\n")
        body.append(render_transcript_body(transcript))

        front_matter: dict[str, Any] = {
            "title": title,
            "type": NOTE_TYPE,
            "recorded_at": recorded_at.strftime(MARKDOWN_DATE_FORMAT),
            "transcribed_at": self._clock().strftime(MARKDOWN_DATE_FORMAT),
            ORIGINAL_FILE_NAME_KEY: original.filename,
            ORIGINAL_FILE_HASH_KEY: content_digest,
        }

        if self.settings.use_category_maps:
            categorization = categorize_voice_memo(original.name, self.settings.category_map)
            front_matter["importance"] = categorization.importance
            front_matter["voice_memo_category"] = (
                categorization.category.label if categorization.category else "none"
            )

        return MarkdownNote(title=title, content=render_front_matter(front_matter, "".join(body)))
