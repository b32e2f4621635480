"""Resolve whether a source memo already has a transcribed note.

Resolution is two-tier and the order matters: the filename recorded in a
note's front matter is checked first because it costs no file read, and the
content digest is only computed on a miss. The digest tier survives renames
and changes to the staged-filename scheme.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from ..utils.logging import get_logger
from .front_matter import FrontMatterError, parse_front_matter
from .hashing import ContentHasher
from .naming import FileDetail, extract_file_detail

LOGGER = get_logger(__name__)

__all__ = [
    "ORIGINAL_FILE_HASH_KEY",
    "ORIGINAL_FILE_NAME_KEY",
    "DedupIndex",
    "TranscribedItem",
    "TranscriptionCandidate",
    "read_transcribed_items",
]

ORIGINAL_FILE_NAME_KEY = "original_file_name"
ORIGINAL_FILE_HASH_KEY = "original_file_hash"

Hasher = Callable[[str], str]


@dataclass(frozen=True, slots=True)
class TranscribedItem:
    """Identity of a source memo as recorded in an output note."""

    original_file_name: str
    original_file_hash: str


@dataclass(frozen=True, slots=True)
class TranscriptionCandidate:
    """A source file together with its resolved dedup verdict."""

    detail: FileDetail
    content_digest: str
    already_transcribed: bool

    @property
    def filename(self) -> str:
        return self.detail.filename

    @property
    def filepath(self) -> str:
        return self.detail.filepath


def read_transcribed_items(output_directory: str | os.PathLike[str]) -> list[TranscribedItem]:
    """Collect the identities recorded in every note below ``output_directory``."""
    root = Path(output_directory)
    if not root.is_dir():
        return []

    items: list[TranscribedItem] = []
    for note_path in sorted(root.rglob("*.md")):
        if not note_path.is_file():
            continue
        try:
            data, _ = parse_front_matter(note_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, FrontMatterError) as exc:
            LOGGER.debug("Skipping note %s: %s", note_path, exc)
            continue

        name = data.get(ORIGINAL_FILE_NAME_KEY)
        digest = data.get(ORIGINAL_FILE_HASH_KEY)
        if name is None and digest is None:
            continue
        items.append(
            TranscribedItem(
                original_file_name=str(name) if name is not None else "",
                original_file_hash=str(digest) if digest is not None else "",
            )
        )
    return items


class DedupIndex:
    """Lookup of already transcribed memos by original filename and digest."""

    def __init__(
        self,
        items: Iterable[TranscribedItem],
        *,
        hasher: Hasher | None = None,
    ) -> None:
        self._hasher: Hasher = hasher or ContentHasher()
        self._by_name: dict[str, str] = {}
        self._digests: set[str] = set()
        for item in items:
            if item.original_file_name:
                # First note wins when several record the same source name.
                self._by_name.setdefault(item.original_file_name, item.original_file_hash)
            if item.original_file_hash:
                self._digests.add(item.original_file_hash)

    @classmethod
    def from_output_directory(
        cls,
        output_directory: str | os.PathLike[str],
        *,
        hasher: Hasher | None = None,
    ) -> DedupIndex:
        items = read_transcribed_items(output_directory)
        LOGGER.debug("Dedup index built from %d notes in %s", len(items), output_directory)
        return cls(items, hasher=hasher)

    def __len__(self) -> int:
        return len(self._by_name.keys() | self._digests)

    def resolve(self, filepath: str | os.PathLike[str]) -> TranscriptionCandidate:
        """Return ``filepath`` as a candidate with its transcribed verdict and digest."""
        detail = extract_file_detail(filepath)

        recorded_digest = self._by_name.get(detail.filename)
        if recorded_digest is not None:
            return TranscriptionCandidate(
                detail=detail,
                content_digest=recorded_digest,
                already_transcribed=True,
            )

        # The digest is needed either way: to match renamed files, or to be
        # recorded in the note on first transcription.
        digest = self._hasher(detail.filepath)
        return TranscriptionCandidate(
            detail=detail,
            content_digest=digest,
            already_transcribed=digest in self._digests,
        )
