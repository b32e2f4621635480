"""Helpers for deriving file identities and canonical names for staged audio."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ..utils.categorize import strip_category_prefix

__all__ = [
    "FILENAME_DATE_FORMAT",
    "SUPPORTED_AUDIO_EXTENSIONS",
    "FileDetail",
    "clean_audio_filename",
    "extract_file_detail",
    "file_creation_datetime",
]

FILENAME_DATE_FORMAT = "%Y%m%d-%H%M"

SUPPORTED_AUDIO_EXTENSIONS = frozenset({".wav", ".mp3", ".m4a", ".aac", ".ogg"})

_FILE_EXTENSION_RE = re.compile(r"\.[A-Za-z0-9]{1,6}$")
_SEPARATORS = tuple(sep for sep in (os.sep, os.altsep, "/") if sep)


@dataclass(frozen=True, slots=True)
class FileDetail:
    """Structural identity of a file derived purely from its path."""

    name: str
    filename: str
    extension: str
    directory: str
    filepath: str

    @property
    def path(self) -> Path:
        return Path(self.filepath)


def extract_file_detail(filepath: str | os.PathLike[str]) -> FileDetail:
    """Split a path into name, filename, extension and directory.

    ``directory + filename`` always reconstructs the input, and the function
    never raises; degenerate inputs simply produce empty components.
    """
    filepath = os.fspath(filepath)
    cut = max(filepath.rfind(sep) for sep in _SEPARATORS) + 1
    filename = filepath[cut:]
    directory = filepath[:cut]

    match = _FILE_EXTENSION_RE.search(filepath)
    extension = match.group(0) if match else ""
    name = filename[: len(filename) - len(extension)] if extension else filename

    return FileDetail(
        name=name,
        filename=filename,
        extension=extension,
        directory=directory,
        filepath=filepath,
    )


def file_creation_datetime(filepath: str | os.PathLike[str]) -> datetime:
    """Return the earliest of the file's change and modification times."""
    stats = os.stat(filepath)
    return datetime.fromtimestamp(min(stats.st_ctime, stats.st_mtime))


def clean_audio_filename(
    detail: FileDetail,
    recorded_at: datetime,
    category_map: Mapping[str, str],
) -> str:
    """Return a filesystem friendly stem prefixed with the recording time.

    >>> clean_audio_filename(extract_file_detail("AAAA i caught a BIG fish.m4a"),
    ...                      datetime(2021, 7, 15, 2, 2), {})
    '20210715-0202-i-caught-a-big-fish'
    """
    # Order matters: prefixes must be stripped before whitespace is replaced.
    cleaned = strip_category_prefix(detail.name, category_map)
    cleaned = re.sub(r"[\s,]", "-", cleaned)
    cleaned = cleaned.replace("---", "-").strip().lower()
    return f"{recorded_at.strftime(FILENAME_DATE_FORMAT)}-{cleaned}"
