"""Discover untranscribed memos below the watch directory."""

from __future__ import annotations

import os
import random
from collections.abc import Callable, Collection, Iterable
from pathlib import Path

from ..utils.logging import get_logger
from .dedup import DedupIndex, TranscriptionCandidate
from .naming import SUPPORTED_AUDIO_EXTENSIONS, extract_file_detail
from .paths import PathsConfig

LOGGER = get_logger(__name__)

__all__ = ["DEFAULT_BATCH_SIZE", "CandidateScanner"]

# Hashing is the expensive part of a scan, so each pass is capped.
DEFAULT_BATCH_SIZE = 24


class CandidateScanner:
    """Walks the watch directory and returns a bounded batch of new candidates."""

    def __init__(
        self,
        paths: PathsConfig,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        shuffle: bool = True,
        hasher: Callable[[str], str] | None = None,
        rng: random.Random | None = None,
        extensions: Iterable[str] = SUPPORTED_AUDIO_EXTENSIONS,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1.")
        self.paths = paths
        self.batch_size = batch_size
        self.shuffle = shuffle
        self._hasher = hasher
        self._rng = rng or random.Random()
        self._extensions = frozenset(ext.lower() for ext in extensions)

    def list_files(self) -> list[str]:
        """Return every supported audio file below the watch directory."""
        root = self.paths.watch_directory
        if not root.is_dir():
            LOGGER.warning("Watch directory %s does not exist.", root)
            return []

        found: list[str] = []
        for directory, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for filename in sorted(filenames):
                path = Path(directory) / filename
                if not path.is_file():
                    continue
                if extract_file_detail(filename).extension.lower() not in self._extensions:
                    continue
                found.append(str(path))
        return found

    def build_index(self) -> DedupIndex:
        return DedupIndex.from_output_directory(self.paths.output_directory, hasher=self._hasher)

    def scan(self, skip_digests: Collection[str] = ()) -> list[TranscriptionCandidate]:
        """Return up to ``batch_size`` candidates that have no note yet.

        Candidates whose digest is in ``skip_digests`` are already tracked by
        the caller; they are dropped without counting toward the batch cap.
        """
        paths = self.list_files()
        if self.shuffle:
            # Avoid retrying the same head-of-list file after it failed.
            self._rng.shuffle(paths)

        index = self.build_index()
        pending: list[TranscriptionCandidate] = []
        seen: set[str] = set()
        for filepath in paths:
            if len(pending) >= self.batch_size:
                break
            candidate = self._resolve(index, filepath)
            if candidate is None or candidate.already_transcribed:
                continue
            digest = candidate.content_digest
            if digest in skip_digests or digest in seen:
                continue
            seen.add(digest)
            pending.append(candidate)

        LOGGER.info(
            "Scanned %d files in %s; %d awaiting transcription.",
            len(paths),
            self.paths.watch_directory,
            len(pending),
        )
        return pending

    def resolve_path(
        self,
        filepath: str | os.PathLike[str],
        *,
        index: DedupIndex | None = None,
    ) -> TranscriptionCandidate | None:
        """Resolve a single path, e.g. one reported by a filesystem watch event.

        Returns ``None`` for unsupported files and files that vanished.
        """
        detail = extract_file_detail(filepath)
        if detail.extension.lower() not in self._extensions:
            return None
        return self._resolve(index or self.build_index(), detail.filepath)

    @staticmethod
    def _resolve(index: DedupIndex, filepath: str) -> TranscriptionCandidate | None:
        try:
            return index.resolve(filepath)
        except OSError as exc:
            LOGGER.warning("Could not read %s: %s", filepath, exc)
            return None
