"""Content digests used as rename-resistant file identities."""

from __future__ import annotations

import hashlib
import os

__all__ = ["ContentHasher"]

_CHUNK_SIZE = 65536


class ContentHasher:
    """Computes the SHA-1 hex digest of a file's bytes.

    SHA-1 matches the digests already recorded in existing notes'
    ``original_file_hash`` front matter, so it must not change.
    """

    algorithm = "sha1"

    def digest(self, filepath: str | os.PathLike[str]) -> str:
        """Stream the file in 64kb chunks and return its hex digest."""
        file_hash = hashlib.new(self.algorithm)
        with open(filepath, "rb") as handle:
            for block in iter(lambda: handle.read(_CHUNK_SIZE), b""):
                file_hash.update(block)
        return file_hash.hexdigest()

    def __call__(self, filepath: str | os.PathLike[str]) -> str:
        return self.digest(filepath)
