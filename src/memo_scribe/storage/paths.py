"""Helpers for deriving canonical filesystem paths from configuration."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

__all__ = ["AUDIO_SUBDIRECTORY", "PathsConfig", "build_paths"]

# Location of audio files relative to the note that embeds them.
AUDIO_SUBDIRECTORY = "audio"


def _normalize_path(value: str | Path, *, relative_to: Path | None = None) -> Path:
    """Return an absolute path, interpreting relative paths from ``relative_to``."""
    path = Path(value)
    if not path.is_absolute() and relative_to is not None:
        path = relative_to / path
    return path.expanduser().resolve()


@dataclass(frozen=True, slots=True)
class PathsConfig:
    """Resolved filesystem paths used throughout the project."""

    project_root: Path
    watch_directory: Path
    output_directory: Path
    cache_directory: Path
    logs_dir: Path

    def ensure_directories(self) -> None:
        """Create directories that should always exist."""
        for directory in (
            self.watch_directory,
            self.output_directory,
            self.cache_directory,
            self.logs_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    # Convenience helpers -------------------------------------------------
    def staging_path(self, filename: str) -> Path:
        """Temporary location of converted audio before consolidation."""
        return self.cache_directory / filename

    def relative_subdirectory(self, source_directory: str | Path) -> Path:
        """Return where ``source_directory`` sits below the watch directory.

        Sources outside the watch directory map to the output root.
        """
        source = Path(source_directory).expanduser().resolve()
        try:
            return source.relative_to(self.watch_directory)
        except ValueError:
            return Path()

    def note_directory(self, source_directory: str | Path) -> Path:
        """Directory a note is written to, mirroring the watch directory layout."""
        return self.output_directory / self.relative_subdirectory(source_directory)

    def audio_directory(self, source_directory: str | Path) -> Path:
        """Directory the consolidated audio lands in, next to its note."""
        return self.note_directory(source_directory) / AUDIO_SUBDIRECTORY


def build_paths(config: Mapping[str, object]) -> PathsConfig:
    """Construct a :class:`PathsConfig` from the parsed configuration."""
    paths_section = config.get("paths")
    if not isinstance(paths_section, Mapping):
        raise ValueError("Configuration is missing the 'paths' section.")

    project_root_raw = paths_section.get("project_root", ".")
    project_root = _normalize_path(project_root_raw)

    def resolve(key: str, default: str | None = None) -> Path:
        raw_value = paths_section.get(key, default)
        if raw_value is None:
            raise ValueError(f"Configuration 'paths.{key}' is required.")
        return _normalize_path(raw_value, relative_to=project_root)

    return PathsConfig(
        project_root=project_root,
        watch_directory=resolve("watch_directory"),
        output_directory=resolve("output_directory"),
        cache_directory=resolve("cache_directory"),
        logs_dir=resolve("logs_dir", "logs"),
    )
