"""Global pytest fixtures for memo-scribe."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from memo_scribe.config.settings import (
    NoteSettings,
    PipelineSettings,
    ScribeSettings,
    ServiceSettings,
)
from memo_scribe.storage.paths import PathsConfig


@pytest.fixture
def scribe_paths(tmp_path: Path) -> PathsConfig:
    """Vault-like layout with the watch directory nested below the output root."""
    root = tmp_path.resolve()
    paths = PathsConfig(
        project_root=root,
        watch_directory=root / "Voice" / "unprocessed",
        output_directory=root / "Voice",
        cache_directory=root / ".cache",
        logs_dir=root / "logs",
    )
    paths.ensure_directories()
    return paths


@pytest.fixture
def make_settings(scribe_paths: PathsConfig) -> Callable[..., ScribeSettings]:
    """Build settings rooted in ``tmp_path``; keyword arguments override note options."""

    def factory(
        *,
        pipeline: PipelineSettings | None = None,
        service: ServiceSettings | None = None,
        **note_overrides: Any,
    ) -> ScribeSettings:
        return ScribeSettings(
            paths=scribe_paths,
            service=service or ServiceSettings(public_endpoint="http://vox.test"),
            pipeline=pipeline or PipelineSettings(max_workers=2, shuffle=False),
            notes=replace(NoteSettings(), **note_overrides),
        )

    return factory
