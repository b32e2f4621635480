"""Configuration loading helpers."""

from __future__ import annotations

from .load import ConfigError, load_config
from .settings import (
    NoteSettings,
    PipelineSettings,
    ScribeSettings,
    ServiceSettings,
    load_settings,
)

__all__ = [
    "ConfigError",
    "NoteSettings",
    "PipelineSettings",
    "ScribeSettings",
    "ServiceSettings",
    "load_config",
    "load_settings",
]
