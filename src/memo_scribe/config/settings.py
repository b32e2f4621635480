"""Typed views over the parsed configuration mapping."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from ..storage.paths import PathsConfig, build_paths
from .load import ConfigError, load_config

__all__ = [
    "DEFAULT_CATEGORY_MAP",
    "NoteSettings",
    "PipelineSettings",
    "ScribeSettings",
    "ServiceSettings",
    "load_settings",
]

DEFAULT_CATEGORY_MAP: Mapping[str, str] = MappingProxyType(
    {
        "LN": "Life Note",
        "IN": "Insight",
        "DR": "Dream",
        "RM": "Ramble",
    }
)

AUDIO_OUTPUT_EXTENSIONS = ("mp3", "wav")


def _section(config: Mapping[str, object], key: str) -> Mapping[str, Any]:
    value = config.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise TypeError(f"Configuration '{key}' must be a mapping.")
    return value


def _optional_str(value: object | None) -> str | None:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


@dataclass(frozen=True, slots=True)
class ServiceSettings:
    """Connection details for the remote conversion and transcription host."""

    public_endpoint: str
    self_hosted: bool = False
    self_hosted_endpoint: str | None = None
    api_key_env: str = "VOX_API_KEY"
    client_id: str = "memo-scribe"
    conversion_timeout_seconds: float = 300.0
    transcription_timeout_seconds: float = 20 * 60.0
    max_retries: int = 0

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> ServiceSettings:
        section = _section(config, "service")
        endpoint = _optional_str(section.get("public_endpoint"))
        if endpoint is None:
            raise ValueError("Configuration 'service.public_endpoint' is required.")
        return cls(
            public_endpoint=endpoint,
            self_hosted=bool(section.get("self_hosted", False)),
            self_hosted_endpoint=_optional_str(section.get("self_hosted_endpoint")),
            api_key_env=str(section.get("api_key_env", "VOX_API_KEY")),
            client_id=str(section.get("client_id", "memo-scribe")),
            conversion_timeout_seconds=float(section.get("conversion_timeout_seconds", 300.0)),
            transcription_timeout_seconds=float(
                section.get("transcription_timeout_seconds", 20 * 60.0)
            ),
            max_retries=int(section.get("max_retries", 0)),
        )

    @property
    def endpoint(self) -> str:
        """Base URL requests are sent to, honouring the self-hosting switch."""
        if self.self_hosted:
            if not self.self_hosted_endpoint:
                raise ValueError("Self-hosting is enabled but no self_hosted_endpoint is set.")
            return self.self_hosted_endpoint.rstrip("/")
        return self.public_endpoint.rstrip("/")

    def api_key(self) -> str:
        return os.environ.get(self.api_key_env, "")


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Scheduling knobs for the transcription queue."""

    max_workers: int = 8
    batch_size: int = 24
    shuffle: bool = True
    refill_on_idle: bool = True
    scan_interval_seconds: float = 60.0

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> PipelineSettings:
        section = _section(config, "pipeline")
        max_workers = int(section.get("max_workers", 8))
        batch_size = int(section.get("batch_size", 24))
        if max_workers < 1:
            raise ValueError("pipeline.max_workers must be at least 1.")
        if batch_size < 1:
            raise ValueError("pipeline.batch_size must be at least 1.")
        return cls(
            max_workers=max_workers,
            batch_size=batch_size,
            shuffle=bool(section.get("shuffle", True)),
            refill_on_idle=bool(section.get("refill_on_idle", True)),
            scan_interval_seconds=float(section.get("scan_interval_seconds", 60.0)),
        )


@dataclass(frozen=True, slots=True)
class NoteSettings:
    """Options that shape the generated markdown notes."""

    audio_output_extension: str = "mp3"
    delete_original: bool = False
    extract_tags: bool = True
    tags: tuple[str, ...] = ()
    tag_limit: int = 5
    use_category_maps: bool = False
    category_map: Mapping[str, str] = field(default_factory=lambda: DEFAULT_CATEGORY_MAP)
    title_prefix: str = "TXC"

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> NoteSettings:
        section = _section(config, "notes")
        extension = str(section.get("audio_output_extension", "mp3")).lstrip(".").lower()
        if extension not in AUDIO_OUTPUT_EXTENSIONS:
            raise ValueError(
                f"notes.audio_output_extension must be one of {AUDIO_OUTPUT_EXTENSIONS}, "
                f"got {extension!r}."
            )

        raw_map = section.get("category_map")
        if raw_map is None:
            category_map = DEFAULT_CATEGORY_MAP
        elif isinstance(raw_map, Mapping):
            category_map = MappingProxyType({str(k): str(v) for k, v in raw_map.items()})
        else:
            raise TypeError("Configuration 'notes.category_map' must be a mapping.")

        raw_tags = section.get("tags") or ()
        return cls(
            audio_output_extension=extension,
            delete_original=bool(section.get("delete_original", False)),
            extract_tags=bool(section.get("extract_tags", True)),
            tags=tuple(str(tag) for tag in raw_tags),
            tag_limit=int(section.get("tag_limit", 5)),
            use_category_maps=bool(section.get("use_category_maps", False)),
            category_map=category_map,
            title_prefix=str(section.get("title_prefix", "TXC")),
        )

    @property
    def output_suffix(self) -> str:
        return f".{self.audio_output_extension}"


@dataclass(frozen=True, slots=True)
class ScribeSettings:
    """Complete, immutable configuration snapshot handed to the scheduler."""

    paths: PathsConfig
    service: ServiceSettings
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    notes: NoteSettings = field(default_factory=NoteSettings)
    logging: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> ScribeSettings:
        return cls(
            paths=build_paths(config),
            service=ServiceSettings.from_config(config),
            pipeline=PipelineSettings.from_config(config),
            notes=NoteSettings.from_config(config),
            logging=MappingProxyType(dict(_section(config, "logging"))),
        )


def load_settings(
    env: str = "dev",
    *,
    config_dir: str | Path | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> ScribeSettings:
    """Load, validate and type the configuration for ``env``."""
    try:
        config = load_config(env, config_dir=config_dir, overrides=overrides)
    except FileNotFoundError as exc:
        raise ConfigError(str(exc)) from exc
    try:
        return ScribeSettings.from_config(config)
    except (TypeError, ValueError) as exc:
        raise ConfigError(str(exc)) from exc
