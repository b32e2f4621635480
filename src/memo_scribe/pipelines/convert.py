"""Normalise source memos into the configured output format in the staging area."""

from __future__ import annotations

import shutil
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import requests
from requests import Response, Session

from ..config.settings import ScribeSettings
from ..exceptions import ConversionFailure
from ..storage.naming import (
    SUPPORTED_AUDIO_EXTENSIONS,
    FileDetail,
    clean_audio_filename,
    extract_file_detail,
    file_creation_datetime,
)
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

__all__ = ["CLIENT_ID_HEADER", "AudioConverter"]

CLIENT_ID_HEADER = "obsidian-vault-id"
CONVERT_PATH = "/convert/audio"


class AudioConverter:
    """Stages a source memo as ``<date>-<clean-name>.<ext>`` in the cache directory.

    Files already in the target format are copied; anything else is sent to
    the remote conversion endpoint and the returned bytes are written instead.
    """

    def __init__(
        self,
        settings: ScribeSettings,
        *,
        session: Session | None = None,
        recorded_at: Callable[[str], datetime] = file_creation_datetime,
    ) -> None:
        self.settings = settings
        self._session = session or requests.Session()
        self._recorded_at = recorded_at

    def staged_detail(self, source: FileDetail) -> FileDetail:
        """Return where ``source`` will be staged, without touching the disk."""
        notes = self.settings.notes
        stem = clean_audio_filename(
            source,
            self._recorded_at(source.filepath),
            notes.category_map,
        )
        staged = self.settings.paths.staging_path(f"{stem}{notes.output_suffix}")
        return extract_file_detail(str(staged))

    def convert(self, source: FileDetail) -> FileDetail:
        """Stage ``source`` and return the staged file's identity."""
        extension = source.extension.lower()
        if not extension or extension not in SUPPORTED_AUDIO_EXTENSIONS:
            raise ConversionFailure(
                f'Not an audio file or unsupported format: "{source.filename}"',
                source_filename=source.filename,
            )

        try:
            staged = self.staged_detail(source)
            staged.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConversionFailure(
                f'Could not stage "{source.filename}": {exc}',
                source_filename=source.filename,
            ) from exc

        if extension == self.settings.notes.output_suffix:
            return self._copy(source, staged)
        return self._convert_remote(source, staged)

    def _copy(self, source: FileDetail, staged: FileDetail) -> FileDetail:
        if staged.path.exists():
            LOGGER.debug("Staged copy of %s already present.", source.filename)
            return staged
        try:
            shutil.copy2(source.filepath, staged.filepath)
        except OSError as exc:
            raise ConversionFailure(
                f'Could not copy "{source.filename}" into the staging area: {exc}',
                source_filename=source.filename,
            ) from exc
        return staged

    def _convert_remote(self, source: FileDetail, staged: FileDetail) -> FileDetail:
        target_format = self.settings.notes.audio_output_extension
        LOGGER.info('Converting audio file "%s" to %s.', source.filename, target_format)

        response = self._post(source, target_format)
        if response.status_code != 200 or not response.content:
            raise ConversionFailure(
                f'There was an error converting "{source.filename}" '
                f"(status {response.status_code}).",
                source_filename=source.filename,
            )

        try:
            staged.path.write_bytes(response.content)
        except OSError as exc:
            raise ConversionFailure(
                f'Could not write converted audio for "{source.filename}": {exc}',
                source_filename=source.filename,
            ) from exc
        return staged

    def _post(self, source: FileDetail, target_format: str) -> Response:
        service = self.settings.service
        url = f"{service.endpoint}{CONVERT_PATH}"
        mimetype = f"audio/{target_format}"
        try:
            with Path(source.filepath).open("rb") as audio_handle:
                return self._session.post(
                    url,
                    data={"format": target_format},
                    files={"audio_file": (source.filename, audio_handle, mimetype)},
                    headers={CLIENT_ID_HEADER: service.client_id},
                    timeout=service.conversion_timeout_seconds,
                )
        except (OSError, requests.RequestException) as exc:
            raise ConversionFailure(
                f'There was an error converting "{source.filename}": {exc}',
                source_filename=source.filename,
            ) from exc
