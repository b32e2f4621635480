"""Client for the hosted transcription endpoint."""

from __future__ import annotations

import time
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import BinaryIO, ClassVar

import requests
from requests import Response, Session

from ...config.settings import ServiceSettings
from ...exceptions import (
    TranscriptionConnectivityFailure,
    TranscriptionMalformedResponse,
    TranscriptionRateLimited,
)
from ...storage.naming import FileDetail
from ...utils.logging import get_logger
from ..convert import CLIENT_ID_HEADER
from .segments import SegmentFormatError, TranscriptionResult, normalise_segment

LOGGER = get_logger(__name__)

__all__ = [
    "API_KEY_HEADER",
    "CLIENT_ID_HEADER",
    "TranscriptionClient",
    "build_transcription_client",
]

API_KEY_HEADER = "obsidian-api-key"
TRANSCRIBE_PATH = "/transcribe"


class TranscriptionClient:
    """Submits staged audio to the transcription host and normalises the response."""

    RATE_LIMIT_STATUS: ClassVar[int] = 429
    RETRY_STATUS_CODES: ClassVar[set[int]] = {500, 502, 503, 504}

    def __init__(self, settings: ServiceSettings, *, session: Session | None = None) -> None:
        self.settings = settings
        self._session = session or requests.Session()

    def transcribe(self, audio: FileDetail, *, source_filename: str | None = None) -> TranscriptionResult:
        """Transcribe a staged audio file.

        ``source_filename`` names the original memo in raised errors; it
        defaults to the staged filename.
        """
        attributed = source_filename or audio.filename
        audio_path = Path(audio.filepath)
        mimetype = f"audio/{audio.extension.lstrip('.') or 'mpeg'}"

        try:
            audio_handle = audio_path.open("rb")
        except OSError as exc:
            raise TranscriptionConnectivityFailure(
                f'Could not read staged audio for "{attributed}": {exc}',
                source_filename=attributed,
            ) from exc

        with audio_handle:
            files = {"audio_file": (audio.filename, audio_handle, mimetype)}
            response = self._post_with_retries(files=files, source_filename=attributed)

        payload = self._parse_response(response, attributed)
        return self._to_transcription_result(payload, attributed)

    # ------------------------------------------------------------------
    # HTTP utilities
    # ------------------------------------------------------------------
    def _post_with_retries(
        self,
        *,
        files: Mapping[str, tuple[str, BinaryIO, str]],
        source_filename: str,
    ) -> Response:
        url = f"{self.settings.endpoint}{TRANSCRIBE_PATH}"
        headers = self._build_headers()
        attempts = 0
        backoff = 1.0
        last_error: Exception | None = None

        while attempts <= self.settings.max_retries:
            try:
                response = self._session.post(
                    url,
                    files=files,
                    headers=headers,
                    timeout=self.settings.transcription_timeout_seconds,
                )
            except requests.RequestException as exc:
                last_error = exc
                LOGGER.warning("Transcription request for %s failed (%s).", source_filename, exc)
            else:
                if response.status_code == self.RATE_LIMIT_STATUS:
                    raise TranscriptionRateLimited(
                        f'Transcription limit reached while processing "{source_filename}".',
                        source_filename=source_filename,
                    )
                if 200 <= response.status_code < 300:
                    return response
                if response.status_code not in self.RETRY_STATUS_CODES:
                    raise TranscriptionConnectivityFailure(
                        f'Transcription host responded with status {response.status_code} '
                        f'for "{source_filename}".',
                        source_filename=source_filename,
                    )
                last_error = TranscriptionConnectivityFailure(
                    f"Received retryable status {response.status_code}.",
                    source_filename=source_filename,
                )
                LOGGER.warning(
                    "Transcription host returned %s for %s.",
                    response.status_code,
                    source_filename,
                )
            attempts += 1
            if attempts > self.settings.max_retries:
                break
            self._rewind(files)
            time.sleep(backoff)
            backoff = min(backoff * 2, 30.0)

        raise TranscriptionConnectivityFailure(
            f'Error connecting to transcription host for "{source_filename}".',
            source_filename=source_filename,
        ) from last_error

    def _build_headers(self) -> dict[str, str]:
        headers = {CLIENT_ID_HEADER: self.settings.client_id}
        api_key = self.settings.api_key()
        if api_key:
            headers[API_KEY_HEADER] = api_key
        return headers

    @staticmethod
    def _rewind(files: Mapping[str, tuple[str, BinaryIO, str]]) -> None:
        for _, handle, _ in files.values():
            handle.seek(0)

    # ------------------------------------------------------------------
    # Response handling
    # ------------------------------------------------------------------
    @staticmethod
    def _parse_response(response: Response, source_filename: str) -> Mapping[str, object]:
        if not response.content:
            # An empty body is treated as an empty transcript, not an error.
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise TranscriptionMalformedResponse(
                f'Unable to decode transcription response for "{source_filename}".',
                source_filename=source_filename,
            ) from exc
        if data is None:
            return {}
        if not isinstance(data, Mapping):
            raise TranscriptionMalformedResponse(
                f'Transcription host returned a non-object payload for "{source_filename}".',
                source_filename=source_filename,
            )
        return {str(key): value for key, value in data.items()}

    @staticmethod
    def _to_transcription_result(
        payload: Mapping[str, object],
        source_filename: str,
    ) -> TranscriptionResult:
        raw_segments = payload.get("segments")
        segments: Iterable[object]
        if raw_segments is None:
            segments = ()
        elif isinstance(raw_segments, list):
            segments = raw_segments
        else:
            raise TranscriptionMalformedResponse(
                f'Transcription segments for "{source_filename}" are not a list.',
                source_filename=source_filename,
            )

        try:
            parsed = tuple(normalise_segment(raw) for raw in segments)
        except SegmentFormatError as exc:
            raise TranscriptionMalformedResponse(
                f'Malformed transcription segment for "{source_filename}": {exc}',
                source_filename=source_filename,
            ) from exc

        text_raw = payload.get("text")
        language_raw = payload.get("language")
        return TranscriptionResult(
            text=str(text_raw) if text_raw is not None else "",
            language=str(language_raw) if isinstance(language_raw, str) and language_raw else None,
            segments=parsed,
        )


def build_transcription_client(
    settings: ServiceSettings,
    *,
    session: Session | None = None,
) -> TranscriptionClient:
    """Factory helper mirroring the converter construction."""
    return TranscriptionClient(settings, session=session)
