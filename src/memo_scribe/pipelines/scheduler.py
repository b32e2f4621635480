"""Bounded-concurrency scheduler driving memos through the transcription pipeline."""

from __future__ import annotations

import itertools
import shutil
import threading
from collections import Counter, OrderedDict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any

import requests
from requests import Session

from ..config.settings import ScribeSettings
from ..exceptions import (
    ConversionFailure,
    FileSystemFailure,
    TranscriptionConnectivityFailure,
    TranscriptionMalformedResponse,
    TranscriptionRateLimited,
    TranscriptionSkipped,
)
from ..storage.dedup import TranscriptionCandidate
from ..storage.naming import FileDetail
from ..storage.scanner import CandidateScanner
from ..utils.logging import get_logger
from .asr import TranscriptionClient, TranscriptionResult
from .convert import AudioConverter
from .notes import MarkdownNote, NoteComposer

LOGGER = get_logger(__name__)

__all__ = [
    "DEFAULT_STAGES",
    "PipelineContext",
    "PipelineJob",
    "PipelineScheduler",
    "PipelineState",
    "QueueItem",
    "QueueItemStatus",
    "StageDefinition",
    "Subscription",
    "build_context",
]

StateListener = Callable[["PipelineState"], None]
NoticeHandler = Callable[[str], None]


class QueueItemStatus(str, Enum):
    """Lifecycle states for a queued memo."""

    QUEUED = "queued"
    PROCESSING_AUDIO = "processing_audio"
    TRANSCRIBING = "transcribing"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueItemStatus.COMPLETE, QueueItemStatus.FAILED)


@dataclass(frozen=True, slots=True)
class QueueItem:
    """Status record for one memo, keyed by its content digest."""

    identity_hash: str
    details: FileDetail
    status: QueueItemStatus
    added_at: datetime
    finalized_at: datetime | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class PipelineState:
    """Read-only snapshot handed to subscribers."""

    running: bool
    items: Mapping[str, QueueItem]
    in_flight: frozenset[str] = frozenset()

    def counts(self) -> dict[QueueItemStatus, int]:
        tally = Counter(item.status for item in self.items.values())
        return {status: tally.get(status, 0) for status in QueueItemStatus}

    def active(self) -> list[QueueItem]:
        """Items currently held by a worker."""
        return [self.items[digest] for digest in self.in_flight if digest in self.items]


@dataclass(slots=True)
class PipelineContext:
    """Configuration snapshot and stage collaborators captured by each job at dispatch."""

    settings: ScribeSettings
    converter: AudioConverter
    transcriber: TranscriptionClient
    composer: NoteComposer
    scanner: CandidateScanner | None = None


@dataclass(slots=True)
class PipelineJob:
    """Working state for one memo while a worker runs its stages."""

    candidate: TranscriptionCandidate
    context: PipelineContext
    staged_audio: FileDetail | None = None
    transcript: TranscriptionResult | None = None
    note: MarkdownNote | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def filename(self) -> str:
        return self.candidate.filename


StageRunner = Callable[[PipelineJob], "str | None"]


@dataclass(frozen=True, slots=True)
class StageDefinition:
    """A single pipeline stage; ``status`` is recorded before the runner starts."""

    name: str
    runner: StageRunner
    status: QueueItemStatus | None = None


class Subscription:
    """Handle returned by :meth:`PipelineScheduler.subscribe`."""

    def __init__(self, scheduler: PipelineScheduler, token: int) -> None:
        self._scheduler = scheduler
        self._token = token
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if self._active:
            self._scheduler._remove_listener(self._token)
            self._active = False

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.unsubscribe()


def _log_notice(message: str) -> None:
    LOGGER.info("%s", message)


def build_context(
    settings: ScribeSettings,
    *,
    session: Session | None = None,
) -> PipelineContext:
    """Wire the default HTTP-backed collaborators for ``settings``."""
    session = session or requests.Session()
    return PipelineContext(
        settings=settings,
        converter=AudioConverter(settings, session=session),
        transcriber=TranscriptionClient(settings.service, session=session),
        composer=NoteComposer(settings.notes),
        scanner=CandidateScanner(
            settings.paths,
            batch_size=settings.pipeline.batch_size,
            shuffle=settings.pipeline.shuffle,
        ),
    )


class PipelineScheduler:
    """Runs memos through Convert -> Transcribe -> Compose -> Consolidate.

    A fixed pool of worker threads pulls from a FIFO of queued candidates.
    The scheduler is the single writer of the status map: every mutation and
    every listener notification happens while holding ``_lock``, so listeners
    observe each item's transitions in order.
    """

    def __init__(
        self,
        settings: ScribeSettings,
        *,
        context_factory: Callable[[ScribeSettings], PipelineContext] = build_context,
        stages: Iterable[StageDefinition] | None = None,
        max_workers: int | None = None,
        refill_on_idle: bool | None = None,
        notice_handler: NoticeHandler | None = None,
    ) -> None:
        self._context_factory = context_factory
        self._context = context_factory(settings)
        self._stages = list(stages or DEFAULT_STAGES)
        self._notice = notice_handler or _log_notice
        self._refill_override = refill_on_idle
        self._refill_on_idle = self._resolve_refill_on_idle(settings)

        self._lock = threading.Condition(threading.RLock())
        self._pending: OrderedDict[str, TranscriptionCandidate] = OrderedDict()
        self._in_flight: set[str] = set()
        self._skipped: set[str] = set()
        self._items: dict[str, QueueItem] = {}
        self._listeners: dict[int, StateListener] = {}
        self._listener_ids = itertools.count()
        self._running = True
        self._shutdown = False

        width = max_workers if max_workers is not None else settings.pipeline.max_workers
        if width < 1:
            raise ValueError("max_workers must be at least 1.")
        self._workers = [
            threading.Thread(
                target=self._worker_loop,
                name=f"transcription-worker-{idx}",
                daemon=True,
            )
            for idx in range(width)
        ]
        for worker in self._workers:
            worker.start()

    # ------------------------------------------------------------------ #
    # Observability
    # ------------------------------------------------------------------ #
    @property
    def settings(self) -> ScribeSettings:
        with self._lock:
            return self._context.settings

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def state(self) -> PipelineState:
        with self._lock:
            return self._snapshot()

    @property
    def max_workers(self) -> int:
        return len(self._workers)

    def subscribe(self, listener: StateListener) -> Subscription:
        """Register ``listener`` for a snapshot after every transition."""
        with self._lock:
            token = next(self._listener_ids)
            self._listeners[token] = listener
        return Subscription(self, token)

    def _remove_listener(self, token: int) -> None:
        with self._lock:
            self._listeners.pop(token, None)

    # ------------------------------------------------------------------ #
    # Queue management
    # ------------------------------------------------------------------ #
    def enqueue(self, candidate: TranscriptionCandidate) -> bool:
        """Admit a single candidate; returns whether new work was scheduled."""
        return self.enqueue_many([candidate]) == 1

    def enqueue_many(self, candidates: Iterable[TranscriptionCandidate]) -> int:
        """Admit candidates without blocking; returns how many were newly scheduled."""
        admitted = 0
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Scheduler has been shut down.")
            for candidate in candidates:
                if self._admit(candidate):
                    admitted += 1
            if admitted:
                self._lock.notify_all()

        if admitted:
            plural = "s" if admitted > 1 else ""
            self._notice(f"Added {admitted} file{plural} to the transcription queue.")
        return admitted

    def enqueue_path(self, filepath: str | Path) -> bool:
        """Resolve and admit a single path, e.g. from a filesystem watch event."""
        scanner = self._context.scanner
        if scanner is None:
            raise RuntimeError("No scanner configured for this scheduler.")
        candidate = scanner.resolve_path(filepath)
        if candidate is None or candidate.already_transcribed:
            return False
        return self.enqueue(candidate)

    def refill(self) -> int:
        """Scan the watch directory and enqueue the next batch of new memos."""
        with self._lock:
            scanner = self._context.scanner
            skip = self._tracked_digests()
        if scanner is None:
            return 0
        candidates = scanner.scan(skip_digests=skip)
        if not candidates:
            return 0
        return self.enqueue_many(candidates)

    def pause(self) -> None:
        """Stop dispatching new work; in-flight items run to completion."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            LOGGER.info("Transcription queue paused.")
            self._emit()

    def resume(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            LOGGER.info("Transcription queue resumed.")
            self._lock.notify_all()
            self._emit()

    def stop(self) -> int:
        """Drop all queued work that has not started; returns how many were dropped."""
        with self._lock:
            dropped = len(self._pending)
            self._pending.clear()
            self._lock.notify_all()
        if dropped:
            LOGGER.info("Dropped %d queued item(s).", dropped)
        return dropped

    def reset(self, settings: ScribeSettings) -> None:
        """Swap in new settings and drop queued work so the next scan re-evaluates it.

        Items already running keep the context they were dispatched with. The
        worker pool width is fixed at construction.
        """
        context = self._context_factory(settings)
        with self._lock:
            self._context = context
            self._refill_on_idle = self._resolve_refill_on_idle(settings)
            dropped = len(self._pending)
            self._pending.clear()
            self._lock.notify_all()
        LOGGER.info("Scheduler reconfigured; dropped %d queued item(s).", dropped)

    def _resolve_refill_on_idle(self, settings: ScribeSettings) -> bool:
        if self._refill_override is not None:
            return self._refill_override
        return settings.pipeline.refill_on_idle

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Block until no item is running and nothing dispatchable is queued."""
        with self._lock:
            return self._lock.wait_for(
                lambda: not self._in_flight and (not self._pending or not self._running),
                timeout,
            )

    def shutdown(self, *, wait: bool = True, timeout: float | None = None) -> None:
        with self._lock:
            self._shutdown = True
            self._pending.clear()
            self._lock.notify_all()
        if wait:
            for worker in self._workers:
                worker.join(timeout)

    # ------------------------------------------------------------------ #
    # State bookkeeping (call with ``_lock`` held)
    # ------------------------------------------------------------------ #
    def _admit(self, candidate: TranscriptionCandidate) -> bool:
        if candidate.already_transcribed:
            LOGGER.debug("Skipping %s; already transcribed.", candidate.filename)
            return False

        digest = candidate.content_digest
        existing = self._items.get(digest)
        if existing is not None and existing.status.is_terminal:
            LOGGER.debug("Skipping %s; already %s this session.", candidate.filename, existing.status.value)
            return False
        if digest in self._in_flight:
            LOGGER.debug("Skipping %s; already being processed.", candidate.filename)
            return False
        if digest in self._pending:
            # Same content seen under another path: keep one queue entry, latest path wins.
            self._pending[digest] = candidate
            self._record(candidate, QueueItemStatus.QUEUED)
            return False

        self._skipped.discard(digest)
        self._pending[digest] = candidate
        self._record(candidate, QueueItemStatus.QUEUED)
        return True

    def _record(
        self,
        candidate: TranscriptionCandidate,
        status: QueueItemStatus,
        *,
        error: str | None = None,
    ) -> None:
        digest = candidate.content_digest
        existing = self._items.get(digest)
        if existing is not None and existing.status.is_terminal:
            return

        now = datetime.now()
        finalized_at = now if status.is_terminal else None
        if existing is None:
            item = QueueItem(
                identity_hash=digest,
                details=candidate.detail,
                status=status,
                added_at=now,
                finalized_at=finalized_at,
                error=error,
            )
        else:
            item = replace(
                existing,
                details=candidate.detail,
                status=status,
                finalized_at=finalized_at,
                error=error,
            )
        self._items[digest] = item
        self._emit()

    def _tracked_digests(self) -> frozenset[str]:
        terminal = {digest for digest, item in self._items.items() if item.status.is_terminal}
        return frozenset(terminal | self._in_flight | self._skipped | set(self._pending))

    def _snapshot(self) -> PipelineState:
        return PipelineState(
            running=self._running,
            items=MappingProxyType(dict(self._items)),
            in_flight=frozenset(self._in_flight),
        )

    def _emit(self) -> None:
        if not self._listeners:
            return
        snapshot = self._snapshot()
        for listener in list(self._listeners.values()):
            try:
                listener(snapshot)
            except Exception:
                LOGGER.exception("State listener %r raised.", listener)

    # ------------------------------------------------------------------ #
    # Worker execution
    # ------------------------------------------------------------------ #
    def _worker_loop(self) -> None:
        while True:
            with self._lock:
                while not self._shutdown and (not self._running or not self._pending):
                    self._lock.wait()
                if self._shutdown:
                    return
                digest, candidate = self._pending.popitem(last=False)
                self._in_flight.add(digest)
                context = self._context

            try:
                self._execute(candidate, context)
            finally:
                with self._lock:
                    self._in_flight.discard(digest)
                    drained = not self._pending and not self._in_flight
                    should_refill = (
                        drained and self._refill_on_idle and self._running and not self._shutdown
                    )
                    self._lock.notify_all()

            if should_refill:
                self._refill_when_idle()

    def _refill_when_idle(self) -> None:
        try:
            self.refill()
        except Exception:
            LOGGER.exception("Idle re-scan of the watch directory failed.")

    def _set_status(
        self,
        candidate: TranscriptionCandidate,
        status: QueueItemStatus,
        *,
        error: str | None = None,
    ) -> None:
        with self._lock:
            self._record(candidate, status, error=error)

    def _execute(self, candidate: TranscriptionCandidate, context: PipelineContext) -> None:
        job = PipelineJob(candidate=candidate, context=context)
        filename = candidate.filename

        try:
            for stage in self._stages:
                if stage.status is not None:
                    self._set_status(candidate, stage.status)
                message = stage.runner(job)
                if message:
                    LOGGER.debug("[%s] %s: %s", stage.name, filename, message)
        except TranscriptionSkipped as exc:
            # Left at its last status; rescans ignore it until enqueued explicitly.
            with self._lock:
                self._skipped.add(candidate.content_digest)
            LOGGER.warning("%s", exc)
            return
        except TranscriptionRateLimited as exc:
            self.pause()
            self._set_status(candidate, QueueItemStatus.FAILED, error=str(exc))
            self._notice(
                f'You\'ve reached your transcription limit while processing "{filename}". '
                "The queue has been paused."
            )
            return
        except (TranscriptionConnectivityFailure, TranscriptionMalformedResponse) as exc:
            LOGGER.warning("Transcription failed for %s: %s", filename, exc)
            self._set_status(candidate, QueueItemStatus.FAILED, error=str(exc))
            self._notice(
                f'Error transcribing "{filename}". Please check your transcription host settings.'
            )
            return
        except ConversionFailure as exc:
            LOGGER.warning("Conversion failed for %s: %s", filename, exc)
            self._set_status(candidate, QueueItemStatus.FAILED, error=str(exc))
            self._notice(f'There was an error converting audio: "{filename}"')
            return
        except FileSystemFailure as exc:
            LOGGER.error("Could not save output for %s: %s", filename, exc)
            self._set_status(candidate, QueueItemStatus.FAILED, error=str(exc))
            self._notice(f'Could not save the transcription of "{filename}".')
            return
        except Exception as exc:
            LOGGER.exception("Unexpected failure while processing %s", filename)
            self._set_status(candidate, QueueItemStatus.FAILED, error=str(exc))
            self._notice(f'There was an issue transcribing "{filename}".')
            return

        self._set_status(candidate, QueueItemStatus.COMPLETE)
        title = job.note.title if job.note else filename
        LOGGER.info("Transcription complete: %s", title)
        self._notice(f"Transcription complete: {title}")


# ---------------------------------------------------------------------- #
# Default stage implementations
# ---------------------------------------------------------------------- #
def _stage_convert_audio(job: PipelineJob) -> str:
    job.staged_audio = job.context.converter.convert(job.candidate.detail)
    return f"Staged audio at {job.staged_audio.filepath}"


def _stage_transcribe_audio(job: PipelineJob) -> str:
    if job.staged_audio is None:
        raise ValueError("Staged audio missing; ensure the conversion stage runs first.")

    transcript = job.context.transcriber.transcribe(
        job.staged_audio,
        source_filename=job.filename,
    )
    if transcript.is_empty:
        job.staged_audio.path.unlink(missing_ok=True)
        raise TranscriptionSkipped(
            f'No transcript segments returned for "{job.filename}"; nothing was written.'
        )
    job.transcript = transcript
    return f"Transcription produced {len(transcript.segments)} segments."


def _stage_compose_note(job: PipelineJob) -> str:
    if job.staged_audio is None or job.transcript is None:
        raise ValueError("Missing staged audio or transcript for note composition.")

    job.note = job.context.composer.compose(
        job.candidate.detail,
        job.staged_audio,
        job.candidate.content_digest,
        job.transcript,
    )
    return f"Composed note {job.note.filename}"


def _stage_consolidate_files(job: PipelineJob) -> str:
    """Move staged audio next to its note, write the note, optionally drop the source."""
    if job.staged_audio is None or job.note is None:
        raise ValueError("Missing staged audio or note for consolidation.")

    settings = job.context.settings
    original = job.candidate.detail
    note_directory = settings.paths.note_directory(original.directory)
    audio_directory = settings.paths.audio_directory(original.directory)

    try:
        note_directory.mkdir(parents=True, exist_ok=True)
        audio_directory.mkdir(parents=True, exist_ok=True)

        # A stale file can remain when a note was deleted but its audio survived.
        final_audio = audio_directory / job.staged_audio.filename
        if final_audio.exists():
            final_audio.unlink()
        shutil.move(job.staged_audio.filepath, final_audio)

        note_path = note_directory / job.note.filename
        note_path.write_text(job.note.content, encoding="utf-8")

        if settings.notes.delete_original:
            Path(original.filepath).unlink(missing_ok=True)
    except OSError as exc:
        raise FileSystemFailure(
            f'Could not save transcription for "{original.filename}": {exc}',
            source_filename=original.filename,
        ) from exc

    job.metadata["audio_path"] = str(final_audio)
    job.metadata["note_path"] = str(note_path)
    return f"Wrote {note_path}"


DEFAULT_STAGES = [
    StageDefinition("Convert Audio", _stage_convert_audio, QueueItemStatus.PROCESSING_AUDIO),
    StageDefinition("Transcribe Audio", _stage_transcribe_audio, QueueItemStatus.TRANSCRIBING),
    StageDefinition("Compose Note", _stage_compose_note),
    StageDefinition("Consolidate Files", _stage_consolidate_files),
]
