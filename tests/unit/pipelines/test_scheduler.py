"""Tests for the transcription scheduler."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from memo_scribe.config.settings import PipelineSettings, ScribeSettings
from memo_scribe.exceptions import ConversionFailure, TranscriptionRateLimited
from memo_scribe.pipelines.asr.segments import TranscriptionResult, TranscriptSegment
from memo_scribe.pipelines.notes import NoteComposer
from memo_scribe.pipelines.scheduler import (
    PipelineContext,
    PipelineJob,
    PipelineScheduler,
    PipelineState,
    QueueItemStatus,
    StageDefinition,
)
from memo_scribe.storage.dedup import TranscriptionCandidate
from memo_scribe.storage.naming import FileDetail, extract_file_detail, file_creation_datetime
from memo_scribe.storage.scanner import CandidateScanner

ACTIVE = {QueueItemStatus.PROCESSING_AUDIO, QueueItemStatus.TRANSCRIBING}


def candidate(name: str, digest: str | None = None, *, transcribed: bool = False) -> TranscriptionCandidate:
    return TranscriptionCandidate(
        detail=extract_file_detail(f"/memos/{name}"),
        content_digest=digest or f"digest-{name}",
        already_transcribed=transcribed,
    )


def null_context(settings: ScribeSettings) -> PipelineContext:
    return PipelineContext(settings=settings, converter=None, transcriber=None, composer=None)  # type: ignore[arg-type]


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def collapse(statuses: list[QueueItemStatus]) -> list[QueueItemStatus]:
    collapsed: list[QueueItemStatus] = []
    for status in statuses:
        if not collapsed or collapsed[-1] is not status:
            collapsed.append(status)
    return collapsed


class FakeConverter:
    def __init__(self, settings: ScribeSettings) -> None:
        self.settings = settings

    def convert(self, source: FileDetail) -> FileDetail:
        staged = self.settings.paths.staging_path(f"staged-{source.name}.mp3")
        staged.write_bytes(b"converted audio")
        return extract_file_detail(staged)


class FakeTranscriber:
    def __init__(self, result: TranscriptionResult) -> None:
        self.result = result

    def transcribe(self, audio: FileDetail, *, source_filename: str | None = None) -> TranscriptionResult:
        return self.result


def fake_context_factory(result: TranscriptionResult) -> Callable[[ScribeSettings], PipelineContext]:
    def factory(settings: ScribeSettings) -> PipelineContext:
        return PipelineContext(
            settings=settings,
            converter=FakeConverter(settings),  # type: ignore[arg-type]
            transcriber=FakeTranscriber(result),  # type: ignore[arg-type]
            composer=NoteComposer(settings.notes),
            scanner=CandidateScanner(settings.paths, shuffle=False),
        )

    return factory


SPOKEN = TranscriptionResult(
    text="Hello.",
    segments=(TranscriptSegment(sequence_id=0, seek_offset=0, start_time=0.0, end_time=1.0, text="Hello."),),
)


@pytest.fixture
def notices() -> list[str]:
    return []


@pytest.fixture
def build_scheduler(notices: list[str]) -> Iterator[Callable[..., PipelineScheduler]]:
    created: list[PipelineScheduler] = []

    def factory(settings: ScribeSettings, **kwargs: Any) -> PipelineScheduler:
        kwargs.setdefault("context_factory", null_context)
        kwargs.setdefault("refill_on_idle", False)
        kwargs.setdefault("notice_handler", notices.append)
        scheduler = PipelineScheduler(settings, **kwargs)
        created.append(scheduler)
        return scheduler

    yield factory
    for scheduler in created:
        scheduler.shutdown(timeout=5)


def test_concurrency_never_exceeds_worker_bound(make_settings, build_scheduler) -> None:
    lock = threading.Lock()
    running = 0
    peak = 0

    def work(job: PipelineJob) -> None:
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        time.sleep(0.05)
        with lock:
            running -= 1

    observed: list[int] = []
    scheduler = build_scheduler(
        make_settings(),
        stages=[StageDefinition("Work", work, QueueItemStatus.PROCESSING_AUDIO)],
        max_workers=2,
    )
    scheduler.subscribe(
        lambda state: observed.append(sum(1 for item in state.items.values() if item.status in ACTIVE))
    )

    assert scheduler.enqueue_many(candidate(f"m{index}.m4a") for index in range(6)) == 6
    assert scheduler.wait_until_idle(timeout=10)

    assert 1 <= peak <= 2
    assert max(observed) <= 2
    assert scheduler.state.counts()[QueueItemStatus.COMPLETE] == 6


def test_subscribers_see_each_item_transition_in_order(make_settings, build_scheduler) -> None:
    stages = [
        StageDefinition("Convert", lambda job: None, QueueItemStatus.PROCESSING_AUDIO),
        StageDefinition("Transcribe", lambda job: None, QueueItemStatus.TRANSCRIBING),
    ]
    scheduler = build_scheduler(make_settings(), stages=stages, max_workers=3)
    first: list[PipelineState] = []
    second: list[PipelineState] = []
    scheduler.subscribe(first.append)
    scheduler.subscribe(second.append)

    scheduler.enqueue_many([candidate("a.m4a"), candidate("b.m4a")])
    assert scheduler.wait_until_idle(timeout=5)

    for digest in ("digest-a.m4a", "digest-b.m4a"):
        statuses = [state.items[digest].status for state in first if digest in state.items]
        assert collapse(statuses) == [
            QueueItemStatus.QUEUED,
            QueueItemStatus.PROCESSING_AUDIO,
            QueueItemStatus.TRANSCRIBING,
            QueueItemStatus.COMPLETE,
        ]
    assert len(first) == len(second)
    assert first[-1].items["digest-a.m4a"].finalized_at is not None


def test_unsubscribe_stops_notifications(make_settings, build_scheduler) -> None:
    scheduler = build_scheduler(make_settings(), stages=[StageDefinition("Noop", lambda job: None)])
    kept: list[PipelineState] = []
    dropped: list[PipelineState] = []
    scheduler.subscribe(kept.append)
    subscription = scheduler.subscribe(dropped.append)

    subscription.unsubscribe()
    scheduler.enqueue(candidate("a.m4a"))
    assert scheduler.wait_until_idle(timeout=5)

    assert subscription.active is False
    assert dropped == []
    assert kept


def test_rate_limit_fails_item_and_pauses(make_settings, build_scheduler, notices) -> None:
    def work(job: PipelineJob) -> None:
        if job.filename == "b.m4a":
            raise TranscriptionRateLimited("limit reached", source_filename=job.filename)

    scheduler = build_scheduler(
        make_settings(),
        stages=[StageDefinition("Transcribe", work, QueueItemStatus.TRANSCRIBING)],
        max_workers=1,
    )

    scheduler.enqueue_many([candidate("a.m4a"), candidate("b.m4a"), candidate("c.m4a")])
    assert scheduler.wait_until_idle(timeout=5)

    state = scheduler.state
    assert state.running is False
    assert state.items["digest-a.m4a"].status is QueueItemStatus.COMPLETE
    assert state.items["digest-b.m4a"].status is QueueItemStatus.FAILED
    assert state.items["digest-b.m4a"].error == "limit reached"
    assert state.items["digest-c.m4a"].status is QueueItemStatus.QUEUED
    assert any("limit" in notice and "b.m4a" in notice for notice in notices)

    scheduler.resume()
    assert wait_for(lambda: scheduler.state.items["digest-c.m4a"].status is QueueItemStatus.COMPLETE)


@pytest.mark.parametrize(
    ("error", "fragment"),
    [
        (ConversionFailure("bad audio", source_filename="a.m4a"), "converting"),
        (RuntimeError("boom"), "issue"),
    ],
)
def test_failures_mark_item_failed_without_pausing(
    make_settings, build_scheduler, notices, error: Exception, fragment: str
) -> None:
    def work(job: PipelineJob) -> None:
        if job.filename == "a.m4a":
            raise error

    scheduler = build_scheduler(make_settings(), stages=[StageDefinition("Work", work)], max_workers=1)

    scheduler.enqueue_many([candidate("a.m4a"), candidate("b.m4a")])
    assert scheduler.wait_until_idle(timeout=5)

    state = scheduler.state
    assert state.running is True
    assert state.items["digest-a.m4a"].status is QueueItemStatus.FAILED
    assert state.items["digest-b.m4a"].status is QueueItemStatus.COMPLETE
    assert any(fragment in notice and "a.m4a" in notice for notice in notices)


def test_terminal_states_are_sticky_and_digests_merge(make_settings, build_scheduler) -> None:
    processed: list[str] = []
    scheduler = build_scheduler(
        make_settings(),
        stages=[StageDefinition("Work", lambda job: processed.append(job.filename))],
    )
    scheduler.pause()

    original = candidate("a.m4a", "same")
    renamed = candidate("renamed.m4a", "same")
    assert scheduler.enqueue_many([original, renamed]) == 1
    assert list(scheduler.state.items) == ["same"]
    assert scheduler.state.items["same"].details.filename == "renamed.m4a"

    scheduler.resume()
    assert wait_for(lambda: scheduler.state.items["same"].status is QueueItemStatus.COMPLETE)
    assert scheduler.wait_until_idle(timeout=5)

    assert processed == ["renamed.m4a"]
    assert scheduler.enqueue(original) is False
    assert scheduler.state.items["same"].status is QueueItemStatus.COMPLETE


def test_already_transcribed_candidates_are_ignored(make_settings, build_scheduler) -> None:
    scheduler = build_scheduler(make_settings(), stages=[StageDefinition("Noop", lambda job: None)])

    assert scheduler.enqueue(candidate("done.m4a", transcribed=True)) is False
    assert scheduler.state.items == {}


def test_stop_drops_queued_work_only(make_settings, build_scheduler) -> None:
    started = threading.Event()
    release = threading.Event()

    def work(job: PipelineJob) -> None:
        started.set()
        release.wait(5)

    scheduler = build_scheduler(make_settings(), stages=[StageDefinition("Work", work)], max_workers=1)
    scheduler.enqueue_many([candidate("a.m4a"), candidate("b.m4a"), candidate("c.m4a")])
    assert started.wait(5)

    assert scheduler.stop() == 2
    release.set()
    assert scheduler.wait_until_idle(timeout=5)

    state = scheduler.state
    assert state.items["digest-a.m4a"].status is QueueItemStatus.COMPLETE
    assert state.items["digest-b.m4a"].status is QueueItemStatus.QUEUED
    assert state.in_flight == frozenset()

    assert scheduler.enqueue(candidate("b.m4a")) is True
    assert wait_for(lambda: scheduler.state.items["digest-b.m4a"].status is QueueItemStatus.COMPLETE)


def test_reset_applies_new_settings_to_later_dispatches(make_settings, build_scheduler) -> None:
    started = threading.Event()
    release = threading.Event()
    seen: list[ScribeSettings] = []

    def work(job: PipelineJob) -> None:
        seen.append(job.context.settings)
        started.set()
        release.wait(5)

    old = make_settings()
    new = make_settings(title_prefix="NEW")
    scheduler = build_scheduler(old, stages=[StageDefinition("Work", work)], max_workers=1)
    scheduler.enqueue_many([candidate("a.m4a"), candidate("b.m4a")])
    assert started.wait(5)

    scheduler.reset(new)
    release.set()
    assert scheduler.wait_until_idle(timeout=5)

    assert seen == [old]
    assert scheduler.settings is new
    assert scheduler.state.items["digest-b.m4a"].status is QueueItemStatus.QUEUED

    scheduler.enqueue(candidate("b.m4a"))
    assert wait_for(lambda: len(seen) == 2)
    assert seen[-1] is new


class CountingScanner:
    def __init__(self) -> None:
        self.scans = 0

    def scan(self, skip_digests=()):
        self.scans += 1
        return []


def counting_context(scanner: CountingScanner) -> Callable[[ScribeSettings], PipelineContext]:
    def factory(settings: ScribeSettings) -> PipelineContext:
        context = null_context(settings)
        context.scanner = scanner  # type: ignore[assignment]
        return context

    return factory


def test_reset_rereads_refill_on_idle_from_new_settings(make_settings, build_scheduler) -> None:
    scanner = CountingScanner()
    scheduler = build_scheduler(
        make_settings(pipeline=PipelineSettings(max_workers=1, shuffle=False, refill_on_idle=True)),
        context_factory=counting_context(scanner),
        stages=[StageDefinition("Noop", lambda job: None)],
        refill_on_idle=None,
    )

    scheduler.enqueue(candidate("a.m4a"))
    assert wait_for(lambda: scanner.scans == 1)

    scheduler.reset(
        make_settings(pipeline=PipelineSettings(max_workers=1, shuffle=False, refill_on_idle=False))
    )
    scheduler.enqueue(candidate("b.m4a"))
    assert wait_for(lambda: scheduler.state.items["digest-b.m4a"].status is QueueItemStatus.COMPLETE)
    assert scheduler.wait_until_idle(timeout=5)
    time.sleep(0.1)

    assert scanner.scans == 1


def test_explicit_refill_on_idle_survives_reset(make_settings, build_scheduler) -> None:
    scanner = CountingScanner()
    scheduler = build_scheduler(
        make_settings(pipeline=PipelineSettings(max_workers=1, shuffle=False, refill_on_idle=False)),
        context_factory=counting_context(scanner),
        stages=[StageDefinition("Noop", lambda job: None)],
        refill_on_idle=False,
    )

    scheduler.reset(
        make_settings(pipeline=PipelineSettings(max_workers=1, shuffle=False, refill_on_idle=True))
    )
    scheduler.enqueue(candidate("a.m4a"))
    assert wait_for(lambda: scheduler.state.items["digest-a.m4a"].status is QueueItemStatus.COMPLETE)
    assert scheduler.wait_until_idle(timeout=5)
    time.sleep(0.1)

    assert scanner.scans == 0


def test_refill_on_idle_stops_when_nothing_is_admitted(make_settings, build_scheduler) -> None:
    class FakeScanner:
        def __init__(self) -> None:
            self.batches = [[candidate("a.m4a")], [candidate("b.m4a")]]
            self.skips: list[set[str]] = []

        def scan(self, skip_digests=()):
            self.skips.append(set(skip_digests))
            return self.batches.pop(0) if self.batches else []

    scanner = FakeScanner()

    def factory(settings: ScribeSettings) -> PipelineContext:
        context = null_context(settings)
        context.scanner = scanner  # type: ignore[assignment]
        return context

    scheduler = build_scheduler(
        make_settings(),
        context_factory=factory,
        stages=[StageDefinition("Noop", lambda job: None)],
        refill_on_idle=True,
    )

    assert scheduler.refill() == 1
    assert wait_for(lambda: len(scanner.skips) == 3)
    time.sleep(0.1)

    assert len(scanner.skips) == 3
    assert "digest-a.m4a" in scanner.skips[1]
    assert scheduler.state.counts()[QueueItemStatus.COMPLETE] == 2


def test_default_stages_write_note_and_audio(make_settings, build_scheduler, notices) -> None:
    settings = make_settings(delete_original=True, extract_tags=False)
    paths = settings.paths
    source = paths.watch_directory / "trip" / "memo.m4a"
    source.parent.mkdir()
    source.write_bytes(b"original audio")
    recorded = file_creation_datetime(source)

    stale = paths.output_directory / "trip" / "audio" / "staged-memo.mp3"
    stale.parent.mkdir(parents=True)
    stale.write_bytes(b"stale")

    scheduler = build_scheduler(settings, context_factory=fake_context_factory(SPOKEN))
    assert scheduler.refill() == 1
    assert scheduler.wait_until_idle(timeout=5)

    title = f"TXC - {recorded:%Y-%m-%d} Memo"
    note = paths.output_directory / "trip" / f"{title}.md"
    assert note.exists()
    assert "![](./audio/staged-memo.mp3)" in note.read_text(encoding="utf-8")
    assert stale.read_bytes() == b"converted audio"
    assert not (paths.cache_directory / "staged-memo.mp3").exists()
    assert not source.exists()
    assert f"Transcription complete: {title}" in notices
    assert scheduler.state.counts()[QueueItemStatus.COMPLETE] == 1


def test_empty_transcript_is_skipped_silently(make_settings, build_scheduler) -> None:
    settings = make_settings()
    source = settings.paths.watch_directory / "silence.m4a"
    source.write_bytes(b"nothing said")

    scheduler = build_scheduler(settings, context_factory=fake_context_factory(TranscriptionResult()))
    history: list[QueueItemStatus] = []
    scheduler.subscribe(lambda state: history.extend(item.status for item in state.items.values()))

    assert scheduler.refill() == 1
    assert scheduler.wait_until_idle(timeout=5)

    assert QueueItemStatus.COMPLETE not in history
    assert QueueItemStatus.FAILED not in history
    (item,) = scheduler.state.items.values()
    assert item.status is QueueItemStatus.TRANSCRIBING
    assert scheduler.state.in_flight == frozenset()
    assert not (settings.paths.cache_directory / "staged-silence.mp3").exists()
    assert list(settings.paths.output_directory.rglob("*.md")) == []

    assert scheduler.refill() == 0
    retry = CandidateScanner(settings.paths).resolve_path(source)
    assert retry is not None
    assert scheduler.enqueue(retry) is True


def test_filesystem_failure_marks_item_failed(make_settings, build_scheduler, notices) -> None:
    settings = make_settings(extract_tags=False)
    source = settings.paths.watch_directory / "blocked" / "memo.m4a"
    source.parent.mkdir()
    source.write_bytes(b"audio")
    (settings.paths.output_directory / "blocked").write_text("not a directory", encoding="utf-8")

    scheduler = build_scheduler(settings, context_factory=fake_context_factory(SPOKEN))
    scheduler.refill()
    assert scheduler.wait_until_idle(timeout=5)

    (item,) = scheduler.state.items.values()
    assert item.status is QueueItemStatus.FAILED
    assert "memo.m4a" in (item.error or "")
    assert any("Could not save" in notice for notice in notices)


def test_enqueue_path_resolves_watch_events(make_settings, build_scheduler) -> None:
    settings = make_settings()
    memo = settings.paths.watch_directory / "event.m4a"
    memo.write_bytes(b"fresh")
    text = settings.paths.watch_directory / "event.txt"
    text.write_text("ignored", encoding="utf-8")

    scheduler = build_scheduler(settings, context_factory=fake_context_factory(SPOKEN))
    scheduler.pause()

    assert scheduler.enqueue_path(text) is False
    assert scheduler.enqueue_path(memo) is True
    assert scheduler.enqueue_path(memo) is False


def test_shutdown_rejects_new_work(make_settings) -> None:
    scheduler = PipelineScheduler(make_settings(), context_factory=null_context, max_workers=1)
    scheduler.shutdown(timeout=5)

    with pytest.raises(RuntimeError):
        scheduler.enqueue(candidate("late.m4a"))


def test_worker_bound_must_be_positive(make_settings) -> None:
    with pytest.raises(ValueError):
        PipelineScheduler(make_settings(), context_factory=null_context, max_workers=0)


def test_status_helpers() -> None:
    assert QueueItemStatus.COMPLETE.is_terminal
    assert QueueItemStatus.FAILED.is_terminal
    assert not QueueItemStatus.TRANSCRIBING.is_terminal

    empty = PipelineState(running=True, items={})
    assert empty.counts() == {status: 0 for status in QueueItemStatus}
    assert empty.active() == []

