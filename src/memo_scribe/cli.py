"""Command-line entrypoints for memo-scribe."""

from __future__ import annotations

import time
from typing import Optional

import typer

from memo_scribe.config import ConfigError, ScribeSettings, load_settings
from memo_scribe.pipelines.scheduler import (
    PipelineScheduler,
    PipelineState,
    QueueItemStatus,
)
from memo_scribe.pipelines.watcher import start_watching
from memo_scribe.storage.scanner import CandidateScanner
from memo_scribe.utils.logging import configure_logging

app = typer.Typer(help="Transcribe voice memos into markdown notes.")


class _TransitionPrinter:
    """Echo each item's status the first time it is observed."""

    def __init__(self) -> None:
        self._seen: dict[str, QueueItemStatus] = {}

    def __call__(self, state: PipelineState) -> None:
        for digest, item in state.items.items():
            if self._seen.get(digest) is item.status:
                continue
            self._seen[digest] = item.status
            suffix = f" ({item.error})" if item.error else ""
            typer.echo(f"[{item.status.value}] {item.details.filename}{suffix}")


def _load_settings(env: str, max_workers: Optional[int]) -> ScribeSettings:
    overrides = {"pipeline": {"max_workers": max_workers}} if max_workers else None
    try:
        settings = load_settings(env, overrides=overrides)
        configure_logging(settings.logging)
        settings.paths.ensure_directories()
    except (ConfigError, OSError) as exc:
        typer.echo(f"Failed to load configuration: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    return settings


@app.command()
def run(
    env: str = typer.Option(
        "dev",
        "--env",
        help="Configuration environment to load (default: dev).",
    ),
    max_workers: Optional[int] = typer.Option(
        None,
        "--max-workers",
        min=1,
        help="Override the number of concurrent transcriptions.",
    ),
    watch: bool = typer.Option(
        True,
        "--watch/--no-watch",
        help="Stream item status changes to the console.",
    ),
    follow: bool = typer.Option(
        False,
        "--follow",
        help="Keep running, queue memos as they appear and re-scan periodically.",
    ),
) -> None:
    """Transcribe every memo in the watch directory that has no note yet."""

    settings = _load_settings(env, max_workers)
    scheduler = PipelineScheduler(
        settings,
        refill_on_idle=False,
        notice_handler=typer.echo if watch else None,
    )
    subscription = scheduler.subscribe(_TransitionPrinter()) if watch else None
    observer = start_watching(scheduler, settings.paths.watch_directory) if follow else None

    try:
        while True:
            admitted = scheduler.refill()
            scheduler.wait_until_idle()
            if not scheduler.running:
                typer.echo("Transcription queue paused after hitting the rate limit.", err=True)
                break
            if admitted:
                continue
            if not follow:
                break
            time.sleep(settings.pipeline.scan_interval_seconds)
    except KeyboardInterrupt:  # pragma: no cover - interactive guard
        typer.echo("Interrupted, shutting down workers…", err=True)
        scheduler.stop()
        raise typer.Exit(code=130) from None
    finally:
        if observer is not None:
            observer.stop()
            observer.join()
        if subscription is not None:
            subscription.unsubscribe()
        scheduler.shutdown()

    counts = scheduler.state.counts()
    completed = counts[QueueItemStatus.COMPLETE]
    failed = counts[QueueItemStatus.FAILED]
    typer.echo(f"Transcribed {completed} memo(s); {failed} failed.")
    if failed:
        raise typer.Exit(code=1)


@app.command()
def scan(
    env: str = typer.Option(
        "dev",
        "--env",
        help="Configuration environment to load (default: dev).",
    ),
) -> None:
    """List the memos the next run would pick up, without transcribing them."""

    settings = _load_settings(env, None)
    scanner = CandidateScanner(
        settings.paths,
        batch_size=settings.pipeline.batch_size,
        shuffle=False,
    )
    candidates = scanner.scan()
    for candidate in candidates:
        typer.echo(candidate.filepath)
    typer.echo(f"{len(candidates)} memo(s) awaiting transcription.")


def main() -> None:
    """Entrypoint used by the console script."""
    app()


if __name__ == "__main__":
    main()
