"""Feed new and renamed memos from filesystem events into the scheduler."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

__all__ = ["MemoEventHandler", "start_watching"]


class PathQueue(Protocol):
    def enqueue_path(self, filepath: str | Path) -> bool: ...


class MemoEventHandler(FileSystemEventHandler):
    """Queue files that are created in, or moved into, the watch directory."""

    def __init__(self, queue: PathQueue, watch_directory: str | Path) -> None:
        super().__init__()
        self._queue = queue
        self._root = Path(watch_directory).resolve()

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._offer(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._offer(event.dest_path)

    def _offer(self, raw_path: str | bytes) -> None:
        path = Path(os.fsdecode(raw_path)).resolve()
        if not path.is_relative_to(self._root):
            return
        try:
            if self._queue.enqueue_path(path):
                LOGGER.info("Queued %s from a filesystem event.", path.name)
        except RuntimeError as exc:
            # Events can still arrive while the scheduler is shutting down.
            LOGGER.debug("Ignoring %s: %s", path, exc)


def start_watching(
    queue: PathQueue,
    watch_directory: str | Path,
    *,
    observer_factory: Callable[[], BaseObserver] = Observer,
) -> BaseObserver:
    """Start a recursive observer on ``watch_directory``; the caller stops and joins it."""
    observer = observer_factory()
    observer.schedule(MemoEventHandler(queue, watch_directory), str(watch_directory), recursive=True)
    observer.start()
    LOGGER.info("Watching %s for new memos.", watch_directory)
    return observer
