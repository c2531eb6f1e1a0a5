"""Reloading of flag data files whenever they change on disk."""

import logging
import os
import queue
import threading
from typing import Callable, FrozenSet, Iterable, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

RETRY_INTERVAL = 1.0
_QUEUE_POLL = 0.05


class _EventForwarder(FileSystemEventHandler):
    """Puts the normalised path of every file system event on a queue."""

    def __init__(self, events: "queue.Queue[str]") -> None:
        super().__init__()
        self._events = events

    def on_any_event(self, event: FileSystemEvent) -> None:
        for path in (event.src_path, getattr(event, "dest_path", "")):
            if path:
                self._events.put(os.path.normpath(os.fsdecode(path)))


class FileWatcher:
    """Calls ``reload`` at start and again whenever one of the watched files changes.

    Files and directories that do not exist yet are retried periodically, so they
    may be created after watching has begun.
    """

    def __init__(
        self,
        paths: Iterable[str],
        logger: Optional[logging.Logger],
        reload: Callable[[], None],
    ) -> None:
        self._paths: List[str] = list(paths)
        self._logger = logger or logging.getLogger(__name__)
        self._reload = reload
        self._watched_files: Set[str] = set()
        self._watched_dirs: Set[str] = set()
        self._events: "queue.Queue[str]" = queue.Queue()
        self._retry = threading.Event()
        try:
            self._observer = Observer()
        except Exception as err:
            raise OSError(f"Unable to create file watcher: {err}") from err
        self._handler = _EventForwarder(self._events)

    @property
    def watched_files(self) -> FrozenSet[str]:
        """The resolved paths of the files whose changes trigger a reload."""
        return frozenset(self._watched_files)

    def run(self, close_event: threading.Event) -> None:
        """Watch and reload until ``close_event`` is set."""
        self._observer.start()
        try:
            while True:
                try:
                    self._setup_watches()
                except OSError as err:
                    self._logger.error("%s", err)
                    self._schedule_retry()
                # Reloading after the watches are in place means no change can slip
                # through between loading and watching, at the cost of one redundant load.
                self._reload()
                if self._wait_for_events(close_event):
                    return
        finally:
            try:
                self._observer.stop()
                self._observer.join(timeout=5)
            except Exception as err:  # closing problems are only worth a log line
                self._logger.error("Error closing watcher: %s", err)

    def _setup_watches(self) -> None:
        for path in self._paths:
            dir_path = os.path.dirname(path) or "."
            if not os.path.isdir(dir_path):
                raise OSError(f'Unable to evaluate symlinks for "{dir_path}": no such directory')
            real_dir = os.path.realpath(dir_path)
            real_path = os.path.normpath(os.path.join(real_dir, os.path.basename(path)))
            self._watched_files.add(real_path)
            if real_dir in self._watched_dirs:
                continue
            try:
                self._observer.schedule(self._handler, real_dir, recursive=False)
            except OSError as err:
                raise OSError(f'Unable to watch path "{real_dir}": {err}') from err
            self._watched_dirs.add(real_dir)

    def _schedule_retry(self) -> None:
        timer = threading.Timer(RETRY_INTERVAL, self._retry.set)
        timer.daemon = True
        timer.start()

    def _wait_for_events(self, close_event: threading.Event) -> bool:
        """Block until a relevant change, a retry or closing; True means closing."""
        while True:
            if close_event.is_set():
                return True
            if self._retry.is_set():
                self._retry.clear()
                return False
            try:
                path = self._events.get(timeout=_QUEUE_POLL)
            except queue.Empty:
                continue
            if path in self._watched_files:
                self._drain_events()
                return False

    def _drain_events(self) -> None:
        while True:
            try:
                self._events.get_nowait()
            except queue.Empty:
                return


def watch_files(
    paths: Iterable[str],
    logger: Optional[logging.Logger],
    reload: Callable[[], None],
    close_event: threading.Event,
) -> FileWatcher:
    """Start watching ``paths`` in the background, calling ``reload`` on every change.

    Suitable as the reloader of a file data source. Watching stops once
    ``close_event`` is set.
    """
    watcher = FileWatcher(paths, logger, reload)
    thread = threading.Thread(
        target=watcher.run, args=(close_event,), name="flag-file-watcher", daemon=True
    )
    thread.start()
    return watcher