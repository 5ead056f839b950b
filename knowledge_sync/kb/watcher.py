"""
File watcher that re-indexes a project when its files change.

Uses watchdog to monitor the project root.  Create, modify, delete and
move events for indexable files start a background index run through
:meth:`KnowledgeService.start_indexing`; the incremental pipeline only
re-embeds files whose mtime changed.  A change that arrives while a run is
already in progress queues exactly one follow-up run.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Iterable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .errors import KBError
from .indexer import INDEXABLE_EXTENSIONS, SKIP_DIRS

logger = logging.getLogger(__name__)


class KBFileHandler:
    """
    Watchdog-compatible event handler that triggers re-indexing.

    Parameters
    ----------
    service:
        The :class:`~knowledge_sync.kb.service.KnowledgeService` to call.
    project:
        Project name passed to ``start_indexing``.
    project_root:
        Absolute path to the watched root (used to compute relative paths).
    debounce_seconds:
        Minimum delay between two triggers for the same file (editors
        often save several times in a row).
    exclude_dirs:
        Directories whose changes are ignored (the index output itself).
    """

    def __init__(
        self,
        service,
        project: str,
        project_root: str,
        debounce_seconds: float = 0.5,
        exclude_dirs: Iterable[str] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._service = service
        self._project = project
        self._project_root = os.path.abspath(project_root)
        self._debounce = debounce_seconds
        self._excluded = [os.path.realpath(d) for d in exclude_dirs]
        self._clock = clock
        self._last_event: dict[str, float] = {}
        self._lock = threading.Lock()
        self._pending = False
        self._followup: Optional[threading.Thread] = None
        self._retry_interval = 0.2
        self.triggers = 0

    # ------------------------------------------------------------------
    # Watchdog event dispatch
    # ------------------------------------------------------------------

    def on_modified(self, event) -> None:
        if not event.is_directory:
            self._handle(event.src_path)

    def on_created(self, event) -> None:
        if not event.is_directory:
            self._handle(event.src_path)

    def on_deleted(self, event) -> None:
        if not event.is_directory:
            self._handle(event.src_path, debounce=False)

    def on_moved(self, event) -> None:
        if not event.is_directory:
            self._handle(event.src_path, debounce=False)
            self._handle(event.dest_path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _rel_path(self, abs_path: str) -> Optional[str]:
        """Project-relative path, or None if *abs_path* is outside the root."""
        rel = os.path.relpath(os.path.abspath(abs_path), self._project_root)
        if rel == os.pardir or rel.startswith(os.pardir + os.sep):
            return None
        return rel.replace(os.sep, "/")

    def should_ignore(self, abs_path: str) -> bool:
        """Return True if a change to *abs_path* cannot affect the index."""
        rel = self._rel_path(abs_path)
        if rel is None:
            return True
        real = os.path.realpath(abs_path)
        for d in self._excluded:
            if real == d or real.startswith(d + os.sep):
                return True
        if os.path.splitext(rel)[1].lower() not in INDEXABLE_EXTENSIONS:
            return True
        for part in rel.split("/"):
            if part in SKIP_DIRS or part.startswith("."):
                return True
        return False

    def _is_debounced(self, abs_path: str) -> bool:
        now = self._clock()
        with self._lock:
            last = self._last_event.get(abs_path)
            if last is not None and now - last < self._debounce:
                return True
            self._last_event[abs_path] = now
        return False

    def _handle(self, abs_path: str, debounce: bool = True) -> None:
        if self.should_ignore(abs_path):
            return
        if debounce and self._is_debounced(abs_path):
            return

        logger.info("[KB watcher] Changed: %s", self._rel_path(abs_path))
        try:
            result = self._service.start_indexing(self._project)
        except KBError as exc:
            logger.warning("[KB watcher] Cannot re-index '%s': %s", self._project, exc)
            return
        self.triggers += 1
        if not result.started:
            logger.debug("[KB watcher] Indexing already running for '%s'; queued", self._project)
            self._queue_followup()

    # ------------------------------------------------------------------
    # Follow-up runs
    # ------------------------------------------------------------------

    def _queue_followup(self) -> None:
        """Start one more run once the current job leaves ``running``."""
        with self._lock:
            self._pending = True
            if self._followup is not None and self._followup.is_alive():
                return
            self._followup = threading.Thread(
                target=self._run_followups,
                daemon=True,
                name=f"kb-watch-{self._project}",
            )
            self._followup.start()

    def _run_followups(self) -> None:
        while True:
            self._service.wait(self._project)
            with self._lock:
                if not self._pending:
                    self._followup = None
                    return
                self._pending = False
            try:
                result = self._service.start_indexing(self._project)
            except KBError as exc:
                logger.warning("[KB watcher] Cannot re-index '%s': %s", self._project, exc)
                with self._lock:
                    self._followup = None
                return
            if result.started:
                logger.info("[KB watcher] Follow-up indexing started for '%s'", self._project)
            else:
                with self._lock:
                    self._pending = True
                time.sleep(self._retry_interval)

    def join_followup(self, timeout: Optional[float] = None) -> None:
        """Block until the follow-up worker has no queued change left."""
        with self._lock:
            thread = self._followup
        if thread is not None:
            thread.join(timeout)


class _WatchdogAdapter(FileSystemEventHandler):
    def __init__(self, handler: KBFileHandler) -> None:
        super().__init__()
        self._h = handler

    def on_modified(self, event):
        self._h.on_modified(event)

    def on_created(self, event):
        self._h.on_created(event)

    def on_deleted(self, event):
        self._h.on_deleted(event)

    def on_moved(self, event):
        self._h.on_moved(event)


class KBWatcher:
    """
    High-level wrapper around watchdog that monitors one project.

    Usage::

        watcher = KBWatcher(service, "my-project")
        watcher.start()   # blocking; or start_background()
        watcher.stop()
    """

    def __init__(self, service, project: str, debounce_seconds: float = 0.5) -> None:
        record = service.resolve(project)
        self._project = record.name
        self._project_root = os.path.abspath(record.root_path)
        self._observer: Optional[Observer] = None
        self.handler = KBFileHandler(
            service, record.name, self._project_root,
            debounce_seconds=debounce_seconds,
            exclude_dirs=[record.knowledge_dir],
        )

    def _schedule(self) -> Observer:
        observer = Observer()
        observer.schedule(_WatchdogAdapter(self.handler), self._project_root, recursive=True)
        observer.start()
        self._observer = observer
        logger.info("[KB watcher] Watching %s (%s)", self._project_root, self._project)
        return observer

    def start(self) -> None:
        """Watch until :meth:`stop` is called or the process is interrupted."""
        observer = self._schedule()
        try:
            while observer.is_alive():
                observer.join(timeout=1)
        except KeyboardInterrupt:
            observer.stop()
        observer.join()

    def start_background(self) -> None:
        """Start the observer thread and return immediately."""
        self._schedule()

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("[KB watcher] Stopped")
