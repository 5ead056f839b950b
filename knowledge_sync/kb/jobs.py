"""
Background indexing job controller.

Owns one job slot per project name.  :meth:`JobController.start` performs an
atomic check-and-set under a lock: if the project's job is ``running`` the
call returns ``already_running`` and touches nothing; otherwise the record is
overwritten, marked ``running`` and the runner is launched on a daemon
thread.  The call returns before the runner finishes.

State machine per project::

    idle ──start──▶ running ──ok──▶ complete
                       │
                       └──error──▶ failed

    complete | failed ──start──▶ running

Job state lives in memory only and is lost when the process exits.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class JobState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class StartStatus(str, enum.Enum):
    STARTED = "started"
    ALREADY_RUNNING = "already_running"


@dataclass(frozen=True)
class IndexingJob:
    """
    Snapshot of a project's indexing job.

    ``error`` is set iff ``state`` is ``failed``.  Timestamps are epoch
    seconds.
    """

    project: str
    state: JobState = JobState.IDLE
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    files_processed: int = 0
    files_total: Optional[int] = None
    current_file: Optional[str] = None
    last_update_at: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self.state is JobState.RUNNING

    def to_dict(self) -> dict:
        return {
            "project": self.project,
            "state": self.state.value,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "error": self.error,
            "filesProcessed": self.files_processed,
            "filesTotal": self.files_total,
            "currentFile": self.current_file,
        }


@dataclass(frozen=True)
class StartResult:
    """Outcome of :meth:`JobController.start`."""

    status: StartStatus
    job: IndexingJob

    @property
    def started(self) -> bool:
        return self.status is StartStatus.STARTED


class ProgressReporter:
    """
    Handed to a runner so it can publish progress for its own run only.

    Updates from a run that has since been superseded are ignored.
    """

    def __init__(self, controller: "JobController", project: str, run_id: int) -> None:
        self._controller = controller
        self.project = project
        self.run_id = run_id

    def update(self, **fields) -> None:
        """Patch ``files_processed``, ``files_total`` or ``current_file``."""
        self._controller._update(self.project, self.run_id, **fields)


Runner = Callable[[ProgressReporter], None]

_PROGRESS_FIELDS = frozenset({"files_processed", "files_total", "current_file"})


class JobController:
    """
    Per-project indexing job slots.

    Parameters
    ----------
    stale_after:
        Seconds without a progress update after which a ``running`` job may
        be replaced by a new :meth:`start`.  None (the default) means a
        running job is never considered stale.
    clock:
        Wall-clock time source for job timestamps.
    """

    def __init__(
        self,
        stale_after: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.stale_after = stale_after
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: dict[str, IndexingJob] = {}
        self._run_ids: dict[str, int] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._next_run_id = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self, project: str, runner: Runner) -> StartResult:
        """
        Start *runner* for *project* unless a run is already in progress.

        Returns immediately; the runner executes on a daemon thread.
        """
        with self._lock:
            current = self._jobs.get(project)
            if current is not None and current.is_running and not self._is_stale(current):
                return StartResult(StartStatus.ALREADY_RUNNING, current)

            if current is not None and current.is_running:
                logger.warning(
                    "[KB] Superseding stale indexing job for '%s' (no progress for %.0fs)",
                    project, self._clock() - (current.last_update_at or 0.0),
                )

            self._next_run_id += 1
            run_id = self._next_run_id
            now = self._clock()
            job = IndexingJob(
                project=project,
                state=JobState.RUNNING,
                started_at=now,
                last_update_at=now,
            )
            self._jobs[project] = job
            self._run_ids[project] = run_id

            reporter = ProgressReporter(self, project, run_id)
            thread = threading.Thread(
                target=self._run,
                args=(reporter, runner),
                daemon=True,
                name=f"kb-index-{project}",
            )
            self._threads[project] = thread
            thread.start()

        logger.info("[KB] Indexing started in background for '%s'", project)
        return StartResult(StartStatus.STARTED, job)

    def get_progress(self, project: str) -> IndexingJob:
        """Return the job snapshot for *project*; an ``idle`` job if none."""
        with self._lock:
            job = self._jobs.get(project)
        return job if job is not None else IndexingJob(project=project)

    def is_running(self, project: str) -> bool:
        return self.get_progress(project).is_running

    def wait(self, project: str, timeout: Optional[float] = None) -> IndexingJob:
        """
        Block until the current run for *project* finishes or *timeout*
        elapses, then return the job snapshot.
        """
        with self._lock:
            thread = self._threads.get(project)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        return self.get_progress(project)

    def jobs(self) -> list[IndexingJob]:
        """Snapshot of every known job, sorted by project name."""
        with self._lock:
            return [self._jobs[name] for name in sorted(self._jobs)]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _is_stale(self, job: IndexingJob) -> bool:
        if self.stale_after is None:
            return False
        last = job.last_update_at or job.started_at or 0.0
        return self._clock() - last > self.stale_after

    def _update(self, project: str, run_id: int, **fields) -> None:
        unknown = set(fields) - _PROGRESS_FIELDS
        if unknown:
            raise TypeError(f"Unknown progress fields: {sorted(unknown)}")
        with self._lock:
            if self._run_ids.get(project) != run_id:
                return
            job = self._jobs[project]
            if not job.is_running:
                return
            self._jobs[project] = dataclasses.replace(
                job, last_update_at=self._clock(), **fields
            )

    def _finish(self, project: str, run_id: int, error: Optional[str]) -> None:
        with self._lock:
            if self._run_ids.get(project) != run_id:
                logger.debug("[KB] Dropping result of superseded run for '%s'", project)
                return
            job = self._jobs[project]
            now = self._clock()
            self._jobs[project] = dataclasses.replace(
                job,
                state=JobState.FAILED if error else JobState.COMPLETE,
                finished_at=now,
                last_update_at=now,
                current_file=None,
                error=error,
            )

    def _run(self, reporter: ProgressReporter, runner: Runner) -> None:
        project = reporter.project
        try:
            runner(reporter)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.error("[KB] Indexing job failed for '%s': %s", project, message,
                         exc_info=True)
            self._finish(project, reporter.run_id, message)
            return
        self._finish(project, reporter.run_id, None)
        logger.info("[KB] Indexing complete for '%s'", project)
