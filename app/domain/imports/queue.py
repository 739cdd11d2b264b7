"""
In-process job queues for import processing.

``JobQueue`` defines the queue contract the rest of the service relies on:
jobs are added with a data payload, a single handler processes them, and
callers poll job state. Two backends exist:

* ``InlineJobQueue`` runs the handler inside ``add`` (the default; simple and
  deterministic, used by tests and single-process deployments).
* ``ThreadPoolJobQueue`` hands jobs to a ``ThreadPoolExecutor`` and returns
  immediately.

Neither backend survives a process restart. Finished jobs are kept for polling
up to a per-state limit, after which the oldest are dropped.
"""
import logging
import threading
import time
import traceback
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class QueueJobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


QUEUE_EVENTS = ("completed", "failed")

DEFAULT_KEEP_FINISHED = 1000


class UnrecoverableJobError(Exception):
    """Raised by a handler when trying the job again cannot succeed; skips the remaining attempts."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueueJob:
    """A queued unit of work and everything known about its execution."""
    id: str
    data: Dict[str, Any]
    attempts: int = 1
    backoff_seconds: float = 0.0
    state: QueueJobState = QueueJobState.WAITING
    progress: int = 0
    attempts_made: int = 0
    created_at: datetime = field(default_factory=_now)
    processed_on: Optional[datetime] = None
    finished_on: Optional[datetime] = None
    return_value: Any = None
    failed_reason: Optional[str] = None
    stacktrace: List[str] = field(default_factory=list)

    def update_progress(self, value: float) -> None:
        """Record progress as a percentage, clamped to 0..100."""
        self.progress = max(0, min(100, int(value)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "progress": self.progress,
            "data": dict(self.data),
            "attempts": self.attempts,
            "attempts_made": self.attempts_made,
            "created_at": self.created_at,
            "processed_on": self.processed_on,
            "finished_on": self.finished_on,
            "return_value": self.return_value,
            "failed_reason": self.failed_reason,
            "stacktrace": list(self.stacktrace),
        }


QueueHandler = Callable[[QueueJob], Any]
QueueListener = Callable[[QueueJob], None]


class JobQueue:
    """Base queue: job registry, retries, events and statistics."""

    def __init__(
        self,
        name: str = "imports",
        keep_completed: Optional[int] = DEFAULT_KEEP_FINISHED,
        keep_failed: Optional[int] = DEFAULT_KEEP_FINISHED,
    ):
        self.name = name
        self._keep = {QueueJobState.COMPLETED: keep_completed, QueueJobState.FAILED: keep_failed}
        self._jobs: Dict[str, QueueJob] = {}
        self._lock = threading.Lock()
        self._handler: Optional[QueueHandler] = None
        self._listeners: Dict[str, List[QueueListener]] = {event: [] for event in QUEUE_EVENTS}

    def process(self, handler: QueueHandler) -> None:
        """Register the handler and start any jobs that were waiting for one."""
        self._handler = handler
        for job in self.get_waiting():
            self._dispatch(job)

    def on(self, event: str, listener: QueueListener) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event '{event}'. Expected one of: {', '.join(QUEUE_EVENTS)}")
        self._listeners[event].append(listener)

    def add(self, data: Dict[str, Any], attempts: int = 1, backoff_seconds: float = 0) -> QueueJob:
        """
        Submit a job.

        Args:
            data: Payload handed to the handler as ``job.data``
            attempts: Total number of tries before the job is marked failed
            backoff_seconds: Base delay between tries, doubled after each failure

        Returns:
            The queued job handle; poll it (or ``get_job``) for its state
        """
        job = QueueJob(
            id=uuid.uuid4().hex,
            data=dict(data),
            attempts=max(1, int(attempts)),
            backoff_seconds=max(0.0, float(backoff_seconds)),
        )
        with self._lock:
            self._jobs[job.id] = job
        logger.info(f"Queue '{self.name}': added job {job.id}")

        if self._handler is not None:
            self._dispatch(job)
        return job

    def _dispatch(self, job: QueueJob) -> None:
        raise NotImplementedError

    def _activate(self, job: QueueJob) -> bool:
        with self._lock:
            if self._jobs.get(job.id) is not job or job.state != QueueJobState.WAITING:
                return False
            job.state = QueueJobState.ACTIVE
            job.processed_on = _now()
            return True

    def _run(self, job: QueueJob) -> None:
        if not self._activate(job):
            return

        handler = self._handler
        while True:
            job.attempts_made += 1
            try:
                job.return_value = handler(job)
            except Exception as exc:
                job.failed_reason = str(exc) or exc.__class__.__name__
                job.stacktrace.append(traceback.format_exc())
                if job.attempts_made < job.attempts and not isinstance(exc, UnrecoverableJobError):
                    delay = job.backoff_seconds * (2 ** (job.attempts_made - 1))
                    logger.warning(
                        f"Queue '{self.name}': job {job.id} attempt {job.attempts_made}/{job.attempts} "
                        f"failed ({job.failed_reason}); retrying in {delay:.1f}s"
                    )
                    if delay:
                        time.sleep(delay)
                    continue

                job.state = QueueJobState.FAILED
                job.finished_on = _now()
                logger.error(f"Queue '{self.name}': job {job.id} failed: {job.failed_reason}")
                self._prune(QueueJobState.FAILED)
                self._emit("failed", job)
                return

            job.failed_reason = None
            job.state = QueueJobState.COMPLETED
            job.finished_on = _now()
            self._prune(QueueJobState.COMPLETED)
            self._emit("completed", job)
            return

    def _prune(self, state: QueueJobState) -> None:
        """Drop the oldest finished jobs in ``state`` beyond its retention limit (None keeps all)."""
        limit = self._keep[state]
        if limit is None:
            return
        with self._lock:
            finished = sorted(
                (job for job in self._jobs.values() if job.state == state),
                key=lambda job: job.finished_on,
            )
            for job in finished[:max(0, len(finished) - limit)]:
                del self._jobs[job.id]

    def _emit(self, event: str, job: QueueJob) -> None:
        for listener in list(self._listeners[event]):
            try:
                listener(job)
            except Exception:
                logger.exception(f"Queue '{self.name}': '{event}' listener failed for job {job.id}")

    def get_job(self, job_id: str) -> Optional[QueueJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def _jobs_in(self, state: QueueJobState) -> List[QueueJob]:
        with self._lock:
            return [job for job in self._jobs.values() if job.state == state]

    def get_waiting(self) -> List[QueueJob]:
        return self._jobs_in(QueueJobState.WAITING)

    def get_active(self) -> List[QueueJob]:
        return self._jobs_in(QueueJobState.ACTIVE)

    def get_completed(self) -> List[QueueJob]:
        return self._jobs_in(QueueJobState.COMPLETED)

    def get_failed(self) -> List[QueueJob]:
        return self._jobs_in(QueueJobState.FAILED)

    def remove(self, job_id: str) -> bool:
        """Drop a job that has not started. Active and finished jobs are kept."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != QueueJobState.WAITING:
                return False
            del self._jobs[job_id]
        logger.info(f"Queue '{self.name}': removed waiting job {job_id}")
        return True

    def stats(self) -> Dict[str, int]:
        with self._lock:
            counts = {state.value: 0 for state in QueueJobState}
            for job in self._jobs.values():
                counts[job.state.value] += 1
        return counts

    def close(self, wait: bool = True) -> None:
        """Release backend resources."""


class InlineJobQueue(JobQueue):
    """Runs each job to completion inside ``add``; failures stay on the handle."""

    def _dispatch(self, job: QueueJob) -> None:
        self._run(job)


class ThreadPoolJobQueue(JobQueue):
    """Runs jobs on a thread pool; ``add`` returns as soon as the job is queued."""

    def __init__(self, name: str = "imports", max_workers: int = 4, **retention):
        super().__init__(name, **retention)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"{name}-queue")
        self._futures: Dict[str, Future] = {}

    def _dispatch(self, job: QueueJob) -> None:
        future = self._executor.submit(self._run, job)
        with self._lock:
            self._futures[job.id] = future
        future.add_done_callback(lambda _: self._forget_future(job.id))

    def _forget_future(self, job_id: str) -> None:
        with self._lock:
            self._futures.pop(job_id, None)

    def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Optional[QueueJob]:
        """Block until a dispatched job has finished (or ``timeout`` elapses)."""
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.get_job(job_id)

    def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def build_job_queue(
    backend: str,
    max_workers: int = 4,
    name: str = "imports",
    keep_completed: Optional[int] = DEFAULT_KEEP_FINISHED,
    keep_failed: Optional[int] = DEFAULT_KEEP_FINISHED,
) -> JobQueue:
    """Create the queue backend named in settings ('inline' or 'thread')."""
    retention = {"keep_completed": keep_completed, "keep_failed": keep_failed}
    if backend == "inline":
        return InlineJobQueue(name, **retention)
    if backend == "thread":
        return ThreadPoolJobQueue(name, max_workers=max_workers, **retention)
    raise ValueError(f"Unknown import queue backend '{backend}'. Expected 'inline' or 'thread'.")
