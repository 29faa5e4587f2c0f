"""Bounded work queue for cascading aggregate recalculation.

Secondary recalculations (phases, floors, other projects) are submitted here
instead of being run inline. Workers pull jobs, open their own session, and
retry failed jobs with exponential backoff before abandoning them. A job that
is already pending is not queued twice; since every recalculation is a full
rescan, one pending run covers any number of triggers.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from ..config import SessionLocal, settings
from ..core.errors import RecalculationFailure
from .finance import recalculate_floor_spending, recalculate_phase_spending, recalculate_project_finances

logger = logging.getLogger(__name__)

RECALCULATORS: Dict[str, Callable[[Session, int], object]] = {
    "project": recalculate_project_finances,
    "phase": recalculate_phase_spending,
    "floor": recalculate_floor_spending,
}


@dataclass(frozen=True)
class RecalculationJob:
    target: str
    entity_id: int
    attempt: int = 0

    @property
    def key(self) -> Tuple[str, int]:
        return (self.target, self.entity_id)


class RecalculationQueue:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        *,
        mode: str = "background",
        maxsize: int = 1000,
        workers: int = 2,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.mode = mode
        self.workers = workers
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._queue: "queue.Queue[RecalculationJob]" = queue.Queue(maxsize=maxsize)
        self._pending: Set[Tuple[str, int]] = set()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self.failures: Deque[RecalculationFailure] = deque(maxlen=100)
        self.completed = 0

    def configure(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        *,
        mode: Optional[str] = None,
        workers: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ) -> None:
        if session_factory is not None:
            self.session_factory = session_factory
        if mode is not None:
            self.mode = mode
        if workers is not None:
            self.workers = workers
        if max_retries is not None:
            self.max_retries = max_retries
        if backoff_seconds is not None:
            self.backoff_seconds = backoff_seconds

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def submit(self, session: Optional[Session], target: str, entity_id: Optional[int]) -> bool:
        """Queue one recalculation. Never raises for recalculation errors."""
        if target not in RECALCULATORS:
            raise ValueError(f"Unknown recalculation target {target!r}")
        if entity_id is None:
            return False
        job = RecalculationJob(target=target, entity_id=entity_id)
        if self.mode == "inline" and session is not None:
            return self._run_inline(session, job)
        return self._enqueue(job)

    def _enqueue(self, job: RecalculationJob) -> bool:
        with self._lock:
            if job.key in self._pending:
                return False
            self._pending.add(job.key)
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            with self._lock:
                self._pending.discard(job.key)
            logger.warning("Recalculation queue full; dropped %s %s", job.target, job.entity_id)
            return False
        return True

    def _record_failure(self, job: RecalculationJob, exc: Exception) -> None:
        failure = RecalculationFailure(job.target, job.entity_id, str(exc))
        self.failures.append(failure)
        logger.error(
            "Recalculation of %s %s abandoned after %s attempt(s): %s",
            job.target,
            job.entity_id,
            job.attempt + 1,
            exc,
        )

    def _run_inline(self, session: Session, job: RecalculationJob) -> bool:
        try:
            RECALCULATORS[job.target](session, job.entity_id)
        except Exception as exc:
            session.rollback()
            self._record_failure(job, exc)
            return False
        self.completed += 1
        return True

    def _execute(self, job: RecalculationJob) -> None:
        if self.session_factory is None:
            raise RuntimeError("Recalculation queue has no session factory configured")
        session = self.session_factory()
        try:
            RECALCULATORS[job.target](session, job.entity_id)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _handle(self, job: RecalculationJob) -> None:
        with self._lock:
            self._pending.discard(job.key)
        try:
            self._execute(job)
        except Exception as exc:
            if job.attempt >= self.max_retries:
                self._record_failure(job, exc)
                return
            delay = self.backoff_seconds * (2 ** job.attempt)
            logger.warning(
                "Recalculation of %s %s failed (attempt %s); retrying in %.2fs: %s",
                job.target,
                job.entity_id,
                job.attempt + 1,
                delay,
                exc,
            )
            self._sleep(delay)
            retry = replace(job, attempt=job.attempt + 1)
            with self._lock:
                if retry.key in self._pending:
                    # A fresh trigger is already queued and will rescan anyway.
                    return
                self._pending.add(retry.key)
            try:
                self._queue.put_nowait(retry)
            except queue.Full:
                with self._lock:
                    self._pending.discard(retry.key)
                self._record_failure(job, exc)
            return
        self.completed += 1

    def drain(self) -> int:
        """Process every queued job on the calling thread."""
        processed = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                return processed
            try:
                self._handle(job)
            finally:
                self._queue.task_done()
            processed += 1

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            try:
                job = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self._handle(job)
            except Exception:  # pragma: no cover - _handle already isolates job errors
                logger.exception("Recalculation worker crashed while handling %s", job)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self.mode != "background" or self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._worker_loop, name=f"recalc-worker-{index}", daemon=True)
            for index in range(max(1, self.workers))
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started %s recalculation worker(s)", len(self._threads))

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []


recalculation_queue = RecalculationQueue(
    SessionLocal,
    mode=settings.recalculation_mode,
    maxsize=settings.recalculation_queue_size,
    workers=settings.recalculation_workers,
    max_retries=settings.recalculation_max_retries,
    backoff_seconds=settings.recalculation_backoff_seconds,
)


def schedule_recalculation(
    session: Optional[Session],
    *,
    projects: Iterable[Optional[int]] = (),
    phases: Iterable[Optional[int]] = (),
    floors: Iterable[Optional[int]] = (),
) -> None:
    """Fire-and-forget cascade; the caller's response does not wait on it."""
    for project_id in dict.fromkeys(projects):
        recalculation_queue.submit(session, "project", project_id)
    for phase_id in dict.fromkeys(phases):
        recalculation_queue.submit(session, "phase", phase_id)
    for floor_id in dict.fromkeys(floors):
        recalculation_queue.submit(session, "floor", floor_id)
