"""Consistency modes for validate-then-commit financial writes.

``advisory``
    Validate against the snapshot and write; concurrent commitments are not
    serialized and may together exceed available capital.
``optimistic``
    The write claims the snapshot version it validated against. If another
    writer or a recalculation moved the version, the write fails with
    :class:`ConflictError` and the caller retries.
``serialized``
    Validation, write, commit and the primary recalculation for a project run
    under a per-project mutex.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..config import settings
from ..core.errors import ConflictError
from ..models.models import ProjectFinances

logger = logging.getLogger(__name__)

CONSISTENCY_MODES = ("advisory", "optimistic", "serialized")


class CommitmentGuard:
    def __init__(self, mode: str = "advisory") -> None:
        if mode not in CONSISTENCY_MODES:
            raise ValueError(f"Unknown consistency mode {mode!r}")
        self.mode = mode
        self._locks: Dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, project_id: int) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[project_id] = lock
            return lock

    @contextmanager
    def hold(self, project_id: int) -> Iterator[None]:
        if self.mode != "serialized":
            yield
            return
        lock = self._lock_for(project_id)
        with lock:
            yield

    def claim(self, session: Session, project_id: int, seen_version: int) -> None:
        """Compare-and-set on the finances version inside the caller's transaction."""
        if self.mode != "optimistic":
            return
        result = session.execute(
            update(ProjectFinances)
            .where(ProjectFinances.project_id == project_id, ProjectFinances.version == seen_version)
            .values(version=seen_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info("Stale finances version %s for project %s", seen_version, project_id)
            raise ConflictError(
                "Project finances changed while the commitment was being validated; retry the request",
                project_id=project_id,
                retryable=True,
            )


commitment_guard = CommitmentGuard(settings.commitment_consistency_mode)
