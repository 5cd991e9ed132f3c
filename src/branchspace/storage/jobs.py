"""Background container-start jobs, one JSON file per workspace."""

from __future__ import annotations

import contextlib
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError as ModelValidationError

from ..config import path_id
from ..errors import ValidationError
from .files import read_json, write_json
from .models import BackgroundJob, JobStatus

logger = logging.getLogger(__name__)

_DETAIL_FIELDS = frozenset({"repo", "branch", "port", "error"})

_ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class JobStore:
    """Track provisioning jobs so interactive callers can poll instead of block."""

    def __init__(
        self,
        directory: Path,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._directory = Path(directory)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _file(self, workspace: str) -> Path:
        return self._directory / f"{path_id(workspace)}.json"

    def get(self, workspace: str | Path) -> BackgroundJob | None:
        document = read_json(self._file(str(workspace)), None)
        if document is None:
            return None
        try:
            return BackgroundJob.model_validate(document)
        except ModelValidationError:
            logger.warning("Ignoring malformed job file", extra={"workspace": str(workspace)})
            return None

    def record(
        self,
        workspace: str | Path,
        status: JobStatus | str,
        detail: dict[str, Any] | None = None,
    ) -> BackgroundJob:
        """Move the job for ``workspace`` to ``status``.

        ``pending`` always starts a fresh record, replacing whatever was there.
        Other states must follow pending -> running -> completed|failed.
        Only ``repo``, ``branch``, ``port`` and ``error`` are taken from
        ``detail``; the workspace, status and timestamps belong to the store.
        """

        key = str(workspace)
        new_status = JobStatus(status)
        now = self._clock()
        extra = {name: value for name, value in (detail or {}).items() if name in _DETAIL_FIELDS}
        current = self.get(key)

        if new_status is JobStatus.PENDING:
            if current is not None and not current.status.terminal:
                logger.info("Replacing unfinished job", extra={"workspace": key})
            job = BackgroundJob(workspace=key, started_at=now, updated_at=now, **extra)
        else:
            if current is None:
                raise ValidationError(f"No job recorded for {key}")
            if new_status not in _ALLOWED_TRANSITIONS[current.status]:
                raise ValidationError(
                    f"Job for {key} cannot move from {current.status.value} to {new_status.value}"
                )
            update: dict[str, Any] = {"status": new_status, "updated_at": now, **extra}
            if new_status.terminal:
                update["completed_at"] = now
            job = current.model_copy(update=update)

        write_json(self._file(key), job.model_dump(mode="json"))
        logger.debug("Recorded job", extra={"workspace": key, "status": job.status.value})
        return job

    def list(self) -> list[BackgroundJob]:
        if not self._directory.exists():
            return []
        jobs = []
        for path in sorted(self._directory.glob("*.json")):
            document = read_json(path, None)
            if document is None:
                continue
            try:
                jobs.append(BackgroundJob.model_validate(document))
            except ModelValidationError:
                continue
        return jobs

    def remove(self, workspace: str | Path) -> bool:
        try:
            self._file(str(workspace)).unlink()
        except FileNotFoundError:
            return False
        return True

    def cleanup(self, max_age_seconds: float, failed_max_age_seconds: float | None = None) -> int:
        """Delete terminal jobs older than the retention window; returns the count removed."""

        now = self._clock()
        removed = 0
        for job in self.list():
            if not job.status.terminal:
                continue
            limit = max_age_seconds
            if job.status is JobStatus.FAILED and failed_max_age_seconds is not None:
                limit = failed_max_age_seconds
            finished = job.completed_at or job.updated_at
            if now - finished <= timedelta(seconds=limit):
                continue
            with contextlib.suppress(FileNotFoundError):
                self._file(job.workspace).unlink()
            removed += 1
        if removed:
            logger.info("Cleaned up finished jobs", extra={"removed": removed})
        return removed


__all__ = ["JobStore"]
