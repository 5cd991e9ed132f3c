from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from branchspace.errors import ValidationError
from branchspace.storage import JobStatus, JobStore


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def test_job_lifecycle(tmp_path: Path) -> None:
    store = JobStore(tmp_path)

    store.record("/ws/a", JobStatus.PENDING, {"repo": "app", "branch": "feature"})
    store.record("/ws/a", "running")
    job = store.record("/ws/a", JobStatus.COMPLETED, {"port": 13000})

    assert job.status is JobStatus.COMPLETED
    assert job.port == 13000
    assert job.repo == "app"
    assert job.completed_at is not None
    assert store.get("/ws/a").status is JobStatus.COMPLETED


def test_detail_cannot_override_managed_fields(tmp_path: Path) -> None:
    store = JobStore(tmp_path)

    job = store.record(
        "/ws/a",
        JobStatus.PENDING,
        {"workspace": "/elsewhere", "status": "completed", "started_at": "never", "repo": "app"},
    )
    running = store.record("/ws/a", JobStatus.RUNNING, {"status": "failed", "updated_at": "never"})

    assert job.workspace == "/ws/a"
    assert job.status is JobStatus.PENDING
    assert job.repo == "app"
    assert running.status is JobStatus.RUNNING
    assert store.get("/ws/a").status is JobStatus.RUNNING


def test_terminal_jobs_do_not_move(tmp_path: Path) -> None:
    store = JobStore(tmp_path)
    store.record("/ws/a", JobStatus.PENDING)
    store.record("/ws/a", JobStatus.FAILED, {"error": "boom"})

    with pytest.raises(ValidationError):
        store.record("/ws/a", JobStatus.RUNNING)
    assert store.get("/ws/a").error == "boom"


def test_pending_replaces_previous_job(tmp_path: Path) -> None:
    store = JobStore(tmp_path)
    store.record("/ws/a", JobStatus.PENDING)
    store.record("/ws/a", JobStatus.FAILED, {"error": "boom"})

    job = store.record("/ws/a", JobStatus.PENDING)

    assert job.status is JobStatus.PENDING
    assert job.error is None


def test_transition_without_pending_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        JobStore(tmp_path).record("/ws/a", JobStatus.RUNNING)


def test_cleanup_uses_separate_failed_retention(tmp_path: Path) -> None:
    clock = Clock()
    store = JobStore(tmp_path, clock=clock)
    store.record("/ws/done", JobStatus.PENDING)
    store.record("/ws/done", JobStatus.COMPLETED)
    store.record("/ws/failed", JobStatus.PENDING)
    store.record("/ws/failed", JobStatus.FAILED, {"error": "boom"})
    store.record("/ws/busy", JobStatus.PENDING)

    clock.advance(hours=2)
    removed = store.cleanup(3600, 86400)

    assert removed == 1
    assert store.get("/ws/done") is None
    assert store.get("/ws/failed") is not None
    assert store.get("/ws/busy") is not None

    clock.advance(days=2)
    assert store.cleanup(3600, 86400) == 1
    assert [job.workspace for job in store.list()] == ["/ws/busy"]
