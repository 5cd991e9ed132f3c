"""Data models for persisted session bindings and background jobs."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator

WorkspaceKind = Literal["clone", "worktree"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionBinding(BaseModel):
    """Association between one agent session and the workspace its commands target."""

    session_id: str = Field(..., description="Agent session identifier.")
    workspace: str = Field(..., description="Absolute path to the workspace directory.")
    repo_name: str = Field(..., description="Repository name (parent directory of the workspace).")
    branch: str = Field(..., description="Branch checked out in the workspace.")
    kind: WorkspaceKind = Field(default="clone", description="Container clone or plain worktree.")
    starting: bool = Field(
        default=False,
        description="True while the container for this workspace is still being started.",
    )
    main_repo: str | None = Field(default=None, description="Primary checkout for worktrees.")
    source_url: str | None = Field(default=None, description="PR or issue URL this work came from.")
    source_type: str | None = Field(default=None, description="github_pr, github_issue, linear_issue, ...")
    auto_initialized: bool = Field(default=False)
    activated_at: datetime = Field(default_factory=utcnow)

    @field_validator("session_id", "workspace", "branch")
    @classmethod
    def _require_value(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Session binding fields must not be empty")
        return normalized


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class BackgroundJob(BaseModel):
    """One in-flight or recently finished container-start operation."""

    workspace: str
    status: JobStatus = JobStatus.PENDING
    repo: str | None = None
    branch: str | None = None
    port: int | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None


__all__ = ["BackgroundJob", "JobStatus", "SessionBinding", "WorkspaceKind", "utcnow"]
