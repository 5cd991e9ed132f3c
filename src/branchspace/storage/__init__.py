"""Persistent state for ports, session bindings, and background jobs."""

from .jobs import JobStore
from .lock import DirectoryLock
from .models import BackgroundJob, JobStatus, SessionBinding, WorkspaceKind
from .ports import PortTable, is_port_free
from .sessions import SessionStore

__all__ = [
    "BackgroundJob",
    "DirectoryLock",
    "JobStatus",
    "JobStore",
    "PortTable",
    "SessionBinding",
    "SessionStore",
    "WorkspaceKind",
    "is_port_free",
]
