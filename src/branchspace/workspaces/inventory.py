"""Enumerate known workspaces and report their git state for cleanup."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Literal

from ..git import GitClient, main_repo_from_worktree, read_worktree_pointer
from ..storage import PortTable, SessionStore

logger = logging.getLogger(__name__)

DescriptorKind = Literal["clone", "worktree", "orphan"]


@dataclass(slots=True)
class WorkspaceDescriptor:
    kind: DescriptorKind
    workspace: Path
    repo: str
    branch: str
    main_repo: Path | None = None
    port: int | None = None
    sessions: list[str] = field(default_factory=list)
    last_access: datetime | None = None
    has_uncommitted: bool | None = None
    uncommitted_count: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.kind,
            "workspace": str(self.workspace),
            "repo": self.repo,
            "branch": self.branch,
            "main_repo": str(self.main_repo) if self.main_repo else None,
            "port": self.port,
            "sessions": list(self.sessions),
            "last_access": self.last_access.isoformat() if self.last_access else None,
            "has_uncommitted": self.has_uncommitted,
            "uncommitted_count": self.uncommitted_count,
        }


@dataclass(slots=True)
class WorkspaceStatus:
    clean: bool
    pushed: bool
    ahead: int
    is_git: bool
    uncommitted_count: int = 0
    has_upstream: bool = False


def _last_access(path: Path) -> datetime | None:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    except OSError:
        return None


def _scan(root: Path, is_entry: Callable[[Path], bool]) -> Iterable[tuple[str, str, Path]]:
    if not root.is_dir():
        return
    for repo_dir in sorted(root.iterdir()):
        if not repo_dir.is_dir():
            continue
        for branch_dir in sorted(repo_dir.iterdir()):
            if branch_dir.is_dir() and is_entry(branch_dir):
                yield repo_dir.name, branch_dir.name, branch_dir


def _is_clone(path: Path) -> bool:
    return (path / ".git").is_dir()


def _is_worktree(path: Path) -> bool:
    return read_worktree_pointer(path) is not None


class WorkspaceInventory:
    """Join directory scans with the port table and session bindings."""

    def __init__(
        self,
        git: GitClient,
        *,
        clones_dir: Path,
        worktrees_dir: Path,
        ports: PortTable | None = None,
        sessions: SessionStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._git = git
        self._clones_dir = Path(clones_dir)
        self._worktrees_dir = Path(worktrees_dir)
        self._ports = ports
        self._sessions = sessions
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def list_clones(self) -> list[WorkspaceDescriptor]:
        return [
            WorkspaceDescriptor(kind="clone", workspace=path, repo=repo, branch=branch)
            for repo, branch, path in _scan(self._clones_dir, _is_clone)
        ]

    def list_worktrees(self) -> list[WorkspaceDescriptor]:
        descriptors = []
        for repo, branch, path in _scan(self._worktrees_dir, _is_worktree):
            main_repo = main_repo_from_worktree(path)
            descriptors.append(
                WorkspaceDescriptor(
                    kind="worktree",
                    workspace=path,
                    repo=repo,
                    branch=branch,
                    main_repo=Path(main_repo) if main_repo else None,
                )
            )
        return descriptors

    def list_all(self, kind: DescriptorKind | None = None) -> list[WorkspaceDescriptor]:
        """Return clones, worktrees, and orphans annotated with ports and sessions.

        Orphans are port assignments or session bindings that point at a path
        no scan found.
        """

        descriptors = self.list_clones() + self.list_worktrees()
        by_path = {str(descriptor.workspace): descriptor for descriptor in descriptors}

        port_table = self._ports.read() if self._ports is not None else {}
        bindings = self._sessions.list() if self._sessions is not None else []

        for workspace, port in port_table.items():
            descriptor = by_path.get(workspace)
            if descriptor is None:
                descriptor = self._orphan(workspace)
                by_path[workspace] = descriptor
                descriptors.append(descriptor)
            descriptor.port = port

        for binding in bindings:
            descriptor = by_path.get(binding.workspace)
            if descriptor is None:
                descriptor = self._orphan(binding.workspace, repo=binding.repo_name, branch=binding.branch)
                by_path[binding.workspace] = descriptor
                descriptors.append(descriptor)
            descriptor.sessions.append(binding.session_id)

        for descriptor in descriptors:
            descriptor.last_access = _last_access(descriptor.workspace)

        if kind is not None:
            descriptors = [descriptor for descriptor in descriptors if descriptor.kind == kind]
        return descriptors

    @staticmethod
    def _orphan(workspace: str, *, repo: str | None = None, branch: str | None = None) -> WorkspaceDescriptor:
        path = Path(workspace)
        return WorkspaceDescriptor(
            kind="orphan",
            workspace=path,
            repo=repo or path.parent.name,
            branch=branch or path.name,
        )

    async def status(self, workspace: str | Path) -> WorkspaceStatus:
        workspace = Path(workspace)
        if not workspace.is_dir() or not await self._git.is_git_repo(workspace):
            return WorkspaceStatus(clean=True, pushed=False, ahead=0, is_git=False)

        changes = await self._git.status_porcelain(workspace)
        if changes is None:
            return WorkspaceStatus(clean=True, pushed=False, ahead=0, is_git=False)
        ahead, has_upstream = await self._git.ahead_count(workspace)
        return WorkspaceStatus(
            clean=not changes,
            pushed=ahead == 0,
            ahead=ahead,
            is_git=True,
            uncommitted_count=len(changes),
            has_upstream=has_upstream,
        )

    async def find_stale(self, max_age_days: float = 7) -> list[WorkspaceDescriptor]:
        """Return clones and worktrees untouched for more than ``max_age_days``.

        Each result carries ``has_uncommitted`` so the operator can decide
        before anything is deleted.
        """

        cutoff = self._clock() - timedelta(days=max_age_days)
        stale = []
        for descriptor in self.list_all():
            if descriptor.kind == "orphan":
                continue
            if descriptor.last_access is None or descriptor.last_access >= cutoff:
                continue
            status = await self.status(descriptor.workspace)
            descriptor.has_uncommitted = not status.clean
            descriptor.uncommitted_count = status.uncommitted_count
            stale.append(descriptor)
        logger.debug("Found stale workspaces", extra={"count": len(stale), "max_age_days": max_age_days})
        return stale


def format_workspace(descriptor: WorkspaceDescriptor, *, now: datetime | None = None) -> str:
    """Render a one-line human summary, e.g. ``[clone] app/feature (9d ago) [2 uncommitted]``."""

    text = f"[{descriptor.kind}] {descriptor.repo}/{descriptor.branch}"
    if descriptor.last_access is not None:
        now = now or datetime.now(timezone.utc)
        text += f" ({(now - descriptor.last_access).days}d ago)"
    if descriptor.port is not None:
        text += f" :{descriptor.port}"
    if descriptor.has_uncommitted:
        text += f" [{descriptor.uncommitted_count} uncommitted]"
    return text


__all__ = [
    "WorkspaceDescriptor",
    "WorkspaceInventory",
    "WorkspaceStatus",
    "format_workspace",
]
