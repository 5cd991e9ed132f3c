"""Resolve a user-supplied branch target to an existing workspace."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

from ..git import main_repo_from_worktree
from ..storage.models import WorkspaceKind


@dataclass(slots=True)
class WorkspaceMatch:
    workspace: Path
    repo: str
    branch: str
    kind: WorkspaceKind
    main_repo: Path | None = None


@dataclass(slots=True)
class Resolved:
    match: WorkspaceMatch


@dataclass(slots=True)
class Ambiguous:
    target: str
    matches: list[WorkspaceMatch] = field(default_factory=list)


@dataclass(slots=True)
class NotFound:
    target: str


Resolution = Union[Resolved, Ambiguous, NotFound]


def split_target(target: str, root: Path) -> tuple[str | None, str]:
    """Split ``repo/branch`` when ``repo`` names a directory under ``root``.

    Anything else, including ``feature/x`` style branch names, is a bare branch.
    """

    target = target.strip().strip("/")
    if "/" in target:
        repo, branch = target.split("/", 1)
        if (root / repo).is_dir():
            return repo, branch
    return None, target


def _match(root: Path, repo: str, branch: str, kind: WorkspaceKind) -> WorkspaceMatch | None:
    workspace = root / repo / branch
    if not workspace.is_dir():
        return None
    main_repo = None
    if kind == "worktree":
        recovered = main_repo_from_worktree(workspace)
        main_repo = Path(recovered) if recovered else None
    return WorkspaceMatch(workspace=workspace, repo=repo, branch=branch, kind=kind, main_repo=main_repo)


def resolve_workspace(
    target: str,
    root: Path,
    *,
    kind: WorkspaceKind = "clone",
    current_repo: str | None = None,
) -> Resolution:
    """Find the workspace for ``target`` under ``root``.

    Lookup order: explicit ``repo/branch``, the repository the caller is
    standing in (``current_repo``), then every repository under ``root``.
    """

    root = Path(root)
    repo, branch = split_target(target, root)

    if repo is not None:
        match = _match(root, repo, branch, kind)
        return Resolved(match) if match else NotFound(target)

    if current_repo:
        match = _match(root, current_repo, branch, kind)
        if match:
            return Resolved(match)

    matches: list[WorkspaceMatch] = []
    if root.is_dir():
        for repo_dir in sorted(root.iterdir()):
            if not repo_dir.is_dir():
                continue
            match = _match(root, repo_dir.name, branch, kind)
            if match:
                matches.append(match)

    if len(matches) == 1:
        return Resolved(matches[0])
    if matches:
        return Ambiguous(target, matches)
    return NotFound(target)


__all__ = [
    "Ambiguous",
    "NotFound",
    "Resolution",
    "Resolved",
    "WorkspaceMatch",
    "resolve_workspace",
    "split_target",
]
