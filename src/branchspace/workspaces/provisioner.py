"""Create, locate, and remove branch workspaces (clones and worktrees)."""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections import Counter
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from ..errors import ProvisioningError, ValidationError
from ..git import GitClient, is_worktree

logger = logging.getLogger(__name__)

# Generated lockfiles are never copied.
SKIP_FILES = frozenset(
    {
        "package-lock.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "Gemfile.lock",
        "Cargo.lock",
        "poetry.lock",
        "composer.lock",
    }
)

MAX_FILE_SIZE = 100 * 1024

MAX_FILES_PER_DIR = 10


@dataclass(slots=True)
class CloneResult:
    workspace: Path
    created: bool
    repo: str
    branch: str


@dataclass(slots=True)
class WorktreeResult:
    workspace: Path
    created: bool
    repo: str
    branch: str
    main_repo: Path


def _top_level(rel_path: str) -> str:
    parts = PurePosixPath(rel_path).parts
    return parts[0] if len(parts) > 1 else "."


def _validate_branch(branch: str) -> str:
    normalized = (branch or "").strip()
    if not normalized:
        raise ValidationError("A branch name is required")
    if ".." in PurePosixPath(normalized).parts or normalized.startswith("/"):
        raise ValidationError(f"Invalid branch name '{branch}'")
    return normalized


class Provisioner:
    """Materialize workspaces under the clones and worktrees roots."""

    def __init__(self, git: GitClient, *, clones_dir: Path, worktrees_dir: Path) -> None:
        self._git = git
        self._clones_dir = Path(clones_dir)
        self._worktrees_dir = Path(worktrees_dir)

    @property
    def clones_dir(self) -> Path:
        return self._clones_dir

    @property
    def worktrees_dir(self) -> Path:
        return self._worktrees_dir

    def clone_path(self, repo: str, branch: str) -> Path:
        return self._clones_dir / repo / branch

    def worktree_path(self, repo: str, branch: str) -> Path:
        return self._worktrees_dir / repo / branch

    async def copy_gitignored(self, source: str | Path, dest: str | Path) -> int:
        """Copy small gitignored files (``.env`` and friends) from ``source`` to ``dest``.

        Never overwrites, never follows ``..``, and skips anything that looks
        like dependencies or build output. Unreadable files are skipped one by
        one. Returns the number of files copied.
        """

        source = Path(source)
        dest = Path(dest)
        ignored = await self._git.list_ignored_files(source)
        if not ignored:
            return 0

        per_dir = Counter(_top_level(rel_path) for rel_path in ignored)
        copied = 0
        for rel_path in ignored:
            if ".." in rel_path:
                continue
            if PurePosixPath(rel_path).name in SKIP_FILES:
                continue
            if per_dir[_top_level(rel_path)] > MAX_FILES_PER_DIR:
                continue
            if await asyncio.to_thread(_copy_one, source / rel_path, dest / rel_path):
                copied += 1

        logger.info(
            "Copied gitignored files",
            extra={"source": str(source), "dest": str(dest), "copied": copied},
        )
        return copied

    async def create_clone(self, repo_root: str | Path, branch: str, *, force: bool = False) -> CloneResult:
        """Create a full clone of ``repo_root`` with ``branch`` checked out.

        An existing clone is returned untouched unless ``force`` is set, in
        which case it is deleted and recreated.
        """

        branch = _validate_branch(branch)
        repo_root = Path(repo_root)
        repo = repo_root.name
        workspace = self.clone_path(repo, branch)

        if workspace.exists():
            if not force:
                return CloneResult(workspace=workspace, created=False, repo=repo, branch=branch)
            logger.info("Recreating clone", extra={"workspace": str(workspace)})
            await asyncio.to_thread(shutil.rmtree, workspace, True)

        workspace.parent.mkdir(parents=True, exist_ok=True)
        remote_url = await self._git.remote_url(repo_root)

        if remote_url:
            try:
                await self._git.clone(remote_url, workspace, reference=repo_root, branch=branch)
            except ProvisioningError as exc:
                message = str(exc)
                if "not found" not in message and "did not match" not in message:
                    raise
                # Branch is local only; start from the remote default branch.
                await asyncio.to_thread(shutil.rmtree, workspace, True)
                await self._git.clone(remote_url, workspace, reference=repo_root)
                await self._git.checkout(workspace, branch, create=True)
        else:
            await self._git.clone(str(repo_root), workspace)
            current = await self._git.current_branch(workspace)
            if current != branch:
                await self._git.checkout(workspace, branch, create=True)

        await self.copy_gitignored(repo_root, workspace)
        logger.info("Created clone", extra={"workspace": str(workspace), "branch": branch})
        return CloneResult(workspace=workspace, created=True, repo=repo, branch=branch)

    async def create_worktree(
        self, repo_root: str | Path, branch: str, *, force: bool = False
    ) -> WorktreeResult:
        """Create a linked worktree for ``branch`` from the primary checkout ``repo_root``."""

        branch = _validate_branch(branch)
        repo_root = Path(repo_root)
        if not await self._git.is_git_repo(repo_root):
            raise ValidationError(f"Not a git repository: {repo_root}")
        if is_worktree(repo_root):
            raise ValidationError(
                "Already in a worktree. Use the main repository to create new worktrees."
            )

        repo = repo_root.name
        workspace = self.worktree_path(repo, branch)
        if workspace.exists():
            if not force:
                return WorktreeResult(
                    workspace=workspace, created=False, repo=repo, branch=branch, main_repo=repo_root
                )
            await self._git.remove_worktree(repo_root, workspace, force=True)

        workspace.parent.mkdir(parents=True, exist_ok=True)
        await self._git.create_worktree(repo_root, branch, workspace)
        await self.copy_gitignored(repo_root, workspace)
        if (workspace / ".envrc").exists():
            _schedule_direnv_allow(workspace)

        logger.info("Created worktree", extra={"workspace": str(workspace), "branch": branch})
        return WorktreeResult(
            workspace=workspace, created=True, repo=repo, branch=branch, main_repo=repo_root
        )

    async def remove_clone(self, repo: str, branch: str) -> bool:
        workspace = self.clone_path(repo, branch)
        if not workspace.exists():
            return False
        await asyncio.to_thread(shutil.rmtree, workspace, True)
        logger.info("Removed clone", extra={"workspace": str(workspace)})
        return True

    async def remove_worktree(
        self, workspace: str | Path, main_repo: str | Path, *, force: bool = False
    ) -> bool:
        workspace = Path(workspace)
        if not workspace.exists():
            return False
        await self._git.remove_worktree(main_repo, workspace, force=force)
        logger.info("Removed worktree", extra={"workspace": str(workspace)})
        return True


def _copy_one(source: Path, dest: Path) -> bool:
    try:
        if source.is_symlink() or not source.is_file():
            return False
        if source.stat().st_size > MAX_FILE_SIZE:
            return False
        if dest.exists():
            return False
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, dest)
    except OSError as exc:
        logger.debug("Skipping unreadable file", extra={"path": str(source), "error": str(exc)})
        return False
    return True


def _schedule_direnv_allow(workspace: Path) -> None:
    direnv = shutil.which("direnv")
    if direnv is None:
        return

    async def _allow() -> None:
        process = await asyncio.create_subprocess_exec(
            direnv,
            "allow",
            cwd=str(workspace),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await process.wait()

    task = asyncio.get_running_loop().create_task(_allow())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


_background_tasks: set[asyncio.Task[None]] = set()


__all__ = [
    "CloneResult",
    "MAX_FILE_SIZE",
    "MAX_FILES_PER_DIR",
    "Provisioner",
    "SKIP_FILES",
    "WorktreeResult",
]
