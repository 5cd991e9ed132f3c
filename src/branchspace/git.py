"""Async wrappers around the git command line."""

from __future__ import annotations

import logging
from pathlib import Path

from .errors import ProvisioningError
from .process import CommandResult, CommandRunner

logger = logging.getLogger(__name__)


def read_worktree_pointer(workspace: str | Path) -> str | None:
    """Return the ``gitdir:`` target of a worktree's ``.git`` file, if it is one."""

    git_path = Path(workspace) / ".git"
    if not git_path.is_file():
        return None
    try:
        content = git_path.read_text(encoding="utf-8")
    except OSError:
        return None
    if not content.startswith("gitdir:"):
        return None
    return content[len("gitdir:"):].strip()


def is_worktree(workspace: str | Path) -> bool:
    """A linked worktree has a ``.git`` pointer file rather than a directory."""

    return read_worktree_pointer(workspace) is not None


def main_repo_from_worktree(workspace: str | Path) -> str | None:
    """Recover the primary checkout from ``<main>/.git/worktrees/<name>``."""

    gitdir = read_worktree_pointer(workspace)
    if gitdir is None:
        return None
    parts = Path(gitdir).parts
    for index in range(len(parts) - 1, 0, -1):
        if parts[index] == "worktrees" and parts[index - 1] == ".git":
            return str(Path(*parts[: index - 1]))
    return None


class GitClient:
    """Run git subcommands through a :class:`CommandRunner`."""

    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    async def _git(self, *args: str, cwd: str | Path | None = None) -> CommandResult:
        result = await self._runner.run(*args, cwd=cwd)
        return CommandResult(
            args=result.args,
            returncode=result.returncode,
            stdout=result.stdout.strip(),
            stderr=result.stderr.strip(),
        )

    async def _checked(self, *args: str, cwd: str | Path | None = None) -> CommandResult:
        result = await self._git(*args, cwd=cwd)
        if not result.ok:
            raise ProvisioningError(f"git {args[0]} failed: {result.stderr}", stderr=result.stderr)
        return result

    async def is_git_repo(self, directory: str | Path) -> bool:
        if not Path(directory).is_dir():
            return False
        result = await self._git("rev-parse", "--git-dir", cwd=directory)
        return result.ok

    async def repo_root(self, directory: str | Path) -> str | None:
        if not Path(directory).is_dir():
            return None
        result = await self._git("rev-parse", "--show-toplevel", cwd=directory)
        if result.ok and result.stdout:
            return result.stdout
        return None

    async def current_branch(self, directory: str | Path) -> str | None:
        result = await self._git("branch", "--show-current", cwd=directory)
        if result.ok and result.stdout:
            return result.stdout
        return None

    async def remote_url(self, directory: str | Path, remote: str = "origin") -> str | None:
        result = await self._git("remote", "get-url", remote, cwd=directory)
        if result.ok and result.stdout:
            return result.stdout
        return None

    async def branch_exists(self, directory: str | Path, branch: str) -> bool:
        result = await self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", cwd=directory)
        return result.ok

    async def clone(
        self,
        url: str,
        dest: str | Path,
        *,
        branch: str | None = None,
        reference: str | Path | None = None,
        dissociate: bool = True,
    ) -> None:
        args = ["clone"]
        if reference is not None:
            args.extend(["--reference", str(reference)])
            if dissociate:
                args.append("--dissociate")
        if branch:
            args.extend(["--branch", branch])
        args.extend([url, str(dest)])
        await self._checked(*args, cwd=Path(dest).parent)

    async def checkout(self, directory: str | Path, branch: str, *, create: bool = False) -> None:
        args = ["checkout"]
        if create:
            args.append("-b")
        args.append(branch)
        await self._checked(*args, cwd=directory)

    async def list_ignored_files(self, directory: str | Path) -> list[str]:
        result = await self._git(
            "ls-files", "--others", "--ignored", "--exclude-standard", cwd=directory
        )
        if not result.ok or not result.stdout:
            return []
        return [line for line in result.stdout.splitlines() if line]

    async def create_worktree(self, main_repo: str | Path, branch: str, dest: str | Path) -> None:
        if await self.branch_exists(main_repo, branch):
            await self._checked("worktree", "add", str(dest), branch, cwd=main_repo)
        else:
            await self._checked("worktree", "add", "-b", branch, str(dest), cwd=main_repo)

    async def remove_worktree(
        self, main_repo: str | Path, workspace: str | Path, *, force: bool = False
    ) -> None:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(workspace))
        await self._checked(*args, cwd=main_repo)

    async def status_porcelain(self, directory: str | Path) -> list[str] | None:
        """Return changed-path lines, or None when ``directory`` is not a repository."""

        result = await self._git("status", "--porcelain", cwd=directory)
        if not result.ok:
            return None
        return [line for line in result.stdout.splitlines() if line]

    async def ahead_count(self, directory: str | Path) -> tuple[int, bool]:
        """Return (commits not pushed, whether an upstream is configured)."""

        upstream = await self._git("rev-list", "--count", "@{upstream}..HEAD", cwd=directory)
        if upstream.ok and upstream.stdout.isdigit():
            return int(upstream.stdout), True
        fallback = await self._git("rev-list", "--count", "HEAD", "--not", "--remotes", cwd=directory)
        if fallback.ok and fallback.stdout.isdigit():
            return int(fallback.stdout), False
        return 0, False


__all__ = ["GitClient", "is_worktree", "main_repo_from_worktree", "read_worktree_pointer"]
