from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

from branchspace.git import GitClient
from branchspace.process import CommandResult, CommandRunner, FakeCommandRunner
from branchspace.storage import PortTable, SessionBinding, SessionStore
from branchspace.workspaces import WorkspaceInventory, format_workspace

from conftest import git, init_repo, requires_git

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class NotARepoRunner(FakeCommandRunner):
    async def run(self, *args, cwd=None, cancel=None):  # type: ignore[override]
        await super().run(*args, cwd=cwd, cancel=cancel)
        return CommandResult(args=args, returncode=128, stdout="", stderr="not a git repository")


def make_inventory(tmp_path: Path, runner: CommandRunner | None = None) -> WorkspaceInventory:
    return WorkspaceInventory(
        GitClient(runner or NotARepoRunner("git")),
        clones_dir=tmp_path / "clones",
        worktrees_dir=tmp_path / "worktrees",
        ports=PortTable(tmp_path / "ports.json", start=13000, end=13009),
        sessions=SessionStore(tmp_path / "sessions"),
        clock=lambda: NOW,
    )


def make_clone(tmp_path: Path, repo: str, branch: str, *, age_days: float | None = None) -> Path:
    path = tmp_path / "clones" / repo / branch
    (path / ".git").mkdir(parents=True)
    if age_days is not None:
        stamp = (NOW - timedelta(days=age_days)).timestamp()
        os.utime(path, (stamp, stamp))
    return path


def test_list_all_joins_ports_and_sessions(tmp_path: Path) -> None:
    clone = make_clone(tmp_path, "app", "feature")
    worktree = tmp_path / "worktrees" / "app" / "hotfix"
    worktree.mkdir(parents=True)
    (worktree / ".git").write_text("gitdir: /src/app/.git/worktrees/hotfix\n", encoding="utf-8")
    (tmp_path / "ports.json").write_text(
        json.dumps({str(clone): 13000, "/gone/app/old": 13001}), encoding="utf-8"
    )
    inventory = make_inventory(tmp_path)
    SessionStore(tmp_path / "sessions").save(
        SessionBinding(session_id="s1", workspace=str(clone), repo_name="app", branch="feature")
    )

    descriptors = {descriptor.kind: descriptor for descriptor in inventory.list_all()}

    assert descriptors["clone"].port == 13000
    assert descriptors["clone"].sessions == ["s1"]
    assert descriptors["worktree"].main_repo == Path("/src/app")
    assert descriptors["orphan"].workspace == Path("/gone/app/old")
    assert descriptors["orphan"].port == 13001
    assert [item.kind for item in inventory.list_all(kind="worktree")] == ["worktree"]


def test_find_stale_respects_age_threshold(tmp_path: Path) -> None:
    make_clone(tmp_path, "app", "fresh", age_days=6)
    make_clone(tmp_path, "app", "old", age_days=8)
    (tmp_path / "ports.json").write_text(json.dumps({"/gone/x/y": 13005}), encoding="utf-8")

    stale = asyncio.run(make_inventory(tmp_path).find_stale(7))

    assert [descriptor.branch for descriptor in stale] == ["old"]
    assert stale[0].has_uncommitted is False


def test_status_for_non_repository(tmp_path: Path) -> None:
    status = asyncio.run(make_inventory(tmp_path).status(tmp_path / "nowhere"))

    assert status.is_git is False
    assert status.clean is True


@requires_git
def test_status_reports_uncommitted_changes(tmp_path: Path) -> None:
    repo = init_repo(tmp_path / "clones" / "app" / "main")
    (repo / "README.md").write_text("changed\n", encoding="utf-8")
    (repo / "new.txt").write_text("new\n", encoding="utf-8")

    status = asyncio.run(make_inventory(tmp_path, CommandRunner("git")).status(repo))

    assert status.is_git
    assert not status.clean
    assert status.uncommitted_count == 2
    assert status.has_upstream is False
    assert status.ahead == 1


@requires_git
def test_status_tracks_upstream(tmp_path: Path) -> None:
    upstream = init_repo(tmp_path / "upstream")
    clone = tmp_path / "clones" / "upstream" / "main"
    git(tmp_path, "clone", "-q", str(upstream), str(clone))
    (clone / "file.txt").write_text("x\n", encoding="utf-8")
    git(clone, "add", "file.txt")
    git(clone, "commit", "-q", "-m", "local")

    status = asyncio.run(make_inventory(tmp_path, CommandRunner("git")).status(clone))

    assert status.clean
    assert status.has_upstream
    assert status.ahead == 1
    assert not status.pushed


def test_format_workspace_summary(tmp_path: Path) -> None:
    path = make_clone(tmp_path, "app", "feature", age_days=9)
    descriptor = make_inventory(tmp_path).list_all()[0]
    descriptor.has_uncommitted = True
    descriptor.uncommitted_count = 2

    text = format_workspace(descriptor, now=NOW)

    assert text == "[clone] app/feature (9d ago) [2 uncommitted]"
    assert descriptor.workspace == path
