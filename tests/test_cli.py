from __future__ import annotations

import asyncio
import io
import json
import os
import time
from pathlib import Path

import pytest

from branchspace import cli
from branchspace.app import build_branchspace
from branchspace.config import BranchspaceSettings, get_settings
from branchspace.errors import CommandNotFoundError
from branchspace.process import FakeCommandRunner
from branchspace.storage import JobStatus, SessionBinding


@pytest.fixture
def app(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    settings = BranchspaceSettings(
        config_dir=tmp_path / "config",
        cache_dir=tmp_path / "cache",
        clones_dir=tmp_path / "clones",
        worktrees_dir=tmp_path / "worktrees",
    )
    instance = build_branchspace(
        settings,
        git_runner=FakeCommandRunner("git"),
        devcontainer_runner=FakeCommandRunner("devcontainer"),
        docker_runner=FakeCommandRunner("docker"),
        shell_runner=FakeCommandRunner("sh"),
        probe_ports=False,
    )
    monkeypatch.setattr(cli, "load_app", lambda _args: instance)
    return instance


def run_cli(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)
    return excinfo.value.code


def make_clone(root: Path, repo: str, branch: str, *, age_days: float = 0) -> Path:
    workspace = root / repo / branch
    (workspace / ".git").mkdir(parents=True)
    if age_days:
        stamp = time.time() - age_days * 86400
        os.utime(workspace, (stamp, stamp))
    return workspace


def test_ports_list_json(app, capsys) -> None:
    asyncio.run(app.ports.acquire("/ws/app/main"))

    assert run_cli(["ports", "--json"]) == 0
    assert json.loads(capsys.readouterr().out) == {"/ws/app/main": 13000}


def test_exec_without_command_is_invalid(app, capsys) -> None:
    assert run_cli(["exec", "--json"]) == 2
    payload = json.loads(capsys.readouterr().out)
    assert payload == {"error": "No command specified", "code": 2}


def test_split_exec_args() -> None:
    assert cli._split_exec_args(["feature", "--", "npm", "test"]) == ("feature", ["npm", "test"])
    assert cli._split_exec_args(["--", "ls"]) == (None, ["ls"])
    assert cli._split_exec_args(["ls", "-la"]) == (None, ["ls", "-la"])


def test_go_lists_and_prints_cd(app, capsys) -> None:
    workspace = make_clone(app.settings.clones_dir, "app", "feature")

    assert run_cli(["go", "--repo", "app"]) == 0
    listing = capsys.readouterr().out
    assert "Available clones for app" in listing
    assert "feature" in listing

    assert run_cli(["go", "feature"]) == 0
    assert capsys.readouterr().out.strip() == f"cd {workspace}"


def test_go_missing_clone_exits_not_found(app, capsys) -> None:
    assert run_cli(["go", "nonexistent-branch"]) == 3
    assert "Clone not found" in capsys.readouterr().err


def test_go_outside_repository(app, capsys) -> None:
    assert run_cli(["go", "--json"]) == 2
    assert json.loads(capsys.readouterr().out)["error"] == "Not in a git repository"


def test_list_reports_empty_inventory(app, capsys) -> None:
    assert run_cli(["list"]) == 0
    assert "No workspaces found" in capsys.readouterr().out


def test_list_prunes_sessions_for_missing_workspaces(app, capsys, tmp_path: Path) -> None:
    live = make_clone(app.settings.clones_dir, "app", "live")
    app.sessions.save(SessionBinding(session_id="kept", workspace=str(live), repo_name="app", branch="live"))
    app.sessions.save(
        SessionBinding(session_id="gone", workspace=str(tmp_path / "deleted"), repo_name="app", branch="old")
    )

    assert run_cli(["list", "--prune-sessions", "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)

    assert payload["pruned_sessions"] == ["gone"]
    assert app.sessions.load("gone") is None
    assert app.sessions.load("kept") is not None


def test_clean_requires_yes(app, capsys) -> None:
    workspace = make_clone(app.settings.clones_dir, "app", "old", age_days=10)
    make_clone(app.settings.clones_dir, "app", "fresh")

    assert run_cli(["clean"]) == 0
    out = capsys.readouterr().out
    assert "Would remove app/old" in out
    assert "fresh" not in out
    assert workspace.exists()

    assert run_cli(["clean", "--yes", "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert [entry["branch"] for entry in payload["removed"]] == ["old"]
    assert not workspace.exists()


def test_jobs_listing(app, capsys) -> None:
    app.jobs.record("/ws/app/main", JobStatus.PENDING)
    app.jobs.record("/ws/app/main", JobStatus.FAILED, {"error": "no docker"})

    assert run_cli(["jobs"]) == 0
    assert "[failed] /ws/app/main: no docker" in capsys.readouterr().out


def test_hook_rewrites_workspace_commands(app, capsys, monkeypatch) -> None:
    app.sessions.save(
        SessionBinding(session_id="sess", workspace="/ws/app/feature", repo_name="app", branch="feature")
    )
    event = {"session_id": "sess", "tool_name": "Bash", "tool_input": {"command": "npm test"}}
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps(event)))

    assert run_cli(["hook"]) == 0
    output = json.loads(capsys.readouterr().out)
    updated = output["hookSpecificOutput"]["updatedInput"]["command"]
    assert updated == "devcontainer exec --workspace-folder /ws/app/feature -- npm test"


def test_hook_prefixes_cd_for_worktrees(app, capsys, monkeypatch) -> None:
    app.sessions.save(
        SessionBinding(
            session_id="sess", workspace="/wt/app/feature", repo_name="app", branch="feature", kind="worktree"
        )
    )
    event = {
        "session_id": "sess",
        "tool_name": "Bash",
        "cwd": "/src/app",
        "tool_input": {"command": "npm test", "timeout": 5},
    }
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps(event)))

    assert run_cli(["hook"]) == 0
    updated = json.loads(capsys.readouterr().out)["hookSpecificOutput"]["updatedInput"]
    assert updated == {"command": "cd /wt/app/feature && npm test", "timeout": 5}


def test_hook_ignores_other_tools_and_bad_input(app, capsys, monkeypatch) -> None:
    event = {"session_id": "sess", "tool_name": "Read", "tool_input": {"file_path": "/x"}}
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps(event)))
    assert run_cli(["hook"]) == 0

    monkeypatch.setattr("sys.stdin", io.StringIO("not json"))
    assert run_cli(["hook"]) == 0

    assert capsys.readouterr().out == ""


def test_hook_leaves_command_alone_when_setup_fails(capsys, monkeypatch) -> None:
    def missing_git(_args):
        raise CommandNotFoundError("git not found")

    monkeypatch.setattr(cli, "load_app", missing_git)
    event = {"session_id": "sess", "tool_name": "Bash", "tool_input": {"command": "npm test"}}
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps(event)))
    assert run_cli(["hook"]) == 0

    get_settings.cache_clear()
    monkeypatch.setenv("BRANCHSPACE_LOG_LEVEL", "chatty")
    monkeypatch.setattr(cli, "load_app", lambda _args: build_branchspace(cli.load_settings()))
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps(event)))
    try:
        assert run_cli(["hook"]) == 0
        assert run_cli(["ports"]) == 2
    finally:
        get_settings.cache_clear()

    captured = capsys.readouterr()
    assert captured.out == ""
    assert "Invalid configuration" in captured.err
