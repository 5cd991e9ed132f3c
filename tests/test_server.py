from __future__ import annotations

from pathlib import Path

from branchspace.app import build_branchspace
from branchspace.config import BranchspaceSettings
from branchspace.process import FakeCommandRunner
from branchspace.server import create_server


def test_create_server_wires_tools(tmp_path: Path) -> None:
    settings = BranchspaceSettings(
        config_dir=tmp_path / "config",
        cache_dir=tmp_path / "cache",
        clones_dir=tmp_path / "clones",
        worktrees_dir=tmp_path / "worktrees",
    )
    app = build_branchspace(
        settings,
        git_runner=FakeCommandRunner("git"),
        devcontainer_runner=FakeCommandRunner("devcontainer"),
        docker_runner=FakeCommandRunner("docker"),
        shell_runner=FakeCommandRunner("sh"),
        probe_ports=False,
    )

    server = create_server(settings, app=app)

    assert getattr(server, "branchspace") is app
    handles = getattr(server, "tool_handles")
    assert handles.workspace_target is not None
    assert handles.workspace_exec is not None
    assert settings.overrides_dir.is_dir()
