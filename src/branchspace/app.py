"""Wire the stores, git client, provisioner, and router from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import BranchspaceSettings, ensure_dirs
from .devcontainer import Devcontainers
from .errors import CommandNotFoundError
from .git import GitClient
from .process import CommandRunner
from .routing import CommandClassifier, SessionRouter, load_policy
from .storage import JobStore, PortTable, SessionStore, is_port_free
from .workspaces import Provisioner, WorkspaceInventory

logger = logging.getLogger(__name__)

CLI_NAME = "branchspace"


@dataclass(slots=True)
class Branchspace:
    settings: BranchspaceSettings
    git: GitClient
    ports: PortTable
    sessions: SessionStore
    jobs: JobStore
    provisioner: Provisioner
    inventory: WorkspaceInventory
    devcontainers: Devcontainers
    router: SessionRouter
    tools: dict[str, Any] = field(default_factory=dict)


def _optional_runner(name: str, explicit: str | None) -> CommandRunner | None:
    try:
        return CommandRunner(name, explicit)
    except CommandNotFoundError as exc:
        logger.info("Optional tool unavailable", extra={"tool": name, "error": str(exc)})
        return None


def build_branchspace(
    settings: BranchspaceSettings,
    *,
    git_runner: CommandRunner | None = None,
    devcontainer_runner: CommandRunner | None = None,
    docker_runner: CommandRunner | None = None,
    shell_runner: CommandRunner | None = None,
    probe_ports: bool = True,
) -> Branchspace:
    """Construct every component; missing container tools degrade to ``None``.

    git is required and raises :class:`CommandNotFoundError` when absent.
    """

    ensure_dirs(settings)

    git = GitClient(git_runner or CommandRunner("git", settings.git_path))
    devcontainer = devcontainer_runner or _optional_runner("devcontainer", settings.devcontainer_path)
    docker = docker_runner or _optional_runner("docker", settings.docker_path)
    shell = shell_runner or _optional_runner("sh", None)

    ports = PortTable(
        settings.ports_file,
        start=settings.port_range_start,
        end=settings.port_range_end,
        stale_after=settings.lock_stale_seconds,
        probe=is_port_free if probe_ports else None,
    )
    sessions = SessionStore(settings.sessions_path)
    jobs = JobStore(settings.jobs_dir)
    provisioner = Provisioner(git, clones_dir=settings.clones_dir, worktrees_dir=settings.worktrees_dir)
    inventory = WorkspaceInventory(
        git,
        clones_dir=settings.clones_dir,
        worktrees_dir=settings.worktrees_dir,
        ports=ports,
        sessions=sessions,
    )
    devcontainers = Devcontainers(
        devcontainer=devcontainer,
        docker=docker,
        git=git,
        provisioner=provisioner,
        ports=ports,
        jobs=jobs,
        overrides_dir=settings.overrides_dir,
    )
    devcontainer_program = settings.devcontainer_path or "devcontainer"
    classifier = CommandClassifier(
        load_policy(settings.host_commands_path),
        recursion_guard=(CLI_NAME, "devcontainer", Path(devcontainer_program).name),
    )
    router = SessionRouter(
        sessions,
        jobs,
        classifier,
        overrides_dir=settings.overrides_dir,
        devcontainer_program=devcontainer_program,
        devcontainers=devcontainers,
        shell=shell,
        job_retention_seconds=settings.job_retention_seconds,
        failed_job_retention_seconds=settings.failed_job_retention_seconds,
    )
    return Branchspace(
        settings=settings,
        git=git,
        ports=ports,
        sessions=sessions,
        jobs=jobs,
        provisioner=provisioner,
        inventory=inventory,
        devcontainers=devcontainers,
        router=router,
        tools={
            "devcontainer": str(devcontainer.executable) if devcontainer else None,
            "docker": str(docker.executable) if docker else None,
        },
    )


__all__ = ["Branchspace", "CLI_NAME", "build_branchspace"]
