"""Drive the devcontainer CLI for clone workspaces."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from .config import path_id
from .errors import NotFoundError, ProvisioningError, ValidationError
from .git import GitClient
from .process import CommandResult, CommandRunner
from .storage import JobStatus, JobStore, PortTable
from .workspaces import Provisioner

logger = logging.getLogger(__name__)

DEFAULT_INTERNAL_PORT = 3000
_PORT_MAPPING = re.compile(r"^\d+:\d+$")


@dataclass(slots=True)
class UpResult:
    workspace: Path
    port: int
    repo: str
    branch: str
    override_path: Path
    command: list[str] = field(default_factory=list)
    dry_run: bool = False
    stdout: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "workspace": str(self.workspace),
            "port": self.port,
            "repo": self.repo,
            "branch": self.branch,
            "override_config": str(self.override_path),
        }
        if self.dry_run:
            payload["dry_run"] = True
            payload["command"] = " ".join(self.command)
        return payload


def override_path_for(overrides_dir: str | Path, workspace: str | Path) -> Path:
    """Return where the port overlay for ``workspace`` lives."""

    return Path(overrides_dir) / f"{path_id(workspace)}.json"


def _config_candidates(workspace: str | Path) -> tuple[Path, Path]:
    workspace = Path(workspace)
    return workspace / ".devcontainer" / "devcontainer.json", workspace / ".devcontainer.json"


def devcontainer_config_path(workspace: str | Path) -> Path | None:
    for candidate in _config_candidates(workspace):
        if candidate.is_file():
            return candidate
    return None


def read_devcontainer_json(workspace: str | Path) -> dict[str, Any] | None:
    for candidate in _config_candidates(workspace):
        if not candidate.is_file():
            continue
        try:
            document = json.loads(candidate.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            continue
        if isinstance(document, dict):
            return document
    return None


def detect_internal_port(config: dict[str, Any] | None) -> int:
    """Return the container-side port the app listens on."""

    if not config:
        return DEFAULT_INTERNAL_PORT

    forward_ports = config.get("forwardPorts")
    if isinstance(forward_ports, list) and forward_ports:
        first = forward_ports[0]
        if isinstance(first, int):
            return first
        if isinstance(first, str) and first.strip().isdigit():
            return int(first.strip())

    run_args = config.get("runArgs")
    if isinstance(run_args, list):
        for index, arg in enumerate(run_args):
            if arg == "-p" and index + 1 < len(run_args):
                mapping = str(run_args[index + 1])
                container_side = mapping.rsplit(":", 1)[-1]
                if ":" in mapping and container_side.isdigit():
                    return int(container_side)
            if isinstance(arg, str) and _PORT_MAPPING.match(arg):
                return int(arg.split(":")[1])

    return DEFAULT_INTERNAL_PORT


def _strip_port_args(run_args: Any) -> list[str]:
    if not isinstance(run_args, list):
        return []
    result: list[str] = []
    skip_next = False
    for arg in run_args:
        if skip_next:
            skip_next = False
            continue
        if arg == "-p":
            skip_next = True
            continue
        if isinstance(arg, str) and _PORT_MAPPING.match(arg):
            continue
        result.append(arg)
    return result


def build_up_args(workspace: str | Path, override_path: str | Path, *, remove_existing: bool = False) -> list[str]:
    args = ["up", "--workspace-folder", str(workspace), "--override-config", str(override_path)]
    if remove_existing:
        args.append("--remove-existing-container")
    return args


def build_exec_args(workspace: str | Path, command: list[str], *, override_path: str | Path | None = None) -> list[str]:
    args = ["exec", "--workspace-folder", str(workspace)]
    if override_path is not None:
        args.extend(["--override-config", str(override_path)])
    args.append("--")
    args.extend(command)
    return args


class Devcontainers:
    """Start, exec into, and stop containerized clone workspaces."""

    def __init__(
        self,
        *,
        devcontainer: CommandRunner | None,
        docker: CommandRunner | None,
        git: GitClient,
        provisioner: Provisioner,
        ports: PortTable,
        jobs: JobStore,
        overrides_dir: Path,
    ) -> None:
        self._devcontainer = devcontainer
        self._docker = docker
        self._git = git
        self._provisioner = provisioner
        self._ports = ports
        self._jobs = jobs
        self._overrides_dir = Path(overrides_dir)
        self._tasks: dict[str, asyncio.Task[UpResult]] = {}

    @property
    def available(self) -> bool:
        return self._devcontainer is not None

    def _require_cli(self) -> CommandRunner:
        if self._devcontainer is None:
            raise ProvisioningError(
                "devcontainer CLI not found. Install with: npm install -g @devcontainers/cli"
            )
        return self._devcontainer

    def override_path(self, workspace: str | Path) -> Path:
        return override_path_for(self._overrides_dir, workspace)

    def existing_override(self, workspace: str | Path) -> Path | None:
        path = self.override_path(workspace)
        return path if path.is_file() else None

    def generate_override_config(self, workspace: str | Path, port: int) -> Path:
        """Write a config overlay that maps ``port`` onto the container's app port."""

        workspace = Path(workspace)
        base = read_devcontainer_json(workspace) or {}
        internal_port = detect_internal_port(base)
        override = {
            **base,
            "name": f"{workspace.name} (port {port})",
            "workspaceFolder": f"/workspaces/{workspace.name}",
            "runArgs": [*_strip_port_args(base.get("runArgs")), "-p", f"{port}:{internal_port}"],
        }
        path = self.override_path(workspace)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(override, indent=2), encoding="utf-8")
        return path

    async def _resolve_target(self, target: str, cwd: str | Path | None) -> tuple[Path, str, str]:
        target = (target or "").strip()
        if not target:
            raise ValidationError("A branch name or workspace path is required")

        if Path(target).is_absolute():
            workspace = Path(target)
            if not workspace.is_dir():
                raise NotFoundError(f"Workspace does not exist: {workspace}")
            branch = await self._git.current_branch(workspace) or "unknown"
            return workspace, workspace.parent.name, branch

        repo_root = await self._git.repo_root(cwd or Path.cwd())
        if repo_root is None:
            raise ValidationError(
                "Not in a git repository. Run from a repo directory or specify a workspace path."
            )
        clone = await self._provisioner.create_clone(repo_root, target)
        return clone.workspace, clone.repo, clone.branch

    async def up(
        self,
        target: str,
        *,
        cwd: str | Path | None = None,
        remove_existing: bool = False,
        dry_run: bool = False,
    ) -> UpResult:
        """Provision (if needed) and start the container for ``target``.

        ``target`` is a branch name, cloned from the repository at ``cwd``,
        or an absolute workspace path.
        """

        workspace, repo, branch = await self._resolve_target(target, cwd)
        if devcontainer_config_path(workspace) is None:
            raise NotFoundError(f"No devcontainer.json found in {workspace}")

        port = await self._ports.acquire(workspace)
        override_path = self.generate_override_config(workspace, port)
        args = build_up_args(workspace, override_path, remove_existing=remove_existing)
        result = UpResult(
            workspace=workspace,
            port=port,
            repo=repo,
            branch=branch,
            override_path=override_path,
            command=["devcontainer", *args],
        )
        if dry_run:
            result.dry_run = True
            return result

        try:
            outcome = await self._require_cli().run(*args)
        except BaseException:
            await self._ports.release(workspace)
            raise
        if not outcome.ok:
            await self._ports.release(workspace)
            raise ProvisioningError(
                f"devcontainer up failed: {outcome.stderr.strip()}", stderr=outcome.stderr
            )

        logger.info("Container started", extra={"workspace": str(workspace), "port": port})
        result.stdout = outcome.stdout
        return result

    def up_background(
        self,
        workspace: str | Path,
        *,
        repo: str | None = None,
        branch: str | None = None,
        on_done: Callable[[UpResult | None, BaseException | None], Awaitable[None] | None] | None = None,
    ) -> asyncio.Task[UpResult]:
        """Start the container for an existing ``workspace`` as a tracked job.

        The job file moves pending -> running -> completed|failed, so another
        caller (or process) can report progress without awaiting the task.
        """

        key = str(workspace)
        existing = self._tasks.get(key)
        if existing is not None and not existing.done():
            return existing

        self._jobs.record(key, JobStatus.PENDING, {"repo": repo, "branch": branch})

        async def _run() -> UpResult:
            self._jobs.record(key, JobStatus.RUNNING)
            try:
                result = await self.up(key)
            except BaseException as exc:
                self._jobs.record(key, JobStatus.FAILED, {"error": str(exc) or type(exc).__name__})
                await _notify(on_done, None, exc)
                raise
            self._jobs.record(key, JobStatus.COMPLETED, {"port": result.port})
            await _notify(on_done, result, None)
            return result

        task = asyncio.get_running_loop().create_task(_run())
        task.add_done_callback(_consume_exception)
        self._tasks[key] = task
        return task

    async def exec(
        self,
        workspace: str | Path,
        command: list[str],
        *,
        cancel: asyncio.Event | None = None,
    ) -> CommandResult:
        args = build_exec_args(workspace, command, override_path=self.existing_override(workspace))
        return await self._require_cli().run(*args, cancel=cancel)

    async def down(self, workspace: str | Path) -> bool:
        """Release the workspace's port and drop its override.

        The devcontainer CLI has no stop command; the container itself is left
        to the editor or ``docker stop``.
        """

        released = await self._ports.release(workspace)
        override = self.existing_override(workspace)
        if override is not None:
            override.unlink()
        return released

    async def is_container_running(self, workspace: str | Path) -> bool:
        if self._docker is None:
            return False
        result = await self._docker.run(
            "ps",
            "--filter",
            f"label=devcontainer.local_folder={workspace}",
            "--format",
            "{{.ID}}",
        )
        return result.ok and bool(result.stdout.strip())


async def _notify(
    callback: Callable[[UpResult | None, BaseException | None], Awaitable[None] | None] | None,
    result: UpResult | None,
    error: BaseException | None,
) -> None:
    if callback is None:
        return
    try:
        outcome = callback(result, error)
        if asyncio.iscoroutine(outcome):
            await outcome
    except Exception:
        logger.exception("Background completion callback failed")


def _consume_exception(task: asyncio.Task[UpResult]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning("Background container start failed", extra={"error": str(error)})


__all__ = [
    "DEFAULT_INTERNAL_PORT",
    "Devcontainers",
    "UpResult",
    "build_exec_args",
    "build_up_args",
    "detect_internal_port",
    "devcontainer_config_path",
    "override_path_for",
    "read_devcontainer_json",
]
