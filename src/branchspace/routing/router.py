"""Decide where each agent command runs and rewrite it accordingly."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Literal, Mapping

from ..devcontainer import Devcontainers, build_exec_args, override_path_for
from ..errors import NotFoundError, ProvisioningError
from ..process import CommandResult, CommandRunner
from ..storage import BackgroundJob, JobStatus, JobStore, SessionBinding, SessionStore
from .policy import HostCommandPolicy

logger = logging.getLogger(__name__)

Classification = Literal["host", "workspace", "escape"]

_SAFE = re.compile(r"^[a-zA-Z0-9_\-./=:@]+$")


def shell_quote(value: str) -> str:
    """Quote ``value`` for a POSIX shell, leaving plainly safe strings alone."""

    if _SAFE.match(value):
        return value
    return "'" + value.replace("'", "'\"'\"'") + "'"


def command_argv(command: str) -> list[str]:
    """Split simple commands into words; hand anything shell-shaped to ``sh -c``."""

    words = command.split()
    if words and all(_SAFE.match(word) for word in words):
        return words
    return ["sh", "-c", command]


class CommandClassifier:
    """Classify commands by their first word against the host allow-list.

    The recursion guard names (this tool's own CLI and the container CLI)
    are always host-bound, whatever the allow-list says, so a routed
    ``devcontainer exec`` is never routed again.
    """

    def __init__(self, policy: HostCommandPolicy, *, recursion_guard: Iterable[str] = ()) -> None:
        self._policy = policy
        self._host = frozenset(policy.commands)
        self._guard = frozenset(recursion_guard)
        self._escape = re.compile(rf"^{re.escape(policy.escape_prefix)}\s*", re.IGNORECASE)

    @property
    def policy(self) -> HostCommandPolicy:
        return self._policy

    def is_escape(self, command: str) -> bool:
        return bool(self._escape.match(command.strip()))

    def strip_escape(self, command: str) -> str:
        return self._escape.sub("", command.strip(), count=1)

    def is_recursion_guarded(self, command: str) -> bool:
        words = command.strip().split()
        return bool(words) and os.path.basename(words[0]) in self._guard

    def classify(self, command: str) -> Classification:
        trimmed = (command or "").strip()
        if not trimmed:
            return "host"
        if self.is_escape(trimmed):
            return "escape"
        if self.is_recursion_guarded(trimmed):
            return "host"
        if trimmed.split()[0] in self._host:
            return "host"
        return "workspace"


@dataclass(slots=True)
class RoutedCommand:
    command: str
    classification: Classification
    workdir: str | None = None
    rewritten: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "classification": self.classification,
            "workdir": self.workdir,
            "rewritten": self.rewritten,
        }


def _blocked(message: str) -> str:
    return f"(echo {shell_quote(message)} >&2; exit 1)"


class SessionRouter:
    """Rewrite commands for the workspace a session is bound to."""

    def __init__(
        self,
        sessions: SessionStore,
        jobs: JobStore,
        classifier: CommandClassifier,
        *,
        overrides_dir: Path,
        devcontainer_program: str = "devcontainer",
        devcontainers: Devcontainers | None = None,
        shell: CommandRunner | None = None,
        job_retention_seconds: float = 3600.0,
        failed_job_retention_seconds: float | None = 86400.0,
    ) -> None:
        self._sessions = sessions
        self._jobs = jobs
        self._classifier = classifier
        self._overrides_dir = Path(overrides_dir)
        self._program = devcontainer_program
        self._devcontainers = devcontainers
        self._shell = shell
        self._auto_initialized: set[str] = set()
        self._jobs.cleanup(job_retention_seconds, failed_job_retention_seconds)

    @property
    def classifier(self) -> CommandClassifier:
        return self._classifier

    def classify(self, command: str) -> Classification:
        return self._classifier.classify(command)

    def auto_initialize(self, session_id: str, environ: Mapping[str, str] | None = None) -> SessionBinding | None:
        """Bind ``session_id`` from BRANCHSPACE_* variables, once per process."""

        if session_id in self._auto_initialized:
            return None
        self._auto_initialized.add(session_id)
        if self._sessions.load(session_id) is not None:
            return None

        env = os.environ if environ is None else environ
        workspace = env.get("BRANCHSPACE_WORKSPACE")
        branch = env.get("BRANCHSPACE_BRANCH")
        if not workspace or not branch or not Path(workspace).is_dir():
            return None

        normalized = Path(workspace.rstrip("/"))
        binding = SessionBinding(
            session_id=session_id,
            workspace=str(normalized),
            repo_name=normalized.parent.name or "unknown",
            branch=branch,
            kind="worktree" if (normalized / ".git").is_file() else "clone",
            source_url=env.get("BRANCHSPACE_SOURCE_URL"),
            source_type=env.get("BRANCHSPACE_SOURCE_TYPE"),
            auto_initialized=True,
        )
        logger.info("Auto-initialized session", extra={"session_id": session_id, "workspace": binding.workspace})
        return self._sessions.save(binding)

    def _pending_job(self, binding: SessionBinding) -> BackgroundJob | None:
        """Return the unfinished or failed job blocking ``binding``; clear ``starting`` otherwise."""

        job = self._jobs.get(binding.workspace)
        if job is not None and job.status is not JobStatus.COMPLETED:
            return job
        self._sessions.update(binding.session_id, starting=False)
        return None

    def exec_command(self, binding: SessionBinding, command: str) -> str:
        """Return the shell text that runs ``command`` inside the container."""

        override = override_path_for(self._overrides_dir, binding.workspace)
        args = build_exec_args(
            binding.workspace,
            command_argv(command),
            override_path=override if override.is_file() else None,
        )
        return " ".join(shell_quote(part) for part in [self._program, *args])

    def route(self, session_id: str, command: str, *, cwd: str | None = None) -> RoutedCommand:
        """Rewrite ``command`` for the session's workspace.

        Host commands pass through, ``HOST:`` commands lose their prefix,
        worktree sessions get their working directory redirected, and
        container sessions get a ``devcontainer exec`` invocation.
        """

        trimmed = (command or "").strip()
        binding = self._sessions.load(session_id)
        classification = self.classify(trimmed)

        if binding is None or not binding.workspace or not trimmed:
            return RoutedCommand(command=command, classification=classification, workdir=cwd)

        if classification == "escape":
            return RoutedCommand(
                command=self._classifier.strip_escape(trimmed),
                classification="escape",
                workdir=cwd,
                rewritten=True,
            )

        if binding.kind == "worktree":
            return RoutedCommand(command=command, classification=classification, workdir=binding.workspace)

        if classification == "host":
            return RoutedCommand(command=command, classification="host", workdir=cwd)

        if binding.starting:
            job = self._pending_job(binding)
            if job is not None:
                return RoutedCommand(
                    command=_blocked(_job_message(binding, job)),
                    classification="host",
                    workdir=cwd,
                    rewritten=True,
                )

        return RoutedCommand(
            command=self.exec_command(binding, trimmed),
            classification="workspace",
            workdir=cwd,
            rewritten=True,
        )

    async def exec(
        self,
        session_id: str,
        command: str,
        *,
        cancel: asyncio.Event | None = None,
    ) -> CommandResult:
        """Run ``command`` in the session's workspace and collect its output."""

        binding = self._sessions.load(session_id)
        if binding is None or not binding.workspace:
            raise NotFoundError("No workspace context set for this session")

        if binding.kind == "worktree":
            if self._shell is None:
                raise ProvisioningError("No shell available to run worktree commands")
            return await self._shell.run("-c", command, cwd=binding.workspace, cancel=cancel)

        if binding.starting:
            job = self._pending_job(binding)
            if job is not None:
                raise ProvisioningError(_job_message(binding, job))
        if self._devcontainers is None:
            raise ProvisioningError("devcontainer CLI not available")
        return await self._devcontainers.exec(binding.workspace, command_argv(command), cancel=cancel)


def _job_message(binding: SessionBinding, job: BackgroundJob) -> str:
    name = f"{binding.repo_name}/{binding.branch}"
    if job.status is JobStatus.FAILED:
        return f"Container for {name} failed to start: {job.error or 'unknown error'}"
    return f"Container for {name} is still starting ({job.status.value}). Try again shortly."


__all__ = [
    "Classification",
    "CommandClassifier",
    "RoutedCommand",
    "SessionRouter",
    "command_argv",
    "shell_quote",
]
