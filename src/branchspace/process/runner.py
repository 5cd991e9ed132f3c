"""Async runner for external command-line tools."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Iterable, TypeVar

from ..errors import CancelledError, CommandNotFoundError
from .utils import sanitize_environment

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of an external command invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Execute one external tool asynchronously."""

    def __init__(self, name: str, executable: str | Path | None = None) -> None:
        self._name = name
        self._executable_path = self._resolve_executable(name, executable)

    @staticmethod
    def _resolve_executable(name: str, explicit: str | Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            resolved = shutil.which(str(explicit))
            if resolved is not None:
                return Path(resolved)
            raise CommandNotFoundError(f"{name} executable not found at {candidate}")

        binary = shutil.which(name)
        if binary is None:
            raise CommandNotFoundError(f"{name} executable not found on PATH")
        return Path(binary)

    @property
    def name(self) -> str:
        return self._name

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def run(
        self,
        *args: str,
        cwd: str | Path | None = None,
        cancel: asyncio.Event | None = None,
    ) -> CommandResult:
        cmd = [str(self._executable_path), *args]
        logger.debug("Running command", extra={"args": cmd, "cwd": str(cwd) if cwd else None})
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            env=sanitize_environment(),
        )
        communicate = asyncio.ensure_future(process.communicate())
        try:
            if cancel is None:
                stdout_bytes, stderr_bytes = await communicate
            else:
                waiter = asyncio.ensure_future(cancel.wait())
                done, _ = await asyncio.wait(
                    {communicate, waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                if communicate not in done:
                    _terminate(process)
                    communicate.cancel()
                    raise CancelledError(f"{self._name} command cancelled")
                waiter.cancel()
                stdout_bytes, stderr_bytes = communicate.result()
        except asyncio.CancelledError:
            _terminate(process)
            communicate.cancel()
            raise
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        returncode = process.returncode if process.returncode is not None else -1
        return CommandResult(
            args=tuple(cmd),
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
        )


def _terminate(process: asyncio.subprocess.Process) -> None:
    # Best effort; the process may already have exited.
    with contextlib.suppress(ProcessLookupError):
        process.kill()


class FakeCommandRunner(CommandRunner):
    """Test double that simulates command responses."""

    def __init__(  # type: ignore[override]
        self,
        name: str = "fake",
        responses: Iterable[CommandResult] | None = None,
    ) -> None:
        self._name = name
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, ...]] = []
        self._cwds: list[str | None] = []
        self._executable_path = Path(f"/tmp/fake-{name}")

    async def run(  # type: ignore[override]
        self,
        *args: str,
        cwd: str | Path | None = None,
        cancel: asyncio.Event | None = None,
    ) -> CommandResult:
        self._invocations.append(tuple(args))
        self._cwds.append(str(cwd) if cwd is not None else None)
        if cancel is not None and cancel.is_set():
            raise CancelledError(f"{self._name} command cancelled")
        if self._responses:
            return self._responses.pop(0)
        return CommandResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations

    @property
    def cwds(self) -> list[str | None]:
        return self._cwds


async def with_timeout(awaitable: Awaitable[T], seconds: float) -> T:
    """Wait for ``awaitable`` at most ``seconds``.

    On timeout ``TimeoutError`` is raised for the caller only; the underlying
    task keeps running and can still be awaited or observed elsewhere.
    """

    task = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise TimeoutError(f"Operation did not finish within {seconds}s") from exc
