"""Error taxonomy shared by the library, the MCP tools, and the CLI."""

from __future__ import annotations

from typing import Any

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_INVALID_ARGS = 2
EXIT_NOT_FOUND = 3


class BranchspaceError(RuntimeError):
    """Base class for branchspace errors."""

    exit_code = EXIT_ERROR

    def to_dict(self) -> dict[str, Any]:
        return {"error": str(self), "code": self.exit_code}


class ExhaustedRangeError(BranchspaceError):
    """Raised when every port in the configured range is assigned."""

    def __init__(self, start: int, end: int) -> None:
        super().__init__(
            f"No available ports in range {start}-{end}. "
            "Use 'branchspace down' or 'branchspace ports prune' to release unused ports."
        )
        self.start = start
        self.end = end


class NotFoundError(BranchspaceError):
    """Raised when a workspace, session, or job does not exist."""

    exit_code = EXIT_NOT_FOUND


class AmbiguousTargetError(BranchspaceError):
    """Raised when a branch name matches workspaces in several repositories."""

    exit_code = EXIT_INVALID_ARGS

    def __init__(self, target: str, matches: list[Any]) -> None:
        names = ", ".join(f"{match.repo}/{match.branch}" for match in matches)
        super().__init__(f"Ambiguous target '{target}' matches: {names}")
        self.target = target
        self.matches = list(matches)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["matches"] = [
            {"repo": match.repo, "branch": match.branch, "workspace": str(match.workspace)}
            for match in self.matches
        ]
        return payload


class ProvisioningError(BranchspaceError):
    """Raised when git, the container CLI, or docker fails."""

    def __init__(self, message: str, *, stderr: str | None = None) -> None:
        super().__init__(message)
        self.stderr = stderr

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.stderr:
            payload["stderr"] = self.stderr
        return payload


class CommandNotFoundError(ProvisioningError):
    """Raised when an external executable cannot be located."""


class CancelledError(BranchspaceError):
    """Raised when a caller-supplied cancellation token fires mid-operation."""


class ValidationError(BranchspaceError):
    """Raised for malformed arguments."""

    exit_code = EXIT_INVALID_ARGS


__all__ = [
    "EXIT_SUCCESS",
    "EXIT_ERROR",
    "EXIT_INVALID_ARGS",
    "EXIT_NOT_FOUND",
    "BranchspaceError",
    "ExhaustedRangeError",
    "NotFoundError",
    "AmbiguousTargetError",
    "ProvisioningError",
    "CommandNotFoundError",
    "CancelledError",
    "ValidationError",
]
