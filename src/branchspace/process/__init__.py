"""External process orchestration utilities."""

from .runner import CommandResult, CommandRunner, FakeCommandRunner, with_timeout

__all__ = [
    "CommandRunner",
    "CommandResult",
    "FakeCommandRunner",
    "with_timeout",
]
