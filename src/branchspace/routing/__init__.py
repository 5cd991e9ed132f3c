"""Host versus workspace command routing."""

from .policy import HostCommandPolicy, load_policy
from .router import (
    Classification,
    CommandClassifier,
    RoutedCommand,
    SessionRouter,
    command_argv,
    shell_quote,
)

__all__ = [
    "Classification",
    "CommandClassifier",
    "HostCommandPolicy",
    "RoutedCommand",
    "SessionRouter",
    "command_argv",
    "load_policy",
    "shell_quote",
]
