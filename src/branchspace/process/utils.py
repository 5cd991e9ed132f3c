"""Environment helpers for external process execution."""

from __future__ import annotations

import os
from typing import Mapping

# Set by git hooks and wrappers; they would pin every git call to one repository.
_REPOSITORY_VARS = {
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_INDEX_FILE",
    "GIT_OBJECT_DIRECTORY",
    "GIT_COMMON_DIR",
}

_INTERPRETER_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
}

_NON_INTERACTIVE = {
    "GIT_TERMINAL_PROMPT": "0",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the environment for git, devcontainer, and docker subprocesses.

    Repository-pinning git variables and this interpreter's virtualenv are
    removed, and git is told never to prompt for credentials.
    """

    env = dict(os.environ)
    for key in _REPOSITORY_VARS | _INTERPRETER_VARS:
        env.pop(key, None)
    env.update(_NON_INTERACTIVE)
    if additional:
        env.update(additional)
    return env
