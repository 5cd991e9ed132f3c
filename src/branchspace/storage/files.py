"""Whole-file JSON persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def read_json(path: Path, default: Any) -> Any:
    """Return the decoded document at ``path`` or ``default`` when absent or corrupt."""

    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        logger.warning("Ignoring unreadable state file", extra={"path": str(path)})
        return default


def write_json(path: Path, payload: Any) -> None:
    """Overwrite ``path`` with ``payload`` via a temp file and rename."""

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    temp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    os.replace(temp_path, path)


__all__ = ["read_json", "write_json"]
