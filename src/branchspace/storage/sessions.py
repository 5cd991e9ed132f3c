"""One JSON file per agent session, with an in-process read-through cache."""

from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import Iterable

from pydantic import ValidationError as ModelValidationError

from ..errors import ValidationError
from .files import read_json, write_json
from .models import SessionBinding, utcnow

logger = logging.getLogger(__name__)


class SessionStore:
    """Persist session bindings under ``<sessions_dir>/<session_id>.json``."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)
        self._cache: dict[str, SessionBinding | None] = {}

    @property
    def directory(self) -> Path:
        return self._directory

    def _file(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id in {".", ".."}:
            raise ValidationError(f"Invalid session id '{session_id}'")
        return self._directory / f"{session_id}.json"

    def load(self, session_id: str) -> SessionBinding | None:
        if session_id in self._cache:
            return self._cache[session_id]

        document = read_json(self._file(session_id), None)
        binding: SessionBinding | None = None
        if document is not None:
            try:
                binding = SessionBinding.model_validate(document)
            except ModelValidationError:
                logger.warning("Ignoring malformed session file", extra={"session_id": session_id})
        if binding is not None:
            self._cache[session_id] = binding
        return binding

    def save(self, binding: SessionBinding) -> SessionBinding:
        """Write ``binding``, stamping its activation time; last write wins."""

        stamped = binding.model_copy(update={"activated_at": utcnow()})
        write_json(self._file(stamped.session_id), stamped.model_dump(mode="json"))
        self._cache[stamped.session_id] = stamped
        return stamped

    def update(self, session_id: str, **changes: object) -> SessionBinding | None:
        binding = self.load(session_id)
        if binding is None:
            return None
        updated = binding.model_copy(update=changes)
        write_json(self._file(session_id), updated.model_dump(mode="json"))
        self._cache[session_id] = updated
        return updated

    def delete(self, session_id: str) -> bool:
        path = self._file(session_id)
        self._cache.pop(session_id, None)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def list(self) -> list[SessionBinding]:
        if not self._directory.exists():
            return []
        bindings = []
        for path in sorted(self._directory.glob("*.json")):
            binding = self.load(path.stem)
            if binding is not None:
                bindings.append(binding)
        return bindings

    def for_workspace(self, workspace: str | Path) -> list[SessionBinding]:
        target = str(workspace)
        return [binding for binding in self.list() if binding.workspace == target]

    def prune(self, active_ids: Iterable[str] | None = None) -> list[str]:
        """Remove bindings whose workspace directory is gone.

        When ``active_ids`` is given, bindings for sessions outside it are
        removed too. Returns the removed session ids.
        """

        active = set(active_ids) if active_ids is not None else None
        removed: list[str] = []
        if not self._directory.exists():
            return removed
        for path in sorted(self._directory.glob("*.json")):
            binding = self.load(path.stem)
            keep = binding is not None and bool(binding.workspace) and Path(binding.workspace).is_dir()
            if keep and (active is None or path.stem in active):
                continue
            with contextlib.suppress(FileNotFoundError):
                path.unlink()
            self._cache.pop(path.stem, None)
            removed.append(path.stem)
        return removed


__all__ = ["SessionStore"]
