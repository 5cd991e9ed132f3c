"""Cross-process mutual exclusion built on atomic directory creation."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from pathlib import Path
from types import TracebackType

logger = logging.getLogger(__name__)


class DirectoryLock:
    """Advisory lock held by the existence of ``<path>.lock``.

    ``mkdir`` either creates the marker or fails, on every platform and on
    file systems without native locking. A marker older than ``stale_after``
    seconds belongs to a crashed holder and is removed.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        stale_after: float = 60.0,
        retry_interval: float = 0.05,
    ) -> None:
        self._marker = Path(f"{path}.lock")
        self._stale_after = stale_after
        self._retry_interval = retry_interval
        self._held = False

    @property
    def marker(self) -> Path:
        return self._marker

    @property
    def held(self) -> bool:
        return self._held

    def _try_acquire(self) -> bool:
        try:
            os.mkdir(self._marker)
        except FileExistsError:
            return False
        self._held = True
        return True

    def _break_if_stale(self) -> bool:
        try:
            age = time.time() - self._marker.stat().st_mtime
        except FileNotFoundError:
            # Released between our mkdir and stat.
            return True
        if age <= self._stale_after:
            return False
        logger.warning(
            "Removing stale lock",
            extra={"marker": str(self._marker), "age_seconds": round(age, 1)},
        )
        with contextlib.suppress(FileNotFoundError, OSError):
            os.rmdir(self._marker)
        return True

    async def acquire(self) -> None:
        self._marker.parent.mkdir(parents=True, exist_ok=True)
        while not self._try_acquire():
            if self._break_if_stale():
                continue
            await asyncio.sleep(self._retry_interval)

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        with contextlib.suppress(FileNotFoundError):
            os.rmdir(self._marker)

    async def __aenter__(self) -> "DirectoryLock":
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


__all__ = ["DirectoryLock"]
