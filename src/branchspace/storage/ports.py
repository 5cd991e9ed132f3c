"""Persisted port assignments keyed by workspace path."""

from __future__ import annotations

import asyncio
import logging
import socket
from pathlib import Path
from typing import Awaitable, Callable

from ..errors import ExhaustedRangeError
from .files import read_json, write_json
from .lock import DirectoryLock

logger = logging.getLogger(__name__)

PortProbe = Callable[[int], Awaitable[bool]]
LivenessCheck = Callable[[str], Awaitable[bool]]


async def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """Return True when nothing is listening on ``port``."""

    def _probe() -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, port))
            except OSError:
                return False
        return True

    return await asyncio.to_thread(_probe)


class PortTable:
    """Assign, release, and prune ports in a shared JSON table.

    The table maps absolute workspace paths to integer ports. Every
    read-modify-write runs under a :class:`DirectoryLock` next to the table,
    so concurrent processes never hand out the same port twice.
    """

    def __init__(
        self,
        path: Path,
        *,
        start: int,
        end: int,
        stale_after: float = 60.0,
        probe: PortProbe | None = None,
    ) -> None:
        self._path = Path(path)
        self._start = start
        self._end = end
        self._stale_after = stale_after
        self._probe = probe

    @property
    def path(self) -> Path:
        return self._path

    def _lock(self) -> DirectoryLock:
        return DirectoryLock(self._path.with_suffix(""), stale_after=self._stale_after)

    def read(self) -> dict[str, int]:
        raw = read_json(self._path, {})
        if not isinstance(raw, dict):
            return {}
        table: dict[str, int] = {}
        for workspace, port in raw.items():
            if isinstance(port, int):
                table[workspace] = port
        return table

    def _write(self, table: dict[str, int]) -> None:
        write_json(self._path, table)

    async def acquire(self, workspace: str | Path) -> int:
        """Return the port for ``workspace``, assigning the lowest free one if needed."""

        key = str(workspace)
        async with self._lock():
            table = self.read()
            if key in table:
                return table[key]

            taken = set(table.values())
            for port in range(self._start, self._end + 1):
                if port in taken:
                    continue
                if self._probe is not None and not await self._probe(port):
                    continue
                table[key] = port
                self._write(table)
                logger.info("Assigned port", extra={"workspace": key, "port": port})
                return port

        raise ExhaustedRangeError(self._start, self._end)

    async def release(self, workspace: str | Path) -> bool:
        """Drop the assignment for ``workspace``; returns whether one existed."""

        key = str(workspace)
        async with self._lock():
            table = self.read()
            if key not in table:
                return False
            port = table.pop(key)
            self._write(table)
        logger.info("Released port", extra={"workspace": key, "port": port})
        return True

    async def prune(self, is_live: LivenessCheck | None = None) -> list[tuple[str, int]]:
        """Release entries whose workspace is gone or whose container is not live."""

        pruned: list[tuple[str, int]] = []
        async with self._lock():
            table = self.read()
            for workspace, port in list(table.items()):
                if Path(workspace).exists() and (is_live is None or await is_live(workspace)):
                    continue
                del table[workspace]
                pruned.append((workspace, port))
            if pruned:
                self._write(table)
        for workspace, port in pruned:
            logger.info("Pruned port", extra={"workspace": workspace, "port": port})
        return pruned


__all__ = ["PortTable", "is_port_free"]
