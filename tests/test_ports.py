from __future__ import annotations

import asyncio
import json
import os
import time
from pathlib import Path

import pytest

from branchspace.errors import ExhaustedRangeError
from branchspace.storage import DirectoryLock, PortTable


def make_table(tmp_path: Path, start: int = 13000, end: int = 13009, **kwargs) -> PortTable:
    return PortTable(tmp_path / "ports.json", start=start, end=end, **kwargs)


def test_acquire_is_idempotent(tmp_path: Path) -> None:
    table = make_table(tmp_path)

    first = asyncio.run(table.acquire("/ws/app/main"))
    second = asyncio.run(table.acquire("/ws/app/main"))

    assert first == second == 13000
    assert table.read() == {"/ws/app/main": 13000}


def test_acquire_assigns_lowest_free_port(tmp_path: Path) -> None:
    table = make_table(tmp_path)
    (tmp_path / "ports.json").write_text(
        json.dumps({"/ws/a": 13000, "/ws/c": 13002}), encoding="utf-8"
    )

    assert asyncio.run(table.acquire("/ws/b")) == 13001


def test_concurrent_acquires_get_distinct_ports(tmp_path: Path) -> None:
    async def scenario() -> list[int]:
        # Separate instances share only the file and its lock.
        tables = [make_table(tmp_path) for _ in range(5)]
        return await asyncio.gather(
            *(table.acquire(f"/ws/repo/branch-{index}") for index, table in enumerate(tables))
        )

    ports = asyncio.run(scenario())

    assert sorted(ports) == list(range(13000, 13005))
    assert len(make_table(tmp_path).read()) == 5


def test_exhausted_range_leaves_table_unchanged(tmp_path: Path) -> None:
    table = make_table(tmp_path, start=13000, end=13001)
    asyncio.run(table.acquire("/ws/a"))
    asyncio.run(table.acquire("/ws/b"))
    before = (tmp_path / "ports.json").read_text(encoding="utf-8")

    with pytest.raises(ExhaustedRangeError) as excinfo:
        asyncio.run(table.acquire("/ws/c"))

    assert "13000-13001" in str(excinfo.value)
    assert (tmp_path / "ports.json").read_text(encoding="utf-8") == before


def test_probe_skips_ports_in_use(tmp_path: Path) -> None:
    async def probe(port: int) -> bool:
        return port != 13000

    table = make_table(tmp_path, probe=probe)

    assert asyncio.run(table.acquire("/ws/a")) == 13001


def test_release_reports_whether_entry_existed(tmp_path: Path) -> None:
    table = make_table(tmp_path)
    asyncio.run(table.acquire("/ws/a"))

    assert asyncio.run(table.release("/ws/a")) is True
    assert asyncio.run(table.release("/ws/a")) is False
    assert table.read() == {}


def test_prune_drops_missing_and_dead_workspaces(tmp_path: Path) -> None:
    alive = tmp_path / "alive"
    stopped = tmp_path / "stopped"
    alive.mkdir()
    stopped.mkdir()
    table = make_table(tmp_path)
    (tmp_path / "ports.json").write_text(
        json.dumps({str(alive): 13000, str(stopped): 13001, str(tmp_path / "gone"): 13002}),
        encoding="utf-8",
    )

    async def is_live(workspace: str) -> bool:
        return workspace == str(alive)

    pruned = asyncio.run(table.prune(is_live))

    assert sorted(port for _, port in pruned) == [13001, 13002]
    assert table.read() == {str(alive): 13000}


def test_corrupt_table_reads_as_empty(tmp_path: Path) -> None:
    (tmp_path / "ports.json").write_text("{not json", encoding="utf-8")
    table = make_table(tmp_path)

    assert table.read() == {}
    assert asyncio.run(table.acquire("/ws/a")) == 13000


def test_stale_lock_is_broken(tmp_path: Path) -> None:
    marker = tmp_path / "ports.lock"
    marker.mkdir()
    old = time.time() - 120
    os.utime(marker, (old, old))
    table = make_table(tmp_path)

    port = asyncio.run(asyncio.wait_for(table.acquire("/ws/a"), timeout=5))

    assert port == 13000
    assert not marker.exists()


def test_directory_lock_waits_for_holder(tmp_path: Path) -> None:
    async def scenario() -> list[str]:
        order: list[str] = []
        holder = DirectoryLock(tmp_path / "state", retry_interval=0.01)
        await holder.acquire()

        async def contender() -> None:
            async with DirectoryLock(tmp_path / "state", retry_interval=0.01):
                order.append("contender")

        task = asyncio.ensure_future(contender())
        await asyncio.sleep(0.05)
        order.append("holder")
        holder.release()
        await task
        return order

    assert asyncio.run(scenario()) == ["holder", "contender"]
    assert not (tmp_path / "state.lock").exists()
