"""Tests for the named container table."""

from __future__ import annotations

import asyncio
import json

import pytest
from conftest import FakeDocker

from devspawn.runner.models import NamedContainerEntry
from devspawn.runner.pool import NamedContainerPool


@pytest.fixture
def docker():
    return FakeDocker()


@pytest.fixture
def pool(tmp_path, docker):
    return NamedContainerPool(tmp_path / "named.json", docker)


def _entry(name: str = "gpu", container_id: str = "c1") -> NamedContainerEntry:
    return NamedContainerEntry(name=name, container_id=container_id, volume_name=f"vol-{name}")


class TestHold:
    async def test_in_use_only_while_held(self, pool):
        await pool.register(_entry())

        async with pool.hold("gpu") as entry:
            assert entry is not None
            assert pool.try_get("gpu").in_use

        assert not pool.try_get("gpu").in_use

    async def test_released_after_failure(self, pool):
        await pool.register(_entry())

        with pytest.raises(RuntimeError):
            async with pool.hold("gpu"):
                raise RuntimeError("job failed")

        assert not pool.try_get("gpu").in_use

    async def test_released_after_cancellation(self, pool):
        await pool.register(_entry())
        entered = asyncio.Event()

        async def job():
            async with pool.hold("gpu"):
                entered.set()
                await asyncio.sleep(10)

        task = asyncio.create_task(job())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not pool.try_get("gpu").in_use

    async def test_unknown_name_yields_none(self, pool):
        async with pool.hold("new") as entry:
            assert entry is None
            await pool.register(_entry("new", "c9").model_copy(update={"in_use": True}))
        assert not pool.try_get("new").in_use

    async def test_holds_are_exclusive(self, pool):
        await pool.register(_entry())
        order: list[str] = []

        async def job(tag: str):
            async with pool.hold("gpu"):
                order.append(f"{tag}-in")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-out")

        await asyncio.gather(job("a"), job("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    async def test_release_stamps_last_used(self, pool):
        await pool.register(_entry())
        before = pool.try_get("gpu").last_used_at
        async with pool.hold("gpu"):
            pass
        assert pool.try_get("gpu").last_used_at >= before

    async def test_hold_lock_dropped_with_entry(self, pool):
        await pool.register(_entry())
        async with pool.hold("gpu"):
            await pool.remove("gpu")
        async with pool.hold("never-registered"):
            pass
        assert pool._holds == {}

    async def test_removal_keeps_lock_for_waiters(self, pool):
        await pool.register(_entry())
        order: list[str] = []

        async def job(tag: str):
            async with pool.hold("gpu"):
                order.append(f"{tag}-in")
                await pool.remove("gpu")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-out")

        await asyncio.gather(job("a"), job("b"), job("c"))
        assert order == ["a-in", "a-out", "b-in", "b-out", "c-in", "c-out"]
        assert pool._holds == {}


class TestPersistence:
    async def test_every_mutation_persisted(self, pool, tmp_path):
        await pool.register(_entry())
        data = json.loads((tmp_path / "named.json").read_text())
        assert data[0]["name"] == "gpu"
        assert data[0]["containerId"] == "c1"

        async with pool.hold("gpu"):
            data = json.loads((tmp_path / "named.json").read_text())
            assert data[0]["inUse"] is True

        await pool.remove("gpu")
        assert json.loads((tmp_path / "named.json").read_text()) == []

    async def test_copies_returned(self, pool):
        await pool.register(_entry())
        copy = pool.try_get("gpu")
        copy.in_use = True
        assert not pool.try_get("gpu").in_use
        assert [e.name for e in pool.get_all()] == ["gpu"]


class TestRecover:
    async def test_drops_missing_and_clears_in_use(self, tmp_path, docker):
        path = tmp_path / "named.json"
        first = NamedContainerPool(path, docker)
        await first.register(_entry("alive", "c1").model_copy(update={"in_use": True}))
        await first.register(_entry("gone", "c2"))
        docker.add_container("c1")

        second = NamedContainerPool(path, docker)
        dropped = await second.recover()

        assert dropped == ["gone"]
        assert second.try_get("gone") is None
        assert second.try_get("alive") is not None
        assert not second.try_get("alive").in_use

    async def test_corrupt_file_starts_empty(self, tmp_path, docker):
        path = tmp_path / "named.json"
        path.write_text("garbage")
        pool = NamedContainerPool(path, docker)
        assert await pool.recover() == []
        assert pool.get_all() == []
