"""Named container table: containers that outlive a single job and are reused by name.

One asyncio.Lock guards the table; each name additionally has its own hold
lock so only one job uses a given container at a time. The table is written
to disk after every mutation.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from devspawn.logger import logger
from devspawn.runner._files import atomic_write_text
from devspawn.runner.models import NamedContainerEntry
from devspawn.spawner import DockerCli

_entries_adapter = TypeAdapter(list[NamedContainerEntry])


class NamedContainerPool:
    def __init__(self, path: Path, docker: DockerCli | None = None) -> None:
        self.path = path
        self.docker = docker or DockerCli()
        self._entries: dict[str, NamedContainerEntry] = {}
        self._lock = asyncio.Lock()
        self._holds: dict[str, asyncio.Lock] = {}
        self._hold_waiters: dict[str, int] = {}

    # --- persistence ---

    def load(self) -> None:
        if not self.path.exists():
            self._entries = {}
            return
        try:
            entries = _entries_adapter.validate_json(self.path.read_bytes())
        except (ValidationError, OSError) as exc:
            logger.warning("Named container table unreadable", path=str(self.path), err=str(exc))
            entries = []
        self._entries = {e.name: e for e in entries}

    def _persist(self) -> None:
        data = _entries_adapter.dump_json(
            list(self._entries.values()), by_alias=True, indent=2
        ).decode()
        atomic_write_text(self.path, data)

    async def recover(self) -> list[str]:
        """Reload from disk, drop entries whose container is gone, clear stale holds.

        Returns the names that were dropped.
        """
        async with self._lock:
            self.load()
            dropped: list[str] = []
            for name, entry in list(self._entries.items()):
                if not await self.docker.container_exists(entry.container_id):
                    dropped.append(name)
                    del self._entries[name]
                    continue
                entry.in_use = False
            self._persist()
        if dropped:
            logger.info("Dropped named containers that no longer exist", names=dropped)
        logger.info("Named containers recovered", count=len(self._entries))
        return dropped

    # --- table access ---

    def try_get(self, name: str) -> NamedContainerEntry | None:
        entry = self._entries.get(name)
        return entry.model_copy() if entry is not None else None

    def get_all(self) -> list[NamedContainerEntry]:
        return [e.model_copy() for e in self._entries.values()]

    async def register(self, entry: NamedContainerEntry) -> None:
        async with self._lock:
            self._entries[entry.name] = entry.model_copy()
            self._persist()
        logger.info("Registered named container", name=entry.name, container=entry.container_id)

    async def remove(self, name: str) -> NamedContainerEntry | None:
        async with self._lock:
            entry = self._entries.pop(name, None)
            if entry is not None:
                self._persist()
        self._forget_hold(name)
        return entry

    def _forget_hold(self, name: str) -> None:
        """Drop the hold lock of a name that has no entry and nobody holding or waiting."""
        if name not in self._entries and not self._hold_waiters.get(name):
            self._holds.pop(name, None)
            self._hold_waiters.pop(name, None)

    async def _mark(self, name: str, in_use: bool) -> None:
        async with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                return
            entry.in_use = in_use
            if not in_use:
                entry.last_used_at = datetime.now(UTC)
            self._persist()

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[NamedContainerEntry | None]:
        """Exclusive use of *name* for one job.

        ``in_use`` is set while held and always cleared on exit, whether the
        job succeeded, failed or was cancelled. Yields the current entry, or
        None when the name has no container yet (register one inside the hold).
        """
        lock = self._holds.setdefault(name, asyncio.Lock())
        self._hold_waiters[name] = self._hold_waiters.get(name, 0) + 1
        try:
            async with lock:
                await self._mark(name, True)
                try:
                    yield self.try_get(name)
                finally:
                    await asyncio.shield(self._mark(name, False))
        finally:
            self._hold_waiters[name] -= 1
            self._forget_hold(name)
