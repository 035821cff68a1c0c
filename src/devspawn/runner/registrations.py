"""Runner registrations file (one JSON document, one or more registrations).

Tokens are stored in plain text, so the file is written ``0600``.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from devspawn.logger import logger
from devspawn.runner._files import atomic_write_text
from devspawn.runner.models import RegistrationsFile, RunnerRegistration


class RegistrationStore:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = asyncio.Lock()

    def load(self) -> list[RunnerRegistration]:
        """All stored registrations; empty when the file is missing or unreadable."""
        if not self.path.exists():
            return []
        try:
            doc = RegistrationsFile.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (ValidationError, OSError) as exc:
            logger.warning("Registrations file unreadable", path=str(self.path), err=str(exc))
            return []
        return doc.registrations

    def first(self) -> RunnerRegistration | None:
        registrations = self.load()
        if len(registrations) > 1:
            logger.info(
                "Multiple registrations found, using the first",
                count=len(registrations),
                runner=registrations[0].name,
            )
        return registrations[0] if registrations else None

    async def add(self, registration: RunnerRegistration) -> None:
        """Insert, replacing any registration with the same id."""
        async with self._lock:
            registrations = [r for r in self.load() if r.id != registration.id]
            registrations.append(registration)
            doc = RegistrationsFile(registrations=registrations, last_modified=datetime.now(UTC))
            atomic_write_text(self.path, doc.model_dump_json(by_alias=True, indent=2))
        logger.info(
            "Saved runner registration",
            runner=registration.name,
            project=f"{registration.owner}/{registration.project}",
            path=str(self.path),
        )
