"""HTTP client for the job queue server (runner registration and job claims)."""

from __future__ import annotations

import json
from types import TracebackType
from urllib.parse import quote

import aiohttp
from pydantic import ValidationError

from devspawn.config import get_settings
from devspawn.logger import logger
from devspawn.runner.models import RegisterResponse, RunnerJob, RunnerRegistration
from devspawn.types import DevspawnError

_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1"})


class QueueError(DevspawnError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class QueueAuthError(QueueError):
    """The server rejected the runner token."""


def normalize_server_url(server: str) -> str:
    """``host[:port]`` becomes ``http://`` for local hosts and ``https://`` otherwise."""
    server = server.strip().rstrip("/")
    if "://" in server:
        return server
    host = server.split("/", 1)[0].rsplit(":", 1)[0]
    scheme = "http" if host in _LOCAL_HOSTS else "https"
    return f"{scheme}://{server}"


class JobQueueClient:
    def __init__(
        self,
        server: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout: float | None = None,
    ) -> None:
        self.base_url = normalize_server_url(server)
        self._timeout = timeout or get_settings().runner.request_timeout
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> JobQueueClient:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("JobQueueClient used outside 'async with'")
        return self._session

    def runners_url(self, owner: str, project: str) -> str:
        owner_q, project_q = quote(owner, safe=""), quote(project, safe="")
        return f"{self.base_url}/api/owners/{owner_q}/projects/{project_q}/runners"

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def register(self, owner: str, project: str, name: str) -> RegisterResponse:
        url = self.runners_url(owner, project)
        try:
            async with self.session.post(url, json={"name": name, "labels": []}) as resp:
                body = await resp.text()
                if resp.status in (401, 403):
                    raise QueueAuthError(
                        f"Not authorized to register runners for {owner}/{project}", resp.status
                    )
                if resp.status >= 300:
                    raise QueueError(
                        f"Registration failed ({resp.status}): {body[:500]}", resp.status
                    )
        except aiohttp.ClientError as exc:
            raise QueueError(f"Could not reach {self.base_url}: {exc}") from exc
        except TimeoutError as exc:
            raise QueueError(f"Timed out registering with {self.base_url}") from exc

        try:
            return RegisterResponse.model_validate_json(body)
        except ValidationError as exc:
            raise QueueError(f"Malformed registration response: {exc}") from exc

    async def claim_job(self, registration: RunnerRegistration) -> RunnerJob | None:
        """Claim the next job. None when the queue is empty (204, 404, empty body or ``null``)."""
        url = f"{self.runners_url(registration.owner, registration.project)}/jobs"
        headers = {"Authorization": f"Bearer {registration.token.get_secret_value()}"}
        try:
            async with self.session.post(url, headers=headers) as resp:
                if resp.status in (204, 404):
                    return None
                body = await resp.text()
                if resp.status in (401, 403):
                    raise QueueAuthError("Runner token rejected by server", resp.status)
                if resp.status >= 300:
                    raise QueueError(f"Job claim failed ({resp.status}): {body[:500]}", resp.status)
        except aiohttp.ClientError as exc:
            raise QueueError(f"Could not reach {self.base_url}: {exc}") from exc
        except TimeoutError as exc:
            raise QueueError(f"Timed out polling {self.base_url}") from exc

        body = body.strip()
        if not body or body == "null":
            return None
        try:
            job = RunnerJob.model_validate(json.loads(body))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise QueueError(f"Malformed job payload: {exc}") from exc
        logger.debug("Claimed job", job_id=job.id, project=job.project_name)
        return job
