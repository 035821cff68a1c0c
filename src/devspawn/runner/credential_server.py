"""Credential forwarding server: hands the host's git token to spawned containers.

Listens on a Unix socket only (never TCP). The socket file is created
``0600`` and bind-mounted into each spawned container, so reaching it at all
requires local filesystem access. One server per runner registration, alive
for the whole daemon run.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from pathlib import Path

from aiohttp import web
from pydantic import SecretStr

from devspawn.logger import logger
from devspawn.types import DevspawnError

TokenProvider = Callable[[], SecretStr | None]


class CredentialServerError(DevspawnError):
    pass


def socket_path_for(socket_dir: Path, registration_id: str) -> Path:
    return socket_dir / f"devspawn-credentials-{registration_id}.sock"


class CredentialForwardingServer:
    def __init__(self, socket_path: Path, token_provider: TokenProvider) -> None:
        self.socket_path = socket_path
        self._token_provider = token_provider
        self._runner: web.AppRunner | None = None
        self.requests_served = 0

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _git_credential(self, request: web.Request) -> web.Response:
        # gh lookups shell out; keep them off the loop
        token = await asyncio.to_thread(self._token_provider)
        if token is None or not token.get_secret_value():
            logger.warning("Credential requested but no git token is available")
            return web.json_response(
                {"error": "No git credential available. Run 'gh auth login' on the host."},
                status=503,
            )
        self.requests_served += 1
        logger.debug("Served git credential", count=self.requests_served)
        return web.json_response(
            {"username": "x-access-token", "password": token.get_secret_value()}
        )

    async def _health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/git-credential", self._git_credential)
        app.router.add_get("/health", self._health)
        return app

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _remove_socket_file(self) -> None:
        try:
            self.socket_path.unlink(missing_ok=True)
        except OSError as exc:
            raise CredentialServerError(
                f"Cannot remove stale credential socket {self.socket_path}: {exc}"
            ) from exc

    async def start(self) -> None:
        self._remove_socket_file()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        runner = web.AppRunner(self.make_app(), access_log=None)
        await runner.setup()
        try:
            site = web.UnixSite(runner, str(self.socket_path))
            await site.start()
            os.chmod(self.socket_path, 0o600)
        except OSError as exc:
            await runner.cleanup()
            raise CredentialServerError(
                f"Credential server could not listen on {self.socket_path}: {exc}"
            ) from exc
        self._runner = runner
        logger.info("Credential server listening", socket=str(self.socket_path))

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self.socket_path.unlink(missing_ok=True)
        logger.info("Credential server stopped", served=self.requests_served)

    async def __aenter__(self) -> CredentialForwardingServer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
