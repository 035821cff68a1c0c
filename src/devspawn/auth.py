"""Host-side discovery of the git token handed to containers over the credential socket."""

from __future__ import annotations

import subprocess

from pydantic import SecretStr

from devspawn.config import get_settings
from devspawn.logger import logger


def _read_gh_token() -> str | None:
    """Read GitHub token from the host's gh CLI."""
    try:
        result = subprocess.run(
            ["gh", "auth", "token"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode == 0:
            return result.stdout.strip() or None
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError) as exc:
        logger.debug("Failed to read GitHub token from gh CLI", err=str(exc))
    return None


def read_stored_token() -> SecretStr | None:
    """Token for git operations inside containers.

    Checks (in order):
    1. ``[secrets] gh_token`` / ``SECRETS__GH_TOKEN``
    2. ``gh auth token`` on the host
    """
    configured = get_settings().secrets.gh_token
    if configured is not None and configured.get_secret_value():
        return configured
    token = _read_gh_token()
    return SecretStr(token) if token else None
