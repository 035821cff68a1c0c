"""Runtime checks: is the container engine installed, is its daemon answering,
and is the devcontainer CLI on PATH.

Checks never raise. Every failure mode is folded into the returned value so
callers can report it without a try/except of their own.
"""

from __future__ import annotations

import shutil
import subprocess

from devspawn.config import get_settings
from devspawn.logger import logger
from devspawn.types import RuntimeAvailability

_CHECK_TIMEOUT = 15


def check_runtime_availability(cli: str | None = None) -> RuntimeAvailability:
    """Report whether the engine binary exists and whether its daemon responds."""
    cli = cli or get_settings().docker.cli
    if shutil.which(cli) is None:
        return RuntimeAvailability(
            available=False,
            running=False,
            message=f"{cli} is not installed or not on PATH",
        )

    try:
        result = subprocess.run(
            [cli, "version", "--format", "{{.Server.Version}}"],
            capture_output=True,
            text=True,
            timeout=_CHECK_TIMEOUT,
        )
    except FileNotFoundError:
        return RuntimeAvailability(
            available=False,
            running=False,
            message=f"{cli} is not installed or not on PATH",
        )
    except (subprocess.TimeoutExpired, OSError) as exc:
        logger.debug("Runtime check failed", cli=cli, err=str(exc))
        return RuntimeAvailability(
            available=True,
            running=False,
            message=f"{cli} daemon did not respond: {exc}",
        )

    if result.returncode != 0:
        detail = result.stderr.strip() or "daemon not running"
        return RuntimeAvailability(
            available=True,
            running=False,
            message=f"{cli} is installed but the daemon is not running: {detail}",
        )

    version = result.stdout.strip() or None
    return RuntimeAvailability(
        available=True,
        running=True,
        version=version,
        message=f"{cli} {version} is running" if version else f"{cli} is running",
    )


def is_devcontainer_cli_installed(cli: str | None = None) -> bool:
    cli = cli or get_settings().devcontainer.cli
    try:
        result = subprocess.run(
            [cli, "--version"],
            capture_output=True,
            text=True,
            timeout=_CHECK_TIMEOUT,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError) as exc:
        logger.debug("devcontainer CLI check failed", cli=cli, err=str(exc))
        return False
    return result.returncode == 0
