"""Volume and container names derived from project names."""

from __future__ import annotations

import re
import uuid

_INVALID_CHARS = re.compile(r"[^a-z0-9_-]")
_SEPARATOR_RUNS = re.compile(r"[-_]+")


def sanitize_project_name(project_name: str) -> str:
    """Lowercase, drop anything outside ``[a-z0-9-_]``, collapse separator runs to ``-``.

    Falls back to ``project`` when nothing usable is left.
    """
    name = _INVALID_CHARS.sub("", project_name.lower())
    name = _SEPARATOR_RUNS.sub("-", name).strip("-_")
    return name or "project"


def short_id() -> str:
    return uuid.uuid4().hex[:8]


def generate_volume_name(project_name: str, prefix: str = "devcontainer") -> str:
    """``<prefix>-<sanitized project>-<8 hex>``, unique per call."""
    return f"{prefix}-{sanitize_project_name(project_name)}-{short_id()}"


def named_volume_name(container_name: str, prefix: str = "devcontainer") -> str:
    """Stable volume name for a named (reusable) runner container."""
    return f"{prefix}-named-{sanitize_project_name(container_name)}"


def bootstrap_container_name(prefix: str, project_name: str) -> str:
    return f"{prefix}-{sanitize_project_name(project_name)}-{short_id()}"
