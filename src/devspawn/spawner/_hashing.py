"""Configuration fingerprinting and change detection.

A container is stamped at build time with a digest over every file that
shapes it: the devcontainer descriptor, the Dockerfile and compose files it
references, and lockfiles in the project root. On the next spawn the digest
is recomputed and compared against the label to decide whether the
existing container can be reused.

Digest layout (version 1):
  - files are visited in sorted key order
  - each file gets its own SHA-256; ``devcontainer.json`` is JSONC-normalized
    first (comments and trailing commas dropped, keys sorted, minified) so
    reformatting does not count as a change
  - the top-level digest is SHA-256 over ``"<name>:<file digest>\\n"`` lines
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from devspawn.config import get_settings
from devspawn.logger import logger
from devspawn.types import ConfigurationChangeResult, ConfigurationHashResult

HASH_VERSION = 1

HASH_LABEL = "devspawn.config.hash"
FILES_LABEL = "devspawn.config.files"
VERSION_LABEL = "devspawn.config.version"
BUILT_AT_LABEL = "devspawn.config.built_at"

DESCRIPTOR_NAME = "devcontainer.json"


# ---------------------------------------------------------------------------
# JSONC handling
# ---------------------------------------------------------------------------


def strip_jsonc(text: str) -> str:
    """Remove ``//`` and ``/* */`` comments and trailing commas, leaving strings intact."""
    out: list[str] = []
    i = 0
    n = len(text)
    in_string = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
        else:
            out.append(ch)
            i += 1
    return _drop_trailing_commas("".join(out))


def _drop_trailing_commas(text: str) -> str:
    out: list[str] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == ",":
            rest = text[i + 1 :].lstrip()
            if rest[:1] in ("}", "]"):
                continue
        out.append(ch)
    return "".join(out)


def load_jsonc(path: Path) -> dict[str, Any]:
    """Parse a JSONC file. Raises ``ValueError`` for content that is not a JSON object."""
    data = json.loads(strip_jsonc(path.read_text(encoding="utf-8")))
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a JSON object")
    return data


def normalize_descriptor(raw: bytes) -> bytes:
    """Minified, key-sorted JSON for a descriptor; raw bytes when it does not parse."""
    try:
        data = json.loads(strip_jsonc(raw.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.debug("Descriptor is not valid JSONC, hashing raw bytes")
        return raw
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode()


# ---------------------------------------------------------------------------
# File collection and hashing
# ---------------------------------------------------------------------------


def resolve_descriptor(project_path: Path, devcontainer_path: Path) -> Path:
    """Accept either the ``.devcontainer`` directory or the descriptor file itself."""
    path = devcontainer_path
    if not path.is_absolute():
        path = project_path / path
    if path.is_dir():
        path = path / DESCRIPTOR_NAME
    return path


def _relative_key(path: Path, project_path: Path) -> str:
    try:
        return path.resolve().relative_to(project_path.resolve()).as_posix()
    except ValueError:
        return path.name


def collect_config_files(
    project_path: Path,
    devcontainer_path: Path,
    lockfiles: list[str] | None = None,
) -> dict[str, Path]:
    """Map of project-relative name to path for every file that shapes the container.

    Raises ``FileNotFoundError`` when the descriptor is missing. Referenced
    files that do not exist are skipped with a warning.
    """
    descriptor = resolve_descriptor(project_path, devcontainer_path)
    if not descriptor.is_file():
        raise FileNotFoundError(f"devcontainer descriptor not found: {descriptor}")

    files = {_relative_key(descriptor, project_path): descriptor}
    try:
        config = load_jsonc(descriptor)
    except (ValueError, json.JSONDecodeError) as exc:
        logger.warning(
            "Could not parse descriptor for references", path=str(descriptor), err=str(exc)
        )
        config = {}

    referenced: list[str] = []
    build = config.get("build")
    if isinstance(build, dict) and isinstance(build.get("dockerfile"), str):
        referenced.append(build["dockerfile"])
    elif isinstance(config.get("dockerFile"), str):
        referenced.append(config["dockerFile"])

    compose = config.get("dockerComposeFile")
    if isinstance(compose, str):
        referenced.append(compose)
    elif isinstance(compose, list):
        referenced.extend(c for c in compose if isinstance(c, str))

    for ref in referenced:
        path = (descriptor.parent / ref).resolve()
        if path.is_file():
            files[_relative_key(path, project_path)] = path
        else:
            logger.warning("Referenced file missing, not hashed", path=str(path))

    if lockfiles is None:
        lockfiles = get_settings().hashing.lockfiles
    for name in lockfiles:
        path = project_path / name
        if path.is_file():
            files[name] = path

    return files


def _file_digest(name: str, path: Path) -> str:
    raw = path.read_bytes()
    if Path(name).name == DESCRIPTOR_NAME:
        raw = normalize_descriptor(raw)
    return hashlib.sha256(raw).hexdigest()


def compute_hash(files: Mapping[str, Path]) -> ConfigurationHashResult:
    """Deterministic digest over *files*; same contents always give the same digest."""
    file_digests = {name: _file_digest(name, files[name]) for name in sorted(files)}
    top = hashlib.sha256()
    for name, digest in file_digests.items():
        top.update(f"{name}:{digest}\n".encode())
    return ConfigurationHashResult(
        digest=top.hexdigest(),
        file_digests=file_digests,
        timestamp=datetime.now(UTC),
        version=HASH_VERSION,
    )


def hash_labels(result: ConfigurationHashResult) -> dict[str, str]:
    """Labels stamped on a freshly built container."""
    return {
        HASH_LABEL: result.digest,
        FILES_LABEL: json.dumps(result.file_digests, sort_keys=True, separators=(",", ":")),
        VERSION_LABEL: str(result.version),
        BUILT_AT_LABEL: result.timestamp.isoformat(),
    }


# ---------------------------------------------------------------------------
# Change detection
# ---------------------------------------------------------------------------


def _parse_timestamp(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def has_changed(
    current: ConfigurationHashResult,
    labels: Mapping[str, str],
) -> ConfigurationChangeResult:
    stored = labels.get(HASH_LABEL)
    built_at = _parse_timestamp(labels.get(BUILT_AT_LABEL))

    if not stored:
        return ConfigurationChangeResult(
            changed=True,
            reason="no prior build recorded",
            current_digest=current.digest,
            changed_files=tuple(current.included_files),
        )

    if stored == current.digest:
        return ConfigurationChangeResult(
            changed=False,
            reason="configuration unchanged",
            current_digest=current.digest,
            stored_digest=stored,
            container_build_timestamp=built_at,
        )

    stored_files: dict[str, str] = {}
    try:
        parsed = json.loads(labels.get(FILES_LABEL, "") or "{}")
        if isinstance(parsed, dict):
            stored_files = {str(k): str(v) for k, v in parsed.items()}
    except json.JSONDecodeError:
        logger.debug("Stored per-file digests unreadable")

    if stored_files:
        names = sorted(set(stored_files) | set(current.file_digests))
        changed = tuple(n for n in names if stored_files.get(n) != current.file_digests.get(n))
    else:
        changed = tuple(current.included_files)

    stored_version = labels.get(VERSION_LABEL)
    if stored_version and stored_version != str(current.version):
        reason = "hash algorithm version changed"
    else:
        reason = "configuration changed since last build"

    return ConfigurationChangeResult(
        changed=True,
        reason=reason,
        current_digest=current.digest,
        stored_digest=stored,
        changed_files=changed,
        container_build_timestamp=built_at,
        details=", ".join(changed),
    )
