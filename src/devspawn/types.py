"""Data models for devspawn's spawn side."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum, StrEnum
from pathlib import Path


class DevspawnError(Exception):
    """Base class for errors raised across module boundaries."""


class SpawnStep(IntEnum):
    """Furthest step a spawn attempt reached. Strictly increasing on success."""

    NONE = 0
    RUNTIME_CHECK = 1
    CLI_CHECK = 2
    BOOTSTRAP_IMAGE_CHECK = 3
    VOLUME_CREATION = 4
    BOOTSTRAP_CONTAINER_START = 5
    FILE_COPY_TO_BOOTSTRAP = 6
    CONTAINER_UP = 7
    BOOTSTRAP_CLEANUP = 8
    EDITOR_LAUNCH = 9
    COMPLETED = 10


class RebuildBehavior(StrEnum):
    AUTO = "auto"
    ALWAYS = "always"
    NEVER = "never"
    PROMPT = "prompt"


class SpawnMode(StrEnum):
    LOCAL = "local"
    REMOTE = "remote"  # not supported; rejected by the orchestrator


@dataclass(frozen=True)
class SpawnOptions:
    project_name: str
    project_path: Path
    devcontainer_path: Path
    volume_name: str | None = None
    copy_source_files: bool = True
    launch_editor: bool = True
    reuse_existing: bool = True
    use_bootstrap_container: bool = True
    build_args: dict[str, str] = field(default_factory=dict)
    build_log_path: Path | None = None
    forward_docker_config: bool = True
    docker_config_path: Path | None = None
    rebuild_behavior: RebuildBehavior = RebuildBehavior.AUTO
    skip_rebuild: bool = False
    credential_socket_path: Path | None = None
    container_name: str | None = None  # stable name for named-container dispatch
    instance_id: str | None = None  # one-off container tied to a single job
    mode: SpawnMode = SpawnMode.LOCAL


def _labelled_streams(stdout: str, stderr: str) -> str:
    parts = []
    if stdout.strip():
        parts.append(f"=== STDOUT ===\n{stdout.rstrip()}")
    if stderr.strip():
        parts.append(f"=== STDERR ===\n{stderr.rstrip()}")
    return "\n\n".join(parts)


@dataclass(frozen=True)
class SpawnResult:
    success: bool
    message: str
    completed_step: SpawnStep = SpawnStep.NONE
    container_id: str | None = None
    volume_name: str | None = None
    editor_uri: str | None = None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    duration: float = 0.0  # seconds
    bootstrap_container_id: str | None = None
    cli_stdout: str = ""
    cli_stderr: str = ""
    remote_workspace_folder: str | None = None
    reused_existing: bool = False

    def format_diagnostics(self) -> str:
        """Labelled STDOUT/STDERR blocks from the container-manager CLI, if any."""
        return _labelled_streams(self.cli_stdout, self.cli_stderr)


@dataclass(frozen=True)
class RuntimeAvailability:
    available: bool
    running: bool
    message: str
    version: str | None = None


@dataclass(frozen=True)
class ExecResult:
    """Outcome of one command run through the engine CLI or inside a container.

    stdout and stderr are kept apart so failures can be diagnosed without
    guessing which stream a line came from.
    """

    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    message: str = ""

    def combined_output(self) -> str:
        return _labelled_streams(self.stdout, self.stderr)


@dataclass(frozen=True)
class ConfigurationHashResult:
    digest: str
    file_digests: dict[str, str]
    timestamp: datetime
    version: int = 1

    @property
    def included_files(self) -> list[str]:
        return sorted(self.file_digests)


@dataclass(frozen=True)
class ConfigurationChangeResult:
    changed: bool
    reason: str
    current_digest: str
    stored_digest: str | None = None
    changed_files: tuple[str, ...] = ()
    container_build_timestamp: datetime | None = None
    details: str = ""


@dataclass(frozen=True)
class DevcontainerUpResult:
    outcome: str
    container_id: str | None = None
    remote_user: str | None = None
    remote_workspace_folder: str | None = None
    message: str | None = None
    description: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == "success" and bool(self.container_id)


@dataclass(frozen=True)
class ExistingContainerInfo:
    container_id: str
    name: str
    running: bool
    labels: dict[str, str] = field(default_factory=dict)
    volume_name: str | None = None
    workspace_folder: str | None = None


@dataclass(frozen=True)
class ManagedContainerInfo:
    container_id: str
    name: str
    image: str
    status: str
    project_path: str | None
    volume_name: str | None
    created: str


@dataclass(frozen=True)
class EditorInfo:
    command: str
    version: str
