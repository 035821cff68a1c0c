"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml (looked up in the working directory).
Secrets (the GitHub token handed to runners) live in .env. Environment
variables override both using ``__`` as the nested delimiter, e.g.
``RUNNER__POLLING_INTERVAL=5`` or ``SECRETS__GH_TOKEN=...``.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from devspawn.config import get_settings

    s = get_settings()
    print(s.bootstrap.image)
    print(s.runner.registrations_file)
"""

from __future__ import annotations

import os
import tempfile
from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models: reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class DockerConfig(_StrictModel):
    cli: str = "docker"
    command_timeout: int = 120  # seconds, for short engine calls (inspect, cp, rm)
    volume_prefix: str = "devcontainer"
    copy_helper_image: str = "alpine:latest"  # throwaway container for direct-mode copies


class DevcontainerConfig(_StrictModel):
    cli: str = "devcontainer"
    up_timeout: int = 1800  # seconds; image builds can be slow
    workspace_root: str = "/workspaces"
    config_relative_path: str = ".devcontainer/devcontainer.json"
    editor_commands: list[str] = ["code", "code-insiders"]
    default_docker_config: str = "~/.docker/config.json"


class BootstrapConfig(_StrictModel):
    image: str = "devspawn-bootstrap"
    tag: str = "latest"
    container_prefix: str = "devspawn-bootstrap"
    mount_docker_socket: bool = True
    docker_socket_path: str = "/var/run/docker.sock"
    timeout: int = 600  # seconds
    staging_commands: list[str] = []  # run in the helper after the source copy


class HashingConfig(_StrictModel):
    # Project-root lockfiles that count toward the configuration digest
    lockfiles: list[str] = [
        "package-lock.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "poetry.lock",
        "uv.lock",
        "Pipfile.lock",
        "Cargo.lock",
        "go.sum",
    ]


class RunnerConfig(_StrictModel):
    polling_interval: float = 10.0  # seconds between queue polls
    max_concurrent_jobs: int = 1
    default_server: str = "agentics.dk"
    registrations_file: str = "~/.devspawn/runners.json"
    named_containers_file: str = "~/.devspawn/named-containers.json"
    socket_dir: str | None = None  # None = system temp dir
    keep_ephemeral_containers: bool = False
    reserved_labels: list[str] = ["self-hosted", "devcontainer-runner"]
    request_timeout: float = 30.0
    max_auth_failures: int = 3
    auth_failure_backoff: float = 300.0  # seconds

    @field_validator("max_concurrent_jobs")
    @classmethod
    def clamp_max_concurrent(cls, v: int) -> int:
        return max(1, v)

    @field_validator("polling_interval")
    @classmethod
    def positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("polling_interval must be positive")
        return v


class SecretsConfig(_StrictModel):
    gh_token: SecretStr | None = None


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    logging: LoggingConfig = LoggingConfig()
    docker: DockerConfig = DockerConfig()
    devcontainer: DevcontainerConfig = DevcontainerConfig()
    bootstrap: BootstrapConfig = BootstrapConfig()
    hashing: HashingConfig = HashingConfig()
    runner: RunnerConfig = RunnerConfig()
    secrets: SecretsConfig = SecretsConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def registrations_path(self) -> Path:
        return Path(self.runner.registrations_file).expanduser()

    @cached_property
    def named_containers_path(self) -> Path:
        return Path(self.runner.named_containers_file).expanduser()

    @cached_property
    def socket_dir(self) -> Path:
        if self.runner.socket_dir:
            return Path(self.runner.socket_dir).expanduser()
        return Path(tempfile.gettempdir())

    @cached_property
    def default_server(self) -> str:
        # AGENTIC_SERVER is the long-standing override used by deployed runners
        return os.environ.get("AGENTIC_SERVER") or self.runner.default_server


_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
