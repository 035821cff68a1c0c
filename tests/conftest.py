"""Shared test fixtures for devspawn."""

from __future__ import annotations

import subprocess

import pytest

from devspawn.spawner._docker import BOOTSTRAP_LABEL, DockerError
from devspawn.types import ExecResult

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "registrations_path",
        "named_containers_path",
        "socket_dir",
        "default_server",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (runner, bootstrap, etc.) and cached property
    overrides (registrations_path, socket_dir, etc.).

    Usage::

        s = make_settings(registrations_path=tmp_path / "runners.json")
        s = make_settings(runner=RunnerConfig(polling_interval=0.01))
    """
    from devspawn.config import (
        BootstrapConfig,
        DevcontainerConfig,
        DockerConfig,
        HashingConfig,
        LoggingConfig,
        RunnerConfig,
        SecretsConfig,
        Settings,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "logging": LoggingConfig(),
        "docker": DockerConfig(),
        "devcontainer": DevcontainerConfig(),
        "bootstrap": BootstrapConfig(),
        "hashing": HashingConfig(),
        "runner": RunnerConfig(),
        "secrets": SecretsConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def write_project(root, descriptor: str = '{"image": "python:3.12"}', **files):
    """Lay out a minimal project with a .devcontainer/devcontainer.json."""
    (root / ".devcontainer").mkdir(parents=True, exist_ok=True)
    (root / ".devcontainer" / "devcontainer.json").write_text(descriptor)
    for name, content in files.items():
        (root / name).write_text(content)
    return root


class FakeDocker:
    """In-memory stand-in for DockerCli: tracks volumes, containers and calls."""

    def __init__(self) -> None:
        self.volumes: set[str] = set()
        self.containers: dict[str, dict] = {}
        self.images: set[str] = {"devspawn-bootstrap:latest"}
        self.existing = None
        self.lookups: list[dict[str, str]] = []
        self.copy_result = ExecResult(success=True, exit_code=0)
        self.exec_results: dict[str, ExecResult] = {}
        self.fail_run_detached = False
        self.calls: list[tuple] = []
        self.removed: list[str] = []
        self.started: list[str] = []
        self.removed_volumes: list[str] = []
        self._counter = 0

    def add_container(
        self,
        container_id: str,
        *,
        name: str = "",
        running: bool = True,
        labels: dict[str, str] | None = None,
    ) -> None:
        self.containers[container_id] = {
            "name": name or container_id,
            "running": running,
            "labels": labels or {},
        }

    def bootstrap_containers(self) -> list[str]:
        return [
            cid for cid, c in self.containers.items() if c["labels"].get(BOOTSTRAP_LABEL) == "true"
        ]

    def _resolve(self, ref: str) -> str | None:
        if ref in self.containers:
            return ref
        for cid, c in self.containers.items():
            if c["name"] == ref:
                return cid
        return None

    # --- DockerCli surface ---

    async def run(self, *args, **kwargs):
        self.calls.append(("run", *args))
        stdout = "\n".join(self.bootstrap_containers()) if args[:1] == ("ps",) else ""
        return subprocess.CompletedProcess(list(args), 0, stdout=stdout, stderr="")

    async def volume_exists(self, name):
        return name in self.volumes

    async def ensure_volume(self, name, labels):
        self.calls.append(("ensure_volume", name))
        created = name not in self.volumes
        self.volumes.add(name)
        return created

    async def remove_volume(self, name):
        self.removed_volumes.append(name)
        self.volumes.discard(name)
        return True

    async def image_id(self, ref):
        return "sha256:abc" if ref in self.images else None

    async def build_image(self, ref, context_dir, *, timeout, log_path=None):
        self.calls.append(("build_image", ref))
        assert (context_dir / "Dockerfile").is_file()
        self.images.add(ref)
        return ExecResult(success=True, exit_code=0)

    async def find_container(self, labels):
        self.lookups.append(dict(labels))
        return self.existing

    async def is_container_running(self, container):
        cid = self._resolve(container)
        return cid is not None and self.containers[cid]["running"]

    async def container_exists(self, container):
        return self._resolve(container) is not None

    async def run_detached(self, image, *, name, labels, mounts, workdir=None, command=None):
        self.calls.append(("run_detached", image, name, tuple(mounts)))
        if self.fail_run_detached:
            raise DockerError("Starting container failed: no such image", stderr="no such image")
        self._counter += 1
        cid = f"helper{self._counter}"
        self.add_container(cid, name=name, labels=labels)
        return cid

    async def create_container(self, image, *, name, mounts):
        self.calls.append(("create_container", image, name, tuple(mounts)))
        self.add_container(name, name=name, running=False)
        return name

    async def exec(
        self, container, command, *, workdir=None, env=None, timeout=None, log_path=None
    ):
        self.calls.append(("exec", container, command))
        for key, result in self.exec_results.items():
            if key in command:
                return result
        return ExecResult(success=True, exit_code=0)

    async def copy_into(self, source, container, dest):
        self.calls.append(("copy_into", source, container, dest))
        return self.copy_result

    async def start(self, container):
        self.started.append(container)
        cid = self._resolve(container)
        if cid is not None:
            self.containers[cid]["running"] = True

    async def stop(self, container, *, timeout=10):
        cid = self._resolve(container)
        if cid is not None:
            self.containers[cid]["running"] = False

    async def remove(self, container):
        self.removed.append(container)
        cid = self._resolve(container)
        if cid is None:
            return False
        del self.containers[cid]
        return True

    async def list_managed(self, *, include_stopped=False):
        return []


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Each test starts from pure defaults: no config.toml, no .env, no home dir writes."""
    safe = make_settings(
        registrations_path=tmp_path / "state" / "runners.json",
        named_containers_path=tmp_path / "state" / "named-containers.json",
        default_server="localhost:8080",
    )
    monkeypatch.setattr("devspawn.config._settings", safe)
