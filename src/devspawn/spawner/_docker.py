"""Docker CLI wrapper used by the orchestrator, bootstrap manager and daemon.

Short engine calls (inspect, volume, cp, rm) run ``subprocess.run`` in a
thread via ``asyncio.to_thread``. Anything that can stream for minutes
(image builds, ``exec`` of staging commands) goes through
:func:`devspawn.spawner._process.run_process`.
"""

from __future__ import annotations

import asyncio
import json
import subprocess
from pathlib import Path

from devspawn.config import get_settings
from devspawn.logger import logger
from devspawn.spawner._process import run_process
from devspawn.types import DevspawnError, ExecResult, ExistingContainerInfo, ManagedContainerInfo

# Labels stamped on everything devspawn creates
MANAGED_LABEL = "devspawn.managed"
BOOTSTRAP_LABEL = "devspawn.bootstrap"
PROJECT_LABEL = "devspawn.project"
PROJECT_PATH_LABEL = "devspawn.project_path"
VOLUME_LABEL = "devspawn.volume"
CREATED_LABEL = "devspawn.created"
WORKSPACE_FOLDER_LABEL = "devspawn.workspace_folder"
# Container identity: which of a project's containers this is
KIND_LABEL = "devspawn.kind"
RUNNER_NAME_LABEL = "devspawn.runner.name"
INSTANCE_LABEL = "devspawn.instance"


class DockerError(DevspawnError):
    """A docker CLI call that had to succeed did not."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


def _run_docker_sync(
    cli: str,
    *args: str,
    check: bool,
    timeout: int,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [cli, *args],
        capture_output=True,
        text=True,
        timeout=timeout,
        check=check,
    )


def _label_args(labels: dict[str, str]) -> list[str]:
    args: list[str] = []
    for key, value in labels.items():
        args += ["--label", f"{key}={value}"]
    return args


class DockerCli:
    """Async facade over the docker CLI."""

    def __init__(self, cli: str | None = None, timeout: int | None = None) -> None:
        s = get_settings()
        self.cli = cli or s.docker.cli
        self.timeout = timeout or s.docker.command_timeout

    async def run(
        self,
        *args: str,
        check: bool = False,
        timeout: int | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a short docker command without blocking the event loop."""
        return await asyncio.to_thread(
            _run_docker_sync,
            self.cli,
            *args,
            check=check,
            timeout=timeout or self.timeout,
        )

    async def _must(self, *args: str, what: str, timeout: int | None = None) -> str:
        try:
            result = await self.run(*args, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise DockerError(f"{what} timed out after {exc.timeout}s") from exc
        if result.returncode != 0:
            raise DockerError(f"{what} failed: {result.stderr.strip()}", stderr=result.stderr)
        return result.stdout.strip()

    # --- volumes ---

    async def volume_exists(self, name: str) -> bool:
        result = await self.run("volume", "inspect", name)
        return result.returncode == 0

    async def ensure_volume(self, name: str, labels: dict[str, str]) -> bool:
        """Create *name* unless it already exists. Returns True when created."""
        if await self.volume_exists(name):
            logger.info("Reusing existing volume", volume=name)
            return False
        await self._must(
            "volume", "create", *_label_args(labels), name, what=f"Creating volume {name}"
        )
        logger.info("Created volume", volume=name)
        return True

    async def remove_volume(self, name: str) -> bool:
        result = await self.run("volume", "rm", "-f", name)
        return result.returncode == 0

    # --- images ---

    async def image_id(self, ref: str) -> str | None:
        result = await self.run("image", "inspect", "--format", "{{.Id}}", ref)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    async def build_image(
        self,
        ref: str,
        context_dir: Path,
        *,
        timeout: float,
        log_path: Path | None = None,
    ) -> ExecResult:
        return await run_process(
            self.cli,
            "build",
            "-t",
            ref,
            str(context_dir),
            timeout=timeout,
            log_path=log_path,
        )

    # --- containers ---

    async def inspect_labels(self, container: str) -> dict[str, str] | None:
        result = await self.run("inspect", "--format", "{{json .Config.Labels}}", container)
        if result.returncode != 0:
            return None
        try:
            return json.loads(result.stdout.strip() or "null") or {}
        except json.JSONDecodeError:
            logger.warning("Unparseable container labels", container=container)
            return {}

    async def is_container_running(self, container: str) -> bool:
        result = await self.run("inspect", "-f", "{{.State.Running}}", container)
        return result.stdout.strip() == "true"

    async def container_exists(self, container: str) -> bool:
        result = await self.run("inspect", "-f", "{{.Id}}", container)
        return result.returncode == 0

    async def find_container(self, labels: dict[str, str]) -> ExistingContainerInfo | None:
        """First container (any state) carrying every ``key=value`` in *labels*, or None."""
        filters: list[str] = []
        for key, value in labels.items():
            filters += ["--filter", f"label={key}={value}"]
        result = await self.run("ps", "-a", *filters, "--format", "{{json .}}")
        if result.returncode != 0:
            logger.warning("docker ps failed", err=result.stderr.strip())
            return None
        for line in result.stdout.strip().splitlines():
            if not line:
                continue
            row = json.loads(line)
            container_id = row.get("ID", "")
            labels = await self.inspect_labels(container_id) or {}
            return ExistingContainerInfo(
                container_id=container_id,
                name=row.get("Names", ""),
                running=row.get("State", "").lower() == "running",
                labels=labels,
                volume_name=labels.get(VOLUME_LABEL),
                workspace_folder=labels.get(WORKSPACE_FOLDER_LABEL),
            )
        return None

    async def list_managed(self, *, include_stopped: bool = False) -> list[ManagedContainerInfo]:
        args = ["ps", "--filter", f"label={MANAGED_LABEL}=true", "--format", "{{json .}}"]
        if include_stopped:
            args.insert(1, "-a")
        stdout = await self._must(*args, what="Listing managed containers")
        containers: list[ManagedContainerInfo] = []
        for line in stdout.splitlines():
            if not line:
                continue
            row = json.loads(line)
            labels = _parse_ps_labels(row.get("Labels", ""))
            containers.append(
                ManagedContainerInfo(
                    container_id=row.get("ID", ""),
                    name=row.get("Names", ""),
                    image=row.get("Image", ""),
                    status=row.get("Status", ""),
                    project_path=labels.get(PROJECT_PATH_LABEL),
                    volume_name=labels.get(VOLUME_LABEL),
                    created=row.get("CreatedAt", ""),
                )
            )
        return containers

    async def run_detached(
        self,
        image: str,
        *,
        name: str,
        labels: dict[str, str],
        mounts: list[str],
        workdir: str | None = None,
        command: list[str] | None = None,
    ) -> str:
        """``docker run -d`` and return the new container id."""
        args = ["run", "-d", "--name", name, *_label_args(labels)]
        for mount in mounts:
            args += ["-v", mount]
        if workdir:
            args += ["-w", workdir]
        args.append(image)
        args += command or []
        return await self._must(*args, what=f"Starting container {name}")

    async def create_container(self, image: str, *, name: str, mounts: list[str]) -> str:
        args = ["container", "create", "--name", name]
        for mount in mounts:
            args += ["-v", mount]
        args.append(image)
        return await self._must(*args, what=f"Creating container {name}")

    async def exec(
        self,
        container: str,
        command: str,
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        log_path: Path | None = None,
    ) -> ExecResult:
        args = [self.cli, "exec"]
        if workdir:
            args += ["-w", workdir]
        for key, value in (env or {}).items():
            args += ["-e", f"{key}={value}"]
        args += [container, "/bin/sh", "-c", command]
        return await run_process(*args, timeout=timeout, log_path=log_path)

    async def copy_into(self, source: str, container: str, dest: str) -> ExecResult:
        """``docker cp source container:dest``."""
        return await run_process(
            self.cli, "cp", source, f"{container}:{dest}", timeout=self.timeout * 10
        )

    async def start(self, container: str) -> None:
        await self._must("start", container, what=f"Starting container {container}")

    async def stop(self, container: str, *, timeout: int = 10) -> None:
        await self.run("stop", "-t", str(timeout), container, timeout=timeout + 30)

    async def remove(self, container: str) -> bool:
        """Force-remove (idempotent, no error if absent)."""
        result = await self.run("rm", "-f", container)
        return result.returncode == 0


def _parse_ps_labels(raw: str) -> dict[str, str]:
    """``docker ps`` renders labels as ``k=v,k2=v2``."""
    labels: dict[str, str] = {}
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        if sep:
            labels[key.strip()] = value
    return labels
