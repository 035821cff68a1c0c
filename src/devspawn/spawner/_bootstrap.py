"""Bootstrap helper container: stage project files into a volume before the real build.

The helper runs the packaged ``bootstrap.Dockerfile`` image (docker CLI +
devcontainer CLI), mounts the target volume at the workspace path and,
optionally, the host engine socket so ``devcontainer up`` can run from
inside it. Exactly one helper exists per spawn attempt, and it is always
removed before :meth:`BootstrapContainerManager.stage` returns.
"""

from __future__ import annotations

import asyncio
import shutil
import subprocess
import tempfile
import time
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from importlib import resources
from pathlib import Path

from devspawn.config import get_settings
from devspawn.logger import logger
from devspawn.spawner._docker import (
    BOOTSTRAP_LABEL,
    MANAGED_LABEL,
    PROJECT_LABEL,
    VOLUME_LABEL,
    DockerCli,
    DockerError,
)
from devspawn.spawner._naming import bootstrap_container_name, sanitize_project_name
from devspawn.types import ExecResult, SpawnStep

OnStep = Callable[[SpawnStep], None]
OnReady = Callable[["BootstrapContainerInfo"], Awaitable[bool]]


@dataclass(frozen=True)
class BootstrapContainerConfig:
    project_name: str
    volume_name: str
    workspace_path: str
    image: str
    tag: str
    container_prefix: str
    mount_docker_socket: bool
    docker_socket_path: str
    timeout: float
    staging_commands: tuple[str, ...] = ()
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def image_ref(self) -> str:
        return f"{self.image}:{self.tag}"

    @classmethod
    def for_project(cls, project_name: str, volume_name: str) -> BootstrapContainerConfig:
        s = get_settings()
        return cls(
            project_name=project_name,
            volume_name=volume_name,
            workspace_path=f"{s.devcontainer.workspace_root}/{sanitize_project_name(project_name)}",
            image=s.bootstrap.image,
            tag=s.bootstrap.tag,
            container_prefix=s.bootstrap.container_prefix,
            mount_docker_socket=s.bootstrap.mount_docker_socket,
            docker_socket_path=s.bootstrap.docker_socket_path,
            timeout=s.bootstrap.timeout,
            staging_commands=tuple(s.bootstrap.staging_commands),
        )


@dataclass(frozen=True)
class BootstrapContainerInfo:
    container_id: str
    container_name: str
    started_at: datetime
    volume_name: str
    project_name: str
    workspace_path: str


@dataclass(frozen=True)
class BootstrapImageResult:
    success: bool
    image_name: str
    message: str
    image_id: str | None = None
    was_built: bool = False
    build_duration: float = 0.0


@dataclass(frozen=True)
class BootstrapStageResult:
    """Outcome of one helper lifetime. ``step`` is the furthest step reached."""

    success: bool
    step: SpawnStep
    message: str
    container_id: str | None = None
    exec_result: ExecResult | None = None

    @property
    def exit_code(self) -> int:
        if self.exec_result is not None:
            return self.exec_result.exit_code
        return 0 if self.success else 1


def _bootstrap_dockerfile() -> str:
    return resources.files("devspawn.spawner").joinpath("bootstrap.Dockerfile").read_text()


class BootstrapContainerManager:
    def __init__(self, docker: DockerCli | None = None) -> None:
        self.docker = docker or DockerCli()

    # -----------------------------------------------------------------
    # Image
    # -----------------------------------------------------------------

    async def ensure_image(
        self,
        config: BootstrapContainerConfig,
        *,
        log_path: Path | None = None,
    ) -> BootstrapImageResult:
        """Build the helper image from the packaged Dockerfile if it is not present."""
        ref = config.image_ref
        image_id = await self.docker.image_id(ref)
        if image_id:
            return BootstrapImageResult(
                success=True, image_name=ref, image_id=image_id, message="image present"
            )

        logger.info("Building bootstrap image (first run may take a few minutes)", image=ref)
        context = Path(tempfile.mkdtemp(prefix="devspawn-bootstrap-"))
        start = time.monotonic()
        try:
            (context / "Dockerfile").write_text(_bootstrap_dockerfile())
            result = await self.docker.build_image(
                ref, context, timeout=config.timeout, log_path=log_path
            )
        finally:
            shutil.rmtree(context, ignore_errors=True)
        duration = time.monotonic() - start

        if not result.success:
            logger.error("Bootstrap image build failed", image=ref, exit_code=result.exit_code)
            return BootstrapImageResult(
                success=False,
                image_name=ref,
                message=f"Failed to build bootstrap image {ref}: {result.stderr.strip()[-2000:]}",
                build_duration=duration,
            )

        logger.info("Bootstrap image built", image=ref, seconds=round(duration, 1))
        return BootstrapImageResult(
            success=True,
            image_name=ref,
            image_id=await self.docker.image_id(ref),
            was_built=True,
            build_duration=duration,
            message="image built",
        )

    # -----------------------------------------------------------------
    # Helper lifetime
    # -----------------------------------------------------------------

    async def start(self, config: BootstrapContainerConfig) -> BootstrapContainerInfo:
        name = bootstrap_container_name(config.container_prefix, config.project_name)
        labels = {
            MANAGED_LABEL: "true",
            BOOTSTRAP_LABEL: "true",
            PROJECT_LABEL: config.project_name,
            VOLUME_LABEL: config.volume_name,
            **config.labels,
        }
        mounts = [f"{config.volume_name}:{config.workspace_path}"]
        if config.mount_docker_socket:
            mounts.append(f"{config.docker_socket_path}:/var/run/docker.sock")

        try:
            container_id = await self.docker.run_detached(
                config.image_ref,
                name=name,
                labels=labels,
                mounts=mounts,
                workdir=config.workspace_path,
                command=["sleep", "infinity"],
            )
        except DockerError:
            # a half-created container would keep the name reserved
            await self.docker.remove(name)
            raise

        logger.info("Bootstrap container started", container=name, volume=config.volume_name)
        return BootstrapContainerInfo(
            container_id=container_id,
            container_name=name,
            started_at=datetime.now(UTC),
            volume_name=config.volume_name,
            project_name=config.project_name,
            workspace_path=config.workspace_path,
        )

    async def stop(self, info: BootstrapContainerInfo) -> None:
        """Stop and remove the helper. Best effort; never raises.

        A failed or hung ``docker stop`` still falls through to ``rm -f``.
        """
        try:
            await self.docker.stop(info.container_id, timeout=10)
        except (DockerError, subprocess.TimeoutExpired, OSError) as exc:
            logger.warning(
                "Failed to stop bootstrap container",
                container=info.container_name,
                err=str(exc),
            )
        try:
            removed = await self.docker.remove(info.container_id)
        except (DockerError, subprocess.TimeoutExpired, OSError) as exc:
            logger.warning(
                "Failed to remove bootstrap container",
                container=info.container_name,
                err=str(exc),
            )
            return
        if removed:
            logger.info("Bootstrap container removed", container=info.container_name)
        else:
            logger.warning("Bootstrap container was not removed", container=info.container_name)

    @asynccontextmanager
    async def session(self, config: BootstrapContainerConfig):
        info = await self.start(config)
        try:
            yield info
        finally:
            # shielded: the helper must go even when the spawn is cancelled
            await asyncio.shield(self.stop(info))

    # -----------------------------------------------------------------
    # Work inside the helper
    # -----------------------------------------------------------------

    async def exec(
        self,
        info: BootstrapContainerInfo,
        command: str,
        *,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        log_path: Path | None = None,
    ) -> ExecResult:
        return await self.docker.exec(
            info.container_id,
            command,
            workdir=workdir or info.workspace_path,
            env=env,
            timeout=timeout,
            log_path=log_path,
        )

    async def copy_file(self, info: BootstrapContainerInfo, source: Path, dest: str) -> ExecResult:
        return await self.docker.copy_into(str(source), info.container_id, dest)

    async def copy_source(
        self,
        info: BootstrapContainerInfo,
        project_path: Path,
        *,
        copy_source_files: bool = True,
    ) -> ExecResult:
        """Copy the project (or only its ``.devcontainer`` folder) into the volume."""
        if copy_source_files:
            source, dest = project_path, info.workspace_path
        else:
            source, dest = project_path / ".devcontainer", f"{info.workspace_path}/.devcontainer"

        mkdir = await self.exec(info, f"mkdir -p '{dest}'", workdir="/")
        if not mkdir.success:
            return mkdir

        logger.info("Copying files into bootstrap container", source=str(source), dest=dest)
        result = await self.docker.copy_into(f"{source}/.", info.container_id, dest)
        if not result.success:
            logger.error("Copy into bootstrap container failed", err=result.stderr.strip())
            return result

        listing = await self.exec(info, f"ls -la '{dest}'", workdir="/")
        if not listing.success:
            logger.warning("Could not verify copied files", dest=dest, err=listing.stderr.strip())
        return result

    # -----------------------------------------------------------------
    # Full protocol
    # -----------------------------------------------------------------

    async def stage(
        self,
        config: BootstrapContainerConfig,
        project_path: Path,
        *,
        copy_source_files: bool = True,
        on_ready: OnReady | None = None,
        on_step: OnStep | None = None,
    ) -> BootstrapStageResult:
        """Start the helper, copy sources, run staging commands, hand it to *on_ready*, remove it.

        *on_ready* runs while the helper is alive; returning False marks the
        stage as failed without advancing to cleanup. Expected failures come
        back as a result, not an exception.
        """

        reached = SpawnStep.BOOTSTRAP_CONTAINER_START

        def step(s: SpawnStep) -> None:
            nonlocal reached
            reached = s
            if on_step is not None:
                on_step(s)

        step(SpawnStep.BOOTSTRAP_CONTAINER_START)
        try:
            async with self.session(config) as info:
                step(SpawnStep.FILE_COPY_TO_BOOTSTRAP)
                copied = await self.copy_source(
                    info, project_path, copy_source_files=copy_source_files
                )
                if not copied.success:
                    return BootstrapStageResult(
                        success=False,
                        step=SpawnStep.FILE_COPY_TO_BOOTSTRAP,
                        message=f"Copying sources into the volume failed: {copied.stderr.strip()}",
                        container_id=info.container_id,
                        exec_result=copied,
                    )

                last = copied
                for command in config.staging_commands:
                    last = await self.exec(info, command, timeout=config.timeout)
                    if not last.success:
                        return BootstrapStageResult(
                            success=False,
                            step=SpawnStep.FILE_COPY_TO_BOOTSTRAP,
                            message=f"Staging command failed ({last.exit_code}): {command}",
                            container_id=info.container_id,
                            exec_result=last,
                        )

                if on_ready is not None and not await on_ready(info):
                    return BootstrapStageResult(
                        success=False,
                        step=SpawnStep.CONTAINER_UP,
                        message="Container build inside the bootstrap container failed",
                        container_id=info.container_id,
                        exec_result=last,
                    )
                container_id = info.container_id
        except DockerError as exc:
            return BootstrapStageResult(
                success=False,
                step=reached,
                message=str(exc),
                exec_result=ExecResult(success=False, exit_code=1, stderr=exc.stderr),
            )

        step(SpawnStep.BOOTSTRAP_CLEANUP)
        return BootstrapStageResult(
            success=True,
            step=SpawnStep.BOOTSTRAP_CLEANUP,
            message="bootstrap staging complete",
            container_id=container_id,
            exec_result=last,
        )

    async def cleanup_orphans(self) -> int:
        """Remove helpers left behind by crashed runs. Returns how many were removed."""
        result = await self.docker.run(
            "ps", "-a", "--filter", f"label={BOOTSTRAP_LABEL}=true", "--format", "{{.ID}}"
        )
        removed = 0
        for container_id in result.stdout.split():
            if await self.docker.remove(container_id):
                removed += 1
        if removed:
            logger.info("Removed orphaned bootstrap containers", count=removed)
        return removed
