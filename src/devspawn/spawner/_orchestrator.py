"""Spawn orchestration: one call takes SpawnOptions to a running devcontainer.

Sequence (each step recorded on the result as it is entered, so a failed
result names the step that failed):

    RUNTIME_CHECK -> CLI_CHECK -> [existing-container reuse short-circuit]
    -> BOOTSTRAP_IMAGE_CHECK -> VOLUME_CREATION -> BOOTSTRAP_CONTAINER_START
    -> FILE_COPY_TO_BOOTSTRAP -> CONTAINER_UP -> BOOTSTRAP_CLEANUP
    -> EDITOR_LAUNCH -> COMPLETED

Without the bootstrap helper the bootstrap-only steps are skipped and the
sources are copied into the volume with a throwaway container instead.

The volume is never deleted on failure; a retry picks it up again when the
same volume name is passed. Every exception other than cancellation is
converted into a failed :class:`SpawnResult`.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from devspawn.config import get_settings
from devspawn.logger import logger
from devspawn.runtime import check_runtime_availability, is_devcontainer_cli_installed
from devspawn.spawner._bootstrap import BootstrapContainerConfig, BootstrapContainerManager
from devspawn.spawner._devcontainer import (
    DevcontainerCli,
    UpOutcome,
    build_override_config,
    resolve_docker_config,
)
from devspawn.spawner._docker import (
    CREATED_LABEL,
    INSTANCE_LABEL,
    KIND_LABEL,
    MANAGED_LABEL,
    PROJECT_LABEL,
    PROJECT_PATH_LABEL,
    RUNNER_NAME_LABEL,
    VOLUME_LABEL,
    WORKSPACE_FOLDER_LABEL,
    DockerCli,
    DockerError,
)
from devspawn.spawner._editor import EditorLauncher, attached_container_uri
from devspawn.spawner._hashing import (
    collect_config_files,
    compute_hash,
    has_changed,
    hash_labels,
    load_jsonc,
    resolve_descriptor,
)
from devspawn.spawner._naming import generate_volume_name, sanitize_project_name, short_id
from devspawn.types import (
    ConfigurationChangeResult,
    ConfigurationHashResult,
    ExistingContainerInfo,
    RebuildBehavior,
    RuntimeAvailability,
    SpawnMode,
    SpawnOptions,
    SpawnResult,
    SpawnStep,
)

ConfirmRebuild = Callable[[ConfigurationChangeResult], Awaitable[bool]]
OnProgress = Callable[[SpawnStep], None]

_CLI_INSTALL_HINT = "Install it with: npm install -g @devcontainers/cli"


def identity_labels(options: SpawnOptions) -> dict[str, str]:
    """Labels that tell one of a project's containers apart from the others.

    Passed to ``devcontainer up`` as ``--id-label`` and used for the reuse
    lookup. Named runner containers, one-off job containers and the
    interactive container of a project never match each other.
    """
    labels = {PROJECT_PATH_LABEL: str(options.project_path), MANAGED_LABEL: "true"}
    if options.container_name is not None:
        labels[KIND_LABEL] = "named"
        labels[RUNNER_NAME_LABEL] = options.container_name
    elif options.instance_id is not None:
        labels[KIND_LABEL] = "ephemeral"
        labels[INSTANCE_LABEL] = options.instance_id
    else:
        labels[KIND_LABEL] = "interactive"
    return labels


async def decide_rebuild(
    options: SpawnOptions,
    change: ConfigurationChangeResult,
    confirm: ConfirmRebuild | None,
) -> tuple[bool, str | None]:
    """Apply the rebuild policy. Returns (rebuild, warning).

    ``auto`` only asks when the configuration changed; ``prompt`` always
    asks. With nobody to ask, both fall back to reusing the container.
    """
    behavior = options.rebuild_behavior
    if options.skip_rebuild or behavior == RebuildBehavior.NEVER:
        if change.changed:
            return False, f"Configuration changed ({change.reason}); reusing existing container"
        return False, None
    if behavior == RebuildBehavior.ALWAYS:
        return True, None
    if behavior == RebuildBehavior.AUTO and not change.changed:
        return False, None
    if confirm is not None:
        return await confirm(change), None
    if change.changed:
        return False, (
            f"Configuration changed ({change.reason}) but no prompt is attached; "
            "reusing existing container. Pass --rebuild always to rebuild."
        )
    return False, None


@dataclass
class _Attempt:
    """Mutable bookkeeping for one spawn; frozen into a SpawnResult by fail() or succeed()."""

    options: SpawnOptions
    on_progress: OnProgress | None = None
    started: float = field(default_factory=time.monotonic)
    step: SpawnStep = SpawnStep.NONE
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    container_id: str | None = None
    volume_name: str | None = None
    editor_uri: str | None = None
    bootstrap_container_id: str | None = None
    cli_stdout: str = ""
    cli_stderr: str = ""
    remote_workspace_folder: str | None = None
    reused_existing: bool = False

    def advance(self, step: SpawnStep) -> None:
        if step < self.step:
            return
        self.step = step
        logger.debug("Spawn step", step=step.name, project=self.options.project_name)
        if self.on_progress is not None:
            self.on_progress(step)

    def warn(self, message: str) -> None:
        logger.warning(message, project=self.options.project_name)
        self.warnings.append(message)

    def record_up(self, outcome: UpOutcome) -> None:
        self.cli_stdout = outcome.exec_result.stdout
        self.cli_stderr = outcome.exec_result.stderr
        if outcome.parsed is not None:
            self.container_id = outcome.parsed.container_id or self.container_id
            self.remote_workspace_folder = outcome.parsed.remote_workspace_folder

    def fail(self, message: str, *errors: str) -> SpawnResult:
        self.errors.extend(e for e in errors if e)
        if not self.errors:
            self.errors.append(message)
        logger.error(
            "Spawn failed",
            project=self.options.project_name,
            step=self.step.name,
            message=message,
        )
        return self._result(False, message)

    def succeed(self, message: str) -> SpawnResult:
        return self._result(True, message)

    def _result(self, success: bool, message: str) -> SpawnResult:
        return SpawnResult(
            success=success,
            message=message,
            completed_step=self.step,
            container_id=self.container_id,
            volume_name=self.volume_name,
            editor_uri=self.editor_uri,
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
            duration=time.monotonic() - self.started,
            bootstrap_container_id=self.bootstrap_container_id,
            cli_stdout=self.cli_stdout,
            cli_stderr=self.cli_stderr,
            remote_workspace_folder=self.remote_workspace_folder,
            reused_existing=self.reused_existing,
        )


class SpawnOrchestrator:
    def __init__(
        self,
        *,
        docker: DockerCli | None = None,
        bootstrap: BootstrapContainerManager | None = None,
        cli: DevcontainerCli | None = None,
        editor: EditorLauncher | None = None,
        check_runtime: Callable[[], RuntimeAvailability] = check_runtime_availability,
        check_cli: Callable[[], bool] = is_devcontainer_cli_installed,
    ) -> None:
        self.docker = docker or DockerCli()
        self.bootstrap = bootstrap or BootstrapContainerManager(self.docker)
        self.cli = cli or DevcontainerCli()
        self.editor = editor or EditorLauncher()
        self._check_runtime = check_runtime
        self._check_cli = check_cli

    async def spawn(
        self,
        options: SpawnOptions,
        *,
        confirm_rebuild: ConfirmRebuild | None = None,
        on_progress: OnProgress | None = None,
    ) -> SpawnResult:
        attempt = _Attempt(options=options, on_progress=on_progress)
        logger.info(
            "Spawning devcontainer",
            project=options.project_name,
            path=str(options.project_path),
            bootstrap=options.use_bootstrap_container,
        )
        try:
            result = await self._spawn(attempt, confirm_rebuild)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Unexpected spawn error", project=options.project_name)
            return attempt.fail(f"Unexpected error during {attempt.step.name}: {exc}", str(exc))
        if result.success:
            logger.info(
                "Devcontainer ready",
                project=options.project_name,
                container=result.container_id,
                seconds=round(result.duration, 1),
            )
        return result

    # -----------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------

    async def _spawn(self, attempt: _Attempt, confirm: ConfirmRebuild | None) -> SpawnResult:
        options = attempt.options

        if options.mode == SpawnMode.REMOTE:
            return attempt.fail("Remote spawning is not supported; use local mode")
        if not options.project_path.is_dir():
            return attempt.fail(f"Project path does not exist: {options.project_path}")

        attempt.advance(SpawnStep.RUNTIME_CHECK)
        runtime = await asyncio.to_thread(self._check_runtime)
        if not runtime.available or not runtime.running:
            return attempt.fail(runtime.message)

        attempt.advance(SpawnStep.CLI_CHECK)
        # the bootstrap image ships its own devcontainer CLI
        if not options.use_bootstrap_container and not await asyncio.to_thread(self._check_cli):
            return attempt.fail(f"The devcontainer CLI is not installed. {_CLI_INSTALL_HINT}")

        try:
            files = collect_config_files(options.project_path, options.devcontainer_path)
            descriptor_path = resolve_descriptor(options.project_path, options.devcontainer_path)
            descriptor = load_jsonc(descriptor_path)
        except (FileNotFoundError, ValueError) as exc:
            return attempt.fail(f"Invalid devcontainer configuration: {exc}")
        current = compute_hash(files)

        id_labels = identity_labels(options)
        # without reuse, an existing container with the same identity is replaced
        remove_existing = not options.reuse_existing
        volume_name = options.volume_name
        if options.reuse_existing:
            existing = await self.docker.find_container(id_labels)
            if existing is not None:
                change = has_changed(current, existing.labels)
                rebuild, warning = await decide_rebuild(options, change, confirm)
                if warning:
                    attempt.warn(warning)
                if not rebuild:
                    return await self._reuse(attempt, existing)
                logger.info(
                    "Rebuilding existing container",
                    reason=change.reason,
                    changed_files=list(change.changed_files),
                )
                remove_existing = True
                volume_name = volume_name or existing.volume_name

        volume = volume_name or generate_volume_name(
            options.project_name, get_settings().docker.volume_prefix
        )
        attempt.volume_name = volume
        workspace_folder = (
            f"{get_settings().devcontainer.workspace_root}/"
            f"{sanitize_project_name(options.project_name)}"
        )
        override, override_warnings = build_override_config(
            descriptor,
            volume_name=volume,
            workspace_folder=workspace_folder,
            labels=self._container_labels(attempt, workspace_folder, current, id_labels),
            build_args=options.build_args,
            credential_socket=options.credential_socket_path,
        )
        for warning in override_warnings:
            attempt.warn(warning)

        docker_config, warning = resolve_docker_config(
            options.forward_docker_config, options.docker_config_path
        )
        if warning:
            attempt.warn(warning)

        if options.use_bootstrap_container:
            failure = await self._up_via_bootstrap(
                attempt,
                volume,
                descriptor_path,
                override,
                id_labels=id_labels,
                remove_existing=remove_existing,
                docker_config=docker_config,
            )
        else:
            failure = await self._up_direct(
                attempt,
                volume,
                descriptor_path,
                override,
                id_labels=id_labels,
                remove_existing=remove_existing,
                docker_config=docker_config,
            )
        if failure is not None:
            return failure

        await self._launch_editor(attempt, workspace_folder)
        attempt.advance(SpawnStep.COMPLETED)
        return attempt.succeed(f"Devcontainer for {options.project_name} is running")

    def _container_labels(
        self,
        attempt: _Attempt,
        workspace_folder: str,
        current: ConfigurationHashResult,
        id_labels: dict[str, str],
    ) -> dict[str, str]:
        return {
            **id_labels,
            PROJECT_LABEL: attempt.options.project_name,
            VOLUME_LABEL: attempt.volume_name or "",
            WORKSPACE_FOLDER_LABEL: workspace_folder,
            CREATED_LABEL: datetime.now(UTC).isoformat(),
            **hash_labels(current),
        }

    async def _reuse(self, attempt: _Attempt, existing: ExistingContainerInfo) -> SpawnResult:
        attempt.reused_existing = True
        attempt.container_id = existing.container_id
        attempt.volume_name = existing.volume_name
        attempt.remote_workspace_folder = existing.workspace_folder
        if not existing.running:
            try:
                await self.docker.start(existing.container_id)
            except DockerError as exc:
                return attempt.fail(
                    f"Existing container {existing.name} could not be started", str(exc)
                )
        logger.info("Reusing existing container", container=existing.name)
        await self._launch_editor(attempt, existing.workspace_folder or "/workspaces")
        attempt.advance(SpawnStep.COMPLETED)
        return attempt.succeed(f"Reusing existing container {existing.name}")

    async def _ensure_volume(self, attempt: _Attempt, volume: str) -> SpawnResult | None:
        attempt.advance(SpawnStep.VOLUME_CREATION)
        try:
            await self.docker.ensure_volume(
                volume,
                {
                    MANAGED_LABEL: "true",
                    PROJECT_LABEL: attempt.options.project_name,
                    PROJECT_PATH_LABEL: str(attempt.options.project_path),
                    CREATED_LABEL: datetime.now(UTC).isoformat(),
                },
            )
        except DockerError as exc:
            return attempt.fail(f"Could not create volume {volume}", str(exc))
        return None

    async def _up_via_bootstrap(
        self,
        attempt: _Attempt,
        volume: str,
        descriptor_path: Path,
        override: dict,
        **up_kwargs,
    ) -> SpawnResult | None:
        """Build inside the helper. Returns a failed result, or None on success."""
        options = attempt.options
        config = BootstrapContainerConfig.for_project(options.project_name, volume)

        attempt.advance(SpawnStep.BOOTSTRAP_IMAGE_CHECK)
        image = await self.bootstrap.ensure_image(config, log_path=options.build_log_path)
        if not image.success:
            return attempt.fail(image.message)
        if image.was_built:
            logger.info("Bootstrap image was built", seconds=round(image.build_duration, 1))

        failure = await self._ensure_volume(attempt, volume)
        if failure is not None:
            return failure

        try:
            descriptor_relative = (
                descriptor_path.resolve().relative_to(options.project_path.resolve()).as_posix()
            )
        except ValueError:
            return attempt.fail(
                "The devcontainer descriptor must live inside the project to use the bootstrap"
                " container"
            )
        outcome: UpOutcome | None = None

        async def _up(info) -> bool:
            nonlocal outcome
            attempt.advance(SpawnStep.CONTAINER_UP)
            outcome = await self.cli.up_in_bootstrap(
                self.bootstrap,
                info,
                descriptor_relative,
                override,
                log_path=options.build_log_path,
                **up_kwargs,
            )
            attempt.record_up(outcome)
            return outcome.succeeded

        staged = await self.bootstrap.stage(
            config,
            options.project_path,
            copy_source_files=options.copy_source_files,
            on_ready=_up,
            on_step=attempt.advance,
        )
        attempt.bootstrap_container_id = staged.container_id

        if not staged.success:
            if outcome is not None and not outcome.succeeded:
                return attempt.fail(outcome.failure_message(), outcome.exec_result.stderr)
            if staged.exec_result is not None and not attempt.cli_stderr:
                attempt.cli_stdout = staged.exec_result.stdout
                attempt.cli_stderr = staged.exec_result.stderr
            return attempt.fail(staged.message)
        return None

    async def _up_direct(
        self,
        attempt: _Attempt,
        volume: str,
        descriptor_path: Path,
        override: dict,
        **up_kwargs,
    ) -> SpawnResult | None:
        options = attempt.options
        failure = await self._ensure_volume(attempt, volume)
        if failure is not None:
            return failure

        if options.copy_source_files:
            attempt.advance(SpawnStep.FILE_COPY_TO_BOOTSTRAP)
            failure = await self._copy_with_throwaway(attempt, volume)
            if failure is not None:
                return failure

        attempt.advance(SpawnStep.CONTAINER_UP)
        outcome = await self.cli.up(
            options.project_path,
            descriptor_path,
            override,
            log_path=options.build_log_path,
            **up_kwargs,
        )
        attempt.record_up(outcome)
        if not outcome.succeeded:
            return attempt.fail(outcome.failure_message(), outcome.exec_result.stderr)
        return None

    async def _copy_with_throwaway(self, attempt: _Attempt, volume: str) -> SpawnResult | None:
        """Copy sources into the volume through a created-but-never-started container."""
        name = f"devspawn-copy-{short_id()}"
        try:
            await self.docker.create_container(
                get_settings().docker.copy_helper_image,
                name=name,
                mounts=[f"{volume}:/workspace"],
            )
            copied = await self.docker.copy_into(
                f"{attempt.options.project_path}/.", name, "/workspace"
            )
        except DockerError as exc:
            return attempt.fail("Could not prepare the copy container", str(exc))
        finally:
            await asyncio.shield(self.docker.remove(name))
        if not copied.success:
            attempt.cli_stderr = copied.stderr
            return attempt.fail("Copying sources into the volume failed", copied.stderr.strip())
        return None

    async def _launch_editor(self, attempt: _Attempt, default_folder: str) -> None:
        if not attempt.options.launch_editor or not attempt.container_id:
            return
        attempt.advance(SpawnStep.EDITOR_LAUNCH)
        folder = attempt.remote_workspace_folder or default_folder
        attempt.editor_uri = attached_container_uri(attempt.container_id, folder)
        try:
            await self.editor.launch(attempt.editor_uri)
        except (RuntimeError, OSError) as exc:
            attempt.warn(f"Editor launch failed: {exc}")
