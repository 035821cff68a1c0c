"""Runner daemon: poll the queue, spawn a devcontainer per job, track job state.

Jobs run strictly one at a time: a claimed job finishes (success or failure)
before the next poll. A stop request ends polling but lets the in-flight
job reach its end; the credential server stays up until then.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import structlog

from devspawn.config import get_settings
from devspawn.logger import logger
from devspawn.runner.client import JobQueueClient, QueueAuthError, QueueError
from devspawn.runner.credential_server import CredentialForwardingServer
from devspawn.runner.models import (
    JobDispatchInfo,
    JobStatus,
    NamedContainerEntry,
    RunnerDaemonStatus,
    RunnerJob,
    RunnerJobState,
    RunnerRegistration,
)
from devspawn.runner.pool import NamedContainerPool
from devspawn.spawner import BootstrapContainerManager, DockerCli, SpawnOrchestrator
from devspawn.spawner._naming import named_volume_name
from devspawn.types import SpawnOptions, SpawnResult

# recent job ids remembered to drop duplicate claims
_DISPATCHED_MEMORY = 256


class RunnerDaemon:
    def __init__(
        self,
        registration: RunnerRegistration,
        *,
        client: JobQueueClient,
        orchestrator: SpawnOrchestrator,
        pool: NamedContainerPool,
        credential_server: CredentialForwardingServer,
        docker: DockerCli | None = None,
        bootstrap: BootstrapContainerManager | None = None,
        working_dir: Path,
        polling_interval: float | None = None,
    ) -> None:
        s = get_settings()
        self.registration = registration
        self.client = client
        self.orchestrator = orchestrator
        self.pool = pool
        self.credential_server = credential_server
        self.docker = docker or orchestrator.docker
        self.bootstrap = bootstrap or orchestrator.bootstrap
        self.working_dir = working_dir
        self.polling_interval = polling_interval or s.runner.polling_interval

        if s.runner.max_concurrent_jobs > 1:
            logger.warning(
                "Concurrent jobs are not supported, running one job at a time",
                configured=s.runner.max_concurrent_jobs,
            )

        self._stop = asyncio.Event()
        self._dispatched: deque[str] = deque(maxlen=_DISPATCHED_MEMORY)
        self._active: dict[str, RunnerJobState] = {}
        self._auth_failures = 0
        self._status = RunnerDaemonStatus()

    # ------------------------------------------------------------------
    # Status / control
    # ------------------------------------------------------------------

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, reason: str = "requested") -> None:
        if not self._stop.is_set():
            logger.info("Stopping runner after the current job", reason=reason)
        self._stop.set()

    def status(self) -> RunnerDaemonStatus:
        return replace(
            self._status,
            active_jobs=[replace(j) for j in self._active.values()],
            named_containers=self.pool.get_all(),
        )

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> RunnerDaemonStatus:
        await self.pool.recover()
        await self.bootstrap.cleanup_orphans()

        async with self.credential_server:
            self._status.running = True
            self._status.started_at = datetime.now(UTC)
            logger.info(
                "Runner started",
                runner=self.registration.name,
                project=f"{self.registration.owner}/{self.registration.project}",
                server=self.client.base_url,
                interval=self.polling_interval,
            )
            try:
                while not self._stop.is_set():
                    await self.poll_once()
                    if self._stop.is_set():
                        break
                    try:
                        await asyncio.wait_for(self._stop.wait(), timeout=self._next_interval())
                    except TimeoutError:
                        pass
            finally:
                self._status.running = False

        logger.info(
            "Runner stopped",
            completed=self._status.jobs_completed,
            failed=self._status.jobs_failed,
        )
        return self.status()

    def _next_interval(self) -> float:
        s = get_settings()
        if self._auth_failures >= s.runner.max_auth_failures:
            return s.runner.auth_failure_backoff
        return self.polling_interval

    async def poll_once(self) -> bool:
        """One poll cycle. Returns True when a job was dispatched."""
        self._status.last_poll_at = datetime.now(UTC)
        try:
            job = await self.client.claim_job(self.registration)
        except QueueAuthError as exc:
            self._auth_failures += 1
            logger.error(
                "Runner token rejected",
                err=str(exc),
                consecutive=self._auth_failures,
            )
            if self._auth_failures == get_settings().runner.max_auth_failures:
                logger.error(
                    "Repeated auth failures, backing off. Re-register with 'devspawn register'",
                    backoff=get_settings().runner.auth_failure_backoff,
                )
            return False
        except QueueError as exc:
            logger.error("Error polling for jobs", err=str(exc))
            return False
        self._auth_failures = 0

        if job is None:
            logger.debug("No job available")
            return False

        if job.id in self._dispatched:
            logger.warning("Job already dispatched, ignoring", job_id=job.id)
            return False
        self._dispatched.append(job.id)

        try:
            await self.execute(self.build_dispatch(job))
        except Exception as exc:
            logger.exception("Job crashed", job_id=job.id, err=str(exc))
        return True

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def build_dispatch(self, job: RunnerJob) -> JobDispatchInfo:
        reserved = set(get_settings().runner.reserved_labels)
        name = job.container_name or next((lb for lb in job.labels if lb not in reserved), None)
        return JobDispatchInfo(
            job=job,
            registration=self.registration,
            run_id=job.run_id,
            container_name=name,
        )

    def build_spawn_options(self, dispatch: JobDispatchInfo) -> SpawnOptions:
        job = dispatch.job
        project_path = Path(job.project_path) if job.project_path else Path(job.project_name)
        if not project_path.is_absolute():
            project_path = self.working_dir / project_path
        devcontainer_path = Path(
            job.devcontainer_path or get_settings().devcontainer.config_relative_path
        )

        options = SpawnOptions(
            project_name=job.project_name,
            project_path=project_path,
            devcontainer_path=devcontainer_path,
            launch_editor=False,
            reuse_existing=False,
            use_bootstrap_container=True,
            build_args=dict(job.build_args),
            credential_socket_path=self.credential_server.socket_path,
        )
        if dispatch.container_name is None:
            return replace(options, instance_id=job.id)
        return replace(
            options,
            reuse_existing=True,
            container_name=dispatch.container_name,
            volume_name=named_volume_name(
                dispatch.container_name, get_settings().docker.volume_prefix
            ),
        )

    async def execute(self, dispatch: JobDispatchInfo) -> bool:
        """Run one job through its full lifecycle. Returns True on success."""
        job = dispatch.job
        options = self.build_spawn_options(dispatch)
        state = RunnerJobState(
            job_id=job.id,
            registration_id=self.registration.id,
            run_id=job.run_id,
            workflow_job_id=job.workflow_job_id,
            branch=job.branch,
            container_name=dispatch.container_name,
            clone_path=str(options.project_path),
        )
        self._active[job.id] = state

        with structlog.contextvars.bound_contextvars(job_id=job.id):
            logger.info(
                "Received job",
                project=job.project_name,
                container_name=dispatch.container_name or "ephemeral",
                branch=job.branch,
            )
            result: SpawnResult | None = None
            try:
                if dispatch.container_name is not None:
                    name = dispatch.container_name
                    async with self.pool.hold(name) as entry:
                        result = await self._run_named(name, dispatch, options, state, entry)
                else:
                    result = await self._run(dispatch, options, state)
            finally:
                if state.status not in (JobStatus.COMPLETED, JobStatus.FAILED):
                    state.advance(JobStatus.FAILED)
                succeeded = state.status == JobStatus.COMPLETED
                if succeeded:
                    self._status.jobs_completed += 1
                else:
                    self._status.jobs_failed += 1
                state.advance(JobStatus.CLEANING)
                await self._cleanup(dispatch, result)
                del self._active[job.id]

            logger.info(
                "Job finished",
                success=succeeded,
                container=state.container_id,
                processed=self._status.jobs_processed,
            )
        return succeeded

    async def _run_named(
        self,
        name: str,
        dispatch: JobDispatchInfo,
        options: SpawnOptions,
        state: RunnerJobState,
        entry: NamedContainerEntry | None,
    ) -> SpawnResult:
        if entry is not None and not await self.docker.is_container_running(entry.container_id):
            logger.warning("Named container is gone, creating a fresh one", name=name)
            await self.pool.remove(name)
            entry = None

        result = await self._run(dispatch, options, state)
        if result.success and result.container_id and (
            entry is None or entry.container_id != result.container_id
        ):
            await self.pool.register(
                NamedContainerEntry(
                    name=name,
                    container_id=result.container_id,
                    volume_name=result.volume_name,
                    clone_path=str(options.project_path),
                    owner=self.registration.owner,
                    repository=self.registration.project,
                    in_use=True,
                )
            )
        return result

    async def _run(
        self,
        dispatch: JobDispatchInfo,
        options: SpawnOptions,
        state: RunnerJobState,
    ) -> SpawnResult:
        state.advance(JobStatus.BUILDING)
        result = await self.orchestrator.spawn(options)
        state.container_id = result.container_id
        if not result.success:
            logger.error(
                "Job spawn failed",
                message=result.message,
                errors=list(result.errors),
                step=result.completed_step.name,
            )
            state.advance(JobStatus.FAILED)
            return result

        state.advance(JobStatus.RUNNING)
        command = dispatch.job.command
        if command and result.container_id:
            executed = await self.docker.exec(
                result.container_id,
                command,
                workdir=result.remote_workspace_folder,
                timeout=get_settings().devcontainer.up_timeout,
            )
            if not executed.success:
                logger.error(
                    "Job command failed",
                    exit_code=executed.exit_code,
                    output=executed.combined_output()[-2000:],
                )
                state.advance(JobStatus.FAILED)
                return result
            logger.info("Job command succeeded", seconds=round(executed.duration, 1))

        state.advance(JobStatus.COMPLETED)
        logger.info("Job container ready", container=result.container_id)
        return result

    async def _cleanup(self, dispatch: JobDispatchInfo, result: SpawnResult | None) -> None:
        """Ephemeral containers go after their job. Named ones stay for the next job."""
        if dispatch.is_named or result is None or get_settings().runner.keep_ephemeral_containers:
            return
        if result.container_id:
            await self.docker.remove(result.container_id)
            logger.info("Removed ephemeral container", container=result.container_id)
        # a failed spawn keeps its volume so a retry does not re-stage
        if result.success and result.volume_name:
            await self.docker.remove_volume(result.volume_name)
