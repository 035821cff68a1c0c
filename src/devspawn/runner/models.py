"""Runner-side models: registrations, queue jobs, per-job state, named containers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from devspawn.types import DevspawnError


def _now() -> datetime:
    return datetime.now(UTC)


class _CamelModel(BaseModel):
    """Wire/persistence models: camelCase on disk and on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class RunnerRegistration(_CamelModel):
    id: str
    name: str
    token: SecretStr
    owner: str
    project: str
    server: str
    registered_at: datetime = Field(default_factory=_now)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: object) -> str:
        return str(v)

    @field_serializer("token", when_used="json")
    def _dump_token(self, v: SecretStr) -> str:
        return v.get_secret_value()


class RegistrationsFile(_CamelModel):
    registrations: list[RunnerRegistration] = []
    last_modified: datetime | None = None


class NamedContainerEntry(_CamelModel):
    name: str
    container_id: str
    volume_name: str | None = None
    clone_path: str | None = None
    owner: str | None = None
    repository: str | None = None
    created_at: datetime = Field(default_factory=_now)
    last_used_at: datetime = Field(default_factory=_now)
    in_use: bool = False


# ---------------------------------------------------------------------------
# Queue payloads
# ---------------------------------------------------------------------------


class RunnerJob(_CamelModel):
    """A job handed out by ``POST .../runners/jobs``."""

    id: str
    project_name: str
    project_path: str | None = None
    devcontainer_path: str | None = None
    run_id: str | None = None
    workflow_job_id: str | None = None
    branch: str | None = None
    container_name: str | None = None
    labels: list[str] = []
    command: str | None = None
    build_args: dict[str, str] = {}

    @field_validator("id", "run_id", "workflow_job_id", mode="before")
    @classmethod
    def _coerce_ids(cls, v: object) -> object:
        return str(v) if isinstance(v, int) else v


class RegisterResponse(_CamelModel):
    id: str
    name: str
    token: SecretStr

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: object) -> str:
        return str(v)


# ---------------------------------------------------------------------------
# In-memory job tracking
# ---------------------------------------------------------------------------


class InvalidJobTransition(DevspawnError):
    pass


class JobStatus(StrEnum):
    CLONING = "cloning"
    BUILDING = "building"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CLEANING = "cleaning"


_ALLOWED: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.CLONING: frozenset({JobStatus.BUILDING, JobStatus.FAILED}),
    JobStatus.BUILDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset({JobStatus.CLEANING}),
    JobStatus.FAILED: frozenset({JobStatus.CLEANING}),
    JobStatus.CLEANING: frozenset(),
}


@dataclass
class RunnerJobState:
    job_id: str
    registration_id: str
    run_id: str | None = None
    workflow_job_id: str | None = None
    branch: str | None = None
    container_name: str | None = None
    container_id: str | None = None
    clone_path: str | None = None
    started_at: datetime = field(default_factory=_now)
    status: JobStatus = JobStatus.CLONING

    def advance(self, status: JobStatus) -> None:
        """Move forward. Anything else (backwards, skipping terminal) raises."""
        if status not in _ALLOWED[self.status]:
            raise InvalidJobTransition(f"job {self.job_id}: {self.status} -> {status}")
        self.status = status

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CLEANING)


@dataclass(frozen=True)
class JobDispatchInfo:
    """Decision record for one claimed job. ``container_name=None`` means ephemeral."""

    job: RunnerJob
    registration: RunnerRegistration
    run_id: str | None = None
    container_name: str | None = None

    @property
    def is_named(self) -> bool:
        return self.container_name is not None


@dataclass
class RunnerDaemonStatus:
    running: bool = False
    started_at: datetime | None = None
    last_poll_at: datetime | None = None
    jobs_completed: int = 0
    jobs_failed: int = 0
    active_jobs: list[RunnerJobState] = field(default_factory=list)
    named_containers: list[NamedContainerEntry] = field(default_factory=list)

    @property
    def jobs_processed(self) -> int:
        return self.jobs_completed + self.jobs_failed
