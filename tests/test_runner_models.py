"""Tests for runner models: wire payloads and the job state machine."""

from __future__ import annotations

import json

import pytest

from devspawn.runner.models import (
    InvalidJobTransition,
    JobStatus,
    RegisterResponse,
    RunnerDaemonStatus,
    RunnerJob,
    RunnerJobState,
    RunnerRegistration,
)


class TestRunnerJob:
    def test_camel_case_payload(self):
        job = RunnerJob.model_validate(
            {
                "id": 42,
                "projectName": "app",
                "runId": 7,
                "containerName": "gpu",
                "labels": ["self-hosted", "gpu"],
                "buildArgs": {"A": "1"},
            }
        )
        assert job.id == "42"
        assert job.run_id == "7"
        assert job.container_name == "gpu"
        assert job.build_args == {"A": "1"}

    def test_minimal_payload(self):
        job = RunnerJob.model_validate({"id": "j1", "projectName": "app"})
        assert job.labels == []
        assert job.command is None


class TestRegistration:
    def test_token_hidden_in_repr_but_persisted_in_json(self):
        reg = RunnerRegistration(
            id=1, name="box", token="s3cret", owner="acme", project="web", server="https://x"
        )
        assert "s3cret" not in repr(reg)
        data = json.loads(reg.model_dump_json(by_alias=True))
        assert data["token"] == "s3cret"
        assert data["id"] == "1"
        assert "registeredAt" in data

    def test_register_response(self):
        resp = RegisterResponse.model_validate({"id": 3, "name": "box", "token": "t"})
        assert resp.id == "3"
        assert resp.token.get_secret_value() == "t"


class TestJobState:
    def _state(self):
        return RunnerJobState(job_id="j1", registration_id="r1")

    def test_happy_path(self):
        state = self._state()
        for status in (
            JobStatus.BUILDING,
            JobStatus.RUNNING,
            JobStatus.COMPLETED,
            JobStatus.CLEANING,
        ):
            state.advance(status)
        assert state.status == JobStatus.CLEANING
        assert state.is_terminal

    def test_failure_from_any_active_state(self):
        for steps in ([], [JobStatus.BUILDING], [JobStatus.BUILDING, JobStatus.RUNNING]):
            state = self._state()
            for s in steps:
                state.advance(s)
            state.advance(JobStatus.FAILED)
            assert state.is_terminal

    def test_backwards_rejected(self):
        state = self._state()
        state.advance(JobStatus.BUILDING)
        with pytest.raises(InvalidJobTransition):
            state.advance(JobStatus.CLONING)

    def test_terminal_cannot_resume(self):
        state = self._state()
        state.advance(JobStatus.FAILED)
        with pytest.raises(InvalidJobTransition):
            state.advance(JobStatus.RUNNING)

    def test_skipping_rejected(self):
        with pytest.raises(InvalidJobTransition):
            self._state().advance(JobStatus.COMPLETED)


def test_jobs_processed_counts_both_outcomes():
    status = RunnerDaemonStatus(jobs_completed=2, jobs_failed=1)
    assert status.jobs_processed == 3
