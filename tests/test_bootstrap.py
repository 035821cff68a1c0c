"""Tests for the bootstrap helper container protocol."""

from __future__ import annotations

import asyncio
import subprocess
from dataclasses import replace

import pytest
from conftest import FakeDocker, write_project

from devspawn.spawner._bootstrap import BootstrapContainerConfig, BootstrapContainerManager
from devspawn.types import ExecResult, SpawnStep


@pytest.fixture
def docker():
    return FakeDocker()


@pytest.fixture
def manager(docker):
    return BootstrapContainerManager(docker)


@pytest.fixture
def config():
    return BootstrapContainerConfig.for_project("My App", "devcontainer-myapp-12345678")


@pytest.fixture
def project(tmp_path):
    return write_project(tmp_path / "app", **{"main.py": "print('hi')\n"})


class TestConfig:
    def test_for_project_uses_settings(self, config):
        assert config.workspace_path == "/workspaces/myapp"
        assert config.image_ref == "devspawn-bootstrap:latest"
        assert config.mount_docker_socket


class TestEnsureImage:
    async def test_present_image_not_rebuilt(self, manager, docker, config):
        result = await manager.ensure_image(config)
        assert result.success
        assert not result.was_built
        assert ("build_image", "devspawn-bootstrap:latest") not in docker.calls

    async def test_missing_image_built_from_packaged_dockerfile(self, manager, docker, config):
        docker.images.clear()
        result = await manager.ensure_image(config)
        assert result.success
        assert result.was_built
        assert result.image_id == "sha256:abc"
        assert ("build_image", "devspawn-bootstrap:latest") in docker.calls


class TestStage:
    async def test_success_removes_helper(self, manager, docker, config, project):
        steps: list[SpawnStep] = []
        seen = {}

        async def on_ready(info):
            seen["alive"] = info.container_id in docker.containers
            seen["workspace"] = info.workspace_path
            return True

        result = await manager.stage(config, project, on_ready=on_ready, on_step=steps.append)

        assert result.success
        assert result.step == SpawnStep.BOOTSTRAP_CLEANUP
        assert seen == {"alive": True, "workspace": "/workspaces/myapp"}
        assert docker.bootstrap_containers() == []
        assert steps == [
            SpawnStep.BOOTSTRAP_CONTAINER_START,
            SpawnStep.FILE_COPY_TO_BOOTSTRAP,
            SpawnStep.BOOTSTRAP_CLEANUP,
        ]

    async def test_volume_and_socket_mounted(self, manager, docker, config, project):
        await manager.stage(config, project)
        run = next(c for c in docker.calls if c[0] == "run_detached")
        mounts = run[3]
        assert "devcontainer-myapp-12345678:/workspaces/myapp" in mounts
        assert "/var/run/docker.sock:/var/run/docker.sock" in mounts

    async def test_copies_whole_tree(self, manager, docker, config, project):
        await manager.stage(config, project)
        copy = next(c for c in docker.calls if c[0] == "copy_into")
        assert copy[1] == f"{project}/."
        assert copy[3] == "/workspaces/myapp"

    async def test_copies_only_devcontainer_folder(self, manager, docker, config, project):
        await manager.stage(config, project, copy_source_files=False)
        copy = next(c for c in docker.calls if c[0] == "copy_into")
        assert copy[1] == f"{project / '.devcontainer'}/."
        assert copy[3] == "/workspaces/myapp/.devcontainer"

    async def test_copy_failure_still_removes_helper(self, manager, docker, config, project):
        docker.copy_result = ExecResult(success=False, exit_code=1, stderr="disk full")
        called = False

        async def on_ready(info):
            nonlocal called
            called = True
            return True

        result = await manager.stage(config, project, on_ready=on_ready)

        assert not result.success
        assert result.step == SpawnStep.FILE_COPY_TO_BOOTSTRAP
        assert "disk full" in result.message
        assert result.exit_code == 1
        assert not called
        assert docker.bootstrap_containers() == []

    async def test_staging_command_failure(self, manager, docker, project):
        config = replace(
            BootstrapContainerConfig.for_project("app", "vol"),
            staging_commands=("npm ci",),
        )
        docker.exec_results["npm ci"] = ExecResult(success=False, exit_code=2, stderr="ERR!")
        result = await manager.stage(config, project)
        assert not result.success
        assert result.exit_code == 2
        assert docker.bootstrap_containers() == []

    async def test_on_ready_false_marks_container_up(self, manager, docker, config, project):
        async def on_ready(info):
            return False

        result = await manager.stage(config, project, on_ready=on_ready)
        assert not result.success
        assert result.step == SpawnStep.CONTAINER_UP
        assert docker.bootstrap_containers() == []

    async def test_start_failure_is_a_result(self, manager, docker, config, project):
        docker.fail_run_detached = True
        result = await manager.stage(config, project)
        assert not result.success
        assert result.step == SpawnStep.BOOTSTRAP_CONTAINER_START
        assert "no such image" in result.message
        # the half-created container is removed by name
        assert docker.removed

    async def test_cancellation_still_removes_helper(self, manager, docker, config, project):
        async def on_ready(info):
            raise asyncio.CancelledError

        with pytest.raises(asyncio.CancelledError):
            await manager.stage(config, project, on_ready=on_ready)
        assert docker.bootstrap_containers() == []

    async def test_hung_stop_still_removes_helper(self, manager, docker, config, project):
        async def hung_stop(container, *, timeout=10):
            raise subprocess.TimeoutExpired(cmd="docker stop", timeout=timeout + 30)

        docker.stop = hung_stop
        result = await manager.stage(config, project)

        assert result.success
        assert result.container_id in docker.removed
        assert docker.bootstrap_containers() == []


async def test_cleanup_orphans(manager, docker):
    docker.add_container("orphan1", labels={"devspawn.bootstrap": "true"})
    docker.add_container("orphan2", labels={"devspawn.bootstrap": "true"})
    docker.add_container("dev", labels={"devspawn.managed": "true"})

    assert await manager.cleanup_orphans() == 2
    assert list(docker.containers) == ["dev"]
