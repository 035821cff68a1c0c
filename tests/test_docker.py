"""Tests for the docker CLI wrapper's container lookup."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

from devspawn.spawner._docker import DockerCli


async def test_find_container_filters_on_every_label():
    labels = {"devspawn.project_path": "/src/app", "devspawn.runner.name": "gpu"}
    ps_row = json.dumps({"ID": "abc123", "Names": "app-gpu", "State": "running"})
    with patch("devspawn.spawner._docker.subprocess.run") as mock_run:
        mock_run.side_effect = [
            MagicMock(returncode=0, stdout=ps_row + "\n", stderr=""),
            MagicMock(
                returncode=0,
                stdout=json.dumps({**labels, "devspawn.volume": "vol1"}),
                stderr="",
            ),
        ]
        found = await DockerCli(cli="docker").find_container(labels)

    ps_args = mock_run.call_args_list[0].args[0]
    assert ps_args[:3] == ["docker", "ps", "-a"]
    assert "label=devspawn.project_path=/src/app" in ps_args
    assert "label=devspawn.runner.name=gpu" in ps_args
    assert ps_args.count("--filter") == 2
    assert found is not None
    assert found.container_id == "abc123"
    assert found.running
    assert found.volume_name == "vol1"


async def test_find_container_none_when_nothing_matches():
    with patch("devspawn.spawner._docker.subprocess.run") as mock_run:
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        assert await DockerCli(cli="docker").find_container({"devspawn.kind": "named"}) is None
