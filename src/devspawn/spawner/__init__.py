"""Spawn side: docker/devcontainer CLI wrappers, bootstrap helper, hashing, orchestrator."""

from devspawn.spawner._bootstrap import (
    BootstrapContainerConfig,
    BootstrapContainerInfo,
    BootstrapContainerManager,
    BootstrapImageResult,
    BootstrapStageResult,
)
from devspawn.spawner._devcontainer import DevcontainerCli, parse_up_output
from devspawn.spawner._docker import DockerCli, DockerError
from devspawn.spawner._editor import EditorLauncher, attached_container_uri
from devspawn.spawner._hashing import collect_config_files, compute_hash, has_changed
from devspawn.spawner._naming import generate_volume_name, named_volume_name
from devspawn.spawner._orchestrator import ConfirmRebuild, SpawnOrchestrator, decide_rebuild

__all__ = [
    "BootstrapContainerConfig",
    "BootstrapContainerInfo",
    "BootstrapContainerManager",
    "BootstrapImageResult",
    "BootstrapStageResult",
    "ConfirmRebuild",
    "DevcontainerCli",
    "DockerCli",
    "DockerError",
    "EditorLauncher",
    "SpawnOrchestrator",
    "attached_container_uri",
    "collect_config_files",
    "compute_hash",
    "decide_rebuild",
    "generate_volume_name",
    "has_changed",
    "named_volume_name",
    "parse_up_output",
]
