"""``devcontainer up`` invocation, on the host or inside the bootstrap helper.

The CLI is always handed a full override config: the project's descriptor
with the volume workspace mount, identifying labels (``runArgs``), build
args (``build.args``) and the credential socket mount merged in. The
override replaces the descriptor wholesale, so nothing from the project's
own file is lost by merging into a copy of it.
"""

from __future__ import annotations

import json
import os
import shlex
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from devspawn.config import get_settings
from devspawn.logger import logger
from devspawn.spawner._bootstrap import BootstrapContainerInfo, BootstrapContainerManager
from devspawn.spawner._process import run_process
from devspawn.types import DevcontainerUpResult, ExecResult

CREDENTIAL_SOCKET_TARGET = "/tmp/devspawn-credentials.sock"
CREDENTIAL_SOCKET_ENV = "DEVSPAWN_CREDENTIAL_SOCKET"
_HELPER_OVERRIDE_PATH = "/tmp/devspawn-override.json"
_HELPER_DOCKER_CONFIG_DIR = "/root/.docker"


@dataclass(frozen=True)
class UpOutcome:
    exec_result: ExecResult
    parsed: DevcontainerUpResult | None

    @property
    def succeeded(self) -> bool:
        return self.exec_result.success and self.parsed is not None and self.parsed.succeeded

    def failure_message(self) -> str:
        if self.parsed is not None and self.parsed.outcome != "success":
            detail = self.parsed.message or self.parsed.description or "unknown error"
            return f"devcontainer up reported {self.parsed.outcome}: {detail}"
        if not self.exec_result.success:
            code = self.exec_result.exit_code
            return self.exec_result.message or f"devcontainer up exited with {code}"
        return "devcontainer up did not report a container id"


def parse_up_output(stdout: str) -> DevcontainerUpResult | None:
    """Parse the JSON result line (the last stdout line starting with ``{``)."""
    for line in reversed(stdout.strip().splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(data, dict) or "outcome" not in data:
            continue
        return DevcontainerUpResult(
            outcome=str(data.get("outcome")),
            container_id=data.get("containerId"),
            remote_user=data.get("remoteUser"),
            remote_workspace_folder=data.get("remoteWorkspaceFolder"),
            message=data.get("message"),
            description=data.get("description"),
        )
    return None


def build_override_config(
    descriptor: dict[str, Any],
    *,
    volume_name: str,
    workspace_folder: str,
    labels: dict[str, str],
    build_args: dict[str, str] | None = None,
    credential_socket: Path | None = None,
) -> tuple[dict[str, Any], list[str]]:
    """Merge spawn-time settings into a copy of *descriptor*. Returns (config, warnings)."""
    warnings: list[str] = []
    config = json.loads(json.dumps(descriptor))

    config["workspaceMount"] = f"source={volume_name},target={workspace_folder},type=volume"
    config["workspaceFolder"] = workspace_folder

    run_args = list(config.get("runArgs") or [])
    for key, value in labels.items():
        run_args += ["--label", f"{key}={value}"]
    config["runArgs"] = run_args

    if build_args:
        build = config.get("build")
        if isinstance(build, dict):
            build["args"] = {**(build.get("args") or {}), **build_args}
        else:
            warnings.append(
                "Build arguments ignored: the devcontainer uses a prebuilt image, not a Dockerfile"
            )

    if credential_socket is not None:
        mounts = list(config.get("mounts") or [])
        mounts.append(f"source={credential_socket},target={CREDENTIAL_SOCKET_TARGET},type=bind")
        config["mounts"] = mounts
        config["containerEnv"] = {
            **(config.get("containerEnv") or {}),
            CREDENTIAL_SOCKET_ENV: CREDENTIAL_SOCKET_TARGET,
        }

    return config, warnings


def resolve_docker_config(forward: bool, explicit: Path | None) -> tuple[Path | None, str | None]:
    """Host registry config to forward, or (None, warning) when it is missing."""
    if not forward:
        return None, None
    path = explicit or Path(get_settings().devcontainer.default_docker_config)
    path = path.expanduser()
    if not path.is_file():
        return None, f"Docker config not found at {path}; registry credentials not forwarded"
    return path, None


def up_args(
    cli: str,
    workspace_folder: str,
    config_path: str,
    override_path: str,
    *,
    id_labels: dict[str, str],
    remove_existing: bool = False,
) -> list[str]:
    args = [
        cli,
        "up",
        "--workspace-folder",
        workspace_folder,
        "--config",
        config_path,
        "--override-config",
        override_path,
        "--update-remote-user-uid-default",
        "off",
    ]
    for key, value in id_labels.items():
        args += ["--id-label", f"{key}={value}"]
    if remove_existing:
        args.append("--remove-existing-container")
    return args


def _write_override(config: dict[str, Any]) -> Path:
    fd, name = tempfile.mkstemp(prefix="devspawn-override-", suffix=".json")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(config, f, indent=2)
    return Path(name)


class DevcontainerCli:
    def __init__(self, cli: str | None = None, timeout: float | None = None) -> None:
        s = get_settings()
        self.cli = cli or s.devcontainer.cli
        self.timeout = timeout or s.devcontainer.up_timeout

    async def up(
        self,
        project_path: Path,
        descriptor_path: Path,
        override: dict[str, Any],
        *,
        id_labels: dict[str, str],
        remove_existing: bool = False,
        docker_config: Path | None = None,
        log_path: Path | None = None,
    ) -> UpOutcome:
        """Run ``devcontainer up`` on the host."""
        override_path = _write_override(override)
        env = None
        if docker_config is not None:
            env = {**os.environ, "DOCKER_CONFIG": str(docker_config.parent)}
        try:
            args = up_args(
                self.cli,
                str(project_path),
                str(descriptor_path),
                str(override_path),
                id_labels=id_labels,
                remove_existing=remove_existing,
            )
            logger.info("Running devcontainer up", workspace=str(project_path))
            result = await run_process(
                *args, cwd=project_path, env=env, timeout=self.timeout, log_path=log_path
            )
        finally:
            override_path.unlink(missing_ok=True)
        return UpOutcome(exec_result=result, parsed=parse_up_output(result.stdout))

    async def up_in_bootstrap(
        self,
        bootstrap: BootstrapContainerManager,
        info: BootstrapContainerInfo,
        descriptor_relative: str,
        override: dict[str, Any],
        *,
        id_labels: dict[str, str],
        remove_existing: bool = False,
        docker_config: Path | None = None,
        log_path: Path | None = None,
    ) -> UpOutcome:
        """Run ``devcontainer up`` inside the helper against the staged workspace."""
        override_path = _write_override(override)
        try:
            copied = await bootstrap.copy_file(info, override_path, _HELPER_OVERRIDE_PATH)
        finally:
            override_path.unlink(missing_ok=True)
        if not copied.success:
            return UpOutcome(exec_result=copied, parsed=None)

        if docker_config is not None:
            await bootstrap.exec(info, f"mkdir -p {_HELPER_DOCKER_CONFIG_DIR}", workdir="/")
            forwarded = await bootstrap.copy_file(
                info, docker_config, f"{_HELPER_DOCKER_CONFIG_DIR}/config.json"
            )
            if not forwarded.success:
                logger.warning("Could not forward docker config", err=forwarded.stderr.strip())

        workspace = info.workspace_path
        args = up_args(
            "devcontainer",
            workspace,
            f"{workspace}/{descriptor_relative}",
            _HELPER_OVERRIDE_PATH,
            id_labels=id_labels,
            remove_existing=remove_existing,
        )
        command = shlex.join(args)
        logger.info("Running devcontainer up inside bootstrap", container=info.container_name)
        result = await bootstrap.exec(info, command, timeout=self.timeout, log_path=log_path)
        return UpOutcome(exec_result=result, parsed=parse_up_output(result.stdout))

