"""Entry point for `python -m devspawn` / `devspawn`.

Subcommands:
    devspawn spawn [PROJECT_PATH]          Spawn (or reuse) the project's devcontainer
    devspawn containers [--all]            List containers devspawn manages
    devspawn register <owner/project>      Register this machine as a runner
    devspawn start                         Poll the queue and run jobs

Arguments are resolved once into one command dataclass per subcommand and
dispatched with ``match``. Every entry point receives the working directory
explicitly; relative paths are resolved against it, never against the
process cwd.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import socket
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path

from devspawn.config import get_settings
from devspawn.logger import logger, set_level
from devspawn.types import ConfigurationChangeResult, RebuildBehavior, SpawnResult, SpawnStep

# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SpawnCommand:
    project_path: Path
    volume_name: str | None = None
    force: bool = False
    no_launch: bool = False
    no_copy_source: bool = False
    no_bootstrap: bool = False
    build_args: dict[str, str] = field(default_factory=dict)
    build_log: Path | None = None
    forward_docker_config: bool = True
    docker_config_path: Path | None = None
    rebuild: RebuildBehavior = RebuildBehavior.AUTO
    skip_rebuild: bool = False


@dataclass(frozen=True)
class ContainersCommand:
    include_stopped: bool = False
    output_format: str = "table"


@dataclass(frozen=True)
class RegisterCommand:
    owner: str
    project: str
    name: str | None = None
    server: str | None = None


@dataclass(frozen=True)
class StartCommand:
    polling_interval: float | None = None


Command = SpawnCommand | ContainersCommand | RegisterCommand | StartCommand


@dataclass(frozen=True)
class Invocation:
    command: Command
    cwd: Path
    verbose: bool = False


_STEP_LABELS = {
    SpawnStep.RUNTIME_CHECK: "Checking Docker",
    SpawnStep.CLI_CHECK: "Checking devcontainer CLI",
    SpawnStep.BOOTSTRAP_IMAGE_CHECK: "Checking bootstrap image",
    SpawnStep.VOLUME_CREATION: "Preparing volume",
    SpawnStep.BOOTSTRAP_CONTAINER_START: "Starting bootstrap container",
    SpawnStep.FILE_COPY_TO_BOOTSTRAP: "Copying files into the volume",
    SpawnStep.CONTAINER_UP: "Building and starting devcontainer",
    SpawnStep.BOOTSTRAP_CLEANUP: "Removing bootstrap container",
    SpawnStep.EDITOR_LAUNCH: "Launching editor",
    SpawnStep.COMPLETED: "Done",
}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devspawn",
        description="Spawn volume-backed devcontainers and run queued jobs in them",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--cwd", type=Path, help="Working directory (default: current)")
    sub = parser.add_subparsers(dest="command", required=True)

    spawn = sub.add_parser("spawn", help="Spawn the devcontainer for a project")
    spawn.add_argument("project_path", nargs="?", default=".", type=Path)
    spawn.add_argument("--volume-name", help="Reuse or create this volume")
    spawn.add_argument(
        "--force", action="store_true", help="Create a new container even if one exists"
    )
    spawn.add_argument(
        "--no-launch", "--no-launch-vscode", action="store_true", help="Do not open an editor"
    )
    spawn.add_argument(
        "--no-copy-source",
        action="store_true",
        help="Copy only .devcontainer/, not the source tree",
    )
    spawn.add_argument(
        "--no-bootstrap", action="store_true", help="Run devcontainer up on the host"
    )
    spawn.add_argument(
        "--build-arg",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Build argument (repeatable)",
    )
    spawn.add_argument("--build-log", type=Path, help="Write build output to this file")
    spawn.add_argument(
        "--forward-docker-config",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Make host registry credentials available to the build",
    )
    spawn.add_argument("--docker-config-path", type=Path, help="Registry config.json to forward")
    spawn.add_argument(
        "--rebuild",
        choices=[b.value for b in RebuildBehavior],
        default=RebuildBehavior.AUTO.value,
        help="What to do when the configuration changed since the last build",
    )
    spawn.add_argument(
        "--skip-rebuild", action="store_true", help="Reuse the existing container regardless"
    )

    containers = sub.add_parser("containers", help="List managed containers")
    containers.add_argument("--all", action="store_true", help="Include stopped containers")
    containers.add_argument("--format", choices=["table", "json"], default="table")

    register = sub.add_parser("register", help="Register this machine as a runner")
    register.add_argument("target", metavar="OWNER/PROJECT")
    register.add_argument("--name", help="Runner name (default: hostname)")
    register.add_argument("--server", help="Queue server (default: $AGENTIC_SERVER or config)")

    start = sub.add_parser("start", help="Start polling for jobs")
    start.add_argument("--polling-interval", type=float, metavar="SECONDS")

    return parser


def _parse_build_args(parser: argparse.ArgumentParser, raw: list[str]) -> dict[str, str]:
    build_args: dict[str, str] = {}
    for item in raw:
        key, sep, value = item.partition("=")
        if not sep or not key:
            parser.error(f"--build-arg expects KEY=VALUE, got {item!r}")
        build_args[key] = value
    return build_args


def parse_command(argv: list[str] | None = None, cwd: Path | None = None) -> Invocation:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = (args.cwd or cwd or Path.cwd()).resolve()

    command: Command
    match args.command:
        case "spawn":
            command = SpawnCommand(
                project_path=(base / args.project_path).resolve(),
                volume_name=args.volume_name,
                force=args.force,
                no_launch=args.no_launch,
                no_copy_source=args.no_copy_source,
                no_bootstrap=args.no_bootstrap,
                build_args=_parse_build_args(parser, args.build_arg),
                build_log=(base / args.build_log) if args.build_log else None,
                forward_docker_config=args.forward_docker_config,
                docker_config_path=args.docker_config_path,
                rebuild=RebuildBehavior(args.rebuild),
                skip_rebuild=args.skip_rebuild,
            )
        case "containers":
            command = ContainersCommand(include_stopped=args.all, output_format=args.format)
        case "register":
            owner, sep, project = args.target.partition("/")
            if not sep or not owner or not project or "/" in project:
                parser.error(f"expected OWNER/PROJECT, got {args.target!r}")
            command = RegisterCommand(
                owner=owner, project=project, name=args.name, server=args.server
            )
        case "start":
            if args.polling_interval is not None and args.polling_interval <= 0:
                parser.error("--polling-interval must be positive")
            command = StartCommand(polling_interval=args.polling_interval)
        case _:
            parser.error(f"unknown command {args.command!r}")

    return Invocation(command=command, cwd=base, verbose=args.verbose)


# ---------------------------------------------------------------------------
# spawn
# ---------------------------------------------------------------------------


async def _confirm_rebuild(change: ConfigurationChangeResult) -> bool:
    print(f"Configuration check: {change.reason}")
    for name in change.changed_files:
        print(f"  changed: {name}")
    answer = await asyncio.to_thread(input, "Rebuild the container? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def _print_progress(step: SpawnStep) -> None:
    print(f"[{step.value}/{SpawnStep.COMPLETED.value}] {_STEP_LABELS.get(step, step.name)}")


def _print_result(result: SpawnResult) -> None:
    if result.success:
        print(f"\n{result.message}")
        print(f"  Container: {result.container_id}")
        print(f"  Volume:    {result.volume_name}")
        if result.editor_uri:
            print(f"  Editor:    {result.editor_uri}")
        print(f"  Took {result.duration:.1f}s")
    else:
        print(f"\nError: {result.message}", file=sys.stderr)
        for error in result.errors:
            if error != result.message:
                print(f"  - {error}", file=sys.stderr)
        print(f"  Last step: {result.completed_step.name}", file=sys.stderr)
        if result.volume_name:
            print(
                f"  Volume {result.volume_name} was kept; retry with --volume-name "
                f"{result.volume_name}",
                file=sys.stderr,
            )
        diagnostics = result.format_diagnostics()
        if diagnostics:
            print(f"\n{diagnostics}", file=sys.stderr)
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)


async def _spawn(cmd: SpawnCommand) -> int:
    from devspawn.spawner import SpawnOrchestrator
    from devspawn.types import SpawnOptions

    if not cmd.project_path.is_dir():
        print(f"Error: project path does not exist: {cmd.project_path}", file=sys.stderr)
        return 1
    devcontainer_path = cmd.project_path / get_settings().devcontainer.config_relative_path
    if not devcontainer_path.is_file():
        print(
            f"Error: no devcontainer configuration at {devcontainer_path}",
            file=sys.stderr,
        )
        return 1

    options = SpawnOptions(
        project_name=cmd.project_path.name,
        project_path=cmd.project_path,
        devcontainer_path=devcontainer_path,
        volume_name=cmd.volume_name,
        copy_source_files=not cmd.no_copy_source,
        launch_editor=not cmd.no_launch,
        reuse_existing=not cmd.force,
        use_bootstrap_container=not cmd.no_bootstrap,
        build_args=cmd.build_args,
        build_log_path=cmd.build_log,
        forward_docker_config=cmd.forward_docker_config,
        docker_config_path=cmd.docker_config_path,
        rebuild_behavior=cmd.rebuild,
        skip_rebuild=cmd.skip_rebuild,
    )
    confirm = _confirm_rebuild if sys.stdin.isatty() else None
    result = await SpawnOrchestrator().spawn(
        options, confirm_rebuild=confirm, on_progress=_print_progress
    )
    _print_result(result)
    return 0 if result.success else 1


# ---------------------------------------------------------------------------
# containers
# ---------------------------------------------------------------------------


async def _containers(cmd: ContainersCommand) -> int:
    from devspawn.spawner import DockerCli, DockerError

    try:
        containers = await DockerCli().list_managed(include_stopped=cmd.include_stopped)
    except DockerError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if cmd.output_format == "json":
        print(json.dumps([asdict(c) for c in containers], indent=2))
        return 0

    if not containers:
        print("No managed containers.")
        return 0
    print(f"{'CONTAINER':<14}{'NAME':<40}{'STATUS':<24}PROJECT")
    for c in containers:
        print(f"{c.container_id[:12]:<14}{c.name:<40}{c.status:<24}{c.project_path or '-'}")
    return 0


# ---------------------------------------------------------------------------
# register / start
# ---------------------------------------------------------------------------


async def _register(cmd: RegisterCommand) -> int:
    from devspawn.runner import JobQueueClient, QueueError, RegistrationStore
    from devspawn.runner.models import RunnerRegistration

    s = get_settings()
    name = cmd.name or socket.gethostname()
    async with JobQueueClient(cmd.server or s.default_server) as client:
        try:
            response = await client.register(cmd.owner, cmd.project, name)
        except QueueError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        registration = RunnerRegistration(
            id=response.id,
            name=response.name,
            token=response.token,
            owner=cmd.owner,
            project=cmd.project,
            server=client.base_url,
        )
    await RegistrationStore(s.registrations_path).add(registration)
    print(f"Registered runner {registration.name} for {cmd.owner}/{cmd.project}")
    print(f"  Server: {registration.server}")
    print(f"  Saved to {s.registrations_path}")
    return 0


async def _start(cmd: StartCommand, cwd: Path) -> int:
    from devspawn.auth import read_stored_token
    from devspawn.runner import (
        CredentialForwardingServer,
        CredentialServerError,
        JobQueueClient,
        NamedContainerPool,
        RegistrationStore,
        RunnerDaemon,
    )
    from devspawn.runner.credential_server import socket_path_for
    from devspawn.spawner import DockerCli, SpawnOrchestrator

    s = get_settings()
    registration = RegistrationStore(s.registrations_path).first()
    if registration is None:
        print(
            "Error: no runner registration found. Run 'devspawn register OWNER/PROJECT' first.",
            file=sys.stderr,
        )
        return 1

    docker = DockerCli()
    async with JobQueueClient(registration.server) as client:
        daemon = RunnerDaemon(
            registration,
            client=client,
            orchestrator=SpawnOrchestrator(docker=docker),
            pool=NamedContainerPool(s.named_containers_path, docker),
            credential_server=CredentialForwardingServer(
                socket_path_for(s.socket_dir, registration.id), read_stored_token
            ),
            working_dir=cwd,
            polling_interval=cmd.polling_interval,
        )

        task = asyncio.current_task()
        loop = asyncio.get_running_loop()

        def _on_signal(sig: signal.Signals) -> None:
            if daemon.stopping and task is not None:
                logger.info("Force shutdown")
                task.cancel()
                return
            daemon.request_stop(sig.name)

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _on_signal, sig)

        print(f"Runner {registration.name} polling {client.base_url}. Ctrl+C to stop.")
        try:
            status = await daemon.run()
        except CredentialServerError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)

    print(f"Processed {status.jobs_processed} job(s): {status.jobs_failed} failed")
    return 0


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------


async def dispatch(invocation: Invocation) -> int:
    match invocation.command:
        case SpawnCommand() as cmd:
            return await _spawn(cmd)
        case ContainersCommand() as cmd:
            return await _containers(cmd)
        case RegisterCommand() as cmd:
            return await _register(cmd)
        case StartCommand() as cmd:
            return await _start(cmd, invocation.cwd)
    return 1


def run(argv: list[str] | None = None, cwd: Path | None = None) -> int:
    """Parse, dispatch, and map every outcome to exit code 0 or 1."""
    try:
        invocation = parse_command(argv, cwd)
    except SystemExit as exc:
        return 0 if exc.code in (0, None) else 1

    set_level("DEBUG" if invocation.verbose else get_settings().logging.level)
    try:
        return asyncio.run(dispatch(invocation))
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 1
    except asyncio.CancelledError:
        return 1
    except Exception as exc:
        logger.exception("Command failed", err=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
