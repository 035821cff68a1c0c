"""Subprocess capture for long-running CLI calls.

Provides:
  - run_process() runs a command, draining stdout/stderr concurrently into
    separate buffers, optionally teeing both into a build log file
  - _drain() reads one stream line by line, logs it, accumulates with truncation
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from pathlib import Path
from typing import IO

from devspawn.logger import logger
from devspawn.types import ExecResult

_MAX_CAPTURE = 10 * 1024 * 1024  # 10MB per stream


async def _drain(
    stream: asyncio.StreamReader,
    sink: list[str],
    *,
    label: str,
    log_file: IO[str] | None,
) -> None:
    size = 0
    truncated = False
    while True:
        raw = await stream.readline()
        if not raw:
            break
        line = raw.decode(errors="replace")
        logger.debug(line.rstrip(), stream=label)
        if log_file is not None:
            log_file.write(line)
            log_file.flush()
        if truncated:
            continue
        if size + len(line) > _MAX_CAPTURE:
            truncated = True
            logger.warning("Process output truncated", stream=label, size=size)
            continue
        sink.append(line)
        size += len(line)


async def run_process(
    *args: str,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
    log_path: Path | None = None,
) -> ExecResult:
    """Run *args* to completion and return the captured result.

    A missing binary yields exit code 127, a timeout kills the process and
    yields exit code -1. Neither raises.
    """
    start = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as exc:
        return ExecResult(
            success=False,
            exit_code=127,
            stderr=str(exc),
            message=f"{args[0]} could not be started: {exc}",
        )

    out: list[str] = []
    err: list[str] = []
    log_file: IO[str] | None = None
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = log_path.open("a", encoding="utf-8")

    try:
        assert proc.stdout is not None and proc.stderr is not None
        drains = asyncio.gather(
            _drain(proc.stdout, out, label="stdout", log_file=log_file),
            _drain(proc.stderr, err, label="stderr", log_file=log_file),
            proc.wait(),
        )
        try:
            await asyncio.wait_for(drains, timeout=timeout)
        except TimeoutError:
            proc.kill()
            with contextlib.suppress(ProcessLookupError):
                await proc.wait()
            return ExecResult(
                success=False,
                exit_code=-1,
                stdout="".join(out),
                stderr="".join(err),
                duration=time.monotonic() - start,
                message=f"{args[0]} timed out after {timeout}s",
            )
        except asyncio.CancelledError:
            proc.kill()
            raise
    finally:
        if log_file is not None:
            log_file.close()

    exit_code = proc.returncode if proc.returncode is not None else -1
    return ExecResult(
        success=exit_code == 0,
        exit_code=exit_code,
        stdout="".join(out),
        stderr="".join(err),
        duration=time.monotonic() - start,
        message="" if exit_code == 0 else f"{args[0]} exited with code {exit_code}",
    )
