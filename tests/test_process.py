"""Tests for subprocess capture (real processes, no mocks)."""

from __future__ import annotations

from devspawn.spawner._process import run_process


async def test_captures_streams_separately():
    result = await run_process("sh", "-c", "echo out; echo err >&2")
    assert result.success
    assert result.exit_code == 0
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"


async def test_non_zero_exit():
    result = await run_process("sh", "-c", "echo boom >&2; exit 3")
    assert not result.success
    assert result.exit_code == 3
    assert "boom" in result.stderr
    assert "code 3" in result.message


async def test_missing_binary_is_127():
    result = await run_process("definitely-not-a-real-binary-xyz")
    assert not result.success
    assert result.exit_code == 127


async def test_timeout_kills_process():
    result = await run_process("sh", "-c", "echo started; exec sleep 10", timeout=0.5)
    assert not result.success
    assert result.exit_code == -1
    assert "timed out" in result.message
    assert result.duration < 5


async def test_env_and_cwd(tmp_path):
    result = await run_process(
        "sh",
        "-c",
        'echo "$GREETING"; pwd',
        cwd=tmp_path,
        env={"GREETING": "hi", "PATH": "/bin:/usr/bin"},
    )
    lines = result.stdout.splitlines()
    assert lines[0] == "hi"
    assert lines[1].endswith(tmp_path.name)


async def test_log_file_receives_both_streams(tmp_path):
    log = tmp_path / "logs" / "build.log"
    await run_process("sh", "-c", "echo one; echo two >&2", log_path=log)
    content = log.read_text()
    assert "one" in content
    assert "two" in content
