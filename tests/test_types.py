"""Tests for the labelled output of command and spawn results."""

from __future__ import annotations

from devspawn.types import ExecResult, SpawnResult


def test_combined_output_labels_each_stream():
    result = ExecResult(success=False, exit_code=2, stdout="ran 3 tests\n", stderr="FAIL: x\n")
    assert result.combined_output() == "=== STDOUT ===\nran 3 tests\n\n=== STDERR ===\nFAIL: x"


def test_combined_output_skips_blank_streams():
    result = ExecResult(success=True, exit_code=0, stdout="  \n", stderr="oops")
    assert result.combined_output() == "=== STDERR ===\noops"
    assert ExecResult(success=True, exit_code=0).combined_output() == ""


def test_spawn_diagnostics_use_cli_streams():
    result = SpawnResult(success=False, message="m", cli_stdout="{}", cli_stderr="")
    assert result.format_diagnostics() == "=== STDOUT ===\n{}"
