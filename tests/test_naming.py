"""Tests for volume and container naming."""

from __future__ import annotations

import re

import pytest

from devspawn.spawner._naming import (
    bootstrap_container_name,
    generate_volume_name,
    named_volume_name,
    sanitize_project_name,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("My Project", "myproject"),
        ("web-app", "web-app"),
        ("foo__bar--baz", "foo-bar-baz"),
        ("-leading_and_trailing-", "leading-and-trailing"),
        ("Ünïcode!", "ncode"),
        ("!!!", "project"),
        ("", "project"),
    ],
)
def test_sanitize_project_name(raw, expected):
    assert sanitize_project_name(raw) == expected


def test_volume_name_format():
    name = generate_volume_name("My App")
    assert re.fullmatch(r"devcontainer-myapp-[0-9a-f]{8}", name)


def test_volume_names_are_unique():
    assert generate_volume_name("app") != generate_volume_name("app")


def test_volume_name_prefix():
    assert generate_volume_name("app", prefix="dv").startswith("dv-app-")


def test_named_volume_is_stable():
    assert named_volume_name("GPU Box") == named_volume_name("GPU Box") == (
        "devcontainer-named-gpubox"
    )


def test_bootstrap_container_name():
    name = bootstrap_container_name("devspawn-bootstrap", "App")
    assert re.fullmatch(r"devspawn-bootstrap-app-[0-9a-f]{8}", name)
