"""Editor detection and launch (VS Code and VS Code Insiders)."""

from __future__ import annotations

import asyncio
import subprocess

from devspawn.config import get_settings
from devspawn.logger import logger
from devspawn.types import EditorInfo


def attached_container_uri(container_id: str, workspace_folder: str) -> str:
    """URI that attaches the editor to a running container by id."""
    return f"vscode-remote://attached-container+{container_id.encode().hex()}{workspace_folder}"


class EditorLauncher:
    def __init__(self, commands: list[str] | None = None) -> None:
        self.commands = commands or get_settings().devcontainer.editor_commands

    def detect(self) -> EditorInfo | None:
        """First editor command on PATH that answers ``--version``."""
        for command in self.commands:
            try:
                result = subprocess.run(
                    [command, "--version"],
                    capture_output=True,
                    text=True,
                    timeout=10,
                )
            except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
                continue
            if result.returncode == 0:
                version = (result.stdout.splitlines() or ["unknown"])[0].strip()
                return EditorInfo(command=command, version=version)
        return None

    async def launch(self, uri: str) -> EditorInfo:
        """Open *uri* in the first available editor. Raises ``RuntimeError`` when none is found."""
        editor = await asyncio.to_thread(self.detect)
        if editor is None:
            raise RuntimeError(f"No editor found (tried: {', '.join(self.commands)})")
        await asyncio.create_subprocess_exec(
            editor.command,
            "--folder-uri",
            uri,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
        logger.info("Launched editor", editor=editor.command, uri=uri)
        return editor
