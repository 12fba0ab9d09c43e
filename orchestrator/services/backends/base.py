"""Isolation backend interface."""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from orchestrator.core.errors import BackendUnavailableError
from orchestrator.models.sandbox import SandboxConfig
from orchestrator.services.command import Command

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Captured output of a command; non-zero exits are results, not errors."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class BackendHandle:
    """Backend-specific session state for one sandbox."""

    sandbox_id: str
    path: str
    session: str | None = None
    pids: set[int] = field(default_factory=set)
    extra: dict[str, Any] = field(default_factory=dict)


async def run_process(
    argv: list[str] | tuple[str, ...],
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    input_data: str | None = None,
    timeout: float | None = None,
    on_start=None,
) -> CommandResult:
    """Run a local program and capture its output.

    ``on_start`` receives the pid once the process exists. A timeout kills the
    process and returns exit code 124 like coreutils ``timeout``.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE if input_data is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return CommandResult(exit_code=127, stderr=f"{argv[0]}: command not found")

    if on_start is not None:
        on_start(proc.pid)
    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(input=input_data.encode() if input_data is not None else None),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return CommandResult(exit_code=124, stderr=f"Timed out after {timeout}s")

    return CommandResult(
        exit_code=proc.returncode or 0,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


class IsolationBackend(ABC):
    """Creates and drives isolated environments for the sandbox registry."""

    name: str = "base"

    @abstractmethod
    async def create(
        self, sandbox_id: str, path: str, config: SandboxConfig
    ) -> BackendHandle:
        """Create the environment; raise BackendUnavailableError if unreachable."""

    @abstractmethod
    async def run(
        self, handle: BackendHandle, command: Command, timeout: float | None = None
    ) -> CommandResult:
        """Run one command in the environment."""

    @abstractmethod
    async def diff(self, handle: BackendHandle) -> str:
        """Textual diff of the environment against its base."""

    @abstractmethod
    async def merge(self, handle: BackendHandle) -> None:
        """Apply the environment's changes to the base, atomically.

        Raises MergeConflictError and leaves both sides untouched on conflict.
        """

    @abstractmethod
    async def destroy(self, handle: BackendHandle) -> None:
        """Tear the environment down."""

    async def export(self, handle: BackendHandle, target: Path) -> None:
        """Materialize the environment's files at ``target``."""
        source = Path(handle.path)
        if not source.is_dir():
            raise BackendUnavailableError(f"Sandbox directory {source} is gone")
        await asyncio.to_thread(
            shutil.copytree,
            source,
            target,
            ignore=shutil.ignore_patterns(".git", "node_modules"),
            dirs_exist_ok=True,
        )

    async def cleanup_orphans(self) -> None:
        """Remove environments left behind by a previous process."""
