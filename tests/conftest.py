"""Pytest configuration and fixtures."""

import inspect
import json
import os
from pathlib import Path

import pytest
import pytest_asyncio

from orchestrator.core.config import Settings
from orchestrator.models.sandbox import ResourceUsage
from orchestrator.services import (
    AgentRuntimeService,
    EventBus,
    ResourceMonitor,
    SandboxRegistry,
)
from orchestrator.services.backends.base import (
    BackendHandle,
    CommandResult,
    IsolationBackend,
)

# Set test environment
os.environ["APP_ENV"] = "test"


def default_handler(command) -> CommandResult:
    """Behaves like a sandbox with a working agent CLI and no test suite."""
    argv = command.argv
    if argv[:2] == ("claude", "--version"):
        return CommandResult(exit_code=0, stdout="1.0.0 (Claude Code)\n")
    if argv[0] == "claude":
        return CommandResult(
            exit_code=0,
            stdout=json.dumps({"session_id": "session-123", "result": "Task done"}),
        )
    if argv[0] == "test":
        return CommandResult(exit_code=1)
    return CommandResult(exit_code=0)


class FakeBackend(IsolationBackend):
    """In-memory isolation backend that records every call."""

    name = "fake"

    def __init__(self):
        self.handler = default_handler
        self.create_error: Exception | None = None
        self.run_error: Exception | None = None
        self.merge_error: Exception | None = None
        self.destroy_error: Exception | None = None
        self.diffs: dict[str, str] = {}
        self.files: dict[str, str] = {"README.md": "# sandbox\n"}
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.merged: list[str] = []
        self.commands: list[tuple[str, tuple[str, ...]]] = []
        self.orphan_cleanups = 0

    async def create(self, sandbox_id, path, config):
        if self.create_error is not None:
            raise self.create_error
        self.created.append(sandbox_id)
        return BackendHandle(sandbox_id=sandbox_id, path=path, session=f"fake-{sandbox_id}")

    async def run(self, handle, command, timeout=None):
        self.commands.append((handle.sandbox_id, command.argv))
        if self.run_error is not None:
            raise self.run_error
        result = self.handler(command)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def diff(self, handle):
        return self.diffs.get(handle.sandbox_id, "")

    async def merge(self, handle):
        if self.merge_error is not None:
            raise self.merge_error
        self.merged.append(handle.sandbox_id)

    async def export(self, handle, target: Path):
        target.mkdir(parents=True, exist_ok=True)
        for name, content in self.files.items():
            (target / name).write_text(content)

    async def destroy(self, handle):
        self.destroyed.append(handle.sandbox_id)
        if self.destroy_error is not None:
            raise self.destroy_error

    async def cleanup_orphans(self):
        self.orphan_cleanups += 1


async def idle_sampler(sandbox_id: str, path: str) -> ResourceUsage:
    return ResourceUsage()


@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing every workspace at the test's tmp dir."""
    base = tmp_path / "base"
    base.mkdir()
    return Settings(
        env="test",
        workspace_root=str(tmp_path / "workspaces"),
        base_workspace=str(base),
        metrics_interval=3600,
        command_timeout=30,
    )


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorded(bus):
    """Every event published on the bus, in order."""
    events = []
    bus.subscribe(events.append)
    return events


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def monitor(bus, test_settings):
    return ResourceMonitor(sampler=idle_sampler, events=bus, settings=test_settings)


@pytest_asyncio.fixture
async def registry(fake_backend, monitor, bus, test_settings):
    registry = SandboxRegistry(
        fake_backend, monitor=monitor, events=bus, settings=test_settings
    )
    yield registry
    await registry.shutdown()


@pytest_asyncio.fixture
async def runtime(registry):
    runtime = AgentRuntimeService(registry, user_id="user-1")
    yield runtime
    await runtime.shutdown()
