"""Tests for E2BBackend with the E2B SDK mocked."""

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from orchestrator.core.config import Settings
from orchestrator.core.errors import BackendUnavailableError, MergeConflictError
from orchestrator.models.sandbox import SandboxConfig
from orchestrator.services.backends.base import BackendHandle, CommandResult
from orchestrator.services.backends.e2b import REPO_DIR, E2BBackend, _changed_paths
from orchestrator.services.command import Command

MODULE = "orchestrator.services.backends.e2b"


class FakeCommandExit(Exception):
    def __init__(self, exit_code: int, stdout: str = "", stderr: str = ""):
        super().__init__(stderr)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class FakeTimeout(Exception):
    pass


def command_result(exit_code: int = 0, stdout: str = "", stderr: str = "") -> MagicMock:
    result = MagicMock()
    result.exit_code = exit_code
    result.stdout = stdout
    result.stderr = stderr
    return result


@pytest.fixture
def sdk_sandbox():
    """Mock AsyncSandbox instance."""
    sandbox = MagicMock()
    sandbox.sandbox_id = "e2b-123"
    sandbox.commands.run = AsyncMock(return_value=command_result(stdout="abc123\n"))
    sandbox.files.read = AsyncMock(return_value="content")
    sandbox.kill = AsyncMock()
    return sandbox


@pytest.fixture
def sandbox_class(mocker, sdk_sandbox):
    mocker.patch(f"{MODULE}.CommandExitException", FakeCommandExit)
    mocker.patch(f"{MODULE}.TimeoutException", FakeTimeout)
    sandbox_class = mocker.patch(f"{MODULE}.AsyncSandbox")
    sandbox_class.create = AsyncMock(return_value=sdk_sandbox)
    return sandbox_class


@pytest.fixture
def e2b_settings(tmp_path):
    return Settings(
        novita_api_key="test-key",
        anthropic_api_key="sk-test",
        claude_code_oauth_token=None,
        github_token=None,
        base_workspace=str(tmp_path),
    )


@pytest.fixture
def backend(e2b_settings, sandbox_class):
    return E2BBackend(settings=e2b_settings)


def handle_for(sdk_sandbox) -> BackendHandle:
    return BackendHandle(
        sandbox_id="sandbox_1",
        path=REPO_DIR,
        session="e2b-123",
        extra={"sandbox": sdk_sandbox, "base_commit": "abc123"},
    )


def rendered(sdk_sandbox) -> list[str]:
    return [call.args[0] for call in sdk_sandbox.commands.run.call_args_list]


@pytest.mark.asyncio
async def test_create_requires_api_key(sandbox_class, tmp_path):
    backend = E2BBackend(settings=Settings(novita_api_key=None, base_workspace=str(tmp_path)))

    with pytest.raises(BackendUnavailableError):
        await backend.create("sandbox_1", REPO_DIR, SandboxConfig(user_id="u", project_id="p"))

    sandbox_class.create.assert_not_called()


@pytest.mark.asyncio
async def test_create_sandbox(backend, sandbox_class, sdk_sandbox, e2b_settings):
    """Test sandbox creation with an empty repository."""
    handle = await backend.create(
        "sandbox_1", REPO_DIR, SandboxConfig(user_id="user-1", project_id="proj1")
    )

    kwargs = sandbox_class.create.call_args.kwargs
    assert kwargs["api_key"] == "test-key"
    assert kwargs["domain"] == e2b_settings.e2b_domain
    assert kwargs["template"] == e2b_settings.e2b_template
    assert kwargs["envs"] == {"ANTHROPIC_API_KEY": "sk-test"}
    assert handle.path == REPO_DIR
    assert handle.session == "e2b-123"
    assert handle.extra["base_commit"] == "abc123"
    assert f"cd {REPO_DIR} && git init -q" in rendered(sdk_sandbox)


@pytest.mark.asyncio
async def test_create_clones_repository(backend, sdk_sandbox):
    config = SandboxConfig(
        user_id="user-1", project_id="proj1", base_from="https://github.com/test/repo.git"
    )

    await backend.create("sandbox_1", REPO_DIR, config)

    assert f"git clone https://github.com/test/repo.git {REPO_DIR}" in rendered(sdk_sandbox)


@pytest.mark.asyncio
async def test_create_setup_failure_kills_sandbox(backend, sdk_sandbox):
    sdk_sandbox.commands.run = AsyncMock(side_effect=FakeCommandExit(128, stderr="fatal"))

    with pytest.raises(BackendUnavailableError):
        await backend.create("sandbox_1", REPO_DIR, SandboxConfig(user_id="u", project_id="p"))

    sdk_sandbox.kill.assert_awaited_once()


@pytest.mark.asyncio
async def test_create_sdk_failure(backend, sandbox_class):
    sandbox_class.create = AsyncMock(side_effect=RuntimeError("quota exceeded"))

    with pytest.raises(BackendUnavailableError):
        await backend.create("sandbox_1", REPO_DIR, SandboxConfig(user_id="u", project_id="p"))


@pytest.mark.asyncio
async def test_run_relative_to_repository(backend, sdk_sandbox):
    sdk_sandbox.commands.run = AsyncMock(return_value=command_result(stdout="ok"))

    result = await backend.run(handle_for(sdk_sandbox), Command(("npm", "test"), cwd="workspace"))

    assert result == CommandResult(exit_code=0, stdout="ok", stderr="")
    assert rendered(sdk_sandbox) == [f"cd {REPO_DIR}/workspace && npm test"]


@pytest.mark.asyncio
async def test_run_non_zero_exit_is_a_result(backend, sdk_sandbox):
    sdk_sandbox.commands.run = AsyncMock(
        side_effect=FakeCommandExit(1, stdout="", stderr="1 failing")
    )

    result = await backend.run(handle_for(sdk_sandbox), Command(("npm", "test")))

    assert result.exit_code == 1
    assert result.stderr == "1 failing"


@pytest.mark.asyncio
async def test_run_timeout(backend, sdk_sandbox):
    sdk_sandbox.commands.run = AsyncMock(side_effect=FakeTimeout("deadline"))

    result = await backend.run(handle_for(sdk_sandbox), Command(("sleep", "999")), timeout=5)

    assert result.exit_code == 124


@pytest.mark.asyncio
async def test_run_connection_failure(backend, sdk_sandbox):
    sdk_sandbox.commands.run = AsyncMock(side_effect=ConnectionError("sandbox gone"))

    with pytest.raises(BackendUnavailableError):
        await backend.run(handle_for(sdk_sandbox), Command(("ls",)))


@pytest.mark.asyncio
async def test_merge_applies_patch_locally(backend, sdk_sandbox, mocker):
    sdk_sandbox.commands.run = AsyncMock(return_value=command_result(stdout="diff --git a/x b/x\n"))
    run_process = mocker.patch(f"{MODULE}.run_process", new=AsyncMock(return_value=CommandResult(0)))

    await backend.merge(handle_for(sdk_sandbox))

    argvs = [call.args[0] for call in run_process.call_args_list]
    assert argvs == [["git", "apply", "--check", "-"], ["git", "apply", "-"]]
    assert run_process.call_args.kwargs["input_data"] == "diff --git a/x b/x\n"


@pytest.mark.asyncio
async def test_merge_conflict_leaves_base_untouched(backend, sdk_sandbox, mocker):
    sdk_sandbox.commands.run = AsyncMock(return_value=command_result(stdout="diff --git a/x b/x\n"))
    run_process = mocker.patch(
        f"{MODULE}.run_process",
        new=AsyncMock(return_value=CommandResult(1, stderr="patch does not apply")),
    )

    with pytest.raises(MergeConflictError):
        await backend.merge(handle_for(sdk_sandbox))

    assert run_process.await_count == 1


@pytest.mark.asyncio
async def test_merge_without_changes(backend, sdk_sandbox, mocker):
    sdk_sandbox.commands.run = AsyncMock(return_value=command_result(stdout=""))
    run_process = mocker.patch(f"{MODULE}.run_process", new=AsyncMock())

    await backend.merge(handle_for(sdk_sandbox))

    run_process.assert_not_called()


@pytest.mark.asyncio
async def test_export_changed_files(backend, sdk_sandbox, tmp_path):
    """Test that added and modified files are extracted, deletions skipped."""
    sdk_sandbox.commands.run = AsyncMock(
        return_value=command_result(stdout=" M app.py\n?? src/new.py\n D gone.py\n")
    )
    target = tmp_path / "out"

    await backend.export(handle_for(sdk_sandbox), target)

    assert (target / "app.py").read_text() == "content"
    assert (target / "src" / "new.py").read_text() == "content"
    assert not (target / "gone.py").exists()


@pytest.mark.asyncio
async def test_destroy_logs_kill_errors(backend, sdk_sandbox, caplog):
    sdk_sandbox.kill = AsyncMock(side_effect=RuntimeError("already dead"))

    with caplog.at_level(logging.ERROR):
        await backend.destroy(handle_for(sdk_sandbox))

    assert "already dead" in caplog.text


def test_changed_paths_handles_renames():
    assert _changed_paths("R  old.py -> new.py\nA  added.py\n") == ["new.py", "added.py"]
