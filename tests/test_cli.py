"""Tests for the orchestrator CLI."""

import pytest
from typer.testing import CliRunner

from orchestrator.cli import app
from orchestrator.services.backends.base import CommandResult

runner = CliRunner()


@pytest.fixture
def cli_backend(mocker, fake_backend, test_settings):
    """Route the CLI to the in-memory backend and test settings."""
    mocker.patch("orchestrator.cli.settings", test_settings)
    mocker.patch("orchestrator.cli.get_backend", return_value=fake_backend)
    return fake_backend


def test_roles():
    result = runner.invoke(app, ["roles"])

    assert result.exit_code == 0
    assert "Frontend Specialist" in result.output
    assert "architect" in result.output


def test_run_task(cli_backend):
    """Test spawning an agent, running a task and cleaning up."""
    cli_backend.diffs = {}

    result = runner.invoke(app, ["run", "frontend", "add a login form"])

    assert result.exit_code == 0, result.output
    assert "completed" in result.output
    assert "Task done" in result.output
    assert "No changes" in result.output
    assert cli_backend.destroyed == cli_backend.created


def test_run_task_with_merge(cli_backend):
    result = runner.invoke(app, ["run", "backend", "add an endpoint", "--no-diff", "--merge"])

    assert result.exit_code == 0, result.output
    assert cli_backend.merged == cli_backend.created


def test_run_task_failure_exits_non_zero(cli_backend):
    def failing(command):
        if "-p" in command.argv:
            return CommandResult(exit_code=1, stderr="agent-crashed")
        if command.argv[0] == "claude":
            return CommandResult(exit_code=0, stdout="1.0.0")
        return CommandResult(exit_code=0)

    cli_backend.handler = failing

    result = runner.invoke(app, ["run", "debugger", "find the bug"])

    assert result.exit_code == 1
    assert "agent-crashed" in result.output
    assert cli_backend.destroyed == cli_backend.created


def test_run_initialization_failure(cli_backend):
    cli_backend.handler = lambda command: CommandResult(exit_code=127, stderr="not found")

    result = runner.invoke(app, ["run", "frontend", "anything"])

    assert result.exit_code == 1
    assert "failed to initialize" in result.output
    assert cli_backend.destroyed == cli_backend.created


def test_broadcast(cli_backend):
    result = runner.invoke(
        app,
        ["broadcast", "fix the React button", "--agent", "backend", "--agent", "frontend"],
    )

    assert result.exit_code == 0, result.output
    assert "routed to Frontend Specialist" in result.output
    assert len(cli_backend.destroyed) == 2


def test_cleanup(cli_backend):
    result = runner.invoke(app, ["cleanup"])

    assert result.exit_code == 0
    assert cli_backend.orphan_cleanups == 1
