"""Tests for structured sandbox commands."""

import shlex

import pytest

from orchestrator.models.agent import get_profile
from orchestrator.models.task import TaskPriority
from orchestrator.services.command import (
    Command,
    agent_task,
    make_workspace,
    version_check,
)


def test_render_quotes_arguments():
    """Test that shell metacharacters stay inside one argument."""
    command = Command(("echo", "a b; rm -rf /"))

    assert command.render() == "echo 'a b; rm -rf /'"
    assert shlex.split(command.render()) == ["echo", "a b; rm -rf /"]


def test_render_with_cwd_env_and_stdin():
    command = Command(("cat",), cwd="my dir", stdin="it's here", env={"MODE": "test"})

    assert command.render() == (
        f"cd 'my dir' && printf '%s' {shlex.quote(command.stdin)} | env MODE=test cat"
    )


def test_str_is_argv_only():
    command = Command(("npm", "test"), cwd="workspace", stdin="ignored")

    assert str(command) == "npm test"


def test_command_requires_program():
    with pytest.raises(ValueError):
        Command(())


def test_command_rejects_non_string_arguments():
    with pytest.raises(TypeError):
        Command(("sleep", 5))


def test_initialization_commands():
    assert version_check("claude").argv == ("claude", "--version")
    assert make_workspace().argv == ("mkdir", "-p", "workspace")


def test_agent_task_command():
    """Test the agent CLI invocation for a task."""
    profile = get_profile("backend")
    command = agent_task("claude", profile, "add a login endpoint", TaskPriority.HIGH)

    assert command.argv[:5] == (
        "claude",
        "-p",
        "--dangerously-skip-permissions",
        "--output-format",
        "json",
    )
    assert "--append-system-prompt" in command.argv
    assert profile.system_prompt in command.argv
    assert command.cwd == "workspace"
    assert command.stdin == "Priority: high\n\nadd a login endpoint"


def test_agent_task_command_adds_role_flags():
    command = agent_task("claude", get_profile("architect"), "design the API")

    assert command.argv[-2:] == ("--permission-mode", "plan")
    assert command.stdin.startswith("Priority: medium")
