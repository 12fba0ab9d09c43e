"""Structured commands executed inside sandboxes.

Commands are argument lists, never concatenated shell strings. Backends that
can only accept one command line (tmux, E2B) call ``Command.render()``, which
quotes every argument with ``shlex``.
"""

import shlex
from dataclasses import dataclass, field

from orchestrator.models.agent import AgentProfile
from orchestrator.models.task import TaskPriority

WORKSPACE_DIR = "workspace"


@dataclass(frozen=True)
class Command:
    """A program invocation: argv plus optional cwd, stdin and extra env."""

    argv: tuple[str, ...]
    cwd: str | None = None
    stdin: str | None = None
    env: dict[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        if not self.argv:
            raise ValueError("Command needs at least a program name")
        if not all(isinstance(arg, str) for arg in self.argv):
            raise TypeError(f"Command arguments must be strings: {self.argv!r}")

    def render(self) -> str:
        """Render as one shell line with every argument quoted."""
        argv = list(self.argv)
        if self.env:
            argv = ["env", *(f"{key}={value}" for key, value in self.env.items()), *argv]
        line = shlex.join(argv)
        if self.stdin is not None:
            line = f"printf '%s' {shlex.quote(self.stdin)} | {line}"
        if self.cwd:
            line = f"cd {shlex.quote(self.cwd)} && {line}"
        return line

    def __str__(self) -> str:
        return shlex.join(self.argv)


def version_check(cli: str) -> Command:
    return Command((cli, "--version"))


def make_workspace(dirname: str = WORKSPACE_DIR) -> Command:
    return Command(("mkdir", "-p", dirname))


def agent_task(
    cli: str,
    profile: AgentProfile,
    description: str,
    priority: TaskPriority = TaskPriority.MEDIUM,
    workdir: str = WORKSPACE_DIR,
) -> Command:
    """Build the non-interactive agent CLI call for one task.

    The prompt goes through stdin so it never needs shell quoting.
    -p: non-interactive mode (skips the workspace trust dialog)
    --dangerously-skip-permissions: the sandbox is the permission boundary
    --output-format json: structured response with session_id and result
    """
    argv = [
        cli,
        "-p",
        "--dangerously-skip-permissions",
        "--output-format",
        "json",
        "--append-system-prompt",
        profile.system_prompt,
        *profile.cli_flags,
    ]
    prompt = f"Priority: {TaskPriority(priority).value}\n\n{description}"
    return Command(tuple(argv), cwd=workdir, stdin=prompt)
