"""Remote isolation backend on E2B-compatible (Novita) sandboxes."""

import asyncio
import logging
from pathlib import Path

from e2b import CommandExitException, TimeoutException
from e2b_code_interpreter import AsyncSandbox

from orchestrator.core.config import Settings, settings as default_settings
from orchestrator.core.errors import BackendUnavailableError, MergeConflictError
from orchestrator.models.sandbox import SandboxConfig
from orchestrator.services.backends.base import (
    BackendHandle,
    CommandResult,
    IsolationBackend,
    run_process,
)
from orchestrator.services.command import Command

logger = logging.getLogger(__name__)

REPO_DIR = "/home/user/repo"


def _is_repository_url(value: str | None) -> bool:
    return bool(value) and value.startswith(("http://", "https://", "git@"))


def _changed_paths(porcelain: str) -> list[str]:
    """Paths of added or modified files from ``git status --porcelain`` output."""
    paths = []
    for line in porcelain.splitlines():
        if len(line) < 4:
            continue
        status, file_path = line[:2], line[3:].strip()
        if "D" in status:
            continue
        if " -> " in file_path:
            file_path = file_path.split(" -> ", 1)[1]
        paths.append(file_path)
    return paths


class E2BBackend(IsolationBackend):
    """One remote sandbox per session; the repository lives at REPO_DIR."""

    name = "e2b"

    def __init__(self, settings: Settings | None = None, base_workspace: str | None = None):
        self.settings = settings or default_settings
        self.base_workspace = Path(base_workspace or self.settings.base_workspace)

    def _envs(self) -> dict[str, str]:
        # Only include configured credentials
        envs = {}
        if self.settings.anthropic_api_key is not None:
            envs["ANTHROPIC_API_KEY"] = self.settings.anthropic_api_key
        if self.settings.claude_code_oauth_token is not None:
            envs["CLAUDE_CODE_OAUTH_TOKEN"] = self.settings.claude_code_oauth_token
        if self.settings.github_token is not None:
            envs["GITHUB_TOKEN"] = self.settings.github_token
        return envs

    @staticmethod
    def _sandbox(handle: BackendHandle) -> AsyncSandbox:
        return handle.extra["sandbox"]

    async def _exec(
        self, sandbox: AsyncSandbox, command: Command, timeout: float | None = None
    ) -> CommandResult:
        """Run a command, returning non-zero exits as results.

        E2B raises for non-zero exit codes, but the exception still carries
        the output.
        """
        kwargs = {} if timeout is None else {"timeout": timeout}
        try:
            result = await sandbox.commands.run(command.render(), **kwargs)
        except CommandExitException as e:
            return CommandResult(
                exit_code=e.exit_code,
                stdout=getattr(e, "stdout", ""),
                stderr=getattr(e, "stderr", str(e)),
            )
        except TimeoutException:
            logger.warning(f"Command timed out after {timeout}s: {command}")
            return CommandResult(exit_code=124, stderr=f"Timed out after {timeout}s")
        except Exception as e:
            raise BackendUnavailableError(f"E2B command failed: {e}") from e
        return CommandResult(
            exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr
        )

    async def create(
        self, sandbox_id: str, path: str, config: SandboxConfig
    ) -> BackendHandle:
        if not self.settings.novita_api_key:
            raise BackendUnavailableError("NOVITA_API_KEY is not configured")

        try:
            sandbox = await AsyncSandbox.create(
                template=self.settings.e2b_template,
                timeout=self.settings.sandbox_timeout,
                envs=self._envs(),
                metadata={"sandbox_id": sandbox_id, "user_id": config.user_id},
                api_key=self.settings.novita_api_key,
                domain=self.settings.e2b_domain,
            )
        except Exception as e:
            raise BackendUnavailableError(f"Could not create E2B sandbox: {e}") from e

        logger.info(
            f"Created E2B sandbox {sandbox.sandbox_id} for {sandbox_id} "
            f"with {self.settings.sandbox_timeout}s timeout"
        )
        handle = BackendHandle(
            sandbox_id=sandbox_id,
            path=REPO_DIR,
            session=sandbox.sandbox_id,
            extra={"sandbox": sandbox},
        )

        setup = [
            Command(("git", "config", "--global", "user.email", "agent@cloudagent.dev")),
            Command(("git", "config", "--global", "user.name", "Cloud Agent")),
        ]
        if _is_repository_url(config.base_from):
            setup.append(Command(("git", "clone", config.base_from, REPO_DIR)))
        else:
            setup += [
                Command(("mkdir", "-p", REPO_DIR)),
                Command(("git", "init", "-q"), cwd=REPO_DIR),
                Command(("git", "commit", "-q", "--allow-empty", "-m", "Sandbox base"), cwd=REPO_DIR),
            ]
        for command in setup:
            result = await self._exec(sandbox, command)
            if not result.ok:
                await self.destroy(handle)
                raise BackendUnavailableError(
                    f"Sandbox setup failed at `{command}`: {result.stderr}"
                )

        head = await self._exec(sandbox, Command(("git", "rev-parse", "HEAD"), cwd=REPO_DIR))
        handle.extra["base_commit"] = head.stdout.strip()
        return handle

    async def run(
        self, handle: BackendHandle, command: Command, timeout: float | None = None
    ) -> CommandResult:
        cwd = f"{REPO_DIR}/{command.cwd}" if command.cwd else REPO_DIR
        located = Command(command.argv, cwd=cwd, stdin=command.stdin, env=command.env)
        return await self._exec(self._sandbox(handle), located, timeout=timeout)

    async def diff(self, handle: BackendHandle) -> str:
        sandbox = self._sandbox(handle)
        await self._exec(
            sandbox, Command(("git", "add", "--intent-to-add", "--all"), cwd=REPO_DIR)
        )
        result = await self._exec(
            sandbox, Command(("git", "diff", handle.extra["base_commit"]), cwd=REPO_DIR)
        )
        if not result.ok:
            raise BackendUnavailableError(f"git diff failed: {result.stderr}")
        return result.stdout

    async def merge(self, handle: BackendHandle) -> None:
        patch = await self.diff(handle)
        if not patch.strip():
            logger.info(f"No changes to merge from sandbox {handle.sandbox_id}")
            return

        # git apply is all-or-nothing; check first so a conflict touches nothing
        check = await run_process(
            ["git", "apply", "--check", "-"], cwd=str(self.base_workspace), input_data=patch
        )
        if not check.ok:
            raise MergeConflictError(handle.sandbox_id, check.stderr)
        result = await run_process(
            ["git", "apply", "-"], cwd=str(self.base_workspace), input_data=patch
        )
        if not result.ok:
            raise MergeConflictError(handle.sandbox_id, result.stderr)
        logger.info(f"Applied sandbox {handle.sandbox_id} changes to {self.base_workspace}")

    async def export(self, handle: BackendHandle, target: Path) -> None:
        sandbox = self._sandbox(handle)
        status = await self._exec(
            sandbox,
            Command(("git", "status", "--porcelain", "--untracked-files=all"), cwd=REPO_DIR),
        )
        target.mkdir(parents=True, exist_ok=True)
        for file_path in _changed_paths(status.stdout):
            try:
                content = await sandbox.files.read(f"{REPO_DIR}/{file_path}")
            except Exception as e:
                logger.warning(f"Failed to extract {file_path}: {e}")
                continue
            local_file = target / file_path
            local_file.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(local_file.write_text, content)
            logger.info(f"Extracted file: {file_path}")

    async def destroy(self, handle: BackendHandle) -> None:
        try:
            await self._sandbox(handle).kill()
            logger.info(f"E2B sandbox {handle.session} killed")
        except Exception as e:
            logger.error(f"Error killing sandbox {handle.session}: {e}")
