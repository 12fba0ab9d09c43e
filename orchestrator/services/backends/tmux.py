"""Local isolation backend: a directory plus a tmux session per sandbox.

When the base workspace is a git repository each sandbox is a git worktree on
its own branch, so diff and merge are plain git operations. Otherwise the
sandbox is a copy of its base project next to a snapshot of what it was seeded
with; diff and merge work on the files that differ from that snapshot.
"""

import asyncio
import filecmp
import logging
import os
import shutil
import signal
import time
from pathlib import Path

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

SESSION_PREFIX = "sandbox_"
SNAPSHOT_SUFFIX = ".base"
ORPHAN_MAX_AGE = 24 * 60 * 60  # seconds
IGNORED_DIRS = (".git", "node_modules")


def _tree_files(root: Path) -> set[str]:
    """Relative paths of every file under ``root`` outside IGNORED_DIRS."""
    files: set[str] = set()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [name for name in dirnames if name not in IGNORED_DIRS]
        for name in filenames:
            files.add(os.path.relpath(os.path.join(dirpath, name), root))
    return files


def _same_file(a: Path, b: Path) -> bool:
    if not a.is_file() or not b.is_file():
        return not a.is_file() and not b.is_file()
    return filecmp.cmp(a, b, shallow=False)


def _seed_copy(source: Path, snapshot: Path, target: Path) -> None:
    source.mkdir(parents=True, exist_ok=True)
    shutil.copytree(
        source, snapshot, ignore=shutil.ignore_patterns(*IGNORED_DIRS), dirs_exist_ok=True
    )
    shutil.copytree(snapshot, target, dirs_exist_ok=True)


def _merge_copy(sandbox: Path, snapshot: Path, base: Path) -> tuple[list[str], list[str]]:
    """Carry the sandbox's changes since ``snapshot`` over to ``base``.

    Returns ``(changed, conflicts)``. Nothing is written when a changed path
    was also changed in the base since the snapshot. After a merge the
    snapshot holds the merged content, so merging again only carries newer
    changes.
    """
    changed = sorted(
        path
        for path in _tree_files(sandbox) | _tree_files(snapshot)
        if not _same_file(sandbox / path, snapshot / path)
    )
    conflicts = [
        path
        for path in changed
        if not _same_file(base / path, snapshot / path)
        and not _same_file(base / path, sandbox / path)
    ]
    if conflicts:
        return changed, conflicts

    for path in changed:
        source = sandbox / path
        for root in (base, snapshot):
            if source.is_file():
                (root / path).parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, root / path)
            else:
                (root / path).unlink(missing_ok=True)
    return changed, []


class TmuxBackend(IsolationBackend):
    """Sandboxes as local directories with an attachable tmux session."""

    name = "tmux"

    def __init__(
        self,
        base_workspace: str | None = None,
        workspace_root: str | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or default_settings
        self.base_workspace = Path(base_workspace or self.settings.base_workspace).resolve()
        self.workspace_root = Path(workspace_root or self.settings.workspace_root)
        self._sessions: set[str] = set()

    async def _git(self, *args: str, cwd: Path | str) -> CommandResult:
        return await run_process(["git", *args], cwd=str(cwd))

    async def _base_is_git_repo(self) -> bool:
        if not self.base_workspace.is_dir():
            return False
        result = await self._git("rev-parse", "--is-inside-work-tree", cwd=self.base_workspace)
        return result.ok and result.stdout.strip() == "true"

    def _seed_source(self, config: SandboxConfig) -> Path:
        if config.base_from is None:
            return self.base_workspace
        source = Path(config.base_from)
        if not source.is_absolute():
            source = self.workspace_root / config.user_id / "projects" / config.base_from
        return source

    async def create(
        self, sandbox_id: str, path: str, config: SandboxConfig
    ) -> BackendHandle:
        if shutil.which("tmux") is None:
            raise BackendUnavailableError("tmux is not installed")

        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        handle = BackendHandle(
            sandbox_id=sandbox_id, path=str(target), session=f"{SESSION_PREFIX}{sandbox_id}"
        )

        if config.base_from is None and await self._base_is_git_repo():
            branch = f"sandbox/{sandbox_id}"
            result = await self._git(
                "worktree", "add", "-b", branch, str(target), "HEAD", cwd=self.base_workspace
            )
            if not result.ok:
                raise BackendUnavailableError(f"git worktree add failed: {result.stderr}")
            head = await self._git("rev-parse", "HEAD", cwd=target)
            handle.extra.update(
                mode="worktree", branch=branch, base_commit=head.stdout.strip()
            )
            logger.info(f"Created worktree {target} on branch {branch}")
        else:
            source = self._seed_source(config)
            snapshot = target.with_name(f"{target.name}{SNAPSHOT_SUFFIX}")
            handle.extra.update(mode="copy", base=str(source), snapshot=str(snapshot))
            if not source.is_dir():
                logger.info(f"Base project {source} does not exist, starting a new one")
            try:
                await asyncio.to_thread(_seed_copy, source, snapshot, target)
            except OSError as e:
                await self._remove_directory(handle)
                raise BackendUnavailableError(f"Could not copy base project {source}: {e}") from e
            logger.info(f"Created sandbox copy {target} of {source}")

        result = await run_process(
            ["tmux", "new-session", "-d", "-s", handle.session, "-c", str(target)]
        )
        if not result.ok:
            await self._remove_directory(handle)
            raise BackendUnavailableError(
                f"Could not create tmux session {handle.session}: {result.stderr}"
            )
        self._sessions.add(handle.session)
        return handle

    async def run(
        self, handle: BackendHandle, command: Command, timeout: float | None = None
    ) -> CommandResult:
        root = Path(handle.path)
        if not root.is_dir():
            raise BackendUnavailableError(f"Sandbox directory {root} is gone")

        cwd = root / command.cwd if command.cwd else root
        env = {
            **os.environ,
            "SANDBOX_ID": handle.sandbox_id,
            "SANDBOX_PATH": handle.path,
            **command.env,
        }
        started: list[int] = []

        def track(pid: int) -> None:
            started.append(pid)
            handle.pids.add(pid)

        try:
            return await run_process(
                command.argv,
                cwd=str(cwd),
                env=env,
                input_data=command.stdin,
                timeout=timeout,
                on_start=track,
            )
        finally:
            handle.pids.difference_update(started)

    async def diff(self, handle: BackendHandle) -> str:
        if handle.extra.get("mode") == "worktree":
            # Intent-to-add makes untracked files show up in the diff
            await self._git("add", "--intent-to-add", "--all", cwd=handle.path)
            result = await self._git("diff", handle.extra["base_commit"], cwd=handle.path)
            if not result.ok:
                raise BackendUnavailableError(f"git diff failed: {result.stderr}")
            return result.stdout

        excludes = [f"--exclude={name}" for name in IGNORED_DIRS]
        result = await run_process(
            ["diff", "-ruN", *excludes, handle.extra["snapshot"], handle.path]
        )
        # diff exits 1 when the trees differ
        if result.exit_code not in (0, 1):
            raise BackendUnavailableError(f"diff failed: {result.stderr}")
        return result.stdout

    async def merge(self, handle: BackendHandle) -> None:
        if handle.extra.get("mode") != "worktree":
            changed, conflicts = await asyncio.to_thread(
                _merge_copy,
                Path(handle.path),
                Path(handle.extra["snapshot"]),
                Path(handle.extra["base"]),
            )
            if conflicts:
                raise MergeConflictError(
                    handle.sandbox_id, f"changed in the base meanwhile: {', '.join(conflicts)}"
                )
            logger.info(f"Merged {len(changed)} changed files into {handle.extra['base']}")
            return

        branch = handle.extra["branch"]
        committed = False
        status = await self._git("status", "--porcelain", cwd=handle.path)
        if status.stdout.strip():
            await self._git("add", "--all", cwd=handle.path)
            result = await self._git(
                "commit", "-m", f"Sandbox {handle.sandbox_id} changes", cwd=handle.path
            )
            if not result.ok:
                raise BackendUnavailableError(f"git commit failed: {result.stderr}")
            committed = True

        ahead = await self._git("rev-list", "--count", f"HEAD..{branch}", cwd=self.base_workspace)
        if ahead.ok and ahead.stdout.strip() == "0":
            logger.info(f"Nothing to merge from {branch}")
            return

        result = await self._git("merge", "--no-ff", "--no-edit", branch, cwd=self.base_workspace)
        if result.ok:
            logger.info(f"Merged {branch} into {self.base_workspace}")
            return

        await self._git("merge", "--abort", cwd=self.base_workspace)
        if committed:
            # Put the sandbox back exactly as it was before the attempt
            await self._git("reset", "--soft", "HEAD~1", cwd=handle.path)
        raise MergeConflictError(handle.sandbox_id, result.stdout or result.stderr)

    async def destroy(self, handle: BackendHandle) -> None:
        for pid in list(handle.pids):
            try:
                os.kill(pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
        handle.pids.clear()

        if handle.session:
            # The session may already be gone
            await run_process(["tmux", "kill-session", "-t", handle.session])
            self._sessions.discard(handle.session)

        if handle.extra.get("mode") == "worktree":
            result = await self._git(
                "worktree", "remove", "--force", handle.path, cwd=self.base_workspace
            )
            if not result.ok:
                logger.warning(f"git worktree remove failed: {result.stderr}")
            await self._git("branch", "-D", handle.extra["branch"], cwd=self.base_workspace)

        await self._remove_directory(handle)

    async def _remove_directory(self, handle: BackendHandle) -> None:
        await asyncio.to_thread(shutil.rmtree, handle.path, ignore_errors=True)
        if handle.extra.get("snapshot"):
            await asyncio.to_thread(shutil.rmtree, handle.extra["snapshot"], ignore_errors=True)

    async def cleanup_orphans(self) -> None:
        result = await run_process(["tmux", "list-sessions", "-F", "#{session_name}"])
        for session in result.stdout.splitlines():
            if session.startswith(SESSION_PREFIX) and session not in self._sessions:
                logger.debug(f"Cleaning up orphaned tmux session: {session}")
                await run_process(["tmux", "kill-session", "-t", session])

        cutoff = time.time() - ORPHAN_MAX_AGE
        for sandbox_dir in self.workspace_root.glob("*/sandboxes/*"):
            sandbox_id = sandbox_dir.name.removesuffix(SNAPSHOT_SUFFIX)
            if f"{SESSION_PREFIX}{sandbox_id}" in self._sessions:
                continue
            if sandbox_dir.is_dir() and sandbox_dir.stat().st_mtime < cutoff:
                logger.debug(f"Removing old sandbox: {sandbox_dir}")
                await asyncio.to_thread(shutil.rmtree, sandbox_dir, ignore_errors=True)

        if await self._base_is_git_repo():
            await self._git("worktree", "prune", cwd=self.base_workspace)
