"""Diff, merge and promotion of sandbox work."""

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING

from orchestrator.core.errors import TargetUnwritableError
from orchestrator.models.events import SandboxMerged, SandboxPromoted

if TYPE_CHECKING:
    from orchestrator.services.sandbox_registry import SandboxRegistry

logger = logging.getLogger(__name__)


def _nearest_existing(path: Path) -> Path:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path(path.anchor or ".")


def _is_writable(target: Path) -> bool:
    """True if ``target`` can be created or replaced."""
    anchor = _nearest_existing(target)
    if anchor == target:
        # An existing target is renamed away, so its parent must be writable
        anchor = target.parent
    return anchor.is_dir() and os.access(anchor, os.W_OK | os.X_OK)


class MergeService:
    """Moves sandbox changes back to the base workspace or a project directory."""

    def __init__(self, registry: "SandboxRegistry"):
        self.registry = registry

    async def diff(self, sandbox_id: str) -> str:
        sandbox = self.registry.require(sandbox_id)
        return await self.registry.backend.diff(sandbox.handle)

    async def merge(self, sandbox_id: str) -> None:
        """Merge the sandbox onto its base; on conflict neither side changes."""
        sandbox = self.registry.require(sandbox_id)
        async with self.registry.lock_for(sandbox_id):
            await self.registry.backend.merge(sandbox.handle)
            sandbox.touch()
        logger.info(f"Merged sandbox {sandbox_id}")
        self.registry.events.publish(SandboxMerged(sandbox_id=sandbox_id))

    async def promote(self, sandbox_id: str, target_path: str | None = None) -> str:
        """Copy the sandbox's files to ``target_path`` and return it.

        Defaults to the owning user's project directory. An existing target
        is kept as ``<target>.backup.<ms>``. The sandbox stays alive.
        """
        sandbox = self.registry.require(sandbox_id)
        if target_path is None:
            target = (
                Path(self.registry.settings.workspace_root)
                / sandbox.user_id
                / "projects"
                / sandbox.project_id
            )
        else:
            target = Path(target_path)

        if not _is_writable(target):
            raise TargetUnwritableError(str(target))

        backup_path = None
        async with self.registry.lock_for(sandbox_id):
            if target.exists():
                backup = target.with_name(f"{target.name}.backup.{int(time.time() * 1000)}")
                await asyncio.to_thread(target.rename, backup)
                backup_path = str(backup)
                logger.info(f"Backed up existing {target} to {backup}")
            target.parent.mkdir(parents=True, exist_ok=True)
            await self.registry.backend.export(sandbox.handle, target)
            sandbox.touch()

        logger.info(f"Promoted sandbox {sandbox_id} to {target}")
        self.registry.events.publish(
            SandboxPromoted(
                sandbox_id=sandbox_id, target_path=str(target), backup_path=backup_path
            )
        )
        return str(target)
