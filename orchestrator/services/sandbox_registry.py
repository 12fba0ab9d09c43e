"""Sandbox registry: owns every live sandbox session."""

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from pathlib import Path

from orchestrator.core.config import Settings, settings as default_settings
from orchestrator.core.errors import (
    BackendUnavailableError,
    CommandFailedError,
    ResourceExhaustedError,
    SandboxNotFoundError,
    SandboxNotRunningError,
)
from orchestrator.models.events import ResourceSampled, SandboxCreated, SandboxDestroyed
from orchestrator.models.sandbox import (
    ResourceLimits,
    ResourceUsage,
    SandboxConfig,
    SandboxSession,
    SandboxStatus,
    TestReport,
)
from orchestrator.services.backends.base import CommandResult, IsolationBackend
from orchestrator.services.command import Command
from orchestrator.services.events import EventBus
from orchestrator.services.merge import MergeService
from orchestrator.services.resource_monitor import ProcessSampler, ResourceMonitor

logger = logging.getLogger(__name__)

# (marker file, test command) in detection order
TEST_SUITES = [
    ("package.json", ("npm", "test")),
    ("pyproject.toml", ("python", "-m", "pytest", "-q")),
    ("pytest.ini", ("python", "-m", "pytest", "-q")),
]


class SandboxRegistry:
    """Creates, tracks and destroys sandboxes on one isolation backend."""

    def __init__(
        self,
        backend: IsolationBackend,
        monitor: ResourceMonitor | None = None,
        events: EventBus | None = None,
        settings: Settings | None = None,
    ):
        if monitor is not None and events is not None and monitor.events is not events:
            raise ValueError("The resource monitor must publish on the registry's event bus")
        self.backend = backend
        self.settings = settings or default_settings
        self.events = events or (monitor.events if monitor else EventBus())
        self.monitor = monitor or ResourceMonitor(
            sampler=ProcessSampler(self._pids_for),
            events=self.events,
            settings=self.settings,
        )
        self.merger = MergeService(self)
        self._sandboxes: dict[str, SandboxSession] = {}
        self._issued_ids: set[str] = set()
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.events.subscribe(self._record_sample, ResourceSampled)

    # ── Lookup ───────────────────────────────────────────────────────

    def get(self, sandbox_id: str) -> SandboxSession | None:
        return self._sandboxes.get(sandbox_id)

    def require(self, sandbox_id: str) -> SandboxSession:
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is None:
            raise SandboxNotFoundError(sandbox_id)
        return sandbox

    def list_sandboxes(self, user_id: str | None = None) -> list[SandboxSession]:
        return [
            s for s in self._sandboxes.values() if user_id is None or s.user_id == user_id
        ]

    def lock_for(self, sandbox_id: str) -> asyncio.Lock:
        """Lock serializing backend operations on one sandbox."""
        return self._locks[sandbox_id]

    def _pids_for(self, sandbox_id: str) -> set[int]:
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is None or sandbox.handle is None:
            return set()
        return set(getattr(sandbox.handle, "pids", ()))

    def _record_sample(self, event: ResourceSampled) -> None:
        sandbox = self._sandboxes.get(event.sandbox_id)
        if sandbox is not None:
            sandbox.usage = event.usage
            sandbox.process_count = event.usage.process_count

    # ── Lifecycle ────────────────────────────────────────────────────

    def _new_id(self) -> str:
        while True:
            sandbox_id = f"sandbox_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
            if sandbox_id not in self._issued_ids:
                self._issued_ids.add(sandbox_id)
                return sandbox_id

    def _resolve_limits(self, config: SandboxConfig) -> ResourceLimits:
        def pick(value, default):
            return default if value is None else value

        limits = ResourceLimits(
            max_cpu=pick(config.max_cpu, self.settings.default_max_cpu),
            max_memory=pick(config.max_memory, self.settings.default_max_memory),
            max_disk=pick(config.max_disk, self.settings.default_max_disk),
            time_limit=pick(config.time_limit, self.settings.default_time_limit),
        )
        if not 0 < limits.max_cpu <= 100:
            raise ResourceExhaustedError(f"CPU ceiling {limits.max_cpu}% is outside (0, 100]")
        if limits.max_memory <= 0 or limits.max_disk <= 0:
            raise ResourceExhaustedError("Memory and disk ceilings must be positive")
        if limits.max_memory > self.settings.host_max_memory:
            raise ResourceExhaustedError(
                f"Memory ceiling {limits.max_memory}MB exceeds host capacity "
                f"{self.settings.host_max_memory}MB"
            )
        if limits.max_disk > self.settings.host_max_disk:
            raise ResourceExhaustedError(
                f"Disk ceiling {limits.max_disk}MB exceeds host capacity "
                f"{self.settings.host_max_disk}MB"
            )
        return limits

    async def create(self, config: SandboxConfig) -> SandboxSession:
        """Create a sandbox; it is ``running`` once the backend confirms it."""
        limits = self._resolve_limits(config)

        active = [
            s
            for s in self._sandboxes.values()
            if s.user_id == config.user_id and s.status != SandboxStatus.STOPPED
        ]
        if len(active) >= self.settings.max_sandboxes_per_user:
            raise ResourceExhaustedError(
                f"Maximum sandboxes ({self.settings.max_sandboxes_per_user}) "
                f"reached for user {config.user_id}"
            )

        sandbox_id = self._new_id()
        path = Path(self.settings.workspace_root) / config.user_id / "sandboxes" / sandbox_id
        # Keep the resolved ceilings so a reset recreates the same profile
        resolved = config.model_copy(
            update={
                "max_cpu": limits.max_cpu,
                "max_memory": limits.max_memory,
                "max_disk": limits.max_disk,
                "time_limit": limits.time_limit,
            }
        )
        sandbox = SandboxSession(
            id=sandbox_id,
            user_id=config.user_id,
            project_id=config.project_id,
            path=str(path),
            limits=limits,
            config=resolved,
        )
        self._sandboxes[sandbox_id] = sandbox

        try:
            sandbox.handle = await self.backend.create(sandbox_id, str(path), resolved)
        except BackendUnavailableError:
            self._discard(sandbox)
            raise
        except Exception as e:
            self._discard(sandbox)
            raise BackendUnavailableError(
                f"{self.backend.name} backend failed to create {sandbox_id}: {e}"
            ) from e

        sandbox.path = sandbox.handle.path
        sandbox.transition(SandboxStatus.RUNNING)
        sandbox.touch()
        self.monitor.start_collecting(
            sandbox_id, sandbox.path, limits=limits, started_at=sandbox.created_at
        )
        logger.info(
            f"Created sandbox {sandbox_id} for {config.user_id}/{config.project_id} "
            f"on {self.backend.name}"
        )
        self.events.publish(
            SandboxCreated(
                sandbox_id=sandbox_id, user_id=config.user_id, project_id=config.project_id
            )
        )
        return sandbox

    def _discard(self, sandbox: SandboxSession) -> None:
        sandbox.transition(SandboxStatus.ERROR)
        self._sandboxes.pop(sandbox.id, None)
        self._locks.pop(sandbox.id, None)

    async def run(
        self,
        sandbox_id: str,
        command: Command,
        check: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a command in the sandbox, one at a time per sandbox.

        Non-zero exits are returned as results unless ``check`` is set, in which
        case they raise CommandFailedError. Backend failures put the sandbox in
        ``error`` and propagate.
        """
        sandbox = self.require(sandbox_id)
        if not sandbox.can_execute:
            raise SandboxNotRunningError(sandbox_id, sandbox.status.value)

        async with self.lock_for(sandbox_id):
            # Re-check: the sandbox may have changed while we waited for the lock
            sandbox = self.require(sandbox_id)
            if not sandbox.can_execute:
                raise SandboxNotRunningError(sandbox_id, sandbox.status.value)

            sandbox.transition(SandboxStatus.RUNNING)
            sandbox.touch()
            try:
                result = await self.backend.run(sandbox.handle, command, timeout=timeout)
            except Exception as e:
                logger.error(f"Command failed in sandbox {sandbox_id}: {e}")
                if sandbox.status == SandboxStatus.RUNNING:
                    sandbox.transition(SandboxStatus.ERROR)
                raise

            if sandbox.status == SandboxStatus.RUNNING:
                sandbox.transition(SandboxStatus.IDLE)
            sandbox.touch()

        if check and not result.ok:
            raise CommandFailedError(sandbox_id, str(command), result.exit_code, result.stderr)
        return result

    async def test(self, sandbox_id: str) -> TestReport:
        """Run the sandbox's test suite if one can be detected."""
        self.require(sandbox_id)
        for marker, argv in TEST_SUITES:
            found = await self.run(sandbox_id, Command(("test", "-f", marker)))
            if not found.ok:
                continue
            command = Command(argv)
            result = await self.run(sandbox_id, command, timeout=self.settings.command_timeout)
            return TestReport(
                passed=result.ok,
                command=str(command),
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return TestReport(passed=True, message="No test suite detected")

    async def reset(self, sandbox_id: str) -> SandboxSession:
        """Destroy the sandbox and create a fresh one with the same configuration."""
        old = self.require(sandbox_id)
        config = old.config
        await self.destroy(sandbox_id)
        sandbox = await self.create(config)
        logger.info(f"Sandbox reset complete: {sandbox_id} → {sandbox.id}")
        return sandbox

    async def destroy(self, sandbox_id: str) -> None:
        """Tear the sandbox down; unknown ids are a no-op."""
        sandbox = self._sandboxes.pop(sandbox_id, None)
        if sandbox is None:
            return

        if sandbox.status != SandboxStatus.STOPPED:
            sandbox.transition(SandboxStatus.STOPPED)
        self.monitor.stop_collecting(sandbox_id)
        self._locks.pop(sandbox_id, None)

        if sandbox.handle is not None:
            try:
                await self.backend.destroy(sandbox.handle)
            except Exception as e:
                logger.error(f"Error destroying sandbox {sandbox_id}: {e}")

        logger.info(f"Sandbox {sandbox_id} destroyed")
        self.events.publish(SandboxDestroyed(sandbox_id=sandbox_id))

    # ── Merge / promotion ────────────────────────────────────────────

    async def diff(self, sandbox_id: str) -> str:
        return await self.merger.diff(sandbox_id)

    async def merge(self, sandbox_id: str) -> None:
        await self.merger.merge(sandbox_id)

    async def promote(self, sandbox_id: str, target_path: str | None = None) -> str:
        return await self.merger.promote(sandbox_id, target_path)

    # ── Metrics ──────────────────────────────────────────────────────

    def start_metrics(self, sandbox_id: str) -> None:
        sandbox = self.require(sandbox_id)
        self.monitor.start_collecting(
            sandbox_id, sandbox.path, limits=sandbox.limits, started_at=sandbox.created_at
        )

    def stop_metrics(self, sandbox_id: str) -> None:
        self.monitor.stop_collecting(sandbox_id)

    def get_metrics(self, sandbox_id: str) -> ResourceUsage | None:
        self.require(sandbox_id)
        return self.monitor.get_metrics(sandbox_id)

    # ── Housekeeping ─────────────────────────────────────────────────

    async def cleanup_orphans(self) -> None:
        try:
            await self.backend.cleanup_orphans()
        except Exception as e:
            logger.error(f"Error cleaning up orphaned sandboxes: {e}")

    async def shutdown(self) -> None:
        for sandbox_id in list(self._sandboxes):
            await self.destroy(sandbox_id)
        await self.monitor.shutdown()
