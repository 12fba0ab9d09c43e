"""Periodic resource sampling for sandboxes.

The monitor only detects ceiling breaches and publishes LimitExceeded events.
Deciding what to do about a breach is up to subscribers.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from orchestrator.core.config import Settings, settings as default_settings
from orchestrator.models.events import LimitExceeded, ResourceSampled
from orchestrator.models.sandbox import GitState, LimitKind, ResourceLimits, ResourceUsage
from orchestrator.services.backends.base import run_process
from orchestrator.services.events import EventBus

logger = logging.getLogger(__name__)

Sampler = Callable[[str, str], Awaitable[ResourceUsage]]


class ProcessSampler:
    """Samples a sandbox's tracked processes, its disk usage and its git state."""

    def __init__(self, pid_lookup: Callable[[str], Iterable[int]] | None = None):
        self.pid_lookup = pid_lookup

    async def __call__(self, sandbox_id: str, path: str) -> ResourceUsage:
        pids = sorted(self.pid_lookup(sandbox_id)) if self.pid_lookup else []
        cpu = 0.0
        memory_kb = 0
        count = 0
        if pids:
            result = await run_process(
                ["ps", "-o", "pid=,pcpu=,rss=", "-p", ",".join(str(pid) for pid in pids)]
            )
            for line in result.stdout.splitlines():
                parts = line.split()
                if len(parts) < 3:
                    continue
                cpu += float(parts[1])
                memory_kb += int(parts[2])
                count += 1

        disk = 0.0
        git = None
        if Path(path).is_dir():
            result = await run_process(["du", "-sm", path])
            if result.ok and result.stdout.strip():
                disk = float(result.stdout.split()[0])
            # A worktree has a .git file rather than a directory
            if (Path(path) / ".git").exists():
                git = await self._git_state(path)

        return ResourceUsage(
            cpu=cpu,
            memory=round(memory_kb / 1024, 1),
            disk=disk,
            process_count=count,
            git=git,
        )

    async def _git_state(self, path: str) -> GitState:
        commit, branch, status = await asyncio.gather(
            run_process(["git", "rev-parse", "--short", "HEAD"], cwd=path),
            run_process(["git", "branch", "--show-current"], cwd=path),
            run_process(["git", "status", "--porcelain"], cwd=path),
        )
        return GitState(
            commit=commit.stdout.strip() if commit.ok else None,
            branch=branch.stdout.strip() or None,
            uncommitted_changes=len([line for line in status.stdout.splitlines() if line]),
        )


@dataclass
class _Collector:
    path: str
    limits: ResourceLimits | None
    started_at: datetime
    task: asyncio.Task | None = None
    breached: set[LimitKind] = field(default_factory=set)


class ResourceMonitor:
    """Samples every registered sandbox on a fixed interval."""

    def __init__(
        self,
        sampler: Sampler | None = None,
        events: EventBus | None = None,
        interval: float | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or default_settings
        self.sampler = sampler or ProcessSampler()
        self.events = events or EventBus()
        self.interval = interval if interval is not None else settings.metrics_interval
        self._collectors: dict[str, _Collector] = {}
        self._metrics: dict[str, ResourceUsage] = {}

    def start_collecting(
        self,
        sandbox_id: str,
        path: str,
        limits: ResourceLimits | None = None,
        started_at: datetime | None = None,
    ) -> None:
        """Start sampling ``sandbox_id``, replacing any existing sampler for it."""
        previous = self._collectors.pop(sandbox_id, None)
        if previous is not None and previous.task is not None:
            previous.task.cancel()

        logger.debug(f"Starting metrics collection for sandbox {sandbox_id}")
        collector = _Collector(
            path=path, limits=limits, started_at=started_at or datetime.now(UTC)
        )
        self._collectors[sandbox_id] = collector
        collector.task = asyncio.create_task(
            self._collect_loop(sandbox_id), name=f"metrics-{sandbox_id}"
        )

    def stop_collecting(self, sandbox_id: str) -> None:
        collector = self._collectors.pop(sandbox_id, None)
        if collector is not None:
            logger.debug(f"Stopping metrics collection for sandbox {sandbox_id}")
            if collector.task is not None:
                collector.task.cancel()
        self._metrics.pop(sandbox_id, None)

    def is_collecting(self, sandbox_id: str) -> bool:
        return sandbox_id in self._collectors

    def get_metrics(self, sandbox_id: str) -> ResourceUsage | None:
        """Latest sample, or None if collection never started or was stopped."""
        return self._metrics.get(sandbox_id)

    def get_all_metrics(self) -> dict[str, ResourceUsage]:
        return dict(self._metrics)

    async def _collect_loop(self, sandbox_id: str) -> None:
        while True:
            await self.sample_once(sandbox_id)
            await asyncio.sleep(self.interval)

    async def sample_once(self, sandbox_id: str) -> ResourceUsage | None:
        """Take one sample and publish it; returns None if nothing was sampled."""
        collector = self._collectors.get(sandbox_id)
        if collector is None:
            return None

        try:
            usage = await self.sampler(sandbox_id, collector.path)
        except Exception as e:
            logger.error(f"Error collecting metrics for sandbox {sandbox_id}: {e}")
            return None

        # Collection may have been stopped or replaced while sampling
        if self._collectors.get(sandbox_id) is not collector:
            return None

        self._metrics[sandbox_id] = usage
        self.events.publish(ResourceSampled(sandbox_id=sandbox_id, usage=usage))
        self._check_limits(sandbox_id, collector, usage)
        return usage

    def _check_limits(
        self, sandbox_id: str, collector: _Collector, usage: ResourceUsage
    ) -> None:
        limits = collector.limits
        if limits is None:
            return

        checks = [
            (LimitKind.CPU, usage.cpu, limits.max_cpu),
            (LimitKind.MEMORY, usage.memory, limits.max_memory),
            (LimitKind.DISK, usage.disk, limits.max_disk),
        ]
        if limits.time_limit:
            elapsed = (usage.sampled_at - collector.started_at).total_seconds()
            checks.append((LimitKind.TIME, elapsed, limits.time_limit))

        for kind, value, limit in checks:
            if value <= limit:
                collector.breached.discard(kind)
                continue
            # One notification per crossing
            if kind in collector.breached:
                continue
            collector.breached.add(kind)
            logger.warning(
                f"Sandbox {sandbox_id} exceeding {kind.value} limit ({value:.1f} > {limit})"
            )
            self.events.publish(
                LimitExceeded(sandbox_id=sandbox_id, kind=kind, value=value, limit=limit)
            )

    async def shutdown(self) -> None:
        tasks = [c.task for c in self._collectors.values() if c.task is not None]
        for sandbox_id in list(self._collectors):
            self.stop_collecting(sandbox_id)
        await asyncio.gather(*tasks, return_exceptions=True)
