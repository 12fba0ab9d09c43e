"""Notifications published on the event bus."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from orchestrator.models.sandbox import LimitKind, ResourceUsage


@dataclass(frozen=True)
class Event:
    """Base class for all notifications."""

    occurred_at: datetime = field(
        default_factory=lambda: datetime.now(UTC), kw_only=True
    )


@dataclass(frozen=True)
class SandboxCreated(Event):
    sandbox_id: str
    user_id: str
    project_id: str


@dataclass(frozen=True)
class SandboxDestroyed(Event):
    sandbox_id: str


@dataclass(frozen=True)
class SandboxMerged(Event):
    sandbox_id: str


@dataclass(frozen=True)
class SandboxPromoted(Event):
    sandbox_id: str
    target_path: str
    backup_path: str | None = None


@dataclass(frozen=True)
class ResourceSampled(Event):
    sandbox_id: str
    usage: ResourceUsage


@dataclass(frozen=True)
class LimitExceeded(Event):
    sandbox_id: str
    kind: LimitKind
    value: float
    limit: float


@dataclass(frozen=True)
class AgentSpawned(Event):
    agent_id: str
    agent_type: str
    sandbox_id: str


@dataclass(frozen=True)
class AgentStopped(Event):
    agent_id: str
    sandbox_id: str


@dataclass(frozen=True)
class AgentLimitExceeded(Event):
    agent_id: str
    sandbox_id: str
    kind: LimitKind


@dataclass(frozen=True)
class TaskAssigned(Event):
    agent_id: str
    task_id: str


@dataclass(frozen=True)
class TaskStarted(Event):
    agent_id: str
    task_id: str


@dataclass(frozen=True)
class TaskCompleted(Event):
    agent_id: str
    task_id: str
    result: Any = None


@dataclass(frozen=True)
class TaskFailed(Event):
    agent_id: str
    task_id: str
    error: str
