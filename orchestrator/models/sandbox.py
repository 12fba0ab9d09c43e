"""Sandbox models."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from orchestrator.core.errors import InvalidTransitionError


class SandboxStatus(str, Enum):
    """Lifecycle of an isolated environment."""

    SPAWNING = "spawning"
    RUNNING = "running"
    IDLE = "idle"
    STOPPED = "stopped"
    ERROR = "error"


SANDBOX_TRANSITIONS: dict[SandboxStatus, frozenset[SandboxStatus]] = {
    SandboxStatus.SPAWNING: frozenset(
        {SandboxStatus.RUNNING, SandboxStatus.ERROR, SandboxStatus.STOPPED}
    ),
    SandboxStatus.RUNNING: frozenset(
        {
            SandboxStatus.RUNNING,
            SandboxStatus.IDLE,
            SandboxStatus.ERROR,
            SandboxStatus.STOPPED,
        }
    ),
    SandboxStatus.IDLE: frozenset(
        {SandboxStatus.RUNNING, SandboxStatus.ERROR, SandboxStatus.STOPPED}
    ),
    SandboxStatus.ERROR: frozenset({SandboxStatus.STOPPED}),
    SandboxStatus.STOPPED: frozenset(),
}

# Statuses in which a sandbox accepts commands
EXECUTABLE_STATUSES = frozenset({SandboxStatus.RUNNING, SandboxStatus.IDLE})


class LimitKind(str, Enum):
    """Kind of resource ceiling."""

    CPU = "cpu"
    MEMORY = "memory"
    DISK = "disk"
    TIME = "time"


class ResourceLimits(BaseModel):
    """Resource ceiling of a sandbox."""

    max_cpu: float = Field(description="CPU ceiling in percent of one core")
    max_memory: int = Field(description="Memory ceiling in MB")
    max_disk: int = Field(description="Disk ceiling in MB")
    time_limit: int | None = Field(
        default=None, description="Advisory runtime ceiling in seconds"
    )


class GitState(BaseModel):
    """Version-control state of a sandbox working tree."""

    commit: str | None = Field(default=None, description="Short hash of HEAD")
    branch: str | None = Field(default=None, description="Current branch, None when detached")
    uncommitted_changes: int = Field(default=0, description="Entries in git status")


class ResourceUsage(BaseModel):
    """One resource sample of a sandbox."""

    cpu: float = Field(default=0.0, description="CPU usage in percent")
    memory: float = Field(default=0.0, description="Resident memory in MB")
    disk: float = Field(default=0.0, description="Disk usage in MB")
    process_count: int = Field(default=0, description="Live child processes")
    git: GitState | None = Field(
        default=None, description="Working tree state, None outside a git checkout"
    )
    sampled_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Timestamp of the sample",
    )


class SandboxConfig(BaseModel):
    """Request to create a sandbox."""

    user_id: str = Field(description="Owning user")
    project_id: str = Field(description="Logical project or purpose tag")
    base_from: str | None = Field(
        default=None,
        description="Project path (or repository URL for remote backends) to seed from",
    )
    max_cpu: float | None = Field(default=None, description="CPU ceiling override")
    max_memory: int | None = Field(default=None, description="Memory ceiling override")
    max_disk: int | None = Field(default=None, description="Disk ceiling override")
    time_limit: int | None = Field(default=None, description="Time limit override")


class SandboxSession(BaseModel):
    """An isolated environment owned by the sandbox registry."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(description="Unique sandbox identifier, never reused")
    user_id: str = Field(description="Owning user")
    project_id: str = Field(description="Logical project or purpose tag")
    path: str = Field(description="Working directory of the sandbox")
    handle: Any = Field(
        default=None,
        exclude=True,
        description="Backend session handle, opaque to the registry",
    )
    status: SandboxStatus = Field(default=SandboxStatus.SPAWNING)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = Field(default_factory=lambda: datetime.now(UTC))
    limits: ResourceLimits
    usage: ResourceUsage | None = Field(
        default=None, description="Most recent resource sample"
    )
    process_count: int = Field(default=0, description="Live child processes")
    config: SandboxConfig = Field(description="Configuration the sandbox was built from")

    def transition(self, status: SandboxStatus) -> None:
        """Move to ``status`` or raise InvalidTransitionError."""
        if status not in SANDBOX_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Sandbox {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def touch(self) -> None:
        self.last_activity = datetime.now(UTC)

    @property
    def can_execute(self) -> bool:
        return self.status in EXECUTABLE_STATUSES


class TestReport(BaseModel):
    """Outcome of running a sandbox's test suite."""

    __test__ = False

    passed: bool
    command: str | None = None
    stdout: str = ""
    stderr: str = ""
    message: str | None = None
