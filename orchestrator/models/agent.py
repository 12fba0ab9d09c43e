"""Agent models and the fixed role profiles."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from orchestrator.core.errors import InvalidTransitionError, ValidationError


class AgentType(str, Enum):
    FRONTEND = "frontend"
    BACKEND = "backend"
    ARCHITECT = "architect"
    OPTIMIZER = "optimizer"
    DEBUGGER = "debugger"
    IMPLEMENTER = "implementer"

    @classmethod
    def parse(cls, value: "str | AgentType") -> "AgentType":
        """Return the agent type for ``value`` or raise ValidationError."""
        try:
            return cls(value)
        except ValueError as e:
            raise ValidationError(f"Unknown agent type: {value}") from e


class AgentStatus(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    WORKING = "working"
    IDLE = "idle"
    STOPPED = "stopped"
    ERROR = "error"


AGENT_TRANSITIONS: dict[AgentStatus, frozenset[AgentStatus]] = {
    AgentStatus.INITIALIZING: frozenset(
        {AgentStatus.READY, AgentStatus.ERROR, AgentStatus.STOPPED}
    ),
    AgentStatus.READY: frozenset(
        {AgentStatus.WORKING, AgentStatus.ERROR, AgentStatus.STOPPED}
    ),
    AgentStatus.WORKING: frozenset(
        {AgentStatus.IDLE, AgentStatus.ERROR, AgentStatus.STOPPED}
    ),
    AgentStatus.IDLE: frozenset(
        {AgentStatus.WORKING, AgentStatus.ERROR, AgentStatus.STOPPED}
    ),
    AgentStatus.ERROR: frozenset({AgentStatus.STOPPED}),
    AgentStatus.STOPPED: frozenset(),
}

AVAILABLE_STATUSES = frozenset({AgentStatus.READY, AgentStatus.IDLE})


class AgentProfile(BaseModel):
    """Role definition shared by every agent of one type."""

    name: str
    expertise: list[str]
    max_cpu: float
    max_memory: int
    max_disk: int
    time_limit: int | None = None
    cli_flags: list[str] = Field(
        default_factory=list, description="Extra arguments for the agent CLI"
    )

    @property
    def system_prompt(self) -> str:
        return f"You are the {self.name}. Focus areas: {', '.join(self.expertise)}."


AGENT_PROFILES: dict[AgentType, AgentProfile] = {
    AgentType.FRONTEND: AgentProfile(
        name="Frontend Specialist",
        expertise=["React", "UI/UX", "Tailwind", "TypeScript", "Responsive Design"],
        max_cpu=40,
        max_memory=2048,
        max_disk=3072,
    ),
    AgentType.BACKEND: AgentProfile(
        name="Backend Specialist",
        expertise=["Node.js", "APIs", "Databases", "Authentication", "Security"],
        max_cpu=50,
        max_memory=3072,
        max_disk=5120,
    ),
    AgentType.ARCHITECT: AgentProfile(
        name="System Architect",
        expertise=["System Design", "Architecture", "Patterns", "Documentation"],
        max_cpu=30,
        max_memory=1024,
        max_disk=2048,
        cli_flags=["--permission-mode", "plan"],
    ),
    AgentType.OPTIMIZER: AgentProfile(
        name="Performance Optimizer",
        expertise=["Performance", "Memory Management", "Optimization", "Profiling"],
        max_cpu=60,
        max_memory=4096,
        max_disk=2048,
    ),
    AgentType.DEBUGGER: AgentProfile(
        name="Debug Specialist",
        expertise=["Debugging", "Testing", "Error Analysis", "Edge Cases"],
        max_cpu=40,
        max_memory=2048,
        max_disk=2048,
    ),
    AgentType.IMPLEMENTER: AgentProfile(
        name="Core Implementer",
        expertise=["Implementation", "Business Logic", "Integration", "Features"],
        max_cpu=50,
        max_memory=2048,
        max_disk=4096,
    ),
}


def get_profile(agent_type: "str | AgentType") -> AgentProfile:
    return AGENT_PROFILES[AgentType.parse(agent_type)]


class AgentSession(BaseModel):
    """A logical worker bound to exactly one sandbox."""

    id: str = Field(description="Unique identifier for the agent")
    type: AgentType
    name: str
    expertise: list[str] = Field(
        default_factory=list, description="Keywords used for task selection"
    )
    project_id: str = Field(default="default")
    sandbox_id: str = Field(description="ID of the sandbox the agent runs in")
    status: AgentStatus = Field(default=AgentStatus.INITIALIZING)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = Field(default_factory=lambda: datetime.now(UTC))
    tasks_completed: int = Field(default=0)
    current_task: str | None = Field(
        default=None, description="ID of the in-flight task, set only while working"
    )
    output: list[str] = Field(default_factory=list, description="Append-only log")

    @property
    def is_available(self) -> bool:
        return self.status in AVAILABLE_STATUSES

    def transition(self, status: AgentStatus) -> None:
        """Move to ``status`` or raise InvalidTransitionError.

        Entering and leaving ``working`` goes through begin_task/finish_task so
        that ``current_task`` always tracks the status.
        """
        if status not in AGENT_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Agent {self.id} cannot move from {self.status.value} to {status.value}"
            )
        if status == AgentStatus.WORKING:
            raise InvalidTransitionError("Use begin_task() to start working")
        self.status = status
        self.current_task = None
        self.touch()

    def begin_task(self, task_id: str) -> None:
        if AgentStatus.WORKING not in AGENT_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Agent {self.id} cannot start a task while {self.status.value}"
            )
        self.status = AgentStatus.WORKING
        self.current_task = task_id
        self.touch()

    def finish_task(self) -> None:
        """Return to idle after a task settles; a stopped agent stays stopped."""
        if self.status == AgentStatus.WORKING:
            self.status = AgentStatus.IDLE
            self.current_task = None
        self.touch()

    def log(self, line: str) -> None:
        self.output.append(line)

    def touch(self) -> None:
        self.last_activity = datetime.now(UTC)
