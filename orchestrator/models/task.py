"""Task model for agent execution."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from orchestrator.core.errors import InvalidTransitionError


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.ASSIGNED, TaskStatus.FAILED}),
    TaskStatus.ASSIGNED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.FAILED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


class AgentTask(BaseModel):
    """A unit of work executed by one agent."""

    id: str = Field(description="Unique identifier for the task")
    description: str = Field(
        description="Natural language description of the work to do"
    )
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    assigned_to: str | None = Field(
        default=None, description="ID of the agent the task is assigned to"
    )
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    result: Any = Field(default=None, description="Task execution result")
    error: str | None = Field(default=None, description="Error message on failure")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = Field(
        default=None, description="Timestamp when the task reached a terminal state"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    def _move(self, status: TaskStatus) -> None:
        if status not in TASK_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Task {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def assign(self, agent_id: str) -> None:
        self._move(TaskStatus.ASSIGNED)
        self.assigned_to = agent_id

    def start(self) -> None:
        self._move(TaskStatus.IN_PROGRESS)

    def complete(self, result: Any) -> None:
        self._move(TaskStatus.COMPLETED)
        self.result = result
        self.completed_at = datetime.now(UTC)

    def fail(self, error: str) -> None:
        self._move(TaskStatus.FAILED)
        self.error = error
        self.completed_at = datetime.now(UTC)
