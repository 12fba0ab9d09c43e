"""Data models."""

from .agent import (
    AGENT_PROFILES,
    AgentProfile,
    AgentSession,
    AgentStatus,
    AgentType,
    get_profile,
)
from .sandbox import (
    LimitKind,
    ResourceLimits,
    ResourceUsage,
    SandboxConfig,
    SandboxSession,
    SandboxStatus,
    TestReport,
)
from .task import AgentTask, TaskPriority, TaskStatus

__all__ = [
    "AGENT_PROFILES",
    "AgentProfile",
    "AgentSession",
    "AgentStatus",
    "AgentTask",
    "AgentType",
    "LimitKind",
    "ResourceLimits",
    "ResourceUsage",
    "SandboxConfig",
    "SandboxSession",
    "SandboxStatus",
    "TaskPriority",
    "TaskStatus",
    "TestReport",
    "get_profile",
]
