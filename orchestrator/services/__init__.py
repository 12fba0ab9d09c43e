"""Orchestration services."""

from .agent_runtime import AgentRuntimeService
from .events import EventBus
from .merge import MergeService
from .resource_monitor import ProcessSampler, ResourceMonitor
from .sandbox_registry import SandboxRegistry
from .selector import select_best_agent

__all__ = [
    "AgentRuntimeService",
    "EventBus",
    "MergeService",
    "ProcessSampler",
    "ResourceMonitor",
    "SandboxRegistry",
    "select_best_agent",
]
