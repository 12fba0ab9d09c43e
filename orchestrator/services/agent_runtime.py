"""Agent runtime: spawns role agents in sandboxes and runs their tasks."""

import asyncio
import json
import logging
import uuid
from typing import Any

from orchestrator.core.config import Settings
from orchestrator.core.errors import (
    AgentBusyError,
    AgentNotFoundError,
    InitializationError,
    NoAgentsAvailableError,
    TaskNotFoundError,
    ValidationError,
)
from orchestrator.models.agent import AgentSession, AgentStatus, AgentType, get_profile
from orchestrator.models.events import (
    AgentLimitExceeded,
    AgentSpawned,
    AgentStopped,
    LimitExceeded,
    TaskAssigned,
    TaskCompleted,
    TaskFailed,
    TaskStarted,
)
from orchestrator.models.sandbox import SandboxConfig, TestReport
from orchestrator.models.task import AgentTask, TaskPriority
from orchestrator.services.command import agent_task, make_workspace, version_check
from orchestrator.services.events import EventBus
from orchestrator.services.sandbox_registry import SandboxRegistry
from orchestrator.services.selector import select_best_agent

logger = logging.getLogger(__name__)


def parse_agent_output(stdout: str) -> Any:
    """Result of an agent CLI run.

    The CLI prints a JSON object with ``session_id`` and ``result`` when asked
    for JSON output; anything else is returned as plain text.
    """
    text = stdout.strip()
    if not text:
        return ""
    try:
        response = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(response, dict):
        return {"session_id": response.get("session_id"), "result": response.get("result")}
    return response


def _summary(result: Any, width: int = 200) -> str:
    if isinstance(result, dict):
        result = result.get("result")
    text = str(result or "").strip().replace("\n", " ")
    return text if len(text) <= width else f"{text[:width]}..."


class AgentRuntimeService:
    """Owns the agents and tasks of one user scope."""

    def __init__(
        self,
        registry: SandboxRegistry,
        user_id: str = "default-user",
        events: EventBus | None = None,
        settings: Settings | None = None,
    ):
        self.registry = registry
        self.user_id = user_id
        self.events = events or registry.events
        self.settings = settings or registry.settings
        self._agents: dict[str, AgentSession] = {}
        self._tasks: dict[str, AgentTask] = {}
        self._running: dict[str, asyncio.Task] = {}
        self._unsubscribe = self.events.subscribe(self._relay_limit, LimitExceeded)

    # ── Lookup ───────────────────────────────────────────────────────

    def get_agent(self, agent_id: str) -> AgentSession | None:
        return self._agents.get(agent_id)

    def _require_agent(self, agent_id: str) -> AgentSession:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def list_agents(self) -> list[AgentSession]:
        return list(self._agents.values())

    def get_task(self, task_id: str) -> AgentTask | None:
        return self._tasks.get(task_id)

    def list_tasks(self, agent_id: str | None = None) -> list[AgentTask]:
        return [
            t for t in self._tasks.values() if agent_id is None or t.assigned_to == agent_id
        ]

    def get_agent_output(self, agent_id: str) -> list[str]:
        return list(self._require_agent(agent_id).output)

    # ── Agent lifecycle ──────────────────────────────────────────────

    async def spawn_agent(
        self, agent_type: str | AgentType, project_id: str = "default"
    ) -> AgentSession:
        """Create a sandbox for a role agent and initialize its CLI session.

        Sandbox creation failures propagate unchanged and leave no agent
        behind. A failed initialization leaves the agent in ``error`` so its
        log stays readable until it is stopped.
        """
        agent_type = AgentType.parse(agent_type)
        profile = get_profile(agent_type)

        sandbox = await self.registry.create(
            SandboxConfig(
                user_id=self.user_id,
                project_id=f"agent_{agent_type.value}_{project_id}",
                max_cpu=profile.max_cpu,
                max_memory=profile.max_memory,
                max_disk=profile.max_disk,
                time_limit=profile.time_limit,
            )
        )

        agent = AgentSession(
            id=f"agent_{agent_type.value}_{uuid.uuid4().hex[:8]}",
            type=agent_type,
            name=profile.name,
            expertise=list(profile.expertise),
            project_id=project_id,
            sandbox_id=sandbox.id,
        )
        self._agents[agent.id] = agent
        logger.info(f"Spawning {profile.name} {agent.id} in sandbox {sandbox.id}")

        try:
            version = await self.registry.run(
                sandbox.id,
                version_check(self.settings.agent_cli),
                check=True,
                timeout=self.settings.command_timeout,
            )
            await self.registry.run(sandbox.id, make_workspace(), check=True)
        except Exception as e:
            agent.log(f"Initialization failed: {e}")
            # stop_agent may have run while the CLI check was in flight
            if agent.status != AgentStatus.STOPPED:
                agent.transition(AgentStatus.ERROR)
            logger.error(f"Failed to initialize agent {agent.id}: {e}")
            raise InitializationError(agent.id, str(e)) from e

        agent.log(f"{profile.name} ready ({version.stdout.strip() or self.settings.agent_cli})")
        agent.transition(AgentStatus.READY)
        logger.info(f"Agent {agent.id} ready")
        self.events.publish(
            AgentSpawned(agent_id=agent.id, agent_type=agent_type.value, sandbox_id=sandbox.id)
        )
        return agent

    async def stop_agent(self, agent_id: str) -> None:
        """Stop the agent and destroy its sandbox; in-flight tasks are abandoned."""
        agent = self._require_agent(agent_id)
        if agent.status != AgentStatus.STOPPED:
            agent.transition(AgentStatus.STOPPED)
        agent.log("Agent stopped")
        del self._agents[agent_id]

        await self.registry.destroy(agent.sandbox_id)
        logger.info(f"Agent {agent_id} stopped")
        self.events.publish(AgentStopped(agent_id=agent_id, sandbox_id=agent.sandbox_id))

    # ── Tasks ────────────────────────────────────────────────────────

    async def assign_task(
        self,
        agent_id: str,
        description: str,
        priority: str | TaskPriority = TaskPriority.MEDIUM,
    ) -> AgentTask:
        """Hand a task to an agent; execution continues in the background."""
        agent = self._require_agent(agent_id)
        if not agent.is_available:
            raise AgentBusyError(agent_id, agent.status.value)
        try:
            priority = TaskPriority(priority)
        except ValueError as e:
            raise ValidationError(f"Unknown task priority: {priority}") from e

        task = AgentTask(
            id=f"task_{uuid.uuid4().hex[:8]}",
            description=description,
            priority=priority,
        )
        task.assign(agent_id)
        agent.begin_task(task.id)
        self._tasks[task.id] = task
        self._running[task.id] = asyncio.create_task(
            self._execute_task(agent, task), name=f"task-{task.id}"
        )

        logger.info(f"Assigned task {task.id} to agent {agent_id}")
        self.events.publish(TaskAssigned(agent_id=agent_id, task_id=task.id))
        return task

    async def broadcast_task(
        self, description: str, priority: str | TaskPriority = TaskPriority.MEDIUM
    ) -> AgentTask:
        """Assign a task to the best available agent."""
        candidates = [agent for agent in self._agents.values() if agent.is_available]
        agent = select_best_agent(candidates, description)
        if agent is None:
            raise NoAgentsAvailableError("No agents available for task")
        logger.info(f"Broadcast task routed to {agent.name} {agent.id}")
        return await self.assign_task(agent.id, description, priority)

    async def wait_for_task(self, task_id: str, timeout: float | None = None) -> AgentTask:
        """Wait until the task settles and return it."""
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        running = self._running.get(task_id)
        if running is not None:
            await asyncio.wait_for(asyncio.shield(running), timeout=timeout)
        return task

    async def _execute_task(self, agent: AgentSession, task: AgentTask) -> None:
        task.start()
        self.events.publish(TaskStarted(agent_id=agent.id, task_id=task.id))
        profile = get_profile(agent.type)
        command = agent_task(self.settings.agent_cli, profile, task.description, task.priority)

        try:
            result = await self.registry.run(
                agent.sandbox_id, command, check=True, timeout=self.settings.command_timeout
            )
        except Exception as e:
            task.fail(str(e))
            agent.log(f"Task {task.id} failed: {e}")
            logger.error(f"Task {task.id} failed on agent {agent.id}: {e}")
            self.events.publish(TaskFailed(agent_id=agent.id, task_id=task.id, error=str(e)))
        else:
            output = parse_agent_output(result.stdout)
            task.complete(output)
            agent.tasks_completed += 1
            agent.log(f"Task {task.id} completed: {_summary(output)}")
            logger.info(f"Task {task.id} completed on agent {agent.id}")
            self.events.publish(
                TaskCompleted(agent_id=agent.id, task_id=task.id, result=output)
            )
        finally:
            agent.finish_task()
            self._running.pop(task.id, None)

    # ── Sandbox passthroughs ─────────────────────────────────────────

    async def test_agent(self, agent_id: str) -> TestReport:
        agent = self._require_agent(agent_id)
        return await self.registry.test(agent.sandbox_id)

    async def promote_agent_work(self, agent_id: str, target_path: str | None = None) -> str:
        agent = self._require_agent(agent_id)
        return await self.registry.promote(agent.sandbox_id, target_path)

    def _relay_limit(self, event: LimitExceeded) -> None:
        for agent in self._agents.values():
            if agent.sandbox_id == event.sandbox_id:
                logger.warning(f"Agent {agent.id} exceeded {event.kind.value} limit")
                self.events.publish(
                    AgentLimitExceeded(
                        agent_id=agent.id, sandbox_id=event.sandbox_id, kind=event.kind
                    )
                )
                return

    async def shutdown(self) -> None:
        for agent_id in list(self._agents):
            await self.stop_agent(agent_id)
        pending = list(self._running.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._unsubscribe()
