"""Core exception classes for the orchestrator."""


class OrchestratorError(Exception):
    """Base class for every orchestrator failure."""


class ValidationError(OrchestratorError):
    """Raised when validation fails."""


class NotFoundError(OrchestratorError):
    """Raised when a resource is not found."""


class SandboxNotFoundError(NotFoundError):
    """Raised when a sandbox id is unknown."""

    def __init__(self, sandbox_id: str):
        super().__init__(f"Sandbox {sandbox_id} not found")
        self.sandbox_id = sandbox_id


class AgentNotFoundError(NotFoundError):
    """Raised when an agent id is unknown."""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent {agent_id} not found")
        self.agent_id = agent_id


class TaskNotFoundError(NotFoundError):
    """Raised when a task id is unknown."""

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class ConflictError(OrchestratorError):
    """Raised when the current lifecycle state disallows an operation."""


class InvalidTransitionError(ConflictError):
    """Raised on an illegal status transition."""


class SandboxNotRunningError(ConflictError):
    """Raised when a command is sent to a sandbox that cannot execute it."""

    def __init__(self, sandbox_id: str, status: str):
        super().__init__(f"Sandbox {sandbox_id} is not running (status: {status})")
        self.sandbox_id = sandbox_id
        self.status = status


class AgentBusyError(ConflictError):
    """Raised when a task is assigned to an agent that is not ready or idle."""

    def __init__(self, agent_id: str, status: str):
        super().__init__(f"Agent {agent_id} is not available (status: {status})")
        self.agent_id = agent_id
        self.status = status


class NoAgentsAvailableError(ConflictError):
    """Raised when no agent can take a broadcast task."""


class BackendUnavailableError(OrchestratorError):
    """Raised when the isolation backend cannot be reached."""


class ResourceExhaustedError(OrchestratorError):
    """Raised when no environment within the requested ceilings can be created."""


class InitializationError(OrchestratorError):
    """Raised when an agent's startup sequence fails."""

    def __init__(self, agent_id: str, message: str):
        super().__init__(f"Agent {agent_id} failed to initialize: {message}")
        self.agent_id = agent_id


class TaskExecutionError(OrchestratorError):
    """Raised when a task's command fails."""


class CommandFailedError(TaskExecutionError):
    """Raised when a checked command exits with a non-zero status."""

    def __init__(self, sandbox_id: str, command: str, exit_code: int, stderr: str):
        detail = stderr.strip() or "no output"
        super().__init__(f"Command `{command}` exited with {exit_code}: {detail}")
        self.sandbox_id = sandbox_id
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class MergeConflictError(OrchestratorError):
    """Raised when a sandbox's changes cannot be merged onto the base."""

    def __init__(self, sandbox_id: str, detail: str = ""):
        message = f"Merge conflict for sandbox {sandbox_id}"
        if detail:
            message = f"{message}: {detail.strip()}"
        super().__init__(message)
        self.sandbox_id = sandbox_id


class TargetUnwritableError(OrchestratorError):
    """Raised when a promotion target cannot be written."""

    def __init__(self, target: str):
        super().__init__(f"Promotion target {target} is not writable")
        self.target = target
