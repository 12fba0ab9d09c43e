"""Application configuration."""

import os
import tempfile

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Environment
    env: str = os.getenv("APP_ENV", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Isolation backend: "tmux" (local worktrees) or "e2b" (remote sandboxes)
    isolation_backend: str = os.getenv("ISOLATION_BACKEND", "tmux")

    # Workspaces
    # Use the system temp dir for now, production deployments point this at /var/coder1
    workspace_root: str = os.getenv(
        "WORKSPACE_ROOT", os.path.join(tempfile.gettempdir(), "coder1-workspaces")
    )
    base_workspace: str = os.getenv("BASE_WORKSPACE", os.getcwd())

    # Sandbox ceilings
    max_sandboxes_per_user: int = int(os.getenv("MAX_SANDBOXES_PER_USER", "5"))
    default_max_cpu: float = float(os.getenv("DEFAULT_MAX_CPU", "50"))  # % of one core
    default_max_memory: int = int(os.getenv("DEFAULT_MAX_MEMORY", "2048"))  # MB
    default_max_disk: int = int(os.getenv("DEFAULT_MAX_DISK", "5120"))  # MB
    default_time_limit: int = int(os.getenv("DEFAULT_TIME_LIMIT", "3600"))  # 1 hour
    host_max_memory: int = int(os.getenv("HOST_MAX_MEMORY", "16384"))  # MB
    host_max_disk: int = int(os.getenv("HOST_MAX_DISK", "51200"))  # MB

    # Monitoring
    metrics_interval: float = float(os.getenv("METRICS_INTERVAL", "5"))  # seconds

    # Agent CLI
    agent_cli: str = os.getenv("AGENT_CLI", "claude")
    command_timeout: int = int(os.getenv("COMMAND_TIMEOUT", "300"))  # 5 minutes

    # E2B / Novita sandboxes
    novita_api_key: str | None = os.getenv("NOVITA_API_KEY")
    e2b_domain: str = os.getenv("E2B_DOMAIN", "sandbox.novita.ai")
    e2b_template: str = os.getenv("E2B_TEMPLATE", "cloud-agent-v1")
    sandbox_timeout: int = int(os.getenv("SANDBOX_TIMEOUT", "600"))  # 10 minutes

    # Credentials forwarded into remote sandboxes
    anthropic_api_key: str | None = os.getenv("ANTHROPIC_API_KEY")
    claude_code_oauth_token: str | None = os.getenv("CLAUDE_CODE_OAUTH_TOKEN")
    github_token: str | None = os.getenv("GITHUB_TOKEN")


settings = Settings()
