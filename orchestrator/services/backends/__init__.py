"""Isolation backends."""

from orchestrator.core.config import Settings, settings as default_settings
from orchestrator.core.errors import ValidationError

from .base import BackendHandle, CommandResult, IsolationBackend, run_process
from .tmux import TmuxBackend

__all__ = [
    "BackendHandle",
    "CommandResult",
    "IsolationBackend",
    "TmuxBackend",
    "get_backend",
    "run_process",
]


def get_backend(name: str | None = None, settings: Settings | None = None) -> IsolationBackend:
    """Build the isolation backend called ``name`` (defaults to the configured one)."""
    settings = settings or default_settings
    name = name or settings.isolation_backend

    if name == "tmux":
        return TmuxBackend(settings=settings)
    if name == "e2b":
        # Imported here so the local backend works without the E2B SDK loaded
        from .e2b import E2BBackend

        return E2BBackend(settings=settings)

    raise ValidationError(f"Unknown isolation backend: {name}")
