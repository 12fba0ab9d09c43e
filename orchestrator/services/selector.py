"""Picks an agent for a free-form task description."""

from collections.abc import Sequence

from orchestrator.models.agent import AgentSession


def select_best_agent(
    candidates: Sequence[AgentSession], task_description: str
) -> AgentSession | None:
    """First candidate whose expertise appears in the description, else the first candidate."""
    if not candidates:
        return None

    description = task_description.lower()
    for agent in candidates:
        if any(keyword.lower() in description for keyword in agent.expertise):
            return agent
    return candidates[0]
