"""Orchestrator CLI - run role agents in isolated sandboxes from the terminal."""

import asyncio
import logging

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from orchestrator.core.config import settings
from orchestrator.core.errors import OrchestratorError
from orchestrator.models.agent import AGENT_PROFILES, AgentType
from orchestrator.models.task import AgentTask, TaskPriority, TaskStatus
from orchestrator.services import AgentRuntimeService, SandboxRegistry
from orchestrator.services.backends import get_backend

app = typer.Typer(help="Multi-agent sandbox orchestrator")

console = Console()


def _configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build(backend: str | None) -> tuple[SandboxRegistry, AgentRuntimeService]:
    registry = SandboxRegistry(get_backend(backend, settings=settings), settings=settings)
    return registry, AgentRuntimeService(registry, user_id="cli")


def _print_task(task: AgentTask) -> None:
    if task.status == TaskStatus.COMPLETED:
        console.print(f"[green]✓[/green] Task {task.id} completed")
        result = task.result
        if isinstance(result, dict):
            if result.get("session_id"):
                console.print(f"  Session: {result['session_id']}")
            result = result.get("result")
        if result:
            console.print("\n[bold]Result:[/bold]")
            console.print(str(result), markup=False)
    else:
        console.print(f"[red]✗[/red] Task {task.id} {task.status.value}")
        if task.error:
            console.print(f"  {task.error}", markup=False)


@app.command("roles")
def list_roles():
    """List the available agent roles."""
    table = Table(title="Agent Roles")
    table.add_column("Type", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("Expertise", style="magenta")
    table.add_column("CPU %", justify="right")
    table.add_column("Memory MB", justify="right")
    table.add_column("Disk MB", justify="right")

    for agent_type, profile in AGENT_PROFILES.items():
        table.add_row(
            agent_type.value,
            profile.name,
            ", ".join(profile.expertise),
            f"{profile.max_cpu:g}",
            str(profile.max_memory),
            str(profile.max_disk),
        )

    console.print(table)


@app.command("run")
def run_agent(
    agent_type: AgentType = typer.Argument(..., help="Agent role to spawn"),
    description: str = typer.Argument(..., help="Natural language task description"),
    project: str = typer.Option("default", "--project", "-p", help="Project tag"),
    priority: TaskPriority = typer.Option(TaskPriority.MEDIUM, "--priority"),
    backend: str = typer.Option(None, "--backend", help="tmux or e2b (defaults to config)"),
    show_diff: bool = typer.Option(True, "--diff/--no-diff", help="Print the sandbox diff"),
    merge: bool = typer.Option(False, "--merge", help="Merge changes into the base workspace"),
    keep: bool = typer.Option(False, "--keep", help="Leave the sandbox running"),
):
    """Spawn one agent, run a task in its sandbox and report the result."""
    _configure_logging()

    async def _run() -> bool:
        registry, runtime = _build(backend)
        agent = None
        try:
            agent = await runtime.spawn_agent(agent_type, project)
            console.print(
                f"[green]✓[/green] {agent.name} ready: [bold]{agent.id}[/bold] "
                f"(sandbox {agent.sandbox_id})"
            )
            task = await runtime.assign_task(agent.id, description, priority)
            with console.status(f"Running task {task.id}..."):
                task = await runtime.wait_for_task(task.id)
            _print_task(task)

            if task.status == TaskStatus.COMPLETED:
                if show_diff:
                    patch = await registry.diff(agent.sandbox_id)
                    if patch:
                        console.print("\n[bold]Diff:[/bold]")
                        console.print(patch, markup=False, highlight=False)
                    else:
                        console.print("[dim]No changes[/dim]")
                if merge:
                    await registry.merge(agent.sandbox_id)
                    console.print("[green]✓[/green] Merged into base workspace")
            return task.status == TaskStatus.COMPLETED
        finally:
            if keep and agent is not None:
                sandbox = registry.get(agent.sandbox_id)
                console.print(f"[dim]Sandbox kept at {sandbox.path if sandbox else '?'}[/dim]")
            else:
                await runtime.shutdown()
                await registry.shutdown()

    try:
        succeeded = asyncio.run(_run())
    except OrchestratorError as e:
        console.print(f"[red]✗[/red] {escape(str(e))}")
        raise typer.Exit(1) from e
    if not succeeded:
        raise typer.Exit(1)


@app.command("broadcast")
def broadcast(
    description: str = typer.Argument(..., help="Natural language task description"),
    agent_types: list[AgentType] = typer.Option(
        ..., "--agent", "-a", help="Agent role to spawn (repeatable)"
    ),
    project: str = typer.Option("default", "--project", "-p", help="Project tag"),
    priority: TaskPriority = typer.Option(TaskPriority.MEDIUM, "--priority"),
    backend: str = typer.Option(None, "--backend", help="tmux or e2b (defaults to config)"),
):
    """Spawn several agents and let the best match take the task."""
    _configure_logging()

    async def _run() -> bool:
        registry, runtime = _build(backend)
        try:
            for agent_type in agent_types:
                agent = await runtime.spawn_agent(agent_type, project)
                console.print(f"[green]✓[/green] {agent.name} ready: {agent.id}")

            task = await runtime.broadcast_task(description, priority)
            chosen = runtime.get_agent(task.assigned_to)
            console.print(
                f"Task {task.id} routed to [bold]{chosen.name if chosen else task.assigned_to}[/bold]"
            )
            with console.status("Running task..."):
                task = await runtime.wait_for_task(task.id)
            _print_task(task)
            return task.status == TaskStatus.COMPLETED
        finally:
            await runtime.shutdown()
            await registry.shutdown()

    try:
        succeeded = asyncio.run(_run())
    except OrchestratorError as e:
        console.print(f"[red]✗[/red] {escape(str(e))}")
        raise typer.Exit(1) from e
    if not succeeded:
        raise typer.Exit(1)


@app.command("cleanup")
def cleanup(
    backend: str = typer.Option(None, "--backend", help="tmux or e2b (defaults to config)"),
):
    """Remove sandboxes left behind by earlier runs."""
    _configure_logging()

    async def _run() -> None:
        registry = SandboxRegistry(get_backend(backend, settings=settings), settings=settings)
        await registry.cleanup_orphans()
        await registry.shutdown()

    asyncio.run(_run())
    console.print("[green]✓[/green] Orphaned sandboxes cleaned up")


if __name__ == "__main__":
    app()
