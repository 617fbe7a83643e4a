"""Command implementations for CLI."""

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn

from pveshape.agent.config import ConfigManager
from pveshape.agent.engine import PlannedAction, StateEngine
from pveshape.agent.main import build_engine, run_agent
from pveshape.errors import PveshapeError


console = Console()

T = TypeVar("T")

ACTION_STYLES = {
    "create": "green",
    "update": "yellow",
    "replace": "magenta",
    "delete": "red",
    "error": "bold red",
    "invalid": "red",
    "none": "dim",
}


def _with_engine(config_dir: Path, action: Callable[[StateEngine], Awaitable[T]]) -> T:
    """Run an engine action, closing the API client afterwards."""
    async def runner():
        engine = await build_engine(config_dir)
        try:
            return await action(engine)
        finally:
            await engine.provider_registry.close()

    return asyncio.run(runner())


def _run_action(description: str, thunk: Callable[[], T], quiet: bool = False) -> T:
    """Helper to run an action with a progress spinner."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        disable=quiet,
    ) as progress:
        task = progress.add_task(description, total=None)
        result = thunk()
        progress.update(task, completed=True)
    return result


def _styled(action: str) -> str:
    style = ACTION_STYLES.get(action, "white")
    return f"[{style}]{action}[/{style}]"


def reconcile_guests(config_dir: Path, quiet: bool = False):
    """Run one reconciliation pass and show what was done."""
    errors: Dict[str, str] = {}

    async def action(engine: StateEngine):
        results = await engine.reconcile()
        errors.update(engine.last_errors)
        return results

    results = _run_action("Reconciling guests...", lambda: _with_engine(config_dir, action), quiet=quiet)

    table = Table(title="Reconciliation")
    table.add_column("Guest", style="cyan")
    table.add_column("Action")
    table.add_column("Error", style="red", max_width=60)
    for key, result in sorted(results.items()):
        table.add_row(key, _styled(result), errors.get(key, ""))
    console.print(table)

    if errors:
        raise PveshapeError(f"{len(errors)} guest(s) failed to reconcile")


def show_plan(config_dir: Path):
    """Show what a reconciliation pass would do."""
    actions: List[PlannedAction] = _run_action(
        "Computing plan...", lambda: _with_engine(config_dir, lambda engine: engine.plan())
    )

    table = Table(title="Plan")
    table.add_column("Guest", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("ID")
    table.add_column("Action")
    table.add_column("Changes", style="dim")
    for planned in actions:
        table.add_row(
            planned.key,
            planned.kind,
            str(planned.vmid) if planned.vmid is not None else "-",
            _styled(planned.action),
            ", ".join(planned.fields),
        )
    console.print(table)

    pending = sum(1 for planned in actions if planned.action != "none")
    if pending:
        console.print(f"{pending} guest(s) to change")
    else:
        console.print("[green]✓[/green] Everything is up to date")


def show_status(config_dir: Path, refresh: bool = False):
    """Show tracked and declared guests."""
    statuses: Dict[str, Dict[str, Any]] = _with_engine(
        config_dir, lambda engine: engine.get_guest_statuses(refresh=refresh)
    )

    if not statuses:
        console.print("No guests declared or tracked")
        return

    table = Table(title="Guests")
    table.add_column("Guest", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Node")
    table.add_column("ID")
    table.add_column("Status")
    table.add_column("Desired")
    table.add_column("Address", style="dim")

    for key, info in statuses.items():
        running = info["status"] == "running"
        status = "[green]●[/green] running" if running else f"[red]○[/red] {info['status'] or 'untracked'}"
        table.add_row(
            key,
            info["kind"],
            info["node"],
            str(info["vmid"]) if info["vmid"] is not None else "-",
            status,
            info["desired_status"] or "[dim]undeclared[/dim]",
            info["ipv4_address"] or "",
        )

    console.print(table)


def validate_config(config_dir: Path):
    """Validate configuration without contacting the platform."""
    manager = ConfigManager(config_dir)
    _run_action("Validating configuration...", lambda: asyncio.run(manager.load()))

    if manager.load_errors:
        console.print("[red]✗[/red] Configuration is invalid")
        for error in manager.load_errors:
            console.print(f"  Error: {error}")
        raise PveshapeError(f"{len(manager.load_errors)} configuration error(s)")

    vms = sum(1 for spec in manager.guests.values() if spec.kind == "qemu")
    console.print("[green]✓[/green] Configuration is valid")
    console.print(f"  Templates: {len(manager.templates)}")
    console.print(f"  VMs: {vms}")
    console.print(f"  Containers: {len(manager.guests) - vms}")


def import_guest(config_dir: Path, kind: str, vmid: int):
    """Adopt an existing guest."""
    _with_engine(config_dir, lambda engine: engine.import_guest(kind, vmid))


def run_agent_command(config_dir: Optional[Path]):
    """Run the agent loop in the foreground."""
    asyncio.run(run_agent(config_dir))
