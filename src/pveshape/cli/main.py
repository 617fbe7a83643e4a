"""Main CLI implementation using Typer."""

from pathlib import Path
from typing import Optional, Callable, Any

import typer
from pydantic import ValidationError
from rich.console import Console

from pveshape.cli.commands import (
    import_guest,
    reconcile_guests,
    run_agent_command,
    show_plan,
    show_status,
    validate_config,
)
from pveshape.errors import PveshapeError
from pveshape.utils.logging import setup_logging


# Create Typer app
app = typer.Typer(
    name="pveshape",
    help="pveshape - Declarative Proxmox VE guest reconciliation",
    add_completion=False,
)

# Console for rich output
console = Console()

CONFIG_DIR_OPTION = typer.Option(
    Path("./configs"), "--config-dir", "-c", envvar="PVESHAPE_CONFIG_DIR", help="Configuration directory"
)


def _run_cli_command(handler: Callable[..., Any], config_dir: Path, **kwargs: Any):
    """Helper to run a CLI command with error handling."""
    try:
        handler(config_dir, **kwargs)
    except (PveshapeError, ValidationError, FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Declarative Proxmox VE guest reconciliation."""
    setup_logging("DEBUG" if verbose else "WARNING")


@app.command("reconcile")
def reconcile_command(
    config_dir: Path = CONFIG_DIR_OPTION,
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Hide the progress spinner"),
):
    """Run a single reconciliation pass."""
    _run_cli_command(reconcile_guests, config_dir, quiet=quiet)


@app.command("plan")
def plan_command(config_dir: Path = CONFIG_DIR_OPTION):
    """Show what a reconciliation pass would change."""
    _run_cli_command(show_plan, config_dir)


@app.command("status")
def status_command(
    config_dir: Path = CONFIG_DIR_OPTION,
    refresh: bool = typer.Option(False, "--refresh", "-r", help="Re-read guests from the platform first"),
):
    """Show declared and tracked guests."""
    _run_cli_command(show_status, config_dir, refresh=refresh)


@app.command("import")
def import_command(
    kind: str = typer.Argument(..., help="Guest kind (qemu or lxc)"),
    vmid: int = typer.Argument(..., help="Guest ID"),
    config_dir: Path = CONFIG_DIR_OPTION,
):
    """Adopt an existing guest into tracked state."""
    _run_cli_command(import_guest, config_dir, kind=kind, vmid=vmid)


@app.command("agent")
def agent_command(config_dir: Path = CONFIG_DIR_OPTION):
    """Run the reconciliation agent in the foreground."""
    try:
        run_agent_command(config_dir)
    except KeyboardInterrupt:
        console.print("\nAgent shutdown requested")
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


# Config subcommands
config_app = typer.Typer(help="Configuration commands")
app.add_typer(config_app, name="config")


@config_app.command("validate")
def config_validate_command(config_dir: Path = CONFIG_DIR_OPTION):
    """Validate configuration files."""
    _run_cli_command(validate_config, config_dir)


def main():
    """Main entry point for CLI."""
    app()
