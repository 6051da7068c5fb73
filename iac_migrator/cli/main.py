"""
Main CLI entry point for the IaC Migrator.

This module provides the command-line interface using Click with Rich
formatting. Step executors are contributed by plugins through the
``iac_migrator.executors`` entry point group.
"""

import asyncio
import sys
import tempfile
from importlib.metadata import entry_points
from pathlib import Path
from typing import Optional

import click
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
from rich.text import Text

from iac_migrator import __version__
from iac_migrator.core.exceptions import ErrorKind, MigrationError
from iac_migrator.models.config import MigrationConfig
from iac_migrator.models.state import MigrationState, MigrationStatus, MigrationStep, RunMode, RunResult
from iac_migrator.orchestrator.checkpoints import Checkpoint
from iac_migrator.orchestrator.executors import ExecutorRegistry, StepExecutor
from iac_migrator.orchestrator.orchestrator import MigrationOrchestrator
from iac_migrator.orchestrator.state_machine import MigrationStateMachine
from iac_migrator.orchestrator.state_manager import StateManager
from iac_migrator.utils.helpers import format_duration
from iac_migrator.utils.logging import setup_logging

console = Console()

EXECUTOR_ENTRY_POINT_GROUP = "iac_migrator.executors"

STATUS_STYLES = {
    MigrationStatus.INITIALIZED: "cyan",
    MigrationStatus.IN_PROGRESS: "blue",
    MigrationStatus.PAUSED: "yellow",
    MigrationStatus.COMPLETED: "green",
    MigrationStatus.FAILED: "red",
    MigrationStatus.ROLLED_BACK: "magenta",
}


def load_executors() -> ExecutorRegistry:
    """
    Collect step executors from installed plugins.

    An entry point may name an executor instance, an executor class, or a
    callable returning an iterable of executors.
    """
    registry = ExecutorRegistry()

    for entry_point in entry_points(group=EXECUTOR_ENTRY_POINT_GROUP):
        try:
            loaded = entry_point.load()
            if isinstance(loaded, type) and issubclass(loaded, StepExecutor):
                executors = [loaded()]
            elif isinstance(loaded, StepExecutor):
                executors = [loaded]
            else:
                executors = list(loaded())

            for executor in executors:
                registry.register(executor)
        except Exception as e:
            console.print(f"[yellow]⚠️  Could not load executor plugin {entry_point.name}: {e}[/yellow]")

    return registry


def confirm_step(step: MigrationStep, state: MigrationState) -> bool:
    description = MigrationStateMachine.get_step_description(step)
    return Confirm.ask(f"[cyan]Run step [bold]{step.value}[/bold]: {description}?[/cyan]", default=True)


def approve_checkpoint(checkpoint: Checkpoint, state: MigrationState, message: str) -> bool:
    console.print(Panel(message, title=f"🔍 {checkpoint.name}", border_style="yellow"))
    return Confirm.ask("[yellow]Continue the migration?[/yellow]", default=False)


def print_progress(migration_id: str, progress_data: dict):
    if progress_data["status"] == "started":
        return
    marker = "✅" if progress_data["status"] == "completed" else "❌"
    console.print(f"[dim]{marker} {progress_data['step']} ({progress_data['percentage']}%)[/dim]")


def config_option(required: bool = False):
    """The --config option shared by every command that touches the state."""
    help_text = 'Configuration file path' if required else 'Configuration file that sets the state location'
    return click.option('--config', '-c', 'config_path', type=click.Path(exists=True, dir_okay=False),
                        required=required, help=help_text)


def load_config(config_path: Optional[str]) -> Optional[MigrationConfig]:
    if config_path is None:
        return None
    try:
        return MigrationConfig.from_file(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


def resolve_state_manager(ctx: click.Context, config: Optional[MigrationConfig] = None) -> StateManager:
    """
    Locate the migration state.

    --state-dir wins over the state_dir of the configuration, which wins over
    .migration-state in the working directory.
    """
    backup_dir = config.backup_dir if config else None
    state_dir = ctx.obj.get('state_dir')
    if state_dir:
        return StateManager(state_dir, backup_dir)
    if config is not None:
        return StateManager(config.resolve_state_dir(Path.cwd()), backup_dir)
    return StateManager(Path.cwd() / ".migration-state")


def build_orchestrator(
    ctx: click.Context,
    config: Optional[MigrationConfig] = None,
    interactive: bool = False,
    state_manager: Optional[StateManager] = None
) -> MigrationOrchestrator:
    orchestrator = MigrationOrchestrator(
        config=config,
        executors=ctx.obj.get('executors') or load_executors(),
        state_manager=state_manager or resolve_state_manager(ctx, config),
        confirm_step=confirm_step if interactive else None,
        approver=approve_checkpoint if interactive else None
    )
    orchestrator.add_progress_callback(print_progress)
    return orchestrator


async def _load_or_raise(orchestrator: MigrationOrchestrator) -> MigrationState:
    state = await orchestrator.load_state()
    if state is None:
        raise MigrationError(
            "No migration state found. Run 'iac-migrator init' first.",
            kind=ErrorKind.NOT_INITIALIZED
        )
    return state


def print_run_result(result: RunResult):
    if result.dry_run_report:
        console.print(Panel(result.dry_run_report, title="Dry Run", border_style="cyan"))

    executed = ", ".join(s.value for s in result.executed_steps) or "none"
    console.print(f"[dim]Executed steps: {executed}[/dim]")

    if result.success:
        console.print("[green]✅ Migration completed[/green]")
    elif result.status == MigrationStatus.PAUSED:
        console.print(f"[yellow]⏸️  Migration paused: {result.message}[/yellow]")
        console.print("[dim]Resume with: iac-migrator resume[/dim]")
    elif result.failed_step:
        console.print(f"[red]❌ Migration failed at step {result.failed_step.value}: {result.message}[/red]")
    else:
        console.print(f"[red]❌ Migration aborted: {result.message}[/red]")


@click.group(invoke_without_command=True)
@click.option('--version', is_flag=True, help='Show version information')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.option('--state-dir', type=click.Path(file_okay=False), help='Migration state directory')
@click.pass_context
def main(ctx: click.Context, version: bool, verbose: bool, state_dir: Optional[str]):
    """
    IaC Migrator

    Migrate a deployed Serverless/CloudFormation stack to CDK, step by step,
    with resumable state, backups and rollback.
    """
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['state_dir'] = state_dir

    if version:
        console.print(f"IaC Migrator version {__version__}")
        sys.exit(0)

    setup_logging(level="DEBUG" if verbose else "WARNING")

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@main.command()
@config_option(required=True)
@click.pass_context
def init(ctx: click.Context, config_path: str):
    """Initialize a new migration from a configuration file."""
    config = load_config(config_path)

    orchestrator = build_orchestrator(ctx, config=config)
    try:
        state = asyncio.run(orchestrator.initialize())
    except MigrationError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        sys.exit(1)

    summary = Text()
    summary.append(f"Migration ID: {state.id}\n", style="bold cyan")
    summary.append(f"Stack: {config.stack_name} ({config.stage}, {config.region})\n", style="dim")
    summary.append(f"State directory: {orchestrator.state_manager.state_dir}", style="dim")
    if config.dry_run:
        summary.append("\nDry run: no mutating step will be executed", style="yellow")
    console.print(Panel(summary, title="Migration Initialized", border_style="green", padding=(1, 2)))


@main.command()
@click.option('--dry-run', is_flag=True, help='Preview the remaining steps without changing anything')
@click.option('--interactive', '-i', is_flag=True, help='Confirm each step and review checkpoints')
@config_option()
@click.pass_context
def run(ctx: click.Context, dry_run: bool, interactive: bool, config_path: Optional[str]):
    """Run the migration from its current step."""
    mode = RunMode.INTERACTIVE if interactive else RunMode.AUTOMATIC
    config = load_config(config_path)

    async def _run() -> RunResult:
        orchestrator = build_orchestrator(ctx, config=config, interactive=interactive)
        state = await _load_or_raise(orchestrator)

        if not dry_run:
            return await orchestrator.run_migration(mode)

        # Previews run on a throwaway copy so the real state is untouched
        with tempfile.TemporaryDirectory() as preview_dir:
            preview_manager = StateManager(preview_dir)
            preview = state.model_copy(
                update={"config": state.config.model_copy(update={"dry_run": True})},
                deep=True
            )
            await preview_manager.save_state(preview)
            preview_orchestrator = build_orchestrator(
                ctx, interactive=interactive, state_manager=preview_manager
            )
            return await preview_orchestrator.resume(mode)

    try:
        result = asyncio.run(_run())
    except MigrationError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        sys.exit(1)

    print_run_result(result)
    if result.status == MigrationStatus.FAILED:
        sys.exit(1)


@main.command()
@click.option('--interactive', '-i', is_flag=True, help='Confirm each step and review checkpoints')
@config_option()
@click.pass_context
def resume(ctx: click.Context, interactive: bool, config_path: Optional[str]):
    """Resume a paused, failed or rolled back migration."""
    orchestrator = build_orchestrator(ctx, config=load_config(config_path), interactive=interactive)
    mode = RunMode.INTERACTIVE if interactive else RunMode.AUTOMATIC

    try:
        result = asyncio.run(orchestrator.resume(mode))
    except MigrationError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        sys.exit(1)

    print_run_result(result)
    if result.status == MigrationStatus.FAILED:
        sys.exit(1)


@main.command()
@click.argument('step', type=click.Choice([s.value for s in MigrationStep]))
@click.option('--force', is_flag=True, help='Force rollback without confirmation')
@config_option()
@click.pass_context
def rollback(ctx: click.Context, step: str, force: bool, config_path: Optional[str]):
    """Roll the migration back to STEP."""
    if not force:
        if not click.confirm(f"Are you sure you want to roll back to step {step}?"):
            console.print("[red]Rollback cancelled[/red]")
            return

    config = load_config(config_path)

    async def _rollback():
        orchestrator = build_orchestrator(ctx, config=config)
        await _load_or_raise(orchestrator)
        return await orchestrator.rollback(MigrationStep(step))

    try:
        result = asyncio.run(_rollback())
    except MigrationError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        sys.exit(1)

    if not result.success:
        console.print(f"[red]❌ Rollback failed: {result.error}[/red]")
        sys.exit(1)

    console.print(f"[green]✅ Rolled back to step {result.step.value}[/green]")
    if result.restored_backup:
        console.print(f"[dim]Restored backup: {result.restored_backup}[/dim]")


@main.command()
@config_option()
@click.pass_context
def verify(ctx: click.Context, config_path: Optional[str]):
    """Verify the migration with the registered probes."""
    config = load_config(config_path)

    async def _verify():
        orchestrator = build_orchestrator(ctx, config=config)
        await _load_or_raise(orchestrator)
        return await orchestrator.verify()

    try:
        result = asyncio.run(_verify())
    except MigrationError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        sys.exit(1)

    table = Table(title="Verification", box=box.ROUNDED, show_header=True, header_style="bold magenta")
    table.add_column("Check", style="cyan")
    table.add_column("Result", justify="center")
    table.add_column("Detail", style="dim")
    for name, passed in result.checks.items():
        table.add_row(name, "✅" if passed else "❌", result.details.get(name, ""))
    console.print(table)

    if not result.success:
        console.print(f"[red]{len(result.errors)} checks failed[/red]")
        sys.exit(1)
    console.print("[green]All checks passed[/green]")


@main.command()
@config_option()
@click.pass_context
def status(ctx: click.Context, config_path: Optional[str]):
    """Show the status of the current migration."""
    orchestrator = build_orchestrator(ctx, config=load_config(config_path))

    try:
        state = asyncio.run(orchestrator.load_state())
    except MigrationError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        if e.is_state_corrupt:
            console.print("[dim]List backups with: iac-migrator backups[/dim]")
        sys.exit(1)

    if state is None:
        console.print("[yellow]No migration state found[/yellow]")
        return

    progress = orchestrator.get_progress()
    style = STATUS_STYLES.get(state.status, "white")

    info = Text()
    info.append(f"Migration ID: {state.id}\n", style="bold cyan")
    info.append("Status: ")
    info.append(f"{state.status.value}\n", style=f"bold {style}")
    info.append(f"Current step: {state.current_step.value}\n")
    info.append(
        f"Progress: {progress['percentage']}% "
        f"({progress['completed_steps']}/{progress['total_steps']} steps)\n"
    )
    info.append(f"Started: {state.started_at:%Y-%m-%d %H:%M:%S} UTC\n", style="dim")
    info.append(f"Updated: {state.updated_at:%Y-%m-%d %H:%M:%S} UTC", style="dim")
    if state.duration is not None:
        info.append(f"\nDuration: {format_duration(state.duration)}", style="dim")
    if state.error:
        info.append(f"\nLast error: {state.error}", style="red")
    console.print(Panel(info, title=f"Stack {state.config.stack_name}", border_style=style, padding=(1, 2)))

    if ctx.obj.get('verbose', False) and state.failed_steps:
        table = Table(title="Failed Steps", box=box.ROUNDED, header_style="bold red")
        table.add_column("Step", style="cyan")
        table.add_column("Time", style="dim")
        table.add_column("Error")
        for failure in state.failed_steps:
            table.add_row(failure.step.value, f"{failure.timestamp:%Y-%m-%d %H:%M:%S}", failure.error)
        console.print(table)


@main.command()
@click.option('--prune', type=click.IntRange(min=0), help='Keep only the newest N backups')
@config_option()
@click.pass_context
def backups(ctx: click.Context, prune: Optional[int], config_path: Optional[str]):
    """List state backups."""
    orchestrator = build_orchestrator(ctx, config=load_config(config_path))
    state_manager = orchestrator.state_manager

    if prune is not None:
        removed = asyncio.run(state_manager.cleanup_old_backups(prune))
        console.print(f"[green]Removed {removed} backups[/green]")

    backup_list = asyncio.run(state_manager.list_backups())
    if not backup_list:
        console.print("[yellow]No state backups found[/yellow]")
        return

    table = Table(title="💾 State Backups", box=box.ROUNDED, header_style="bold magenta")
    table.add_column("Identifier", style="cyan", no_wrap=True)
    table.add_column("Created", style="blue")
    table.add_column("Size", style="yellow", justify="right")
    for backup in backup_list:
        size_kb = f"{Path(backup.path).stat().st_size / 1024:.1f} KB"
        table.add_row(backup.identifier, f"{backup.created_at:%Y-%m-%d %H:%M:%S}", size_kb)
    console.print(table)


if __name__ == "__main__":
    main()
