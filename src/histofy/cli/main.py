"""Main CLI interface for histofy."""

from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from histofy._logging import configure_logging
from histofy.core.errors import HistofyError, RollbackFailed, ValidationError
from histofy.core.events import MigrationEvent
from histofy.core.service import MigrationService
from histofy.models.conflict import ResolutionPolicy
from histofy.models.events import ProgressEvent
from histofy.models.execution import (
    ExecutionStrategy,
    MigrationOptions,
    RollbackOptions,
)
from histofy.models.plan import MigrationPlan

console = Console()


def _print_error(error: HistofyError) -> None:
    console.print(f"[red]Error: {error.message}[/red]")
    suggestion = getattr(error, "suggestion", None)
    if suggestion:
        console.print(f"[dim]Hint: {suggestion}[/dim]")


def _print_event(event: MigrationEvent) -> None:
    if isinstance(event, ProgressEvent):
        console.print(f"[dim]{event.percent_complete:5.1f}%[/dim] {event.message}")


def _print_plan(plan: MigrationPlan, strategy: ExecutionStrategy) -> None:
    table = Table(title=f"Migration plan for {plan.ref} ({strategy.value})")
    table.add_column("Commit", style="cyan", no_wrap=True)
    table.add_column("Subject", style="green")
    table.add_column("Original Date", style="magenta")
    table.add_column("New Date", style="blue")
    table.add_column("Author", style="yellow")

    for entry in plan.entries:
        table.add_row(
            entry.original_hash[:8],
            entry.subject[:50],
            entry.original_date.strftime("%Y-%m-%d %H:%M"),
            entry.new_date.strftime("%Y-%m-%d %H:%M"),
            entry.author_name,
        )

    console.print(table)


def _service(verbose: bool = False, listen: bool = False) -> MigrationService:
    configure_logging(verbose)
    project_root = _find_project_root()
    if not project_root:
        raise click.Abort()
    listeners = [_print_event] if listen else []
    try:
        return MigrationService(project_root, listeners=listeners)
    except ValidationError as e:
        _print_error(e)
        raise click.Abort() from e


@click.group()
@click.version_option(package_name="histofy")
def main():
    """histofy - Transactional git history migration."""


@main.command()
@click.argument("commit_range")
@click.option("--to-date", required=True, help="First day of the new window (YYYY-MM-DD)")
@click.option("--spread", default=1, show_default=True, help="Days to spread commits over")
@click.option("--start-time", default="09:00", show_default=True, help="Time of the first commit (HH:MM)")
@click.option("--execute", is_flag=True, help="Rewrite history (default is a dry run)")
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in ExecutionStrategy]),
    help="Force an execution strategy",
)
@click.option(
    "--on-conflict",
    type=click.Choice([p.value for p in ResolutionPolicy if p != ResolutionPolicy.MANUAL]),
    default=ResolutionPolicy.ABORT.value,
    show_default=True,
    help="How to settle replay conflicts",
)
@click.option("--continue-on-error", is_flag=True, help="Keep going when a commit fails")
@click.option("--no-backup", is_flag=True, help="Do not create a backup ref")
@click.option("--timeout", type=float, help="Abort after this many seconds")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def migrate(
    commit_range: str,
    to_date: str,
    spread: int,
    start_time: str,
    execute: bool,
    strategy: Optional[str],
    on_conflict: str,
    continue_on_error: bool,
    no_backup: bool,
    timeout: Optional[float],
    verbose: bool,
):
    """Move the commits in COMMIT_RANGE to new dates."""
    service = _service(verbose, listen=execute)
    options = MigrationOptions(
        auto_resolve_strategy=ResolutionPolicy(on_conflict),
        create_backup=not no_backup,
        continue_on_error=continue_on_error,
        strategy=ExecutionStrategy(strategy) if strategy else None,
        timeout=timeout,
    )

    try:
        plan = service.plan_migration(commit_range, to_date, spread, start_time)
        preview = service.preview_migration(plan, options)
    except HistofyError as e:
        _print_error(e)
        raise click.Abort() from e

    _print_plan(plan, preview.strategy)
    for warning in preview.warnings:
        color = "yellow" if warning.level.value == "warning" else "blue"
        console.print(f"[{color}]• {warning.message}[/{color}]")

    if not execute:
        console.print("[dim]Dry run only. Re-run with --execute to rewrite history.[/dim]")
        return

    try:
        result = service.execute_migration(plan, options)
    except RollbackFailed as e:
        console.print(f"[bold red]Rollback failed: {e.message}[/bold red]")
        console.print("[red]Inspect the repository manually before continuing.[/red]")
        raise click.Abort() from e
    except HistofyError as e:
        _print_error(e)
        raise click.Abort() from e

    if not result.success:
        console.print(f"[red]Migration failed: {result.error}[/red]")
        if result.rolled_back:
            console.print(f"[yellow]Repository restored from {result.backup_ref}[/yellow]")
        raise click.Abort()

    console.print(
        f"[green]✅ Migrated {result.migrated_count}/{result.total_count} commit(s) "
        f"with {result.strategy.value}[/green]"
    )
    if result.backup_ref:
        console.print(f"[dim]Backup kept at {result.backup_ref}[/dim]")


@main.command()
@click.argument("backup_ref")
@click.option("--delete-backup", is_flag=True, help="Delete the backup after restoring")
@click.option("--force", is_flag=True, help="Discard uncommitted changes")
@click.option(
    "--preserve-working-state", is_flag=True, help="Stash uncommitted changes and re-apply them"
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def rollback(
    backup_ref: str,
    delete_backup: bool,
    force: bool,
    preserve_working_state: bool,
    verbose: bool,
):
    """Restore the current branch from BACKUP_REF."""
    service = _service(verbose)
    options = RollbackOptions(
        delete_backup=delete_backup,
        force=force,
        preserve_working_state=preserve_working_state,
    )

    try:
        result = service.rollback_to_backup(backup_ref, options)
    except HistofyError as e:
        _print_error(e)
        raise click.Abort() from e

    if result.changed:
        console.print(
            f"[green]✅ Restored {result.restored_ref} to {result.head[:8]}[/green]"
        )
    else:
        console.print(f"[dim]{result.restored_ref} already matches {backup_ref}[/dim]")
    if result.stashed:
        console.print("[dim]Local changes were stashed and re-applied[/dim]")
    if result.backup_deleted:
        console.print(f"[dim]Deleted {backup_ref}[/dim]")


@main.command()
def backups():
    """List migration backups."""
    service = _service()
    items = service.list_backups()
    if not items:
        console.print("[yellow]No migration backups found[/yellow]")
        return

    table = Table(title="Migration Backups")
    table.add_column("Backup", style="cyan", no_wrap=True)
    table.add_column("Commit", style="green")
    table.add_column("Created", style="magenta")

    for backup in items:
        created = backup.created_at.strftime("%Y-%m-%d %H:%M") if backup.created_at else "-"
        table.add_row(backup.name, backup.head[:8], created)

    console.print(table)


def _find_project_root() -> Optional[Path]:
    """Find the project root directory."""
    current_dir = Path.cwd()

    for parent in [current_dir] + list(current_dir.parents):
        if (parent / ".git").exists():
            return parent

    console.print("[red]Error: Not in a git repository[/red]")
    return None


if __name__ == "__main__":
    main()
