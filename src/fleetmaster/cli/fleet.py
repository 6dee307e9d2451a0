"""Fleet lifecycle CLI commands.

This module provides ``fleet-start`` and ``fleet-shutdown``.
"""

from __future__ import annotations

from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from fleetmaster.errors import FleetError
from fleetmaster.orchestrator.fleet import (
    ReclamationReport,
    SessionPlan,
    ShutdownOptions,
    ShutdownPolicy,
)

console = Console()


def fleet_start() -> None:
    """Start the mayor and deacon sessions if they are not running."""
    from fleetmaster.main import get_app_context

    ctx = get_app_context()
    try:
        report = ctx.fleet_manager().start()
    except FleetError as e:
        console.print(f"[red]Error starting fleet:[/red] {e}")
        raise typer.Exit(code=1)

    for session in report.started:
        console.print(f"[green]Started[/green] {session}")
    for session in report.already_running:
        console.print(f"[dim]{session} already running[/dim]")


def fleet_shutdown(
    graceful: Annotated[
        bool,
        typer.Option("--graceful", "-g", help="Ask workers to hand off before killing them"),
    ] = False,
    wait: Annotated[
        Optional[int],
        typer.Option("--wait", "-w", min=0, help="Seconds to wait for handoff in graceful mode"),
    ] = None,
    all_sessions: Annotated[
        bool,
        typer.Option("--all", "-a", help="Also stop crew sessions"),
    ] = False,
    polecats_only: Annotated[
        bool,
        typer.Option("--polecats-only", help="Stop only polecat sessions"),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip the confirmation prompt"),
    ] = False,
    nuclear: Annotated[
        bool,
        typer.Option("--nuclear", help="Remove polecat worktrees even with uncommitted work"),
    ] = False,
) -> None:
    """Stop fleet sessions and clean up polecat worktrees.

    By default crew sessions are preserved. Polecats with uncommitted work
    are skipped during cleanup unless --nuclear is given.
    """
    from fleetmaster.main import get_app_context

    if all_sessions and polecats_only:
        console.print("[red]Error:[/red] --all and --polecats-only cannot be combined")
        raise typer.Exit(code=1)

    policy = ShutdownPolicy.DEFAULT
    if all_sessions:
        policy = ShutdownPolicy.ALL
    elif polecats_only:
        policy = ShutdownPolicy.POLECATS_ONLY
    options = ShutdownOptions(
        graceful=graceful,
        wait_seconds=wait,
        policy=policy,
        nuclear=nuclear,
        assume_yes=yes,
    )

    ctx = get_app_context()
    try:
        manager = ctx.fleet_manager(require_town=False)
        plan = manager.plan_shutdown(options.policy)
    except FleetError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    if not plan.to_stop:
        console.print("[dim]No fleet sessions to stop[/dim]")
        return

    _print_plan(plan)
    if not options.assume_yes and not typer.confirm("Proceed with shutdown?", default=False):
        console.print("Shutdown canceled.")
        return

    report = manager.shutdown(
        plan,
        options,
        progress=lambda message: console.print(f"[bold]{message}[/bold]"),
    )

    console.print(f"[green]Stopped {len(report.stopped)} session(s)[/green]")
    if report.wait_interrupted:
        console.print("[dim]Handoff wait skipped by operator[/dim]")
    for session in report.failed:
        console.print(f"[dim]Warning: failed to stop {session}[/dim]")
    if report.preserved:
        console.print(f"[dim]Preserved {len(report.preserved)} session(s)[/dim]")
    if report.reclamation is not None:
        _print_reclamation(report.reclamation)
    if report.failed:
        raise typer.Exit(code=1)


def _print_plan(plan: SessionPlan) -> None:
    console.print("[bold]Sessions to stop:[/bold]")
    for session in plan.to_stop:
        console.print(f"  {session}")
    if plan.preserved:
        console.print("[bold]Sessions preserved:[/bold]")
        for session in plan.preserved:
            console.print(f"  [dim]{session}[/dim]")


def _print_reclamation(report: ReclamationReport) -> None:
    for warning in report.warnings:
        console.print(f"[yellow]Warning: {warning}[/yellow]")
    console.print(f"Cleaned: {len(report.cleaned)}, Skipped: {len(report.skipped)}")
    if not report.skipped:
        return

    table = Table(title="Skipped polecats")
    table.add_column("Polecat", style="cyan")
    table.add_column("Reason")
    table.add_column("Detail")
    for skipped in report.skipped:
        table.add_row(skipped.worker, skipped.reason, skipped.summary or "")
    console.print(table)
    console.print("[dim]Commit or discard the work, or rerun with --nuclear[/dim]")
