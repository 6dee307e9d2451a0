"""Dispatch CLI command.

This module provides the ``dispatch`` command, which hooks a bead (or a
formula) onto a worker and starts it.
"""

from __future__ import annotations

from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from fleetmaster.errors import FleetError
from fleetmaster.orchestrator.dispatcher import BatchResult, DispatchOptions, DispatchResult

console = Console()


def parse_variables(values: list[str] | None) -> dict[str, str]:
    """Parse repeated ``--var key=value`` options.

    Raises:
        typer.BadParameter: If a value has no ``=`` or an empty key.
    """
    variables: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected key=value, got '{item}'", param_hint="--var")
        variables[key.strip()] = value
    return variables


def dispatch(
    args: Annotated[
        list[str],
        typer.Argument(help="Bead or formula, then an optional target; or beads then a rig"),
    ],
    on: Annotated[
        Optional[str],
        typer.Option("--on", help="Expand the formula onto this bead and dispatch the compound"),
    ] = None,
    var: Annotated[
        Optional[list[str]],
        typer.Option("--var", help="Formula variable key=value (repeatable, standalone formulas)"),
    ] = None,
    work_args: Annotated[
        Optional[str],
        typer.Option("--args", "-a", help="Natural-language instructions stored on the bead"),
    ] = None,
    subject: Annotated[
        Optional[str],
        typer.Option("--subject", "-s", help="Subject line for the start prompt"),
    ] = None,
    message: Annotated[
        Optional[str],
        typer.Option("--message", "-m", help="Context shown to the worker"),
    ] = None,
    create: Annotated[
        bool,
        typer.Option("--create", help="Create a missing named polecat or dog"),
    ] = False,
    force: Annotated[
        bool,
        typer.Option("--force", help="Re-dispatch pinned beads and ignore unread mail"),
    ] = False,
    account: Annotated[
        Optional[str],
        typer.Option("--account", help="Account handle for spawned workers"),
    ] = None,
    agent: Annotated[
        Optional[str],
        typer.Option("--agent", help="Runtime alias for spawned workers (claude, gemini, codex)"),
    ] = None,
    no_convoy: Annotated[
        bool,
        typer.Option("--no-convoy", help="Do not create or look up a tracking convoy"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Show what would happen without changing anything"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Print the result as JSON"),
    ] = False,
) -> None:
    """Hook work onto a worker and start it.

    Targets: omit or '.' for yourself, a rig name to spawn a fresh polecat,
    'deacon/dogs[/name]' for a dog, or a worker address such as
    'gastown/crew/max'. Several beads followed by a rig spawn one polecat each.
    """
    from fleetmaster.main import get_app_context

    ctx = get_app_context()
    options = DispatchOptions(
        create=create,
        force=force,
        account=account,
        agent=agent,
        no_convoy=no_convoy,
        dry_run=dry_run,
        json_output=json_output,
        subject=subject,
        message=message,
        args=work_args,
        on_bead=on,
        variables=parse_variables(var),
    )

    try:
        outcome = ctx.dispatcher().dispatch(list(args), options)
    except FleetError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    if isinstance(outcome, BatchResult):
        _print_batch(outcome, json_output)
        if outcome.failures:
            raise typer.Exit(code=1)
        return

    if json_output:
        console.print_json(data=outcome.to_record())
    else:
        _print_result(outcome)


def _print_warnings(result: DispatchResult) -> None:
    for warning in result.warnings:
        console.print(f"[dim]Warning: {warning}[/dim]")


def _print_result(result: DispatchResult) -> None:
    if result.plan:
        console.print(f"[bold]Dry run:[/bold] {result.bead_id} -> {result.target}")
        for line in result.plan:
            console.print(f"  {line}")
        return

    lines = [
        f"[bold]Bead:[/bold] {result.bead_id}",
        f"[bold]Target:[/bold] {result.target}",
    ]
    if result.original_bead_id:
        lines.append(f"[bold]Original bead:[/bold] {result.original_bead_id}")
    if result.formula:
        lines.append(f"[bold]Formula:[/bold] {result.formula}")
    if result.convoy_id:
        lines.append(f"[bold]Convoy:[/bold] {result.convoy_id}")
    if result.polecat_name:
        lines.append(f"[bold]Spawned polecat:[/bold] {result.polecat_name}")
    lines.append(
        "[bold]Notified:[/bold] "
        + ("yes" if result.nudge_sent else "no (worker will find the hook on next start)")
    )
    console.print(
        Panel("\n".join(lines), title=f"Work {result.action.value}", border_style="green")
    )
    _print_warnings(result)


def _print_batch(batch: BatchResult, json_output: bool) -> None:
    if json_output:
        console.print_json(data=batch.to_record())
        return

    table = Table(title=f"Batch dispatch to {batch.rig}")
    table.add_column("Bead", style="cyan")
    table.add_column("Result")
    table.add_column("Detail")
    for result in batch.results:
        table.add_row(result.bead_id, f"[green]{result.action.value}[/green]", result.target)
    for failure in batch.failures:
        table.add_row(failure.bead_id, "[red]failed[/red]", failure.error)
    console.print(table)
    for result in batch.results:
        _print_warnings(result)
    console.print(
        f"[bold]Dispatched:[/bold] {len(batch.results)}  [bold]Failed:[/bold] {len(batch.failures)}"
    )
