"""Main CLI entry point for Fleetmaster.

This module provides the main Typer application with the dispatch and
fleet lifecycle commands.

Usage:
    fleetmaster dispatch gt-abc gastown
    fleetmaster dispatch mol-review gastown/crew/max --on gt-abc
    fleetmaster fleet-start
    fleetmaster fleet-shutdown --graceful --wait 60
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional
from uuid import uuid4

import typer
from rich.console import Console

from fleetmaster.beads.store import BeadStore
from fleetmaster.cli import dispatch as dispatch_cli
from fleetmaster.cli import fleet as fleet_cli
from fleetmaster.config import FleetmasterConfig, load_config
from fleetmaster.errors import WorkspaceNotFound
from fleetmaster.logging import set_correlation_id, setup_logging
from fleetmaster.orchestrator.dispatcher import Dispatcher
from fleetmaster.orchestrator.fleet import FleetManager
from fleetmaster.rigs import RigRegistry
from fleetmaster.sessions.tmux import TmuxClient
from fleetmaster.workspace import find_town_root

app = typer.Typer(
    name="fleetmaster",
    help="Fleetmaster: dispatch work to a fleet of coding agents",
    no_args_is_help=True,
)

app.command(name="dispatch")(dispatch_cli.dispatch)
app.command(name="fleet-start")(fleet_cli.fleet_start)
app.command(name="fleet-shutdown")(fleet_cli.fleet_shutdown)

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Collaborators are built on first use so that commands which do not
    need a fleet root (or a store) never look for one.

    Attributes:
        config: Loaded Fleetmaster configuration
        tmux: Multiplexer client
        store: Work-item store adapter
    """

    def __init__(self, config: FleetmasterConfig):
        self.config = config
        self.tmux = TmuxClient(config.sessions)
        self.store = BeadStore(config.beads)
        self._town_root: Path | None = None
        self._rigs: RigRegistry | None = None

    @property
    def town_root(self) -> Path:
        """Fleet root. Raises WorkspaceNotFound outside a fleet."""
        if self._town_root is None:
            self._town_root = find_town_root(fleet=self.config.fleet)
        return self._town_root

    @property
    def rigs(self) -> RigRegistry:
        if self._rigs is None:
            self._rigs = RigRegistry(self.town_root, town_prefix=self.config.beads.town_prefix)
        return self._rigs

    def dispatcher(self) -> Dispatcher:
        return Dispatcher(self.config, self.town_root, self.store, self.tmux, self.rigs)

    def fleet_manager(self, require_town: bool = True) -> FleetManager:
        """Fleet manager; without ``require_town`` a missing fleet root disables cleanup."""
        try:
            town_root = self.town_root
        except WorkspaceNotFound:
            if require_town:
                raise
            return FleetManager(self.config, self.tmux)
        return FleetManager(self.config, self.tmux, town_root=town_root, rigs=self.rigs)


# Global context holder
_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: FleetmasterConfig) -> AppContext:
    """Initialize the global application context."""
    global _app_context
    _app_context = AppContext(config)
    return _app_context


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure global options and initialize application context.

    Args:
        config_path: Optional path to TOML configuration file
        verbose: Enable debug-level logging
    """
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        config.logging.level = "DEBUG"
    setup_logging(config.logging)
    set_correlation_id(uuid4().hex)

    initialize_context(config)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
