"""CLI commands for Fleetmaster."""
