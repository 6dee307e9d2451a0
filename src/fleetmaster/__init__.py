"""Fleetmaster - control plane for a fleet of interactive agent workers.

This package dispatches work items ("beads") to agent worker sessions,
provisions ephemeral workers in isolated git worktrees, and starts and
tears down the fleet without discarding uncommitted work.
"""

__version__ = "0.1.0"
