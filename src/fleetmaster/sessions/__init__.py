"""Terminal multiplexer adapter hosting worker sessions."""

from fleetmaster.sessions.launcher import SessionLauncher
from fleetmaster.sessions.tmux import TmuxClient

__all__ = ["SessionLauncher", "TmuxClient"]
