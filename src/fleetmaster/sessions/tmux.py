"""tmux client for worker sessions.

Worker processes run inside detached tmux sessions. The control plane only
observes and signals them: it lists and probes sessions, starts new ones,
injects text, sends interrupts, and kills them.
"""

from __future__ import annotations

import subprocess
import time
from collections.abc import Callable, Mapping
from pathlib import Path

from fleetmaster.config import SessionConfig
from fleetmaster.errors import SessionError
from fleetmaster.logging import get_logger

# stderr fragments meaning "no tmux server", which is an empty fleet, not an error
_NO_SERVER_MARKERS = ("no server running", "error connecting", "no such file or directory")


class TmuxClient:
    """Synchronous wrapper around the tmux CLI.

    Attributes:
        config: Session configuration (executable, readiness probing)
        logger: Structured logger instance
    """

    def __init__(
        self,
        config: SessionConfig,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.logger = get_logger(__name__)
        self._sleep = sleep
        self._clock = clock

    def _run(self, *args: str) -> subprocess.CompletedProcess[str]:
        cmd = [self.config.command, *args]
        try:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=15)
        except FileNotFoundError as e:
            raise SessionError(f"{self.config.command} not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise SessionError(f"{' '.join(cmd[:2])} timed out") from e

    def _check(self, *args: str) -> str:
        proc = self._run(*args)
        if proc.returncode != 0:
            self.logger.debug(
                "tmux_command_failed",
                args=list(args),
                returncode=proc.returncode,
                stderr=proc.stderr.strip()[:300],
            )
            raise SessionError(f"tmux {args[0]}: {proc.stderr.strip() or proc.returncode}")
        return proc.stdout

    def has_session(self, name: str) -> bool:
        try:
            return self._run("has-session", "-t", f"={name}").returncode == 0
        except SessionError:
            return False

    def list_sessions(self) -> list[str]:
        """Names of all live sessions (empty when no server is running)."""
        proc = self._run("list-sessions", "-F", "#{session_name}")
        if proc.returncode != 0:
            stderr = proc.stderr.lower()
            if any(marker in stderr for marker in _NO_SERVER_MARKERS):
                return []
            raise SessionError(f"tmux list-sessions: {proc.stderr.strip()}")
        return [line for line in proc.stdout.splitlines() if line.strip()]

    def new_session(
        self,
        name: str,
        cwd: Path,
        command: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Start a detached session running ``command`` in ``cwd``."""
        args = ["new-session", "-d", "-s", name, "-c", str(cwd)]
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        if command:
            args.append(command)
        self._check(*args)
        self.logger.info("session_started", session=name, cwd=str(cwd))

    def kill_session(self, name: str) -> None:
        self._check("kill-session", "-t", f"={name}")
        self.logger.info("session_killed", session=name)

    def send_interrupt(self, name: str) -> None:
        """Send Escape, interrupting whatever the agent is doing."""
        self._check("send-keys", "-t", name, "Escape")

    def send_text(self, name: str, text: str) -> None:
        """Type ``text`` literally into the session, then submit it."""
        self._check("send-keys", "-t", name, "-l", "--", text)
        self._check("send-keys", "-t", name, "Enter")

    def pane_for_session(self, name: str) -> str | None:
        try:
            pane = self._check("display-message", "-p", "-t", name, "#{pane_id}").strip()
        except SessionError:
            return None
        return pane or None

    def current_command(self, name: str) -> str | None:
        try:
            return self._check(
                "display-message", "-p", "-t", name, "#{pane_current_command}"
            ).strip() or None
        except SessionError:
            return None

    def current_session(self) -> str | None:
        """Name of the session this process runs in, if any."""
        try:
            return self._check("display-message", "-p", "#S").strip() or None
        except SessionError:
            return None

    def wait_until_ready(self, name: str, timeout: float | None = None) -> bool:
        """Poll until the session's pane runs something other than a shell.

        Args:
            name: Session to probe.
            timeout: Upper bound in seconds (default: configured timeout).

        Returns:
            True once the agent runtime is in the foreground, False on timeout.
        """
        limit = self.config.ready_timeout_seconds if timeout is None else timeout
        deadline = self._clock() + limit
        shells = set(self.config.shell_commands)

        while True:
            command = self.current_command(name)
            if command and command not in shells:
                self.logger.debug("session_ready", session=name, command=command)
                return True
            if self._clock() >= deadline:
                self.logger.warning("session_ready_timeout", session=name, timeout=limit)
                return False
            self._sleep(self.config.ready_poll_interval)
