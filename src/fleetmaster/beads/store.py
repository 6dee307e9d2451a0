"""Command-line adapter for the work-item store.

Every operation runs the store executable (``bd`` by default) as a
subprocess in a working directory, because the store is sharded per rig
and resolves its database from the directory it runs in. JSON output is
parsed into pydantic models.

Example usage:
    >>> from pathlib import Path
    >>> from fleetmaster.beads.store import BeadStore
    >>> from fleetmaster.config import BeadsConfig
    >>>
    >>> store = BeadStore(BeadsConfig())
    >>> bead = store.show("gt-abc", cwd=Path("/town/gastown"))
    >>> store.update_status("gt-abc", "hooked", "gastown/polecats/ace", cwd=Path("/town/gastown"))
"""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any

from fleetmaster.beads.models import Bead, set_description_field
from fleetmaster.config import BeadsConfig
from fleetmaster.errors import StoreError
from fleetmaster.logging import get_logger

# Keys under which instantiation commands report the new root, in order of preference
_ROOT_ID_KEYS = ("new_epic_id", "root_id", "id")


def parse_root_id(output: str, keys: tuple[str, ...] = _ROOT_ID_KEYS) -> str | None:
    """Extract a root identifier from a JSON command response.

    Args:
        output: Raw stdout of the command.
        keys: Candidate keys, checked in order.

    Returns:
        The first non-empty identifier found, or None if the output is
        not JSON or carries none of the keys.
    """
    try:
        payload = json.loads(output)
    except (json.JSONDecodeError, TypeError):
        return None
    if isinstance(payload, list):
        payload = payload[0] if payload else {}
    if not isinstance(payload, dict):
        return None
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class BeadStore:
    """Synchronous client for the work-item store command interface.

    Attributes:
        config: Store configuration (executable, timeout)
        logger: Structured logger instance
    """

    def __init__(self, config: BeadsConfig) -> None:
        self.config = config
        self.logger = get_logger(__name__)

    def _run(self, args: list[str], cwd: Path | None, check: bool = True) -> str:
        """Run a store command and return its stdout.

        Args:
            args: Arguments after the executable.
            cwd: Working directory selecting the store shard.
            check: Raise StoreError on non-zero exit.

        Returns:
            Captured stdout.

        Raises:
            StoreError: If the command fails, times out, or cannot be found.
        """
        cmd = [self.config.command, *args]
        self.logger.debug("store_command", command=" ".join(cmd), cwd=str(cwd) if cwd else None)

        try:
            proc = subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.config.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            self.logger.error("store_command_timeout", command=" ".join(cmd))
            raise StoreError(cmd, None, f"timed out after {self.config.timeout_seconds}s") from e
        except FileNotFoundError as e:
            self.logger.error("store_command_not_found", command=self.config.command)
            raise StoreError(cmd, None, f"{self.config.command} not found on PATH") from e

        if check and proc.returncode != 0:
            self.logger.debug(
                "store_command_failed",
                command=" ".join(cmd),
                returncode=proc.returncode,
                stderr=proc.stderr[:500],
            )
            raise StoreError(cmd, proc.returncode, proc.stderr)
        return proc.stdout

    def _run_json(self, args: list[str], cwd: Path | None) -> Any:
        output = self._run(args, cwd)
        try:
            return json.loads(output) if output.strip() else None
        except json.JSONDecodeError as e:
            raise StoreError([self.config.command, *args], 0, f"unparsable JSON output: {e}") from e

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def show(self, bead_id: str, cwd: Path | None = None) -> Bead:
        """Fetch a fresh snapshot of a work item.

        Raises:
            StoreError: If the item does not exist or the store fails.
        """
        payload = self._run_json(["--no-daemon", "show", bead_id, "--json"], cwd)
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        if not isinstance(payload, dict):
            raise StoreError(["show", bead_id], 0, f"bead {bead_id} not found")
        return Bead.model_validate(payload)

    def exists(self, bead_id: str, cwd: Path | None = None) -> bool:
        try:
            self.show(bead_id, cwd)
        except StoreError:
            return False
        return True

    def update_status(
        self, bead_id: str, status: str, assignee: str, cwd: Path | None = None
    ) -> None:
        """Set status and assignee of an item in one store call."""
        self._run(
            ["--no-daemon", "update", bead_id, f"--status={status}", f"--assignee={assignee}"],
            cwd,
        )
        self.logger.info("bead_updated", bead_id=bead_id, status=status, assignee=assignee)

    def set_description_field(
        self, bead_id: str, key: str, value: str, cwd: Path | None = None
    ) -> None:
        """Set a ``key: value`` attachment line in an item's description."""
        bead = self.show(bead_id, cwd)
        description = set_description_field(bead.description, key, value)
        self._run(["--no-daemon", "update", bead_id, f"--description={description}"], cwd)

    def set_agent_hook(self, agent_bead_id: str, bead_id: str, cwd: Path | None = None) -> None:
        """Point an agent record's hook slot at a work item."""
        self._run(["--no-daemon", "slot", "set", agent_bead_id, "hook", bead_id], cwd)

    def count_unread_mail(self, agent: str, cwd: Path | None = None) -> int:
        """Number of open messages addressed to ``agent``."""
        payload = self._run_json(
            ["list", "--type=message", f"--assignee={agent}", "--status=open", "--json"], cwd
        )
        return len(payload) if isinstance(payload, list) else 0

    # ------------------------------------------------------------------
    # Formulas
    # ------------------------------------------------------------------

    def formula_exists(self, name: str, cwd: Path | None = None) -> bool:
        try:
            self._run(["formula", "show", name], cwd)
        except StoreError:
            return False
        return True

    def cook(self, name: str, cwd: Path | None = None) -> None:
        """Materialize a formula definition (idempotent)."""
        self._run(["--no-daemon", "cook", name], cwd)

    def wisp(self, name: str, variables: dict[str, str], cwd: Path | None = None) -> str:
        """Instantiate a formula and return the new root item id.

        Raises:
            StoreError: If instantiation fails or reports no root.
        """
        args = ["--no-daemon", "mol", "wisp", name]
        for key, value in variables.items():
            args.extend(["--var", f"{key}={value}"])
        args.append("--json")
        output = self._run(args, cwd)
        root_id = parse_root_id(output)
        if root_id is None:
            raise StoreError(args, 0, "could not parse wisp root from output")
        return root_id

    def bond(self, root_id: str, target_id: str, cwd: Path | None = None) -> str | None:
        """Bond an instantiation root onto an item.

        Returns:
            The compound root reported by the store, or None if the
            response could not be parsed.
        """
        output = self._run(["--no-daemon", "mol", "bond", root_id, target_id, "--json"], cwd)
        return parse_root_id(output, keys=("root_id",))

    # ------------------------------------------------------------------
    # Convoys
    # ------------------------------------------------------------------

    def find_tracking_convoy(self, bead_id: str, cwd: Path | None = None) -> str | None:
        """Open convoy holding a tracking relation to ``bead_id``, if any."""
        payload = self._run_json(
            ["dep", "list", bead_id, "--direction=up", "--type=tracks", "--json"], cwd
        )
        for entry in payload or []:
            if not isinstance(entry, dict):
                continue
            if entry.get("issue_type") not in (None, "convoy"):
                continue
            if entry.get("status") in ("closed", "done"):
                continue
            if entry.get("id"):
                return str(entry["id"])
        return None

    def create_convoy(self, title: str, description: str, cwd: Path | None = None) -> str:
        output = self._run(
            [
                "create",
                "--type=convoy",
                f"--title={title}",
                f"--description={description}",
                "--json",
            ],
            cwd,
        )
        convoy_id = parse_root_id(output, keys=("id",))
        if convoy_id is None:
            raise StoreError(["create", "--type=convoy"], 0, "could not parse convoy id")
        return convoy_id

    def add_tracking(self, convoy_id: str, bead_id: str, cwd: Path | None = None) -> None:
        self._run(["dep", "add", convoy_id, bead_id, "--type=tracks"], cwd)
