"""Exception hierarchy for Fleetmaster.

Errors are grouped by how the caller must treat them:

- ``PreconditionError``: fatal, raised before any mutation.
- ``ResolutionError``: fatal unless a defined fallback exists (a dead
  polecat is re-provisioned by the dispatcher).
- ``ProvisioningError``: fatal, surfaced verbatim.
- ``StoreError`` / ``SessionError``: failures of the external collaborators.

Best-effort failures never surface as exceptions from the dispatcher; they
are folded into the result record instead.
"""

from __future__ import annotations


class FleetError(Exception):
    """Base class for all Fleetmaster errors."""


class WorkspaceNotFound(FleetError):
    """Raised when no fleet root can be located."""


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


class PreconditionError(FleetError):
    """A guard check failed before anything was mutated."""


class ActorNotAllowed(PreconditionError):
    """The calling worker may not dispatch work.

    Attributes:
        actor: Identity of the refused caller.
    """

    def __init__(self, actor: str):
        self.actor = actor
        super().__init__(f"{actor} cannot dispatch work (polecats hand off with 'done')")


class InvalidReference(PreconditionError):
    """The first argument is neither a bead nor a formula.

    Attributes:
        reference: The rejected argument.
    """

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"'{reference}' is not a valid bead or formula")


class FormulaNotFound(PreconditionError):
    """A named formula does not exist in the store."""

    def __init__(self, formula: str):
        self.formula = formula
        super().__init__(f"formula '{formula}' not found")


class ConflictingOptions(PreconditionError):
    """Two options were given that cannot be combined."""


class AlreadyPinned(PreconditionError):
    """The bead is pinned and force was not given.

    Attributes:
        bead_id: The pinned bead.
        assignee: Current assignee, or "(unknown)".
    """

    def __init__(self, bead_id: str, assignee: str | None):
        self.bead_id = bead_id
        self.assignee = assignee or "(unknown)"
        super().__init__(
            f"bead {bead_id} is already pinned to {self.assignee} (use --force to re-dispatch)"
        )


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class ResolutionError(FleetError):
    """A target string could not be turned into a worker."""


class NotSelfResolvable(ResolutionError):
    """The caller has no recoverable worker identity."""

    def __init__(self, detail: str = ""):
        msg = "cannot resolve self: no worker identity in environment or session"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class TargetNotFound(ResolutionError):
    """The target does not name any known worker or rig.

    Attributes:
        target: The unresolvable target string.
    """

    def __init__(self, target: str, detail: str = ""):
        self.target = target
        msg = f"target '{target}' not found"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class DeadWorker(ResolutionError):
    """An ephemeral worker exists by name but has no live session.

    Attributes:
        rig: Rig owning the worker.
        name: Worker name within the rig.
    """

    def __init__(self, rig: str, name: str):
        self.rig = rig
        self.name = name
        super().__init__(f"polecat {rig}/{name} has no active session")


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


class ProvisioningError(FleetError):
    """A worker could not be provisioned."""


class WorkspaceUnavailable(ProvisioningError):
    """No capacity or no usable path for a new working copy."""


class UnreadMailBlocked(ProvisioningError):
    """Reusing the worker is blocked by unacknowledged inbound messages.

    Attributes:
        agent: Identity of the worker with unread mail.
        count: Number of unread messages.
    """

    def __init__(self, agent: str, count: int):
        self.agent = agent
        self.count = count
        super().__init__(f"{agent} has {count} unread message(s) (use --force to override)")


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------


class StoreError(FleetError):
    """A work-item store command failed.

    Attributes:
        command: The argument vector that was run.
        returncode: Process exit status (None if it never ran).
        stderr: Captured error output.
    """

    def __init__(self, command: list[str], returncode: int | None, stderr: str):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = self.stderr or f"exit status {returncode}"
        super().__init__(f"{' '.join(command[:3])}: {detail}")


class SessionError(FleetError):
    """A multiplexer command failed."""
