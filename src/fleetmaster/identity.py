"""Typed worker identities and session names.

Worker identities are path-like strings (``mayor``, ``gastown/witness``,
``gastown/crew/joe``, ``gastown/polecats/ace``, ``deacon/dogs/alpha``) and
session names follow the ``<prefix>-<rig>-<role>[-<name>]`` convention with
two reserved singleton names. Both are parsed into frozen records here, at
the boundary, so no other module inspects the raw strings.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from fleetmaster.config import FleetConfig


class AgentRole(str, Enum):
    """Roles a fleet worker can play.

    Values:
        MAYOR: Singleton coordinator.
        DEACON: Singleton supervisor; owns the dog pool.
        WITNESS: Per-rig monitor.
        REFINERY: Per-rig merge monitor.
        CREW: Persistent, user-owned named worker.
        POLECAT: Ephemeral worker bound to one git worktree.
        DOG: Pooled worker owned by the deacon.
    """

    MAYOR = "mayor"
    DEACON = "deacon"
    WITNESS = "witness"
    REFINERY = "refinery"
    CREW = "crew"
    POLECAT = "polecat"
    DOG = "dog"


SINGLETON_ROLES = frozenset({AgentRole.MAYOR, AgentRole.DEACON})
MONITOR_ROLES = frozenset({AgentRole.WITNESS, AgentRole.REFINERY})


@dataclass(frozen=True)
class AgentIdentity:
    """A concrete worker address.

    Attributes:
        role: Role of the worker.
        rig: Owning rig (None for singletons and dogs).
        name: Worker name (crew, polecats and dogs only).
    """

    role: AgentRole
    rig: str | None = None
    name: str | None = None

    @classmethod
    def parse(cls, value: str) -> AgentIdentity:
        """Parse a worker address.

        Args:
            value: Address such as ``gastown/polecats/ace`` or ``mayor/``.

        Returns:
            The parsed identity.

        Raises:
            ValueError: If the address does not follow the grammar.
        """
        parts = [p for p in value.strip().split("/") if p]
        if parts == ["mayor"]:
            return cls(AgentRole.MAYOR)
        if parts == ["deacon"]:
            return cls(AgentRole.DEACON)
        if len(parts) == 3 and parts[0] == "deacon" and parts[1] == "dogs":
            return cls(AgentRole.DOG, name=parts[2])
        if len(parts) == 2 and parts[1] in (AgentRole.WITNESS.value, AgentRole.REFINERY.value):
            return cls(AgentRole(parts[1]), rig=parts[0])
        if len(parts) == 3 and parts[1] == "crew":
            return cls(AgentRole.CREW, rig=parts[0], name=parts[2])
        if len(parts) == 3 and parts[1] == "polecats":
            return cls(AgentRole.POLECAT, rig=parts[0], name=parts[2])
        raise ValueError(f"not a worker address: {value!r}")

    def __str__(self) -> str:
        if self.role in SINGLETON_ROLES:
            return self.role.value
        if self.role == AgentRole.DOG:
            return f"deacon/dogs/{self.name}"
        if self.role in MONITOR_ROLES:
            return f"{self.rig}/{self.role.value}"
        if self.role == AgentRole.CREW:
            return f"{self.rig}/crew/{self.name}"
        return f"{self.rig}/polecats/{self.name}"

    @property
    def is_polecat(self) -> bool:
        return self.role == AgentRole.POLECAT

    def session_name(self, fleet: FleetConfig) -> str:
        """Multiplexer session name for this worker."""
        prefix = fleet.session_prefix
        if self.role == AgentRole.MAYOR:
            return fleet.mayor_session
        if self.role == AgentRole.DEACON:
            return fleet.deacon_session
        if self.role == AgentRole.DOG:
            return f"{prefix}-{fleet.deacon_role}-{self.name}"
        if self.role in MONITOR_ROLES:
            return f"{prefix}-{self.rig}-{self.role.value}"
        if self.role == AgentRole.CREW:
            return f"{prefix}-{self.rig}-{fleet.crew_segment}-{self.name}"
        return f"{prefix}-{self.rig}-{self.name}"

    def agent_bead_id(self, town_prefix: str, rig_prefix: str | None = None) -> str:
        """Identifier of the agent record that tracks this worker's hook.

        Args:
            town_prefix: Identifier prefix of town-level records.
            rig_prefix: Identifier prefix of the owning rig's records.
        """
        if self.role in SINGLETON_ROLES:
            return f"{town_prefix}-{self.role.value}"
        if self.role == AgentRole.DOG:
            return f"{town_prefix}-dog-{self.name}"
        prefix = rig_prefix or town_prefix
        if self.role in MONITOR_ROLES:
            return f"{prefix}-{self.rig}-{self.role.value}"
        return f"{prefix}-{self.rig}-{self.role.value}-{self.name}"


@dataclass(frozen=True)
class SessionName:
    """A fleet session name parsed into its parts.

    Attributes:
        raw: The session name as reported by the multiplexer.
        role: Recovered role, or None for fleet sessions of unknown shape.
        rig: Rig segment (None for singletons and dogs).
        name: Worker name segment, if any.
    """

    raw: str
    role: AgentRole | None
    rig: str | None = None
    name: str | None = None

    @property
    def is_singleton(self) -> bool:
        return self.role in SINGLETON_ROLES

    @property
    def is_persistent(self) -> bool:
        return self.role == AgentRole.CREW

    @property
    def is_monitor(self) -> bool:
        return self.role in MONITOR_ROLES

    @property
    def is_ephemeral(self) -> bool:
        """Whether the session is outside the singleton, crew and monitor sets."""
        if self.role is None:
            return False
        return not (self.is_singleton or self.is_persistent or self.is_monitor)

    def identity(self) -> AgentIdentity | None:
        """Worker identity for this session, if the role was recovered."""
        if self.role is None:
            return None
        return AgentIdentity(self.role, rig=self.rig, name=self.name)


def parse_session_name(raw: str, fleet: FleetConfig) -> SessionName | None:
    """Parse a multiplexer session name.

    Args:
        raw: Session name.
        fleet: Naming conventions.

    Returns:
        The parsed name, or None if the session does not belong to the fleet.
    """
    marker = f"{fleet.session_prefix}-"
    if not raw.startswith(marker):
        return None
    rest = raw[len(marker):]

    if rest == fleet.mayor_role:
        return SessionName(raw, AgentRole.MAYOR)
    if rest == fleet.deacon_role:
        return SessionName(raw, AgentRole.DEACON)

    rig, sep, remainder = rest.partition("-")
    if not sep or not remainder:
        return SessionName(raw, None, rig=rig or None)

    if rig == fleet.deacon_role:
        return SessionName(raw, AgentRole.DOG, name=remainder)

    crew_marker = f"{fleet.crew_segment}-"
    if remainder.startswith(crew_marker) and len(remainder) > len(crew_marker):
        return SessionName(raw, AgentRole.CREW, rig=rig, name=remainder[len(crew_marker):])
    if remainder == fleet.crew_segment:
        return SessionName(raw, None, rig=rig)

    if remainder in (AgentRole.WITNESS.value, AgentRole.REFINERY.value):
        return SessionName(raw, AgentRole(remainder), rig=rig)

    return SessionName(raw, AgentRole.POLECAT, rig=rig, name=remainder)
