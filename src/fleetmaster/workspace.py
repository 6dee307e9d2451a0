"""Fleet root discovery and caller identity detection."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING

from fleetmaster.config import FleetConfig
from fleetmaster.errors import WorkspaceNotFound
from fleetmaster.identity import AgentIdentity, AgentRole, parse_session_name
from fleetmaster.logging import get_logger

if TYPE_CHECKING:
    from fleetmaster.sessions.tmux import TmuxClient

logger = get_logger(__name__)

# Marker file identifying the fleet root directory
TOWN_MARKER = Path("mayor") / "town.json"

# Actor recorded when no worker identity can be recovered
HUMAN_ACTOR = "human"


def find_town_root(start: Path | None = None, fleet: FleetConfig | None = None) -> Path:
    """Locate the fleet root by walking up from ``start``.

    Args:
        start: Directory to start from (default: current directory).
        fleet: Fleet configuration; an explicit ``town_root`` wins.

    Returns:
        Absolute path of the fleet root.

    Raises:
        WorkspaceNotFound: If no ancestor contains the marker file.
    """
    if fleet is not None and fleet.town_root is not None:
        root = fleet.town_root.expanduser().resolve()
        if not (root / TOWN_MARKER).exists():
            raise WorkspaceNotFound(f"configured town root {root} has no {TOWN_MARKER}")
        return root

    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / TOWN_MARKER).exists():
            return candidate
    raise WorkspaceNotFound(f"not inside a fleet workspace (no {TOWN_MARKER} above {current})")


def identity_from_env(env: Mapping[str, str] | None = None) -> AgentIdentity | None:
    """Recover the caller's worker identity from GT_* environment variables.

    Workers are launched with ``GT_ROLE`` and, depending on the role,
    ``GT_RIG`` plus one of ``GT_POLECAT`` / ``GT_CREW`` / ``GT_DOG``.
    """
    env = os.environ if env is None else env
    role_value = env.get("GT_ROLE", "").strip().lower()

    if not role_value:
        # Polecats always carry their name even when GT_ROLE is absent
        if env.get("GT_POLECAT") and env.get("GT_RIG"):
            return AgentIdentity(AgentRole.POLECAT, rig=env["GT_RIG"], name=env["GT_POLECAT"])
        return None

    try:
        role = AgentRole(role_value)
    except ValueError:
        logger.debug("unknown_role_in_env", role=role_value)
        return None

    rig = env.get("GT_RIG") or None
    if role in (AgentRole.MAYOR, AgentRole.DEACON):
        return AgentIdentity(role)
    if role == AgentRole.DOG:
        name = env.get("GT_DOG")
        return AgentIdentity(role, name=name) if name else None
    if rig is None:
        return None
    if role in (AgentRole.WITNESS, AgentRole.REFINERY):
        return AgentIdentity(role, rig=rig)
    name = env.get("GT_CREW") if role == AgentRole.CREW else env.get("GT_POLECAT")
    return AgentIdentity(role, rig=rig, name=name) if name else None


def detect_identity(
    fleet: FleetConfig,
    tmux: TmuxClient | None = None,
    env: Mapping[str, str] | None = None,
) -> AgentIdentity | None:
    """Recover the caller's identity from the environment, then the session name.

    Args:
        fleet: Session naming conventions.
        tmux: Multiplexer client used to read the current session name.
        env: Environment to inspect (default: ``os.environ``).

    Returns:
        The caller's identity, or None when it cannot be recovered.
    """
    env = os.environ if env is None else env
    identity = identity_from_env(env)
    if identity is not None:
        return identity

    if tmux is None or not env.get("TMUX"):
        return None
    session = tmux.current_session()
    if not session:
        return None
    parsed = parse_session_name(session, fleet)
    return parsed.identity() if parsed is not None else None


def is_polecat_caller(env: Mapping[str, str] | None = None) -> str | None:
    """Name of the calling polecat, if the caller is one."""
    env = os.environ if env is None else env
    return env.get("GT_POLECAT") or None


def detect_actor(
    fleet: FleetConfig,
    tmux: TmuxClient | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    """Identity string recorded as the dispatching actor."""
    identity = detect_identity(fleet, tmux, env)
    return str(identity) if identity is not None else HUMAN_ACTOR
