"""Dispatch target classification and resolution.

A raw target string is classified once into a tagged variant:

- ``SelfTarget``: absent target or ``.``
- ``PooledTarget``: ``deacon/dogs`` or ``deacon/dogs/<name>``
- ``WorkspaceTarget``: a bare rig name (always a fresh polecat)
- ``ExplicitTarget``: anything else, looked up as an existing worker

Resolution is pure: it reads the rig registry and the multiplexer but never
mutates. Pooled and workspace targets resolve to a ``ProvisionRequest`` that
the dispatcher hands to the provisioner.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from fleetmaster.config import FleetConfig
from fleetmaster.errors import DeadWorker, NotSelfResolvable, TargetNotFound
from fleetmaster.identity import AgentIdentity, AgentRole
from fleetmaster.logging import get_logger
from fleetmaster.rigs import RigRegistry
from fleetmaster.sessions.tmux import TmuxClient
from fleetmaster.workspace import detect_identity

logger = get_logger(__name__)


@dataclass(frozen=True)
class SelfTarget:
    """The caller's own identity."""


@dataclass(frozen=True)
class PooledTarget:
    """A deacon dog, named or any idle one."""

    name: str | None = None


@dataclass(frozen=True)
class WorkspaceTarget:
    """A rig; dispatch spawns a fresh polecat there."""

    rig: str


@dataclass(frozen=True)
class ExplicitTarget:
    """An existing worker address."""

    path: str


Target = Union[SelfTarget, PooledTarget, WorkspaceTarget, ExplicitTarget]


@dataclass(frozen=True)
class ResolvedWorker:
    """A concrete existing worker.

    Attributes:
        identity: Worker identity
        session: Live session name (None when no session is running)
        workdir: Directory for store operations made on the worker's behalf
    """

    identity: AgentIdentity
    session: str | None
    workdir: Path | None


@dataclass(frozen=True)
class ProvisionRequest:
    """A worker that must be provisioned before the claim.

    Attributes:
        role: POLECAT or DOG
        rig: Rig for polecats
        name: Requested dog name (None for any idle dog)
        replaces: Address of the dead polecat being replaced, if any
    """

    role: AgentRole
    rig: str | None = None
    name: str | None = None
    replaces: str | None = None


Resolution = Union[ResolvedWorker, ProvisionRequest]


class TargetResolver:
    """Turns target strings into workers or provisioning requests.

    Attributes:
        town_root: Fleet root directory
        rigs: Rig registry
        tmux: Multiplexer client used for liveness checks
        fleet: Session naming conventions
    """

    def __init__(
        self,
        town_root: Path,
        rigs: RigRegistry,
        tmux: TmuxClient,
        fleet: FleetConfig,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.town_root = town_root
        self.rigs = rigs
        self.tmux = tmux
        self.fleet = fleet
        self._env = env

    def classify(self, raw: str | None) -> Target:
        """Classify a raw target string. Never fails."""
        if raw is None or raw.strip() in ("", "."):
            return SelfTarget()
        value = raw.strip()
        parts = [p for p in value.split("/") if p]
        if len(parts) in (2, 3) and parts[0] == "deacon" and parts[1] == "dogs":
            return PooledTarget(name=parts[2] if len(parts) == 3 else None)
        if len(parts) == 1 and self.rigs.is_rig(parts[0]):
            return WorkspaceTarget(rig=parts[0])
        return ExplicitTarget(path=value)

    def resolve(self, target: Target) -> Resolution:
        """Resolve a classified target.

        Raises:
            NotSelfResolvable: Self target without a recoverable identity.
            TargetNotFound: Unknown worker or rig.
            DeadWorker: Polecat address without a live session.
        """
        if isinstance(target, SelfTarget):
            return self.resolve_self()
        if isinstance(target, PooledTarget):
            return ProvisionRequest(role=AgentRole.DOG, name=target.name)
        if isinstance(target, WorkspaceTarget):
            return ProvisionRequest(role=AgentRole.POLECAT, rig=target.rig)
        return self._resolve_explicit(target.path)

    def resolve_self(self) -> ResolvedWorker:
        env = os.environ if self._env is None else self._env
        identity = detect_identity(self.fleet, self.tmux, env)
        if identity is None:
            raise NotSelfResolvable()
        session = identity.session_name(self.fleet)
        workdir = self.workdir_for(identity)
        return ResolvedWorker(
            identity=identity,
            session=session if self.tmux.has_session(session) else None,
            workdir=workdir if workdir.is_dir() else Path.cwd(),
        )

    def _resolve_explicit(self, path: str) -> ResolvedWorker:
        identity = self._parse_address(path)
        if identity.rig is not None and not self.rigs.is_rig(identity.rig):
            raise TargetNotFound(path, f"unknown rig '{identity.rig}'")

        session = identity.session_name(self.fleet)
        live = self.tmux.has_session(session)
        workdir = self.workdir_for(identity)

        if identity.role == AgentRole.POLECAT and not live:
            raise DeadWorker(identity.rig or "", identity.name or "")
        if identity.role == AgentRole.CREW and not live and not workdir.is_dir():
            raise TargetNotFound(path, "no such crew worker")

        logger.debug("target_resolved", target=str(identity), session=session, live=live)
        return ResolvedWorker(
            identity=identity,
            session=session if live else None,
            workdir=workdir if workdir.is_dir() else None,
        )

    def _parse_address(self, path: str) -> AgentIdentity:
        try:
            return AgentIdentity.parse(path)
        except ValueError:
            pass
        # Shorthand "<rig>/<polecat>"
        parts = [p for p in path.split("/") if p]
        if len(parts) == 2 and self.rigs.is_rig(parts[0]):
            return AgentIdentity(AgentRole.POLECAT, rig=parts[0], name=parts[1])
        raise TargetNotFound(path)

    def workdir_for(self, identity: AgentIdentity) -> Path:
        """Conventional home directory of a worker."""
        if identity.role in (AgentRole.MAYOR, AgentRole.DEACON):
            return self.town_root / identity.role.value
        if identity.role == AgentRole.DOG:
            return self.town_root / "deacon" / "dogs" / (identity.name or "")
        rig_path = self.town_root / (identity.rig or "")
        if identity.role in (AgentRole.WITNESS, AgentRole.REFINERY):
            return rig_path / identity.role.value
        if identity.role == AgentRole.CREW:
            return rig_path / "crew" / (identity.name or "")
        return rig_path / "polecats" / (identity.name or "")
