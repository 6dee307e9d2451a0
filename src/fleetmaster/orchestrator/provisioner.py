"""Worker provisioning: fresh polecats and pooled dogs.

Polecats get a git worktree cut from the rig's base copy and a session
started with the initial hook already in its environment. Dogs are taken
from the deacon's kennel and only created on request.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from pydantic import BaseModel, ConfigDict

from fleetmaster.beads.store import BeadStore
from fleetmaster.config import FleetmasterConfig
from fleetmaster.errors import (
    StoreError,
    TargetNotFound,
    UnreadMailBlocked,
    WorkspaceUnavailable,
)
from fleetmaster.identity import AgentIdentity, AgentRole
from fleetmaster.logging import get_logger
from fleetmaster.pipeline.kennel import Kennel
from fleetmaster.pipeline.worktree import PolecatManager
from fleetmaster.rigs import Rig, RigRegistry
from fleetmaster.sessions.launcher import SessionLauncher
from fleetmaster.sessions.tmux import TmuxClient

PolecatManagerFactory = Callable[[Rig], PolecatManager]


class SpawnOptions(BaseModel):
    """Options for provisioning a polecat.

    Attributes:
        name: Reuse or create this polecat instead of taking a pool name
        create: Create the named polecat if it does not exist
        force: Bypass the unread-mail guard
        account: Account handle selecting the runtime's config directory
        agent: Runtime alias overriding the default runtime
        hook_bead: Work item bound to the polecat before its session starts
    """

    model_config = ConfigDict(frozen=True)

    name: str | None = None
    create: bool = False
    force: bool = False
    account: str | None = None
    agent: str | None = None
    hook_bead: str | None = None


@dataclass(frozen=True)
class SpawnInfo:
    """A provisioned polecat with a live session."""

    rig: str
    polecat_name: str
    clone_path: Path
    session_name: str
    pane: str | None
    created: bool = True

    @property
    def identity(self) -> AgentIdentity:
        return AgentIdentity(AgentRole.POLECAT, rig=self.rig, name=self.polecat_name)


@dataclass(frozen=True)
class DogAssignment:
    """A pooled dog selected (and, if needed, woken) for dispatch."""

    name: str
    workdir: Path
    session_name: str
    pane: str | None

    @property
    def identity(self) -> AgentIdentity:
        return AgentIdentity(AgentRole.DOG, name=self.name)


class WorkerProvisioner:
    """Creates and wakes workers on behalf of the dispatcher.

    Attributes:
        config: Root configuration
        town_root: Fleet root directory
        rigs: Rig registry
        store: Work-item store adapter
        tmux: Multiplexer client
        kennel: Pooled dog registry
        launcher: Session launcher
    """

    def __init__(
        self,
        config: FleetmasterConfig,
        town_root: Path,
        rigs: RigRegistry,
        store: BeadStore,
        tmux: TmuxClient,
        kennel: Kennel | None = None,
        launcher: SessionLauncher | None = None,
        polecat_manager_factory: PolecatManagerFactory | None = None,
    ) -> None:
        self.config = config
        self.town_root = town_root
        self.rigs = rigs
        self.store = store
        self.tmux = tmux
        self.kennel = kennel or Kennel(town_root)
        self.launcher = launcher or SessionLauncher(config, tmux, town_root)
        self._manager_factory = polecat_manager_factory or (
            lambda rig: PolecatManager(rig, config.git)
        )
        self.logger = get_logger(__name__)

    def spawn_polecat(self, rig_name: str, options: SpawnOptions | None = None) -> SpawnInfo:
        """Provision a polecat in ``rig_name`` with a live session.

        Without ``options.name`` a fresh name is taken from the pool. With a
        name, an existing polecat is reused (subject to the unread-mail
        guard) and a missing one is created only when ``options.create`` is
        set.

        Raises:
            TargetNotFound: Unknown rig.
            WorkspaceUnavailable: Pool exhausted or the worktree cannot be created.
            UnreadMailBlocked: Reused polecat has unread mail and force is not set.
            StoreError: The mail check failed.
            SessionError: The session could not be started.
        """
        options = options or SpawnOptions()
        rig = self.rigs.get(rig_name)
        if rig is None:
            raise TargetNotFound(rig_name, "unknown rig")
        manager = self._manager_factory(rig)

        if options.name is not None:
            name = options.name
            reuse = manager.exists(name)
            if not reuse and not options.create:
                raise WorkspaceUnavailable(
                    f"polecat {rig_name}/{name} does not exist (use --create to add it)"
                )
        else:
            name = manager.next_available_name(self.config.pool.polecat_names)
            if name is None:
                raise WorkspaceUnavailable(f"no polecat names available in rig {rig_name}")
            reuse = False

        identity = AgentIdentity(AgentRole.POLECAT, rig=rig_name, name=name)
        if reuse and not options.force:
            self._check_unread_mail(identity, rig.path)

        clone_path = manager.path_for(name)
        if not reuse:
            try:
                clone_path = manager.add(name).path
            except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError, ValueError) as e:
                raise WorkspaceUnavailable(
                    f"cannot create working copy for {identity}: {e}"
                ) from e

        session = identity.session_name(self.config.fleet)
        if not self.tmux.has_session(session):
            self._bind_initial_hook(identity, rig, options.hook_bead)
            self.launcher.launch(
                identity,
                clone_path,
                agent=options.agent,
                account=options.account,
                hook_bead=options.hook_bead,
            )

        info = SpawnInfo(
            rig=rig_name,
            polecat_name=name,
            clone_path=clone_path,
            session_name=session,
            pane=self.tmux.pane_for_session(session),
            created=not reuse,
        )
        self.logger.info(
            "polecat_provisioned",
            worker=str(identity),
            session=session,
            reused=reuse,
            hook_bead=options.hook_bead,
        )
        return info

    def _check_unread_mail(self, identity: AgentIdentity, cwd: Path) -> None:
        count = self.store.count_unread_mail(str(identity), cwd=cwd)
        if count > 0:
            raise UnreadMailBlocked(str(identity), count)

    def _bind_initial_hook(self, identity: AgentIdentity, rig: Rig, hook_bead: str | None) -> None:
        # The session environment carries the hook regardless; the agent
        # record is updated first so both agree before the runtime starts.
        if not hook_bead:
            return
        agent_bead = identity.agent_bead_id(self.config.beads.town_prefix, rig.bead_prefix)
        try:
            self.store.set_agent_hook(agent_bead, hook_bead, cwd=rig.path)
        except StoreError as e:
            self.logger.warning(
                "initial_hook_bind_failed",
                agent_bead=agent_bead,
                hook_bead=hook_bead,
                error=str(e),
            )

    def assign_dog(self, name: str | None = None, create: bool = False) -> DogAssignment:
        """Pick a dog from the kennel and make sure its session is live.

        Args:
            name: Specific dog, or None for the first idle one.
            create: Add the named dog to the kennel if it is missing.

        Raises:
            TargetNotFound: Named dog does not exist and create is not set.
            WorkspaceUnavailable: No idle dog is available.
            SessionError: The dog's session could not be started.
        """
        if name is not None:
            record = self.kennel.get(name)
            if record is None:
                if not create:
                    raise TargetNotFound(f"deacon/dogs/{name}", "no such dog (use --create)")
                record = self.kennel.create(name)
        else:
            record = self.kennel.find_idle()
            if record is None:
                raise WorkspaceUnavailable("no idle dogs in the kennel")

        identity = AgentIdentity(AgentRole.DOG, name=record.name)
        workdir = self.kennel.dog_dir(record.name)
        session = identity.session_name(self.config.fleet)
        if not self.tmux.has_session(session):
            self.launcher.launch(identity, workdir)

        self.logger.info("dog_assigned", dog=record.name, session=session)
        return DogAssignment(
            name=record.name,
            workdir=workdir,
            session_name=session,
            pane=self.tmux.pane_for_session(session),
        )

    def wake_rig_monitors(self, rig_name: str, polecat_name: str) -> list[str]:
        """Nudge the rig's live witness and refinery about a new polecat.

        Returns:
            Sessions that were nudged.

        Raises:
            SessionError: If sending to a live monitor fails.
        """
        woken = []
        for role in (AgentRole.WITNESS, AgentRole.REFINERY):
            session = AgentIdentity(role, rig=rig_name).session_name(self.config.fleet)
            if not self.tmux.has_session(session):
                continue
            self.tmux.send_text(
                session,
                f"[WAKE] polecat {rig_name}/{polecat_name} was spawned; check on it.",
            )
            woken.append(session)
        return woken
