"""Start agent runtimes inside multiplexer sessions.

Every worker session is started the same way: a detached session in the
worker's home directory, running the selected runtime, with ``GT_*``
variables that let the worker (and later ``detect_identity``) recover who
it is. The initial hook, when given, is part of that environment so it is
bound before the runtime executes anything.
"""

from __future__ import annotations

from pathlib import Path

from fleetmaster.config import FleetmasterConfig
from fleetmaster.errors import ProvisioningError
from fleetmaster.identity import AgentIdentity, AgentRole
from fleetmaster.logging import get_logger
from fleetmaster.sessions.tmux import TmuxClient

logger = get_logger(__name__)


class SessionLauncher:
    """Builds launch commands and environments for worker sessions.

    Attributes:
        config: Root configuration
        tmux: Multiplexer client
        town_root: Fleet root exported to workers as GT_ROOT
    """

    def __init__(self, config: FleetmasterConfig, tmux: TmuxClient, town_root: Path) -> None:
        self.config = config
        self.tmux = tmux
        self.town_root = town_root

    def command_for(self, agent: str | None = None) -> str:
        """Launch command for a runtime alias; unknown aliases run verbatim."""
        alias = agent or self.config.sessions.default_runtime
        return self.config.sessions.runtimes.get(alias, alias)

    def environment(
        self,
        identity: AgentIdentity,
        account: str | None = None,
        hook_bead: str | None = None,
    ) -> dict[str, str]:
        """Environment exported into a worker session.

        Raises:
            ProvisioningError: If ``account`` is not a configured handle.
        """
        env = {
            "GT_ROLE": identity.role.value,
            "GT_ROOT": str(self.town_root),
            "BD_ACTOR": str(identity),
        }
        if identity.rig:
            env["GT_RIG"] = identity.rig
        if identity.role == AgentRole.POLECAT and identity.name:
            env["GT_POLECAT"] = identity.name
        elif identity.role == AgentRole.CREW and identity.name:
            env["GT_CREW"] = identity.name
        elif identity.role == AgentRole.DOG and identity.name:
            env["GT_DOG"] = identity.name
        if hook_bead:
            env["GT_HOOK_BEAD"] = hook_bead
        if account:
            config_dir = self.config.sessions.accounts.get(account)
            if config_dir is None:
                known = ", ".join(sorted(self.config.sessions.accounts)) or "none configured"
                raise ProvisioningError(f"unknown account '{account}' (known: {known})")
            env["CLAUDE_CONFIG_DIR"] = str(config_dir.expanduser())
        return env

    def launch(
        self,
        identity: AgentIdentity,
        workdir: Path,
        agent: str | None = None,
        account: str | None = None,
        hook_bead: str | None = None,
    ) -> str:
        """Start the worker's session and return its name.

        Raises:
            ProvisioningError: Unknown account handle.
            SessionError: If the multiplexer refuses to start the session.
        """
        session = identity.session_name(self.config.fleet)
        env = self.environment(identity, account=account, hook_bead=hook_bead)
        self.tmux.new_session(session, workdir, command=self.command_for(agent), env=env)
        logger.info(
            "worker_session_launched",
            worker=str(identity),
            session=session,
            runtime=agent or self.config.sessions.default_runtime,
            hook_bead=hook_bead,
        )
        return session
