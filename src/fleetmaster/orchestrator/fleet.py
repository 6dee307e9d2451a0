"""Fleet lifecycle: singleton startup, shutdown and polecat reclamation.

Shutdown always kills in the same order: the deacon first so it cannot
restart what it monitors, then every other selected session, then the
mayor last. Reclamation removes a polecat's working copy only when it is
provably clean, unless the caller asks for a nuclear cleanup.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from pydantic import BaseModel, ConfigDict, Field

from fleetmaster.config import FleetmasterConfig
from fleetmaster.errors import SessionError
from fleetmaster.identity import AgentIdentity, AgentRole, parse_session_name
from fleetmaster.logging import get_logger
from fleetmaster.pipeline.git_ops import check_uncommitted_work
from fleetmaster.pipeline.worktree import PolecatManager
from fleetmaster.rigs import Rig, RigRegistry
from fleetmaster.sessions.launcher import SessionLauncher
from fleetmaster.sessions.tmux import TmuxClient

logger = get_logger(__name__)

Progress = Callable[[str], None]


class ShutdownPolicy(str, Enum):
    """Which fleet sessions a shutdown stops.

    Attributes:
        DEFAULT: Everything except crew
        ALL: Everything
        POLECATS_ONLY: Ephemeral workers only
    """

    DEFAULT = "default"
    ALL = "all"
    POLECATS_ONLY = "polecats_only"


class ShutdownOptions(BaseModel):
    """Per-call shutdown options."""

    model_config = ConfigDict(frozen=True)

    graceful: bool = False
    wait_seconds: int | None = None
    policy: ShutdownPolicy = ShutdownPolicy.DEFAULT
    nuclear: bool = False
    assume_yes: bool = False


@dataclass
class SessionPlan:
    """Fleet sessions split into those to stop and those to keep."""

    to_stop: list[str] = field(default_factory=list)
    preserved: list[str] = field(default_factory=list)


class SkippedWorker(BaseModel):
    worker: str
    reason: str
    summary: str | None = None


class ReclamationReport(BaseModel):
    """Outcome of the polecat cleanup pass."""

    cleaned: list[str] = Field(default_factory=list)
    skipped: list[SkippedWorker] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ShutdownReport(BaseModel):
    stopped: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    preserved: list[str] = Field(default_factory=list)
    wait_interrupted: bool = False
    reclamation: ReclamationReport | None = None


class StartReport(BaseModel):
    started: list[str] = Field(default_factory=list)
    already_running: list[str] = Field(default_factory=list)


def categorize_sessions(
    sessions: list[str], policy: ShutdownPolicy, config: FleetmasterConfig
) -> SessionPlan:
    """Split live sessions by policy; non-fleet sessions are ignored."""
    plan = SessionPlan()
    for raw in sessions:
        parsed = parse_session_name(raw, config.fleet)
        if parsed is None:
            continue
        if policy == ShutdownPolicy.POLECATS_ONLY:
            stop = parsed.is_ephemeral
        elif policy == ShutdownPolicy.ALL:
            stop = True
        else:
            stop = not parsed.is_persistent
        (plan.to_stop if stop else plan.preserved).append(raw)
    return plan


def kill_order(sessions: list[str], config: FleetmasterConfig) -> list[str]:
    """Deacon first, mayor last, everything else in between in given order."""
    deacon = config.fleet.deacon_session
    mayor = config.fleet.mayor_session
    ordered = [s for s in sessions if s == deacon]
    ordered.extend(s for s in sessions if s not in (deacon, mayor))
    ordered.extend(s for s in sessions if s == mayor)
    return ordered


class FleetManager:
    """Starts and stops the fleet.

    Attributes:
        config: Root configuration
        tmux: Multiplexer client
        town_root: Fleet root (None disables startup and reclamation)
        rigs: Rig registry used for reclamation
    """

    def __init__(
        self,
        config: FleetmasterConfig,
        tmux: TmuxClient,
        town_root: Path | None = None,
        rigs: RigRegistry | None = None,
        launcher: SessionLauncher | None = None,
        polecat_manager_factory: Callable[[Rig], PolecatManager] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.tmux = tmux
        self.town_root = town_root
        self.rigs = rigs
        self._launcher = launcher
        self._manager_factory = polecat_manager_factory or (
            lambda rig: PolecatManager(rig, config.git)
        )
        self._sleep = sleep

    @property
    def launcher(self) -> SessionLauncher:
        if self._launcher is None:
            if self.town_root is None:
                raise SessionError("cannot start sessions without a fleet root")
            self._launcher = SessionLauncher(self.config, self.tmux, self.town_root)
        return self._launcher

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def start(self) -> StartReport:
        """Ensure the mayor, then the deacon, have live sessions."""
        report = StartReport()
        for role in (AgentRole.MAYOR, AgentRole.DEACON):
            identity = AgentIdentity(role)
            session = identity.session_name(self.config.fleet)
            if self.tmux.has_session(session):
                report.already_running.append(session)
                continue
            workdir = self.launcher.town_root / role.value
            workdir.mkdir(parents=True, exist_ok=True)
            self.launcher.launch(identity, workdir)
            report.started.append(session)
        logger.info("fleet_started", started=report.started, running=report.already_running)
        return report

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def plan_shutdown(self, policy: ShutdownPolicy) -> SessionPlan:
        return categorize_sessions(self.tmux.list_sessions(), policy, self.config)

    def kill_sessions(self, sessions: list[str]) -> tuple[list[str], list[str]]:
        """Kill sessions in deacon-first, mayor-last order.

        Returns:
            (stopped, failed) session names.
        """
        stopped, failed = [], []
        for session in kill_order(sessions, self.config):
            try:
                self.tmux.kill_session(session)
            except SessionError as e:
                logger.warning("session_kill_failed", session=session, error=str(e))
                failed.append(session)
                continue
            stopped.append(session)
        logger.info("sessions_killed", stopped=len(stopped), failed=len(failed))
        return stopped, failed

    def shutdown(
        self,
        plan: SessionPlan,
        options: ShutdownOptions,
        progress: Progress | None = None,
    ) -> ShutdownReport:
        """Stop the planned sessions and reclaim clean polecats.

        Args:
            plan: Sessions to stop and to preserve.
            options: Shutdown options.
            progress: Receives human-readable progress lines.
        """
        say = progress or (lambda _msg: None)
        report = ShutdownReport(preserved=list(plan.preserved))

        if options.graceful:
            report.wait_interrupted = self._graceful_handoff(plan.to_stop, options, say)
            say("Phase 4: Terminating sessions...")
        report.stopped, report.failed = self.kill_sessions(plan.to_stop)

        if self.town_root is not None and self.rigs is not None:
            if options.graceful:
                say("Phase 5: Cleaning up polecats...")
            report.reclamation = self.reclaim_polecats(nuclear=options.nuclear)
        return report

    def _graceful_handoff(self, sessions: list[str], options: ShutdownOptions, say: Progress) -> bool:
        """Phases 1-3: interrupt, send the shutdown notice, wait.

        Returns:
            True if the operator interrupted the handoff or the wait.
        """
        cfg = self.config.shutdown
        say(f"Phase 1: Interrupting {len(sessions)} session(s)...")
        for session in sessions:
            try:
                self.tmux.send_interrupt(session)
            except SessionError as e:
                logger.debug("interrupt_failed", session=session, error=str(e))

        wait = cfg.wait_seconds if options.wait_seconds is None else options.wait_seconds
        remaining = wait
        try:
            say("Phase 2: Requesting handoff...")
            for session in sessions:
                self._sleep(cfg.stagger_seconds)
                try:
                    self.tmux.send_text(session, cfg.shutdown_message)
                except SessionError as e:
                    logger.debug("shutdown_notice_failed", session=session, error=str(e))

            say(f"Phase 3: Waiting {wait}s for handoff (Ctrl-C to skip)...")
            while remaining > 0:
                if remaining < wait:
                    say(f"  {remaining}s remaining...")
                step = min(cfg.countdown_interval_seconds, remaining)
                self._sleep(step)
                remaining -= step
        except KeyboardInterrupt:
            logger.info("shutdown_wait_interrupted", remaining=remaining)
            return True
        return False

    # ------------------------------------------------------------------
    # Reclamation
    # ------------------------------------------------------------------

    def reclaim_polecats(self, nuclear: bool = False) -> ReclamationReport:
        """Remove clean polecat working copies across every discovered rig.

        Args:
            nuclear: Remove even when the check fails or work is uncommitted.
        """
        report = ReclamationReport()
        if self.rigs is None:
            return report

        for rig in self.rigs.discover():
            manager = self._manager_factory(rig)
            for polecat in manager.list():
                worker = f"{rig.name}/{polecat.name}"
                try:
                    status = check_uncommitted_work(
                        polecat.path, base_branch=self.config.git.main_branch
                    )
                except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError, OSError) as e:
                    if not nuclear:
                        report.skipped.append(
                            SkippedWorker(worker=worker, reason="status check failed", summary=str(e))
                        )
                        continue
                    report.warnings.append(f"{worker}: status check failed, removing anyway")
                else:
                    if not status.clean:
                        if not nuclear:
                            report.skipped.append(
                                SkippedWorker(
                                    worker=worker,
                                    reason="uncommitted work",
                                    summary=status.summary,
                                )
                            )
                            continue
                        report.warnings.append(
                            f"{worker}: NUCLEAR removal despite {status.summary}"
                        )

                try:
                    manager.remove(polecat.name, force=True)
                except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError, OSError) as e:
                    report.skipped.append(
                        SkippedWorker(worker=worker, reason="removal failed", summary=str(e))
                    )
                    continue

                try:
                    manager.delete_branch(polecat.name)
                except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError) as e:
                    logger.debug("polecat_branch_delete_failed", worker=worker, error=str(e))
                report.cleaned.append(worker)

        logger.info(
            "polecats_reclaimed",
            cleaned=len(report.cleaned),
            skipped=len(report.skipped),
            nuclear=nuclear,
        )
        return report
