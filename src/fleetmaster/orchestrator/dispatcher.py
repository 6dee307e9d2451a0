"""Dispatch engine: hook work onto workers and start them.

This is the top-level orchestrator. For each bead it:
1. Resolves the target (a dead polecat falls back to a fresh spawn)
2. Fetches the bead and refuses pinned beads unless forced
3. Ensures a tracking convoy (failure is only a warning)
4. Provisions the worker when the target asks for one
5. Expands a formula onto the bead when ``--on`` is used
6. Claims the bead: status ``hooked``, assignee the worker
7. Runs best-effort side effects and notifies the worker

Nothing after the claim can fail the dispatch. Dry-run stops after step 3
and describes the rest.

Example usage:
    >>> dispatcher = Dispatcher(config, town_root, store, tmux, rigs)
    >>> result = dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions())
    >>> result.action
    <DispatchAction.SPAWNED: 'spawned'>
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from fleetmaster.beads.models import Bead, BeadStatus
from fleetmaster.beads.store import BeadStore
from fleetmaster.config import FleetmasterConfig
from fleetmaster.errors import (
    ActorNotAllowed,
    AlreadyPinned,
    ConflictingOptions,
    DeadWorker,
    FleetError,
    FormulaNotFound,
    InvalidReference,
    PreconditionError,
    SessionError,
)
from fleetmaster.identity import AgentIdentity, AgentRole
from fleetmaster.logging import bind_dispatch_context, clear_dispatch_context, get_logger
from fleetmaster.orchestrator.convoy import ConvoyOutcome, ConvoyTracker
from fleetmaster.orchestrator.feed import ActivityFeed
from fleetmaster.orchestrator.formula import FormulaExpander
from fleetmaster.orchestrator.provisioner import (
    DogAssignment,
    SpawnInfo,
    SpawnOptions,
    WorkerProvisioner,
)
from fleetmaster.orchestrator.targets import (
    ProvisionRequest,
    Resolution,
    ResolvedWorker,
    Target,
    TargetResolver,
    WorkspaceTarget,
)
from fleetmaster.rigs import RigRegistry
from fleetmaster.sessions.tmux import TmuxClient
from fleetmaster.workspace import detect_actor, is_polecat_caller

logger = get_logger(__name__)


class DispatchAction(str, Enum):
    """What a dispatch did."""

    SLUNG = "slung"
    SPAWNED = "spawned"
    DRY_RUN = "dry_run"


class DispatchOptions(BaseModel):
    """Per-call dispatch options.

    Attributes:
        create: Create a missing named polecat or dog
        force: Re-dispatch pinned beads and bypass the unread-mail guard
        account: Account handle for spawned workers
        agent: Runtime alias for spawned workers
        no_convoy: Skip convoy tracking
        dry_run: Describe without mutating anything
        json_output: Caller wants a JSON record (no effect on behavior)
        subject: Subject line carried in the start prompt
        message: Context shown in dry-run output and the start prompt
        args: Free-form instructions stored on the bead
        on_bead: Expand the formula (first argument) onto this bead
        variables: Variables for standalone formula dispatch
    """

    model_config = ConfigDict(frozen=True)

    create: bool = False
    force: bool = False
    account: str | None = None
    agent: str | None = None
    no_convoy: bool = False
    dry_run: bool = False
    json_output: bool = False
    subject: str | None = None
    message: str | None = None
    args: str | None = None
    on_bead: str | None = None
    variables: dict[str, str] = Field(default_factory=dict)


class SideEffectOutcome(BaseModel):
    """Outcome of one best-effort step."""

    name: str
    ok: bool
    error: str | None = None


class DispatchResult(BaseModel):
    """Summary of a single-item dispatch.

    ``side_effects`` and ``plan`` are for human output only and never
    appear in the JSON record.
    """

    action: DispatchAction
    bead_id: str
    original_bead_id: str | None = None
    target: str
    formula: str | None = None
    wisp_id: str | None = None
    convoy_id: str | None = None
    pane: str | None = None
    spawned_polecat: bool = False
    polecat_name: str | None = None
    nudge_sent: bool = False
    side_effects: list[SideEffectOutcome] = Field(default_factory=list, exclude=True)
    plan: list[str] = Field(default_factory=list, exclude=True)

    @property
    def warnings(self) -> list[str]:
        return [f"{o.name}: {o.error}" for o in self.side_effects if not o.ok]

    def to_record(self) -> dict[str, Any]:
        """JSON record with empty optional fields omitted (``nudge_sent`` always kept)."""
        record = self.model_dump(mode="json", exclude_none=True)
        if not self.spawned_polecat:
            record.pop("spawned_polecat", None)
        return record


class BatchFailure(BaseModel):
    bead_id: str
    error: str


class BatchResult(BaseModel):
    """Per-item outcomes of a batch dispatch to one rig."""

    rig: str
    results: list[DispatchResult] = Field(default_factory=list)
    failures: list[BatchFailure] = Field(default_factory=list)

    def to_record(self) -> dict[str, Any]:
        return {
            "results": [r.to_record() for r in self.results],
            "failures": [f.model_dump() for f in self.failures],
        }


def build_start_prompt(
    bead_id: str,
    subject: str | None = None,
    message: str | None = None,
    args: str | None = None,
) -> str:
    """Single-line start signal typed into a worker's session."""
    parts = [f"[DISPATCH] {subject}" if subject else "[DISPATCH]"]
    parts.append(f"Work {bead_id} is on your hook. Check your hook and start now.")
    if message:
        parts.append(f"Context: {message}")
    if args:
        parts.append(f"Args: {args}")
    return " ".join(parts)


@dataclass(frozen=True)
class _Worker:
    """A worker ready to receive the claim."""

    identity: AgentIdentity
    session: str | None
    pane: str | None
    workdir: Path | None
    spawn: SpawnInfo | None = None
    dog: DogAssignment | None = None


class Dispatcher:
    """Dispatches beads and formulas to fleet workers.

    Attributes:
        config: Root configuration
        town_root: Fleet root directory
        store: Work-item store adapter
        tmux: Multiplexer client
        rigs: Rig registry
        resolver: Target resolver
        provisioner: Worker provisioner
        expander: Formula expander
        convoys: Convoy tracker
        feed: Activity feed
    """

    def __init__(
        self,
        config: FleetmasterConfig,
        town_root: Path,
        store: BeadStore,
        tmux: TmuxClient,
        rigs: RigRegistry,
        resolver: TargetResolver | None = None,
        provisioner: WorkerProvisioner | None = None,
        expander: FormulaExpander | None = None,
        convoys: ConvoyTracker | None = None,
        feed: ActivityFeed | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config
        self.town_root = town_root
        self.store = store
        self.tmux = tmux
        self.rigs = rigs
        self._env = os.environ if env is None else env
        self.resolver = resolver or TargetResolver(
            town_root, rigs, tmux, config.fleet, env=self._env
        )
        self.provisioner = provisioner or WorkerProvisioner(config, town_root, rigs, store, tmux)
        self.expander = expander or FormulaExpander(store)
        self.convoys = convoys or ConvoyTracker(
            store, town_root, title_prefix=config.beads.convoy_title_prefix
        )
        self.feed = feed or ActivityFeed(town_root)
        self._bead_pattern = re.compile(config.beads.bead_id_pattern)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def dispatch(self, args: list[str], options: DispatchOptions) -> DispatchResult | BatchResult:
        """Dispatch work described by positional ``args``.

        ``args`` is ``<bead-or-formula> [target]``, or several beads
        followed by a rig name for batch mode.

        Raises:
            PreconditionError: Guard failures (caller, options, references, pinned bead).
            ResolutionError: Target cannot be resolved.
            ProvisioningError: Worker cannot be provisioned.
            StoreError: Bead fetch, expansion or claim failed.
            SessionError: Worker session could not be started.
        """
        polecat = is_polecat_caller(self._env)
        if polecat:
            raise ActorNotAllowed(f"polecat {polecat}")
        if not args:
            raise PreconditionError("nothing to dispatch: give a bead or formula")
        if options.on_bead and options.variables:
            raise ConflictingOptions("--var cannot be combined with --on")

        if len(args) > 2:
            if options.on_bead:
                raise ConflictingOptions("--on takes one formula and at most one target")
            if not self.rigs.is_rig(args[-1]):
                raise PreconditionError(
                    f"too many arguments: '{args[-1]}' is not a rig, so batch mode does not apply"
                )
            return self.dispatch_batch(args[:-1], args[-1], options)

        raw_target = args[1] if len(args) > 1 else None
        target = self.resolver.classify(raw_target)
        label = raw_target or "."

        if options.on_bead:
            formula = args[0]
            if not self.store.formula_exists(formula, cwd=self.town_root):
                raise FormulaNotFound(formula)
            if not self.store.exists(options.on_bead, cwd=self._hook_dir(options.on_bead)):
                raise InvalidReference(options.on_bead)
            return self._dispatch_item(options.on_bead, target, label, options, formula=formula)

        if self._is_formula(args[0]):
            return self._dispatch_formula(args[0], target, label, options)
        if options.variables:
            raise ConflictingOptions("--var only applies when dispatching a formula")
        return self._dispatch_item(args[0], target, label, options)

    def dispatch_batch(
        self, bead_ids: list[str], rig: str, options: DispatchOptions
    ) -> BatchResult:
        """Give each bead its own fresh polecat in ``rig``; failures are per item."""
        batch = BatchResult(rig=rig)
        logger.info("batch_dispatch_started", rig=rig, count=len(bead_ids))
        for bead_id in bead_ids:
            try:
                if not self._looks_like_bead(bead_id):
                    raise InvalidReference(bead_id)
                result = self._dispatch_item(bead_id, WorkspaceTarget(rig=rig), rig, options)
            except FleetError as e:
                logger.warning("batch_item_failed", bead_id=bead_id, rig=rig, error=str(e))
                batch.failures.append(BatchFailure(bead_id=bead_id, error=str(e)))
            else:
                batch.results.append(result)
        logger.info(
            "batch_dispatch_finished",
            rig=rig,
            succeeded=len(batch.results),
            failed=len(batch.failures),
        )
        return batch

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def _is_formula(self, reference: str) -> bool:
        """Classify the first argument: bead (False), formula (True), or reject."""
        if self.store.exists(reference, cwd=self._hook_dir(reference)):
            return False
        if self.store.formula_exists(reference, cwd=self.town_root):
            return True
        if self._bead_pattern.match(reference):
            logger.debug("bead_accepted_optimistically", bead_id=reference)
            return False
        raise InvalidReference(reference)

    def _looks_like_bead(self, reference: str) -> bool:
        return bool(self._bead_pattern.match(reference)) or self.store.exists(
            reference, cwd=self._hook_dir(reference)
        )

    def _hook_dir(self, bead_id: str, fallback: Path | None = None) -> Path:
        return self.rigs.resolve_hook_dir(bead_id, fallback)

    # ------------------------------------------------------------------
    # Single-item protocol
    # ------------------------------------------------------------------

    def _dispatch_item(
        self,
        bead_id: str,
        target: Target,
        label: str,
        options: DispatchOptions,
        formula: str | None = None,
    ) -> DispatchResult:
        bind_dispatch_context(bead_id, label)
        try:
            resolution = self._resolve(target)
            bead = self.store.show(bead_id, cwd=self._hook_dir(bead_id, self._workdir_hint(resolution)))
            if bead.is_pinned:
                if not options.force:
                    raise AlreadyPinned(bead.id, bead.assignee)
                logger.warning("pinned_bead_forced", assignee=bead.assignee)

            convoy = None
            if not options.no_convoy and formula is None:
                convoy = self.convoys.ensure_tracked(bead, dry_run=options.dry_run)

            if options.dry_run:
                return self._describe(bead, resolution, options, formula, convoy)

            worker = self._materialize(resolution, options, hook_bead=bead.id)
            result = self._new_result(bead.id, worker)
            if convoy is not None:
                result.convoy_id = convoy.convoy_id
                if not convoy.ok:
                    result.side_effects.append(
                        SideEffectOutcome(name="convoy", ok=False, error=convoy.error)
                    )

            final_id = bead.id
            if formula is not None:
                expansion = self.expander.expand_on_bead(
                    formula, bead, cwd=self._hook_dir(bead.id, worker.workdir)
                )
                final_id = expansion.compound_id
                result.bead_id = final_id
                result.original_bead_id = bead.id
                result.formula = formula
                result.wisp_id = expansion.wisp_id

            self._finish(result, final_id, worker, options)
            return result
        finally:
            clear_dispatch_context()

    def _dispatch_formula(
        self, formula: str, target: Target, label: str, options: DispatchOptions
    ) -> DispatchResult:
        """Instantiate a formula on its own and hook the wisp to the target."""
        bind_dispatch_context(formula, label)
        try:
            resolution = self._resolve(target)
            if options.dry_run:
                return self._describe_formula(formula, resolution, options)

            # The wisp exists before any spawn so the new worker starts hooked
            cwd = self._workdir_hint(resolution)
            wisp_id = self.expander.instantiate(formula, dict(options.variables), cwd=cwd)
            worker = self._materialize(resolution, options, hook_bead=wisp_id)
            result = self._new_result(wisp_id, worker)
            result.formula = formula
            result.wisp_id = wisp_id
            self._finish(result, wisp_id, worker, options)
            return result
        finally:
            clear_dispatch_context()

    def _resolve(self, target: Target) -> Resolution:
        try:
            return self.resolver.resolve(target)
        except DeadWorker as e:
            logger.warning("dead_polecat_respawn", rig=e.rig, polecat=e.name)
            return ProvisionRequest(
                role=AgentRole.POLECAT, rig=e.rig, replaces=f"{e.rig}/polecats/{e.name}"
            )

    def _workdir_hint(self, resolution: Resolution) -> Path:
        """Directory for store calls made before the worker is materialized."""
        if isinstance(resolution, ResolvedWorker):
            return resolution.workdir or self.town_root
        if resolution.role == AgentRole.POLECAT and resolution.rig:
            rig = self.rigs.get(resolution.rig)
            if rig is not None:
                return rig.path
        return self.town_root

    def _materialize(
        self, resolution: Resolution, options: DispatchOptions, hook_bead: str
    ) -> _Worker:
        if isinstance(resolution, ResolvedWorker):
            session = resolution.session
            return _Worker(
                identity=resolution.identity,
                session=session,
                pane=self.tmux.pane_for_session(session) if session else None,
                workdir=resolution.workdir,
            )

        if resolution.role == AgentRole.DOG:
            dog = self.provisioner.assign_dog(resolution.name, create=options.create)
            return _Worker(
                identity=dog.identity,
                session=dog.session_name,
                pane=dog.pane,
                workdir=dog.workdir,
                dog=dog,
            )

        spawn = self.provisioner.spawn_polecat(
            resolution.rig or "",
            SpawnOptions(
                create=options.create,
                force=options.force,
                account=options.account,
                agent=options.agent,
                hook_bead=hook_bead,
            ),
        )
        return _Worker(
            identity=spawn.identity,
            session=spawn.session_name,
            pane=spawn.pane,
            workdir=spawn.clone_path,
            spawn=spawn,
        )

    def _new_result(self, bead_id: str, worker: _Worker) -> DispatchResult:
        return DispatchResult(
            action=DispatchAction.SPAWNED if worker.spawn else DispatchAction.SLUNG,
            bead_id=bead_id,
            target=str(worker.identity),
            pane=worker.pane,
            spawned_polecat=worker.spawn is not None,
            polecat_name=worker.spawn.polecat_name if worker.spawn else None,
        )

    def _finish(
        self, result: DispatchResult, bead_id: str, worker: _Worker, options: DispatchOptions
    ) -> None:
        """Claim, then the best-effort tail: side effects and notification."""
        assignee = str(worker.identity)
        self.store.update_status(
            bead_id,
            BeadStatus.HOOKED.value,
            assignee,
            cwd=self._hook_dir(bead_id, worker.workdir),
        )
        logger.info("bead_hooked", hooked_bead=bead_id, assignee=assignee)

        for name, action in self._side_effects(bead_id, worker, options):
            result.side_effects.append(self._best_effort(name, action))
        self._notify(result, bead_id, worker, options)

    def _side_effects(
        self, bead_id: str, worker: _Worker, options: DispatchOptions
    ) -> list[tuple[str, Callable[[], Any]]]:
        actor = self.actor()
        identity = worker.identity
        hook_dir = self._hook_dir(bead_id, worker.workdir)
        agent_bead = identity.agent_bead_id(
            self.config.beads.town_prefix, self.rigs.prefix_for(identity.rig)
        )
        rig = self.rigs.get(identity.rig) if identity.rig else None
        agent_dir = rig.path if rig is not None else self.town_root

        effects: list[tuple[str, Callable[[], Any]]] = [
            (
                "feed",
                lambda: self.feed.log(
                    "sling", actor, {"bead": bead_id, "target": str(identity)}
                ),
            ),
            ("agent_hook", lambda: self.store.set_agent_hook(agent_bead, bead_id, cwd=agent_dir)),
            (
                "dispatched_by",
                lambda: self.store.set_description_field(
                    bead_id, "dispatched_by", actor, cwd=hook_dir
                ),
            ),
        ]
        if options.args:
            args = options.args
            effects.append(
                (
                    "args",
                    lambda: self.store.set_description_field(bead_id, "args", args, cwd=hook_dir),
                )
            )
        if worker.dog is not None:
            dog_name = worker.dog.name
            effects.append(
                ("dog_state", lambda: self.provisioner.kennel.mark_working(dog_name, bead_id))
            )
        if worker.spawn is not None:
            spawn = worker.spawn
            effects.append(
                (
                    "onboarding",
                    lambda: self.expander.attach_onboarding(
                        self.config.beads.onboarding_formula,
                        agent_bead,
                        bead_id,
                        str(identity),
                        cwd=agent_dir,
                    ),
                )
            )
            effects.append(
                (
                    "wake_monitors",
                    lambda: self.provisioner.wake_rig_monitors(spawn.rig, spawn.polecat_name),
                )
            )
        return effects

    def _best_effort(self, name: str, action: Callable[[], Any]) -> SideEffectOutcome:
        try:
            action()
        except (FleetError, OSError) as e:
            logger.warning("side_effect_failed", effect=name, error=str(e))
            return SideEffectOutcome(name=name, ok=False, error=str(e))
        return SideEffectOutcome(name=name, ok=True)

    def _notify(
        self, result: DispatchResult, bead_id: str, worker: _Worker, options: DispatchOptions
    ) -> None:
        if worker.session is None:
            logger.info("notification_skipped", reason="no live session")
            return

        if not self.tmux.wait_until_ready(worker.session):
            result.side_effects.append(
                SideEffectOutcome(
                    name="ready_check",
                    ok=False,
                    error=f"session {worker.session} did not report ready; notifying anyway",
                )
            )
        prompt = build_start_prompt(bead_id, options.subject, options.message, options.args)
        try:
            self.tmux.send_text(worker.session, prompt)
        except SessionError as e:
            logger.warning("notification_failed", session=worker.session, error=str(e))
            result.side_effects.append(SideEffectOutcome(name="notify", ok=False, error=str(e)))
            return
        result.nudge_sent = True
        logger.info("worker_notified", session=worker.session)

    def actor(self) -> str:
        """Identity recorded as the dispatcher of the work."""
        return detect_actor(self.config.fleet, self.tmux, self._env)

    # ------------------------------------------------------------------
    # Dry run
    # ------------------------------------------------------------------

    def _preview_worker(
        self, resolution: Resolution, options: DispatchOptions
    ) -> tuple[str, str | None, bool, list[str]]:
        """Target label, pane, spawn flag and plan lines for a worker not yet materialized."""
        if isinstance(resolution, ResolvedWorker):
            session = resolution.session
            pane = self.tmux.pane_for_session(session) if session else None
            return str(resolution.identity), pane, False, []
        if resolution.role == AgentRole.DOG:
            name = resolution.name or "<idle>"
            verb = "create and assign" if options.create and resolution.name else "assign"
            return f"deacon/dogs/{name}", "<dog-pane>", False, [f"Would {verb} dog {name}"]

        plan = []
        if resolution.replaces:
            plan.append(f"Polecat {resolution.replaces} is dead; would spawn a replacement")
        plan.append(f"Would spawn a fresh polecat in rig {resolution.rig}")
        return f"{resolution.rig}/polecats/<new>", "<new-pane>", True, plan

    def _describe(
        self,
        bead: Bead,
        resolution: Resolution,
        options: DispatchOptions,
        formula: str | None,
        convoy: ConvoyOutcome | None,
    ) -> DispatchResult:
        target, pane, spawned, plan = self._preview_worker(resolution, options)
        result = DispatchResult(
            action=DispatchAction.DRY_RUN,
            bead_id=bead.id,
            original_bead_id=bead.id if formula is not None else None,
            target=target,
            formula=formula,
            pane=pane,
            spawned_polecat=spawned,
        )

        if convoy is not None:
            if convoy.convoy_id:
                result.convoy_id = convoy.convoy_id
                plan.append(f"Already tracked by convoy {convoy.convoy_id}")
            elif convoy.created:
                plan.append(f"Would create convoy '{self.convoys.title_for(bead)}'")
            elif convoy.error:
                plan.append(f"Convoy check failed: {convoy.error}")

        hooked = bead.id
        if formula is not None:
            plan.append(f"Would cook formula {formula}")
            plan.append(
                f"Would instantiate {formula} with --var feature={bead.title} --var issue={bead.id}"
            )
            plan.append(f"Would bond the wisp root onto {bead.id}")
            hooked = "<compound-root>"

        plan.append(f"Would hook {hooked}: status=hooked assignee={target}")
        result.plan = plan + self._describe_tail(bead.id, pane, options)
        return result

    def _describe_formula(
        self, formula: str, resolution: Resolution, options: DispatchOptions
    ) -> DispatchResult:
        target, pane, spawned, worker_plan = self._preview_worker(resolution, options)
        variables = " ".join(f"--var {k}={v}" for k, v in options.variables.items())
        plan = [
            f"Would cook formula {formula}",
            f"Would instantiate {formula}" + (f" with {variables}" if variables else ""),
            *worker_plan,
            f"Would hook <wisp-root>: status=hooked assignee={target}",
        ]
        result = DispatchResult(
            action=DispatchAction.DRY_RUN,
            bead_id="<wisp-root>",
            target=target,
            formula=formula,
            pane=pane,
            spawned_polecat=spawned,
        )
        result.plan = plan + self._describe_tail("<wisp-root>", pane, options)
        return result

    def _describe_tail(self, bead_id: str, pane: str | None, options: DispatchOptions) -> list[str]:
        plan = []
        if options.args:
            plan.append(f"Would store args: {options.args}")
        if options.message:
            plan.append(f"Context: {options.message}")
        if pane:
            prompt = build_start_prompt(bead_id, options.subject, options.message, options.args)
            plan.append(f"Would notify {pane}: {prompt}")
        else:
            plan.append("No live session; the worker will find the hook on its next start")
        return plan
