"""Unit tests for the dispatch engine.

Tests cover:
- Guards (polecat caller, conflicting options, invalid references, pinned beads)
- Dispatch to rigs, explicit workers, self and dogs
- Dead polecat fallback to a fresh spawn
- Formula-on-bead and standalone formula dispatch
- Batch dispatch with per-item failures
- Best-effort side effects and notification
- Dry-run leaving every collaborator untouched
- The JSON result record
"""

from __future__ import annotations

from pathlib import Path

import pytest

from fleetmaster.errors import (
    ActorNotAllowed,
    AlreadyPinned,
    ConflictingOptions,
    FormulaNotFound,
    InvalidReference,
    NotSelfResolvable,
    PreconditionError,
    StoreError,
)
from fleetmaster.orchestrator.dispatcher import (
    BatchResult,
    DispatchAction,
    DispatchOptions,
    DispatchResult,
    Dispatcher,
    build_start_prompt,
)
from fleetmaster.pipeline.kennel import DogState, Kennel


@pytest.fixture
def bead(fake_store):
    """An open bead titled 'Fix login'."""
    return fake_store.add("gt-abc", title="Fix login")


@pytest.fixture
def crew_session(fake_tmux, town: Path) -> str:
    """A live crew worker, gastown/crew/max."""
    (town / "gastown" / "crew" / "max").mkdir(parents=True)
    fake_tmux.add_session("gt-gastown-crew-max")
    return "gt-gastown-crew-max"


def make_dispatcher(config, town, rigs, fake_store, fake_tmux, provisioner, env) -> Dispatcher:
    return Dispatcher(config, town, fake_store, fake_tmux, rigs, provisioner=provisioner, env=env)


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


class TestGuards:
    """Precondition checks run before anything is mutated."""

    def test_polecat_caller_is_refused(
        self, config, town, rigs, fake_store, fake_tmux, provisioner, bead
    ) -> None:
        dispatcher = make_dispatcher(
            config, town, rigs, fake_store, fake_tmux, provisioner,
            env={"GT_ROLE": "polecat", "GT_RIG": "gastown", "GT_POLECAT": "ace"},
        )

        with pytest.raises(ActorNotAllowed, match="polecat ace"):
            dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions())

        assert fake_store.mutations == []
        assert fake_tmux.mutations == []

    def test_var_with_on_conflicts(self, dispatcher, fake_store, bead) -> None:
        fake_store.formulas.add("mol-review")
        options = DispatchOptions(on_bead="gt-abc", variables={"k": "v"})

        with pytest.raises(ConflictingOptions):
            dispatcher.dispatch(["mol-review"], options)

    def test_var_with_plain_bead_conflicts(self, dispatcher, bead, crew_session) -> None:
        with pytest.raises(ConflictingOptions):
            dispatcher.dispatch(
                ["gt-abc", "gastown/crew/max"], DispatchOptions(variables={"k": "v"})
            )

    def test_invalid_reference(self, dispatcher, fake_store) -> None:
        with pytest.raises(InvalidReference, match="'nonsense' is not a valid bead or formula"):
            dispatcher.dispatch(["nonsense", "gastown"], DispatchOptions())
        assert fake_store.mutations == []

    def test_too_many_arguments_without_rig(self, dispatcher, bead) -> None:
        with pytest.raises(PreconditionError, match="not a rig"):
            dispatcher.dispatch(["gt-abc", "gt-def", "nowhere"], DispatchOptions())

    def test_formula_on_missing_formula(self, dispatcher, bead) -> None:
        with pytest.raises(FormulaNotFound):
            dispatcher.dispatch(["mol-missing"], DispatchOptions(on_bead="gt-abc"))

    def test_formula_on_missing_bead(self, dispatcher, fake_store) -> None:
        fake_store.formulas.add("mol-review")
        with pytest.raises(InvalidReference):
            dispatcher.dispatch(["mol-review"], DispatchOptions(on_bead="gt-zzz"))


class TestPinnedGuard:
    """Pinned beads are only re-dispatched with force."""

    def test_pinned_without_force_mutates_nothing(
        self, dispatcher, fake_store, fake_tmux, town
    ) -> None:
        fake_store.add("gt-abc", title="Fix login", status="pinned", assignee="gastown/crew/joe")

        with pytest.raises(AlreadyPinned) as excinfo:
            dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions())

        assert excinfo.value.assignee == "gastown/crew/joe"
        assert "bead gt-abc is already pinned to gastown/crew/joe" in str(excinfo.value)
        assert fake_store.mutations == []
        assert fake_tmux.mutations == []
        assert not (town / "gastown" / "polecats").exists()

    def test_pinned_with_force_proceeds(self, dispatcher, fake_store) -> None:
        fake_store.add("gt-abc", title="Fix login", status="pinned", assignee="gastown/crew/joe")

        result = dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions(force=True))

        assert fake_store.beads["gt-abc"].status == "hooked"
        assert fake_store.beads["gt-abc"].assignee == result.target


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------


class TestRigTarget:
    """A bare rig name always spawns a fresh polecat."""

    def test_spawns_and_hooks(self, dispatcher, fake_store, fake_tmux, bead) -> None:
        result = dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions())

        assert isinstance(result, DispatchResult)
        assert result.action == DispatchAction.SPAWNED
        assert result.spawned_polecat is True
        assert result.polecat_name == "ace"
        assert result.target == "gastown/polecats/ace"
        assert fake_store.beads["gt-abc"].status == "hooked"
        assert fake_store.beads["gt-abc"].assignee == "gastown/polecats/ace"

    def test_session_starts_with_hook_in_environment(self, dispatcher, fake_tmux, bead) -> None:
        dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions())

        session = fake_tmux.sessions["gt-gastown-ace"]
        assert session["env"]["GT_HOOK_BEAD"] == "gt-abc"
        assert session["env"]["GT_POLECAT"] == "ace"
        assert session["env"]["GT_RIG"] == "gastown"

    def test_notifies_spawned_polecat(self, dispatcher, fake_tmux, bead) -> None:
        result = dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions(subject="Login"))

        assert result.nudge_sent is True
        texts = [c for c in fake_tmux.calls if c[0] == "text"]
        assert texts[-1][1] == "gt-gastown-ace"
        assert "gt-abc" in texts[-1][2]
        assert "[DISPATCH] Login" in texts[-1][2]

    def test_post_claim_side_effects(self, dispatcher, fake_store, bead) -> None:
        result = dispatcher.dispatch(
            ["gt-abc", "gastown"], DispatchOptions(args="focus on the session cookie")
        )

        hooked = fake_store.beads["gt-abc"]
        assert hooked.attachment("dispatched_by") == "human"
        assert hooked.attachment("args") == "focus on the session cookie"
        assert fake_store.agent_hooks["gt-gastown-polecat-ace"] == "gt-abc"
        assert ("cook", "mol-polecat-work") in fake_store.mutations
        assert result.warnings == []

    def test_second_spawn_takes_next_pool_name(self, dispatcher, fake_store) -> None:
        fake_store.add("gt-one", title="One")
        fake_store.add("gt-two", title="Two")

        first = dispatcher.dispatch(["gt-one", "gastown"], DispatchOptions())
        second = dispatcher.dispatch(["gt-two", "gastown"], DispatchOptions())

        assert first.polecat_name == "ace"
        assert second.polecat_name == "bolt"

    def test_wakes_live_monitors(self, dispatcher, fake_tmux, bead) -> None:
        fake_tmux.add_session("gt-gastown-witness")

        dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions())

        wakes = [c for c in fake_tmux.calls if c[0] == "text" and c[1] == "gt-gastown-witness"]
        assert len(wakes) == 1
        assert "gastown/ace" in wakes[0][2]


class TestExplicitTarget:
    """Existing workers are hooked without provisioning."""

    def test_live_crew_worker(self, dispatcher, fake_store, fake_tmux, bead, crew_session) -> None:
        result = dispatcher.dispatch(["gt-abc", "gastown/crew/max"], DispatchOptions())

        assert result.action == DispatchAction.SLUNG
        assert result.spawned_polecat is False
        assert result.target == "gastown/crew/max"
        assert result.pane is not None
        assert result.nudge_sent is True
        assert fake_store.beads["gt-abc"].assignee == "gastown/crew/max"
        assert ("new", crew_session) not in fake_tmux.calls

    def test_worker_without_session_is_hooked_but_not_notified(
        self, dispatcher, fake_store, town, bead
    ) -> None:
        (town / "gastown" / "crew" / "max").mkdir(parents=True)

        result = dispatcher.dispatch(["gt-abc", "gastown/crew/max"], DispatchOptions())

        assert fake_store.beads["gt-abc"].status == "hooked"
        assert result.nudge_sent is False
        assert result.pane is None

    def test_dead_polecat_is_replaced(self, dispatcher, fake_store, town, bead) -> None:
        (town / "gastown" / "polecats" / "ace").mkdir(parents=True)

        result = dispatcher.dispatch(["gt-abc", "gastown/polecats/ace"], DispatchOptions())

        assert result.action == DispatchAction.SPAWNED
        assert result.polecat_name == "bolt"
        assert fake_store.beads["gt-abc"].assignee == "gastown/polecats/bolt"

    def test_mayor_target(self, dispatcher, fake_store, fake_tmux, bead) -> None:
        fake_tmux.add_session("gt-mayor")

        result = dispatcher.dispatch(["gt-abc", "mayor"], DispatchOptions())

        assert result.target == "mayor"
        assert fake_store.agent_hooks["hq-mayor"] == "gt-abc"


class TestSelfTarget:
    """No target (or '.') means the caller."""

    def test_self_from_environment(
        self, config, town, rigs, fake_store, fake_tmux, provisioner, bead, crew_session
    ) -> None:
        dispatcher = make_dispatcher(
            config, town, rigs, fake_store, fake_tmux, provisioner,
            env={"GT_ROLE": "crew", "GT_RIG": "gastown", "GT_CREW": "max"},
        )

        result = dispatcher.dispatch(["gt-abc", "."], DispatchOptions())

        assert result.target == "gastown/crew/max"
        assert fake_store.beads["gt-abc"].attachment("dispatched_by") == "gastown/crew/max"

    def test_self_without_identity(self, dispatcher, bead) -> None:
        with pytest.raises(NotSelfResolvable):
            dispatcher.dispatch(["gt-abc"], DispatchOptions())


class TestDogTarget:
    """deacon/dogs targets use the kennel."""

    def test_idle_dog_is_assigned(self, dispatcher, fake_store, fake_tmux, town, bead) -> None:
        Kennel(town).create("alpha")

        result = dispatcher.dispatch(["gt-abc", "deacon/dogs"], DispatchOptions())

        assert result.target == "deacon/dogs/alpha"
        assert "gt-deacon-alpha" in fake_tmux.sessions
        assert fake_store.beads["gt-abc"].assignee == "deacon/dogs/alpha"
        record = Kennel(town).get("alpha")
        assert record.state == DogState.WORKING
        assert record.work == "gt-abc"


# ---------------------------------------------------------------------------
# Formulas
# ---------------------------------------------------------------------------


class TestFormulaOnBead:
    """--on expands a formula onto the bead and hooks the compound."""

    def test_compound_replaces_bead(self, dispatcher, fake_store, bead, crew_session) -> None:
        fake_store.formulas.add("review")

        result = dispatcher.dispatch(
            ["review", "gastown/crew/max"], DispatchOptions(on_bead="gt-abc")
        )

        assert result.bead_id != "gt-abc"
        assert result.original_bead_id == "gt-abc"
        assert result.formula == "review"
        assert fake_store.wisp_variables[result.wisp_id] == {
            "feature": "Fix login",
            "issue": "gt-abc",
        }
        compound = fake_store.beads[result.bead_id]
        assert compound.status == "hooked"
        assert compound.assignee == "gastown/crew/max"
        assert "gt-abc" in compound.description
        assert fake_store.beads["gt-abc"].status == "open"

    def test_no_convoy_in_formula_mode(self, dispatcher, fake_store, bead, crew_session) -> None:
        fake_store.formulas.add("review")

        result = dispatcher.dispatch(
            ["review", "gastown/crew/max"], DispatchOptions(on_bead="gt-abc")
        )

        assert result.convoy_id is None
        assert not any(m[0] == "create_convoy" for m in fake_store.mutations)

    def test_unparsable_bond_falls_back_to_wisp(
        self, dispatcher, fake_store, bead, crew_session
    ) -> None:
        fake_store.formulas.add("review")
        fake_store.bond_unparsable = True

        result = dispatcher.dispatch(
            ["review", "gastown/crew/max"], DispatchOptions(on_bead="gt-abc")
        )

        assert result.bead_id == result.wisp_id
        assert fake_store.beads[result.wisp_id].status == "hooked"

    def test_expansion_failure_aborts_before_claim(
        self, dispatcher, fake_store, bead, crew_session
    ) -> None:
        fake_store.formulas.add("review")
        fake_store.fail("bond")

        with pytest.raises(StoreError):
            dispatcher.dispatch(["review", "gastown/crew/max"], DispatchOptions(on_bead="gt-abc"))

        assert not any(m[0] == "update_status" for m in fake_store.mutations)


class TestStandaloneFormula:
    """A formula as first argument is instantiated and its wisp hooked."""

    def test_wisp_is_hooked_with_variables(self, dispatcher, fake_store, crew_session) -> None:
        fake_store.formulas.add("mol-patrol")

        result = dispatcher.dispatch(
            ["mol-patrol", "gastown/crew/max"],
            DispatchOptions(variables={"area": "docs"}),
        )

        assert result.formula == "mol-patrol"
        assert result.bead_id == result.wisp_id
        assert fake_store.wisp_variables[result.wisp_id] == {"area": "docs"}
        assert fake_store.beads[result.wisp_id].assignee == "gastown/crew/max"

    def test_spawned_polecat_starts_hooked_to_wisp(self, dispatcher, fake_store, fake_tmux) -> None:
        fake_store.formulas.add("mol-patrol")

        result = dispatcher.dispatch(["mol-patrol", "gastown"], DispatchOptions())

        assert fake_tmux.sessions["gt-gastown-ace"]["env"]["GT_HOOK_BEAD"] == result.wisp_id


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


class TestBatch:
    """Several beads followed by a rig."""

    def test_each_bead_gets_its_own_polecat(self, dispatcher, fake_store) -> None:
        fake_store.add("gt-one", title="One")
        fake_store.add("gt-two", title="Two")

        batch = dispatcher.dispatch(["gt-one", "gt-two", "gastown"], DispatchOptions())

        assert isinstance(batch, BatchResult)
        assert [r.polecat_name for r in batch.results] == ["ace", "bolt"]
        assert fake_store.beads["gt-one"].assignee == "gastown/polecats/ace"
        assert fake_store.beads["gt-two"].assignee == "gastown/polecats/bolt"
        assert batch.failures == []

    def test_failures_are_per_item(self, dispatcher, fake_store) -> None:
        fake_store.add("gt-one", title="One")
        fake_store.add("gt-two", title="Two")

        batch = dispatcher.dispatch(
            ["gt-one", "gt-missing", "nonsense", "gt-two", "gastown"], DispatchOptions()
        )

        assert [r.bead_id for r in batch.results] == ["gt-one", "gt-two"]
        assert [f.bead_id for f in batch.failures] == ["gt-missing", "nonsense"]
        assert fake_store.beads["gt-two"].status == "hooked"

    def test_record_shape(self, dispatcher, fake_store) -> None:
        fake_store.add("gt-one", title="One")
        fake_store.add("gt-two", title="Two")

        batch = dispatcher.dispatch(["gt-one", "gt-two", "gt-nope", "gastown"], DispatchOptions())
        record = batch.to_record()

        assert set(record) == {"results", "failures"}
        assert len(record["results"]) == 2
        assert record["failures"][0]["bead_id"] == "gt-nope"
        assert "error" in record["failures"][0]


# ---------------------------------------------------------------------------
# Best effort
# ---------------------------------------------------------------------------


class TestBestEffort:
    """Failures after the claim never fail the dispatch."""

    def test_convoy_creation_failure_is_a_warning(self, dispatcher, fake_store, bead) -> None:
        fake_store.fail("create_convoy")

        result = dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions())

        assert result.convoy_id is None
        assert any(w.startswith("convoy:") for w in result.warnings)
        assert fake_store.beads["gt-abc"].status == "hooked"

    def test_existing_convoy_is_reused(self, dispatcher, fake_store, bead) -> None:
        fake_store.convoys["gt-abc"] = "hq-cv9"

        result = dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions())

        assert result.convoy_id == "hq-cv9"
        assert not any(m[0] == "create_convoy" for m in fake_store.mutations)

    def test_new_convoy_is_titled_from_bead(self, dispatcher, fake_store, bead) -> None:
        result = dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions())

        assert fake_store.beads[result.convoy_id].title == "Work: Fix login"
        assert fake_store.convoys["gt-abc"] == result.convoy_id

    def test_no_convoy_option(self, dispatcher, fake_store, bead) -> None:
        result = dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions(no_convoy=True))

        assert result.convoy_id is None
        assert fake_store.convoys == {}

    def test_metadata_failure_is_recorded(self, dispatcher, fake_store, bead) -> None:
        fake_store.fail("set_description_field")

        result = dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions(args="go"))

        names = {o.name for o in result.side_effects if not o.ok}
        assert names == {"dispatched_by", "args"}
        assert fake_store.beads["gt-abc"].status == "hooked"

    def test_notification_failure(self, dispatcher, fake_tmux, bead, crew_session) -> None:
        fake_tmux.fail_send = True

        result = dispatcher.dispatch(["gt-abc", "gastown/crew/max"], DispatchOptions())

        assert result.nudge_sent is False
        assert any(w.startswith("notify:") for w in result.warnings)

    def test_not_ready_still_notifies(self, dispatcher, fake_tmux, bead, crew_session) -> None:
        fake_tmux.ready = False

        result = dispatcher.dispatch(["gt-abc", "gastown/crew/max"], DispatchOptions())

        assert result.nudge_sent is True
        assert any(w.startswith("ready_check:") for w in result.warnings)

    def test_claim_failure_is_fatal(self, dispatcher, fake_store, bead, crew_session) -> None:
        fake_store.fail("update_status")

        with pytest.raises(StoreError):
            dispatcher.dispatch(["gt-abc", "gastown/crew/max"], DispatchOptions())

    def test_feed_event_written(self, dispatcher, town, bead, crew_session) -> None:
        dispatcher.dispatch(["gt-abc", "gastown/crew/max"], DispatchOptions())

        lines = (town / ".events.jsonl").read_text().splitlines()
        assert len(lines) == 1
        assert '"type": "sling"' in lines[0]
        assert "gt-abc" in lines[0]


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------


class TestDryRun:
    """Dry-run validates, then only describes."""

    @pytest.mark.parametrize("target", ["gastown", "gastown/crew/max", "deacon/dogs"])
    def test_never_mutates(self, dispatcher, fake_store, fake_tmux, town, bead, target) -> None:
        (town / "gastown" / "crew" / "max").mkdir(parents=True)
        fake_tmux.add_session("gt-gastown-crew-max")

        result = dispatcher.dispatch(["gt-abc", target], DispatchOptions(dry_run=True))

        assert result.action == DispatchAction.DRY_RUN
        assert fake_store.mutations == []
        assert fake_tmux.mutations == []
        assert fake_store.beads["gt-abc"].status == "open"
        assert not (town / "gastown" / "polecats").exists()
        assert not (town / ".events.jsonl").exists()
        assert result.plan

    def test_rig_target_description(self, dispatcher, bead) -> None:
        result = dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions(dry_run=True))

        assert result.target == "gastown/polecats/<new>"
        assert result.spawned_polecat is True
        assert result.to_record()["action"] == "dry_run"
        assert any("Would create convoy 'Work: Fix login'" in line for line in result.plan)

    def test_formula_description(self, dispatcher, fake_store, bead, crew_session) -> None:
        fake_store.formulas.add("review")

        result = dispatcher.dispatch(
            ["review", "gastown/crew/max"], DispatchOptions(on_bead="gt-abc", dry_run=True)
        )

        assert fake_store.mutations == []
        assert any("--var feature=Fix login --var issue=gt-abc" in line for line in result.plan)
        record = result.to_record()
        assert record["action"] == "dry_run"
        assert record["original_bead_id"] == "gt-abc"
        assert record["formula"] == "review"

    def test_pinned_guard_still_applies(self, dispatcher, fake_store) -> None:
        fake_store.add("gt-abc", status="pinned", assignee="mayor")

        with pytest.raises(AlreadyPinned):
            dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions(dry_run=True))


# ---------------------------------------------------------------------------
# Result record
# ---------------------------------------------------------------------------


class TestResultRecord:
    """JSON record omits empty optional fields."""

    def test_minimal_record(self) -> None:
        result = DispatchResult(action=DispatchAction.SLUNG, bead_id="gt-abc", target="mayor")

        assert result.to_record() == {
            "action": "slung",
            "bead_id": "gt-abc",
            "target": "mayor",
            "nudge_sent": False,
        }

    def test_side_effects_and_plan_are_not_serialized(self, dispatcher, bead) -> None:
        result = dispatcher.dispatch(["gt-abc", "gastown"], DispatchOptions())
        record = result.to_record()

        assert "side_effects" not in record
        assert "plan" not in record
        assert record["spawned_polecat"] is True
        assert record["polecat_name"] == "ace"
        assert record["nudge_sent"] is True


def test_start_prompt_is_single_line() -> None:
    prompt = build_start_prompt("gt-abc", subject="Login", message="see logs", args="be brief")

    assert "\n" not in prompt
    assert prompt.startswith("[DISPATCH] Login")
    assert "gt-abc" in prompt
    assert "Context: see logs" in prompt
    assert "Args: be brief" in prompt
