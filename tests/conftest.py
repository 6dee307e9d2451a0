"""Shared fixtures: an on-disk town layout and in-memory store/multiplexer fakes.

The fakes implement the same methods as ``BeadStore`` and ``TmuxClient``
and record every mutating call, so tests can assert both outcomes and the
absence of side effects (dry-run).
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Any

import pytest

from fleetmaster.beads.models import Bead, set_description_field
from fleetmaster.config import FleetmasterConfig
from fleetmaster.errors import SessionError, StoreError
from fleetmaster.orchestrator.dispatcher import Dispatcher
from fleetmaster.orchestrator.provisioner import WorkerProvisioner
from fleetmaster.pipeline.worktree import PolecatInfo, PolecatManager, PolecatState
from fleetmaster.rigs import Rig, RigRegistry


class FakeBeadStore:
    """In-memory stand-in for BeadStore."""

    def __init__(self) -> None:
        self.beads: dict[str, Bead] = {}
        self.formulas: set[str] = set()
        self.convoys: dict[str, str] = {}
        self.agent_hooks: dict[str, str] = {}
        self.mail: dict[str, int] = {}
        self.mutations: list[tuple[Any, ...]] = []
        self.wisp_variables: dict[str, dict[str, str]] = {}
        self.failures: dict[str, StoreError] = {}
        self.bond_unparsable = False
        self._counter = 0

    def add(self, bead_id: str, title: str = "", status: str = "open", **kwargs: Any) -> Bead:
        bead = Bead(id=bead_id, title=title, status=status, **kwargs)
        self.beads[bead_id] = bead
        return bead

    def fail(self, method: str, message: str = "boom") -> None:
        self.failures[method] = StoreError(["bd", method], 1, message)

    def _check(self, method: str) -> None:
        if method in self.failures:
            raise self.failures[method]

    def _next_id(self, kind: str) -> str:
        self._counter += 1
        return f"gt-{kind}{self._counter}"

    def show(self, bead_id: str, cwd: Path | None = None) -> Bead:
        self._check("show")
        if bead_id not in self.beads:
            raise StoreError(["bd", "show", bead_id], 1, f"bead {bead_id} not found")
        return self.beads[bead_id].model_copy()

    def exists(self, bead_id: str, cwd: Path | None = None) -> bool:
        return bead_id in self.beads

    def update_status(self, bead_id: str, status: str, assignee: str, cwd: Path | None = None) -> None:
        self._check("update_status")
        if bead_id not in self.beads:
            raise StoreError(["bd", "update", bead_id], 1, f"bead {bead_id} not found")
        bead = self.beads[bead_id]
        bead.status = status
        bead.assignee = assignee
        self.mutations.append(("update_status", bead_id, status, assignee))

    def set_description_field(self, bead_id: str, key: str, value: str, cwd: Path | None = None) -> None:
        self._check("set_description_field")
        bead = self.beads[bead_id]
        bead.description = set_description_field(bead.description, key, value)
        self.mutations.append(("set_description_field", bead_id, key, value))

    def set_agent_hook(self, agent_bead_id: str, bead_id: str, cwd: Path | None = None) -> None:
        self._check("set_agent_hook")
        self.agent_hooks[agent_bead_id] = bead_id
        self.mutations.append(("set_agent_hook", agent_bead_id, bead_id))

    def count_unread_mail(self, agent: str, cwd: Path | None = None) -> int:
        self._check("count_unread_mail")
        return self.mail.get(agent, 0)

    def formula_exists(self, name: str, cwd: Path | None = None) -> bool:
        return name in self.formulas

    def cook(self, name: str, cwd: Path | None = None) -> None:
        self._check("cook")
        self.mutations.append(("cook", name))

    def wisp(self, name: str, variables: dict[str, str], cwd: Path | None = None) -> str:
        self._check("wisp")
        wisp_id = self._next_id("wisp")
        self.add(wisp_id, title=name)
        self.wisp_variables[wisp_id] = dict(variables)
        self.mutations.append(("wisp", name, wisp_id))
        return wisp_id

    def bond(self, root_id: str, target_id: str, cwd: Path | None = None) -> str | None:
        self._check("bond")
        self.mutations.append(("bond", root_id, target_id))
        if self.bond_unparsable:
            return None
        compound_id = self._next_id("cmp")
        self.add(compound_id, title=f"compound of {target_id}", description=f"bonded_to: {target_id}")
        return compound_id

    def find_tracking_convoy(self, bead_id: str, cwd: Path | None = None) -> str | None:
        self._check("find_tracking_convoy")
        return self.convoys.get(bead_id)

    def create_convoy(self, title: str, description: str, cwd: Path | None = None) -> str:
        self._check("create_convoy")
        self._counter += 1
        convoy_id = f"hq-cv{self._counter}"
        self.add(convoy_id, title=title, issue_type="convoy")
        self.mutations.append(("create_convoy", convoy_id, title))
        return convoy_id

    def add_tracking(self, convoy_id: str, bead_id: str, cwd: Path | None = None) -> None:
        self._check("add_tracking")
        self.convoys[bead_id] = convoy_id
        self.mutations.append(("add_tracking", convoy_id, bead_id))


class FakeTmux:
    """In-memory stand-in for TmuxClient."""

    def __init__(self) -> None:
        self.sessions: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.ready = True
        self.current: str | None = None
        self.fail_send = False
        self.fail_kill: set[str] = set()

    def add_session(self, name: str, cwd: Path | None = None) -> None:
        self.sessions[name] = {"cwd": cwd, "command": None, "env": {}}

    @property
    def mutations(self) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] in ("new", "kill", "interrupt", "text")]

    def has_session(self, name: str) -> bool:
        return name in self.sessions

    def list_sessions(self) -> list[str]:
        return list(self.sessions)

    def new_session(self, name: str, cwd: Path, command: str | None = None, env: dict[str, str] | None = None) -> None:
        if name in self.sessions:
            raise SessionError(f"duplicate session: {name}")
        self.sessions[name] = {"cwd": cwd, "command": command, "env": dict(env or {})}
        self.calls.append(("new", name))

    def kill_session(self, name: str) -> None:
        if name in self.fail_kill or name not in self.sessions:
            raise SessionError(f"can't find session: {name}")
        del self.sessions[name]
        self.calls.append(("kill", name))

    def send_interrupt(self, name: str) -> None:
        self.calls.append(("interrupt", name))

    def send_text(self, name: str, text: str) -> None:
        if self.fail_send or name not in self.sessions:
            raise SessionError(f"can't find pane: {name}")
        self.calls.append(("text", name, text))

    def pane_for_session(self, name: str) -> str | None:
        if name not in self.sessions:
            return None
        return f"%{list(self.sessions).index(name)}"

    def current_command(self, name: str) -> str | None:
        return "claude" if name in self.sessions else None

    def current_session(self) -> str | None:
        return self.current

    def wait_until_ready(self, name: str, timeout: float | None = None) -> bool:
        self.calls.append(("wait", name))
        return self.ready


class FakePolecatManager(PolecatManager):
    """PolecatManager that creates plain directories instead of git worktrees."""

    def __init__(self, rig: Rig, config: Any) -> None:
        super().__init__(rig, config)
        self.removed: list[str] = []
        self.deleted_branches: list[str] = []

    def add(self, name: str) -> PolecatInfo:
        if self.exists(name):
            raise ValueError(f"Polecat '{self.rig.name}/{name}' already exists")
        path = self.path_for(name)
        path.mkdir(parents=True)
        return PolecatInfo(name=name, rig=self.rig.name, path=path, branch=self.branch_name(name))

    def remove(self, name: str, force: bool = False) -> PolecatInfo:
        shutil.rmtree(self.path_for(name))
        self.removed.append(name)
        return PolecatInfo(
            name=name,
            rig=self.rig.name,
            path=self.path_for(name),
            branch=self.branch_name(name),
            state=PolecatState.REMOVED,
        )

    def delete_branch(self, name: str) -> None:
        self.deleted_branches.append(self.branch_name(name))


@pytest.fixture
def config() -> FleetmasterConfig:
    """Default configuration."""
    return FleetmasterConfig()


@pytest.fixture
def town(tmp_path: Path) -> Path:
    """A town with one rig, ``gastown`` (bead prefix ``gt``).

    Layout:
        town/mayor/town.json
        town/mayor/rigs.json
        town/gastown/mayor/rig/
    """
    root = tmp_path / "town"
    (root / "mayor").mkdir(parents=True)
    (root / "mayor" / "town.json").write_text(json.dumps({"name": "test-town"}))
    (root / "mayor" / "rigs.json").write_text(
        json.dumps({"version": 1, "rigs": {"gastown": {"beads": {"prefix": "gt"}}}})
    )
    (root / "gastown" / "mayor" / "rig").mkdir(parents=True)
    return root


@pytest.fixture
def rigs(town: Path) -> RigRegistry:
    return RigRegistry(town)


@pytest.fixture
def fake_store() -> FakeBeadStore:
    return FakeBeadStore()


@pytest.fixture
def fake_tmux() -> FakeTmux:
    return FakeTmux()


@pytest.fixture
def polecat_managers() -> dict[str, FakePolecatManager]:
    """Fake polecat managers by rig name, created on first use."""
    return {}


@pytest.fixture
def polecat_factory(config: FleetmasterConfig, polecat_managers: dict[str, FakePolecatManager]):
    """Factory handing out one FakePolecatManager per rig."""

    def factory(rig: Rig) -> FakePolecatManager:
        if rig.name not in polecat_managers:
            polecat_managers[rig.name] = FakePolecatManager(rig, config.git)
        return polecat_managers[rig.name]

    return factory


@pytest.fixture
def provisioner(config, town, rigs, fake_store, fake_tmux, polecat_factory) -> WorkerProvisioner:
    return WorkerProvisioner(
        config,
        town,
        rigs,
        fake_store,
        fake_tmux,
        polecat_manager_factory=polecat_factory,
    )


@pytest.fixture
def dispatcher(config, town, rigs, fake_store, fake_tmux, provisioner) -> Dispatcher:
    """Dispatcher wired to the fakes, called by a human (empty environment)."""
    return Dispatcher(
        config,
        town,
        fake_store,
        fake_tmux,
        rigs,
        provisioner=provisioner,
        env={},
    )
