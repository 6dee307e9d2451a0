"""Formula expansion: cook, wisp and bond.

A formula is a work template held by the store. Expanding one onto a bead
produces a compound whose root replaces the bead for the rest of the
dispatch; the original bead id survives only as provenance.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from fleetmaster.beads.models import Bead
from fleetmaster.beads.store import BeadStore
from fleetmaster.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Expansion:
    """Result of expanding a formula onto a bead.

    Attributes:
        formula: Formula name
        original_bead_id: Bead the formula was bonded onto
        wisp_id: Root of the formula instantiation
        compound_id: Root of the bonded compound (wisp_id if unparsable)
    """

    formula: str
    original_bead_id: str
    wisp_id: str
    compound_id: str


class FormulaExpander:
    """Runs formula operations against the store."""

    def __init__(self, store: BeadStore) -> None:
        self.store = store

    def expand_on_bead(self, formula: str, bead: Bead, cwd: Path | None = None) -> Expansion:
        """Instantiate ``formula`` for ``bead`` and bond it onto the bead.

        The instantiation gets exactly two variables: ``feature`` (the bead
        title) and ``issue`` (the bead id). Any failing step aborts the
        expansion.

        Raises:
            StoreError: If cook, wisp or bond fails.
        """
        self.store.cook(formula, cwd)
        wisp_id = self.store.wisp(formula, {"feature": bead.title, "issue": bead.id}, cwd)
        compound_id = self.store.bond(wisp_id, bead.id, cwd)
        if compound_id is None:
            logger.warning("bond_root_unparsable", formula=formula, wisp_id=wisp_id)
            compound_id = wisp_id

        logger.info(
            "formula_expanded",
            formula=formula,
            original_bead_id=bead.id,
            wisp_id=wisp_id,
            compound_id=compound_id,
        )
        return Expansion(
            formula=formula,
            original_bead_id=bead.id,
            wisp_id=wisp_id,
            compound_id=compound_id,
        )

    def instantiate(self, formula: str, variables: dict[str, str], cwd: Path | None = None) -> str:
        """Cook and instantiate a formula on its own; returns the wisp root."""
        self.store.cook(formula, cwd)
        wisp_id = self.store.wisp(formula, variables, cwd)
        logger.info("formula_instantiated", formula=formula, wisp_id=wisp_id)
        return wisp_id

    def attach_onboarding(
        self,
        formula: str,
        agent_bead_id: str,
        bead_id: str,
        worker: str,
        cwd: Path | None = None,
    ) -> str:
        """Bond the onboarding formula onto a freshly spawned worker's agent record.

        Returns:
            The compound root (or the wisp root if the bond response was unparsable).
        """
        self.store.cook(formula, cwd)
        wisp_id = self.store.wisp(formula, {"issue": bead_id, "worker": worker}, cwd)
        return self.store.bond(wisp_id, agent_bead_id, cwd) or wisp_id
