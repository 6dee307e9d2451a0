"""Convoy tracking for dispatched beads.

Convoys live in the town-level store. Every failure here is downgraded to
an outcome the dispatcher reports as a warning.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from fleetmaster.beads.models import Bead
from fleetmaster.beads.store import BeadStore
from fleetmaster.errors import StoreError
from fleetmaster.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConvoyOutcome:
    """What convoy tracking did (or would do) for one bead.

    Attributes:
        convoy_id: Tracking convoy, existing or new
        created: A new convoy was (or would be) created
        error: Failure message when tracking could not be ensured
    """

    convoy_id: str | None = None
    created: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ConvoyTracker:
    """Ensures each dispatched bead is tracked by an open convoy."""

    def __init__(self, store: BeadStore, town_root: Path, title_prefix: str = "Work: ") -> None:
        self.store = store
        self.town_root = town_root
        self.title_prefix = title_prefix

    def title_for(self, bead: Bead) -> str:
        return f"{self.title_prefix}{bead.title or bead.id}"

    def ensure_tracked(self, bead: Bead, dry_run: bool = False) -> ConvoyOutcome:
        """Find the bead's tracking convoy or create one.

        In dry-run mode only the lookup runs; a missing convoy is reported
        as ``created=True`` with no id.
        """
        try:
            existing = self.store.find_tracking_convoy(bead.id, cwd=self.town_root)
        except StoreError as e:
            logger.warning("convoy_lookup_failed", bead_id=bead.id, error=str(e))
            return ConvoyOutcome(error=f"convoy lookup failed: {e}")
        if existing:
            logger.debug("convoy_found", bead_id=bead.id, convoy_id=existing)
            return ConvoyOutcome(convoy_id=existing)
        if dry_run:
            return ConvoyOutcome(created=True)

        try:
            convoy_id = self.store.create_convoy(
                self.title_for(bead),
                f"Convoy tracking {bead.id}",
                cwd=self.town_root,
            )
        except StoreError as e:
            logger.warning("convoy_create_failed", bead_id=bead.id, error=str(e))
            return ConvoyOutcome(error=f"could not create convoy: {e}")

        try:
            self.store.add_tracking(convoy_id, bead.id, cwd=self.town_root)
        except StoreError as e:
            logger.warning(
                "convoy_link_failed", bead_id=bead.id, convoy_id=convoy_id, error=str(e)
            )
            return ConvoyOutcome(convoy_id=convoy_id, created=True, error=f"could not link convoy: {e}")

        logger.info("convoy_created", bead_id=bead.id, convoy_id=convoy_id)
        return ConvoyOutcome(convoy_id=convoy_id, created=True)
