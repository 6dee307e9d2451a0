"""Rig (project workspace) registry.

Rigs are declared in ``<town>/mayor/rigs.json``::

    {"rigs": {"gastown": {"git_url": "...", "beads": {"prefix": "gt"}}}}

Each rig lives at ``<town>/<name>`` with the coordinator's base copy at
``<rig>/mayor/rig``, ephemeral working copies under ``<rig>/polecats`` and
persistent workers under ``<rig>/crew``.
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from fleetmaster.logging import get_logger

logger = get_logger(__name__)

RIGS_CONFIG = Path("mayor") / "rigs.json"


class RigBeadsSettings(BaseModel):
    """Store settings of one rig."""

    prefix: str | None = None


class RigEntry(BaseModel):
    """One rig as declared in rigs.json."""

    git_url: str | None = None
    beads: RigBeadsSettings = Field(default_factory=RigBeadsSettings)


class RigsFile(BaseModel):
    """Top-level shape of rigs.json."""

    version: int = 1
    rigs: dict[str, RigEntry] = Field(default_factory=dict)


class Rig(BaseModel):
    """A resolved rig.

    Attributes:
        name: Rig name (also its directory name under the town root)
        path: Absolute rig directory
        bead_prefix: Identifier prefix of the rig's work items
    """

    name: str
    path: Path
    bead_prefix: str | None = None

    @property
    def base_repo_path(self) -> Path:
        """The coordinator's base copy that worktrees are cut from."""
        return self.path / "mayor" / "rig"

    @property
    def polecats_dir(self) -> Path:
        return self.path / "polecats"

    @property
    def crew_dir(self) -> Path:
        return self.path / "crew"


class RigRegistry:
    """Read-only view over the rigs declared for a town.

    Attributes:
        town_root: Fleet root directory
        town_prefix: Identifier prefix routed to the town root
    """

    def __init__(self, town_root: Path, town_prefix: str = "hq") -> None:
        self.town_root = town_root
        self.town_prefix = town_prefix
        self._rigs: dict[str, Rig] = {}
        self._load()

    def _load(self) -> None:
        config_path = self.town_root / RIGS_CONFIG
        if not config_path.exists():
            logger.debug("rigs_config_missing", path=str(config_path))
            return
        try:
            data = RigsFile.model_validate(json.loads(config_path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as e:
            raise ValueError(f"Invalid rigs config {config_path}: {e}") from e

        for name, entry in data.rigs.items():
            self._rigs[name] = Rig(
                name=name,
                path=self.town_root / name,
                bead_prefix=entry.beads.prefix,
            )
        logger.debug("rigs_loaded", count=len(self._rigs))

    def names(self) -> list[str]:
        return sorted(self._rigs)

    def is_rig(self, name: str) -> bool:
        """Whether ``name`` (optionally with a trailing slash) is a declared rig."""
        return name.rstrip("/") in self._rigs

    def get(self, name: str) -> Rig | None:
        return self._rigs.get(name.rstrip("/"))

    def discover(self) -> list[Rig]:
        """Declared rigs whose directory exists on disk."""
        return [rig for name, rig in sorted(self._rigs.items()) if rig.path.is_dir()]

    def prefix_for(self, rig_name: str | None) -> str | None:
        if rig_name is None:
            return None
        rig = self._rigs.get(rig_name)
        return rig.bead_prefix if rig else None

    def resolve_hook_dir(self, bead_id: str, fallback: Path | None = None) -> Path:
        """Working directory from which store calls about ``bead_id`` must run.

        The store is sharded per rig, so the identifier prefix selects the
        rig that owns the item. Town-level items route to the town root.

        Args:
            bead_id: Work item identifier.
            fallback: Directory to use when no rig claims the prefix.

        Returns:
            Directory to run store commands in.
        """
        prefix = bead_id.split("-", 1)[0]
        if prefix == self.town_prefix:
            return self.town_root
        for rig in self._rigs.values():
            if rig.bead_prefix and rig.bead_prefix == prefix and rig.path.is_dir():
                return rig.path
        return fallback or self.town_root
