"""The deacon's kennel of pooled workers ("dogs").

Each dog has a directory ``<town>/deacon/dogs/<name>`` holding a small
state file::

    {"name": "alpha", "state": "idle", "work": null}

Dispatch picks a named dog or the first idle one and marks it working.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from fleetmaster.logging import get_logger

STATE_FILE = ".dog.json"


class DogState(str, Enum):
    """Availability of a pooled worker."""

    IDLE = "idle"
    WORKING = "working"


class DogRecord(BaseModel):
    """Persisted state of one dog.

    Attributes:
        name: Dog name, unique within the kennel
        state: Current availability
        work: Work item the dog was last dispatched, if any
        updated_at: Last state change (ISO-8601)
    """

    name: str
    state: DogState = DogState.IDLE
    work: str | None = None
    updated_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class Kennel:
    """File-backed registry of the deacon's dogs.

    Attributes:
        path: Kennel directory (``<town>/deacon/dogs``)
    """

    def __init__(self, town_root: Path) -> None:
        self.path = town_root / "deacon" / "dogs"
        self.logger = get_logger(__name__)

    def dog_dir(self, name: str) -> Path:
        return self.path / name

    def get(self, name: str) -> DogRecord | None:
        """Load one dog's record, or None if the dog does not exist."""
        directory = self.dog_dir(name)
        if not directory.is_dir():
            return None
        state_path = directory / STATE_FILE
        if not state_path.exists():
            return DogRecord(name=name)
        try:
            return DogRecord.model_validate_json(state_path.read_text(encoding="utf-8"))
        except ValidationError as e:
            self.logger.warning("dog_state_unreadable", name=name, error=str(e))
            return DogRecord(name=name)

    def list(self) -> list[DogRecord]:
        if not self.path.is_dir():
            return []
        records = []
        for entry in sorted(self.path.iterdir()):
            if entry.is_dir() and not entry.name.startswith("."):
                record = self.get(entry.name)
                if record is not None:
                    records.append(record)
        return records

    def find_idle(self) -> DogRecord | None:
        for record in self.list():
            if record.state == DogState.IDLE:
                return record
        return None

    def save(self, record: DogRecord) -> None:
        directory = self.dog_dir(record.name)
        directory.mkdir(parents=True, exist_ok=True)
        record.updated_at = datetime.now(timezone.utc).isoformat()
        (directory / STATE_FILE).write_text(
            json.dumps(record.model_dump(mode="json"), indent=2) + "\n",
            encoding="utf-8",
        )

    def create(self, name: str) -> DogRecord:
        """Add an idle dog to the kennel (no-op if it already exists)."""
        existing = self.get(name)
        if existing is not None:
            return existing
        record = DogRecord(name=name)
        self.save(record)
        self.logger.info("dog_created", name=name)
        return record

    def mark_working(self, name: str, work: str | None = None) -> DogRecord:
        record = self.get(name) or DogRecord(name=name)
        record.state = DogState.WORKING
        record.work = work
        self.save(record)
        return record
