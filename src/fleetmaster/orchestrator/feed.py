"""Append-only activity feed at ``<town>/.events.jsonl``."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

FEED_FILE = ".events.jsonl"


class ActivityFeed:
    """Writes one JSON object per line: ``{ts, type, actor, payload}``."""

    def __init__(self, town_root: Path) -> None:
        self.path = town_root / FEED_FILE

    def log(self, event_type: str, actor: str, payload: dict[str, Any] | None = None) -> None:
        """Append an event.

        Raises:
            OSError: If the feed file cannot be written.
        """
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "type": event_type,
            "actor": actor,
            "payload": payload or {},
        }
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record) + "\n")
