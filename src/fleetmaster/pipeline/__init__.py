"""Working-copy and pooled-worker bookkeeping.

This package implements git operations on rig base copies, the polecat
worktree lifecycle, and the deacon's kennel of pooled workers.
"""

from __future__ import annotations

from fleetmaster.pipeline.git_ops import GitManager, WorkStatus, check_uncommitted_work
from fleetmaster.pipeline.kennel import DogRecord, DogState, Kennel
from fleetmaster.pipeline.worktree import PolecatInfo, PolecatManager, PolecatState

__all__ = [
    "DogRecord",
    "DogState",
    "GitManager",
    "Kennel",
    "PolecatInfo",
    "PolecatManager",
    "PolecatState",
    "WorkStatus",
    "check_uncommitted_work",
]
