"""Ephemeral worker (polecat) working copies.

Each polecat owns one git worktree at ``<rig>/polecats/<name>`` on its own
branch (``polecat/<name>``) cut from the rig's base copy. This module
creates, lists and removes those worktrees; whether removal is safe is the
caller's decision (see ``check_uncommitted_work``).

Example usage:
    >>> manager = PolecatManager(rig, GitConfig())
    >>> info = manager.add("ace")
    >>> [p.name for p in manager.list()]
    ['ace']
    >>> manager.remove("ace")
"""

from __future__ import annotations

import shutil
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from git import GitCommandError
from pydantic import BaseModel, Field

from fleetmaster.config import GitConfig
from fleetmaster.logging import get_logger
from fleetmaster.pipeline.git_ops import GitManager
from fleetmaster.rigs import Rig


class PolecatState(str, Enum):
    """Lifecycle state of a polecat working copy.

    Attributes:
        ACTIVE: Worktree exists on disk
        REMOVED: Worktree has been removed
    """

    ACTIVE = "active"
    REMOVED = "removed"


class PolecatInfo(BaseModel):
    """Information about one polecat working copy.

    Attributes:
        name: Polecat name, unique within its rig
        rig: Owning rig name
        path: Filesystem path of the worktree
        branch: Branch checked out in the worktree
        state: Current lifecycle state
        observed_at: UTC timestamp when this record was built
    """

    name: str
    rig: str
    path: Path
    branch: str
    state: PolecatState = PolecatState.ACTIVE
    observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PolecatManager:
    """Manages the polecat worktrees of one rig.

    Attributes:
        rig: The rig whose polecats are managed
        config: Git configuration (base branch, branch prefix)
        logger: Structured logger instance
    """

    def __init__(self, rig: Rig, config: GitConfig, git_manager: GitManager | None = None) -> None:
        self.rig = rig
        self.config = config
        self.logger = get_logger(__name__)
        self._git_manager = git_manager

    @property
    def git(self) -> GitManager:
        """GitManager over the rig's base copy, opened on first use."""
        if self._git_manager is None:
            self._git_manager = GitManager(self.rig.base_repo_path, self.config)
        return self._git_manager

    def branch_name(self, name: str) -> str:
        return f"{self.config.polecat_branch_prefix}{name}"

    def path_for(self, name: str) -> Path:
        return self.rig.polecats_dir / name

    def _info(self, name: str) -> PolecatInfo:
        return PolecatInfo(
            name=name,
            rig=self.rig.name,
            path=self.path_for(name),
            branch=self.branch_name(name),
        )

    def list(self) -> list[PolecatInfo]:
        """Polecats with a working copy on disk, sorted by name."""
        if not self.rig.polecats_dir.is_dir():
            return []
        return [
            self._info(entry.name)
            for entry in sorted(self.rig.polecats_dir.iterdir())
            if entry.is_dir() and not entry.name.startswith(".")
        ]

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_dir()

    def next_available_name(self, pool: list[str]) -> str | None:
        """First name from ``pool`` without a working copy, or None if exhausted."""
        for name in pool:
            if not self.exists(name):
                return name
        return None

    def add(self, name: str) -> PolecatInfo:
        """Create the working copy and branch for a new polecat.

        Raises:
            ValueError: If a polecat with this name already exists
            GitCommandError: If worktree creation fails
        """
        if self.exists(name):
            raise ValueError(f"Polecat '{self.rig.name}/{name}' already exists")

        info = self._info(name)
        self.git.add_worktree(info.path, info.branch)
        self.logger.info(
            "polecat_created",
            rig=self.rig.name,
            name=name,
            path=str(info.path),
            branch=info.branch,
        )
        return info

    def remove(self, name: str, force: bool = False) -> PolecatInfo:
        """Remove a polecat's working copy.

        Args:
            name: Polecat to remove
            force: Remove even with local modifications, falling back to
                deleting the directory when git no longer tracks the worktree

        Returns:
            The removed polecat's record, in REMOVED state

        Raises:
            GitCommandError: If git refuses and force is not set
        """
        info = self._info(name)
        try:
            self.git.remove_worktree(info.path, force=force)
        except GitCommandError as e:
            if not force or not info.path.exists():
                raise
            self.logger.warning(
                "worktree_remove_fallback",
                rig=self.rig.name,
                name=name,
                error=str(e),
            )
            shutil.rmtree(info.path)
            self.git.repo.git.worktree("prune")

        info.state = PolecatState.REMOVED
        self.logger.info("polecat_removed", rig=self.rig.name, name=name, force=force)
        return info

    def delete_branch(self, name: str) -> None:
        """Delete the polecat's branch from the base copy.

        Raises:
            GitCommandError: If the branch cannot be deleted
        """
        self.git.delete_branch(self.branch_name(name), force=True)
