"""Shared fixtures for integration tests.

These fixtures create real git repositories so worktree creation, removal
and uncommitted-work detection run against actual git state.
"""

from __future__ import annotations

from pathlib import Path

import git
import pytest

from fleetmaster.config import GitConfig
from fleetmaster.pipeline.worktree import PolecatManager
from fleetmaster.rigs import RigRegistry


def init_repo(path: Path) -> git.Repo:
    """Initialize a repository at ``path`` with one commit on ``main``.

    Args:
        path: Directory to initialize (created if missing)

    Returns:
        GitPython Repo object for the new repository
    """
    path.mkdir(parents=True, exist_ok=True)
    repo = git.Repo.init(path)

    # Configure user (required for commits)
    repo.config_writer().set_value("user", "name", "Test User").release()
    repo.config_writer().set_value("user", "email", "test@example.com").release()

    (path / "README.md").write_text("# Test Repository\n")
    repo.index.add(["README.md"])
    repo.index.commit("Initial commit")
    repo.git.branch("-M", "main")
    return repo


@pytest.fixture
def make_repo():
    """Factory for throwaway repositories."""
    return init_repo


@pytest.fixture
def base_repo(town: Path) -> git.Repo:
    """The gastown rig's base copy as a real repository."""
    return init_repo(town / "gastown" / "mayor" / "rig")


@pytest.fixture
def polecat_manager(base_repo: git.Repo, town: Path) -> PolecatManager:
    """PolecatManager for the gastown rig backed by real git worktrees."""
    rig = RigRegistry(town).get("gastown")
    return PolecatManager(rig, GitConfig())
