"""Git operations wrapper for Fleetmaster.

This module provides a high-level interface to git operations using GitPython,
with error handling and structured logging. It covers what the fleet needs
from version control: cutting branches and worktrees for ephemeral workers,
removing them again, and detecting uncommitted work before anything is
deleted.

Example usage:
    >>> from pathlib import Path
    >>> from fleetmaster.config import GitConfig
    >>> from fleetmaster.pipeline.git_ops import GitManager, check_uncommitted_work
    >>>
    >>> git_manager = GitManager(repo_path=Path("/town/gastown/mayor/rig"), config=GitConfig())
    >>> git_manager.add_worktree(Path("/town/gastown/polecats/ace"), "polecat/ace")
    >>>
    >>> status = check_uncommitted_work(Path("/town/gastown/polecats/ace"))
    >>> if status.clean:
    ...     git_manager.remove_worktree(Path("/town/gastown/polecats/ace"))
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import git
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from fleetmaster.config import GitConfig
from fleetmaster.logging import get_logger


@dataclass
class WorkStatus:
    """Uncommitted-work report for one working copy.

    Attributes:
        modified_files: Tracked files with staged or unstaged changes
        untracked_files: Files git does not track (ignored files excluded)
        stash_count: Entries in the stash
        unpushed_commits: Commits ahead of the upstream (or base) branch
    """

    modified_files: int = 0
    untracked_files: int = 0
    stash_count: int = 0
    unpushed_commits: int = 0

    @property
    def clean(self) -> bool:
        return not (
            self.modified_files or self.untracked_files or self.stash_count or self.unpushed_commits
        )

    @property
    def summary(self) -> str:
        """Short human-readable description, e.g. ``2 modified, 1 untracked``."""
        if self.clean:
            return "clean"
        parts = []
        if self.modified_files:
            parts.append(f"{self.modified_files} modified")
        if self.untracked_files:
            parts.append(f"{self.untracked_files} untracked")
        if self.stash_count:
            parts.append(f"{self.stash_count} stash(es)")
        if self.unpushed_commits:
            parts.append(f"{self.unpushed_commits} unpushed commit(s)")
        return ", ".join(parts)


def check_uncommitted_work(path: Path, base_branch: str | None = None) -> WorkStatus:
    """Inspect a working copy for work that removal would destroy.

    Commits count as unpushed when they are ahead of the branch's upstream.
    A branch with no upstream (every polecat branch) is compared against
    ``base_branch`` instead, so local commits never read as clean.

    Args:
        path: Working copy (worktree) root.
        base_branch: Branch the working copy was cut from.

    Returns:
        WorkStatus describing modified, untracked, stashed and unpushed work.

    Raises:
        InvalidGitRepositoryError: If path is not a git working copy.
        NoSuchPathError: If path does not exist.
        GitCommandError: If git fails while inspecting.
    """
    repo = git.Repo(path)
    status = WorkStatus()

    for line in repo.git.status("--porcelain").splitlines():
        if not line.strip():
            continue
        if line.startswith("??"):
            status.untracked_files += 1
        else:
            status.modified_files += 1

    stash_output = repo.git.stash("list")
    status.stash_count = len([line for line in stash_output.splitlines() if line.strip()])

    try:
        tracking = repo.active_branch.tracking_branch()
    except TypeError:
        # Detached HEAD
        tracking = None

    if tracking is not None and tracking.is_valid():
        status.unpushed_commits = _count_commits(repo, f"{tracking.name}..HEAD")
    elif base_branch is not None:
        # Fails with GitCommandError if the base branch is unknown
        status.unpushed_commits = _count_commits(repo, f"{base_branch}..HEAD")

    return status


def _count_commits(repo: git.Repo, rev_range: str) -> int:
    return sum(1 for _ in repo.iter_commits(rev_range))


class GitManager:
    """Branch and worktree operations on a rig's base copy.

    Attributes:
        repo_path: Path to the base repository
        config: Git configuration
        repo: GitPython Repo object
        logger: Structured logger instance
    """

    def __init__(self, repo_path: Path, config: GitConfig) -> None:
        """Initialize GitManager with repository and configuration.

        Args:
            repo_path: Path to the git repository root
            config: Git configuration settings

        Raises:
            InvalidGitRepositoryError: If repo_path is not a valid git repository
            NoSuchPathError: If repo_path does not exist
        """
        self.repo_path = repo_path
        self.config = config
        self.logger = get_logger(__name__)

        try:
            self.repo = git.Repo(repo_path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            self.logger.error(
                "git_manager_init_failed",
                repo_path=str(repo_path),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

    def create_branch(self, branch_name: str, base_branch: str | None = None) -> str:
        """Create a new git branch from base branch.

        Args:
            branch_name: Name of the new branch to create
            base_branch: Base branch to create from (default: config.main_branch)

        Returns:
            Name of the created branch

        Raises:
            GitCommandError: If branch already exists or base branch not found
        """
        if base_branch is None:
            base_branch = self.config.main_branch

        if base_branch not in self.repo.heads:
            self.logger.error(
                "base_branch_not_found",
                base_branch=base_branch,
                available_branches=[h.name for h in self.repo.heads],
            )
            raise GitCommandError("create_branch", f"Base branch '{base_branch}' not found")

        if branch_name in self.repo.heads:
            raise GitCommandError("create_branch", f"Branch '{branch_name}' already exists")

        base_commit = self.repo.heads[base_branch].commit
        new_branch = self.repo.create_head(branch_name, base_commit)

        self.logger.info(
            "branch_created",
            branch_name=branch_name,
            base_branch=base_branch,
            commit_sha=str(base_commit),
        )
        return new_branch.name

    def delete_branch(self, branch_name: str, force: bool = False) -> None:
        """Delete a local branch.

        Raises:
            GitCommandError: If the branch does not exist or cannot be deleted
        """
        if branch_name not in self.repo.heads:
            raise GitCommandError("delete_branch", f"Branch '{branch_name}' not found")
        self.repo.delete_head(branch_name, force=force)
        self.logger.info("branch_deleted", branch_name=branch_name, force=force)

    def add_worktree(self, path: Path, branch_name: str, base_branch: str | None = None) -> Path:
        """Create a worktree at ``path`` on a fresh branch cut from the base branch.

        A stale branch with the same name (left behind by an earlier worker of
        that name) is replaced, but only when it holds no commits beyond the
        base branch.

        Returns:
            The worktree path.

        Raises:
            GitCommandError: If the stale branch has unmerged commits, or
                branch or worktree creation fails
        """
        if base_branch is None:
            base_branch = self.config.main_branch

        if branch_name in self.repo.heads:
            ahead = _count_commits(self.repo, f"{base_branch}..{branch_name}")
            if ahead:
                self.logger.warning(
                    "stale_branch_has_commits",
                    branch_name=branch_name,
                    base_branch=base_branch,
                    commits_ahead=ahead,
                )
                raise GitCommandError(
                    "add_worktree",
                    f"Branch '{branch_name}' has {ahead} commit(s) not on '{base_branch}'",
                )
            self.repo.delete_head(branch_name, force=True)
            self.logger.debug("stale_branch_replaced", branch_name=branch_name)

        self.create_branch(branch_name, base_branch)
        path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self.repo.git.worktree("add", str(path), branch_name)
        except GitCommandError as e:
            self.logger.error(
                "worktree_creation_failed",
                path=str(path),
                branch=branch_name,
                error=str(e),
            )
            self.repo.delete_head(branch_name, force=True)
            raise

        self.logger.info("worktree_created", path=str(path), branch=branch_name)
        return path

    def remove_worktree(self, path: Path, force: bool = False) -> None:
        """Remove a worktree and prune its administrative entry.

        Raises:
            GitCommandError: If git refuses to remove the worktree
        """
        args = ["remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        self.repo.git.worktree(*args)
        self.repo.git.worktree("prune")
        self.logger.info("worktree_removed", path=str(path), force=force)
