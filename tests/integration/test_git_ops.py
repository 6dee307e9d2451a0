"""Integration tests for git operations module.

These tests create real git repositories in temporary directories to verify
git operations work correctly with actual git commands and state.
"""

from __future__ import annotations

from pathlib import Path

import git
import pytest
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from fleetmaster.config import GitConfig
from fleetmaster.pipeline.git_ops import GitManager, check_uncommitted_work

pytestmark = pytest.mark.integration


@pytest.fixture
def temp_repo(tmp_path: Path, make_repo) -> git.Repo:
    return make_repo(tmp_path / "test_repo")


@pytest.fixture
def git_manager(temp_repo: git.Repo) -> GitManager:
    return GitManager(repo_path=Path(temp_repo.working_dir), config=GitConfig())


class TestGitManager:
    def test_create_branch_from_main(self, git_manager: GitManager, temp_repo: git.Repo) -> None:
        result = git_manager.create_branch("polecat/ace")

        assert result == "polecat/ace"
        assert temp_repo.heads["polecat/ace"].commit == temp_repo.heads["main"].commit

    def test_create_existing_branch_fails(self, git_manager: GitManager) -> None:
        git_manager.create_branch("polecat/ace")

        with pytest.raises(GitCommandError):
            git_manager.create_branch("polecat/ace")

    def test_missing_base_branch_fails(self, git_manager: GitManager) -> None:
        with pytest.raises(GitCommandError):
            git_manager.create_branch("polecat/ace", base_branch="develop")

    def test_delete_branch(self, git_manager: GitManager, temp_repo: git.Repo) -> None:
        git_manager.create_branch("polecat/ace")

        git_manager.delete_branch("polecat/ace", force=True)

        assert "polecat/ace" not in temp_repo.heads

    def test_delete_missing_branch_fails(self, git_manager: GitManager) -> None:
        with pytest.raises(GitCommandError):
            git_manager.delete_branch("polecat/ghost")

    def test_worktree_round_trip(self, git_manager: GitManager, tmp_path: Path) -> None:
        path = tmp_path / "worktrees" / "ace"

        git_manager.add_worktree(path, "polecat/ace")
        assert (path / "README.md").exists()

        git_manager.remove_worktree(path)
        assert not path.exists()

    def test_add_worktree_replaces_stale_branch(
        self, git_manager: GitManager, temp_repo: git.Repo, tmp_path: Path
    ) -> None:
        git_manager.create_branch("polecat/ace")

        git_manager.add_worktree(tmp_path / "ace", "polecat/ace")

        assert "polecat/ace" in temp_repo.heads

    def test_add_worktree_refuses_stale_branch_with_commits(
        self, git_manager: GitManager, temp_repo: git.Repo, tmp_path: Path
    ) -> None:
        git_manager.create_branch("polecat/ace")
        temp_repo.git.checkout("polecat/ace")
        (Path(temp_repo.working_dir) / "feature.txt").write_text("work\n")
        temp_repo.git.add("feature.txt")
        temp_repo.git.commit("-m", "Unmerged work")
        temp_repo.git.checkout("main")

        with pytest.raises(GitCommandError):
            git_manager.add_worktree(tmp_path / "ace", "polecat/ace")

        assert temp_repo.heads["polecat/ace"].commit.summary == "Unmerged work"
        assert not (tmp_path / "ace").exists()

    def test_not_a_repository(self, tmp_path: Path) -> None:
        with pytest.raises(InvalidGitRepositoryError):
            GitManager(tmp_path, GitConfig())

    def test_missing_path(self, tmp_path: Path) -> None:
        with pytest.raises(NoSuchPathError):
            GitManager(tmp_path / "nope", GitConfig())


class TestCheckUncommittedWork:
    def test_clean(self, temp_repo: git.Repo) -> None:
        status = check_uncommitted_work(Path(temp_repo.working_dir))

        assert status.clean
        assert status.summary == "clean"

    def test_modified_and_untracked(self, temp_repo: git.Repo) -> None:
        root = Path(temp_repo.working_dir)
        (root / "README.md").write_text("# Changed\n")
        (root / "notes.txt").write_text("scratch\n")

        status = check_uncommitted_work(root)

        assert status.modified_files == 1
        assert status.untracked_files == 1
        assert status.summary == "1 modified, 1 untracked"

    def test_stash(self, temp_repo: git.Repo) -> None:
        root = Path(temp_repo.working_dir)
        (root / "README.md").write_text("# Stashed\n")
        temp_repo.git.stash()

        status = check_uncommitted_work(root)

        assert status.modified_files == 0
        assert status.stash_count == 1
        assert not status.clean

    def test_unpushed_commits(self, temp_repo: git.Repo, tmp_path: Path) -> None:
        remote_path = tmp_path / "remote.git"
        git.Repo.init(remote_path, bare=True)
        temp_repo.create_remote("origin", str(remote_path))
        temp_repo.git.push("-u", "origin", "main")

        root = Path(temp_repo.working_dir)
        (root / "feature.txt").write_text("work\n")
        temp_repo.index.add(["feature.txt"])
        temp_repo.index.commit("Local work")

        status = check_uncommitted_work(root)

        assert status.unpushed_commits == 1
        assert status.summary == "1 unpushed commit(s)"

    def test_commits_ahead_of_base_without_upstream(self, temp_repo: git.Repo) -> None:
        root = Path(temp_repo.working_dir)
        temp_repo.git.checkout("-b", "polecat/ace")
        (root / "feature.txt").write_text("work\n")
        temp_repo.git.add("feature.txt")
        temp_repo.git.commit("-m", "Local work")

        assert check_uncommitted_work(root).clean
        status = check_uncommitted_work(root, base_branch="main")

        assert status.unpushed_commits == 1
        assert not status.clean

    def test_branch_level_with_base_is_clean(self, temp_repo: git.Repo) -> None:
        temp_repo.git.checkout("-b", "polecat/ace")

        assert check_uncommitted_work(Path(temp_repo.working_dir), base_branch="main").clean

    def test_unknown_base_branch(self, temp_repo: git.Repo) -> None:
        with pytest.raises(GitCommandError):
            check_uncommitted_work(Path(temp_repo.working_dir), base_branch="develop")

    def test_detached_head(self, temp_repo: git.Repo) -> None:
        temp_repo.git.checkout("--detach")

        assert check_uncommitted_work(Path(temp_repo.working_dir)).clean

    def test_not_a_repository(self, tmp_path: Path) -> None:
        with pytest.raises(InvalidGitRepositoryError):
            check_uncommitted_work(tmp_path)
