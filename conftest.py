"""
Fixtures for the repository update tests.

Repositories are real git repositories created in a temporary directory: a
bare `origin`, clones that play the local checkouts, and a publisher clone
used to push new commits to the origin.
"""

from pathlib import Path

import git
import pytest


def _commit_file(repo: git.Repo, name: str, content: str, message: str) -> str:
    """Write `name`, commit it and return the new commit sha."""
    (Path(repo.working_tree_dir) / name).write_text(content, encoding="utf-8")
    repo.git.add(name)
    repo.git.commit("-m", message)
    return repo.head.commit.hexsha


class Upstream:
    """A bare origin repository plus a clone that publishes commits to it."""

    def __init__(self, root: Path, name: str):
        self.bare_path = root / "remotes" / f"{name}.git"
        git.Repo.init(self.bare_path, bare=True, initial_branch="master")

        self.publisher = git.Repo.init(root / "publishers" / name, initial_branch="master")
        self.publisher.create_remote("origin", str(self.bare_path))
        _commit_file(self.publisher, "README.md", "initial\n", "initial commit")
        self.publisher.git.push("origin", "master")

    def publish(self, content: str = "update\n", name: str = "README.md") -> str:
        """Commit a change in the publisher clone and push it to the origin."""
        sha = _commit_file(self.publisher, name, content, f"update {name}")
        self.publisher.git.push("origin", "master")
        return sha

    def tag(self, name: str) -> None:
        self.publisher.create_tag(name)
        self.publisher.git.push("origin", name)

    def clone(self, path: Path) -> git.Repo:
        path.parent.mkdir(parents=True, exist_ok=True)
        return git.Repo.clone_from(str(self.bare_path), str(path))


@pytest.fixture(autouse=True)
def git_environment(tmp_path, monkeypatch):
    """Isolate git from the user's configuration and fix the commit identity."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.delenv("GIT_DIR", raising=False)
    monkeypatch.delenv("GPM_SSH_KEY", raising=False)
    for variable in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(variable, "Test User")
    for variable in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(variable, "test@example.com")


@pytest.fixture
def upstream(tmp_path) -> Upstream:
    return Upstream(tmp_path / "upstreams", "project")


@pytest.fixture
def workspace(tmp_path) -> Path:
    """The directory the walker starts from."""
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def commit_file():
    """Write a file in a repository, commit it and return the commit sha."""
    return _commit_file
