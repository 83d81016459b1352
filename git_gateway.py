"""
Thin gateway over GitPython for the repository update tool.

Every operation takes an opened `git.Repo` handle and raises `GitGatewayError`
(or one of its subclasses) when the underlying git call fails. Handles are
opened per call with `open_repository` and closed again on exit.
"""

import logging
import os
import re
import shlex
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from urllib.parse import urlparse

import git
from git.exc import GitCommandError, GitError, InvalidGitRepositoryError, NoSuchPathError, ODBError

log = logging.getLogger(__name__)

DEFAULT_BRANCH = "master"
REMOTE_NAME = "origin"
SSH_KEY_ENV = "GPM_SSH_KEY"
DEFAULT_SSH_USER = "git"

_SSH_SCHEMES = {"ssh", "git+ssh", "ssh+git"}
_SCP_LIKE_URL = re.compile(r"^(?:(?P<user>[^@/:]+)@)?(?P<host>[^@/:]{2,}):(?!//)")


class GitGatewayError(Exception):
    """Raised when a git operation fails."""

    def __init__(self, message: str, operation: str = "", path: Path | None = None):
        super().__init__(message)
        self.operation = operation
        self.path = path


class NotARepositoryError(GitGatewayError):
    """Raised when a directory is not the root of a git repository."""


class CredentialError(GitGatewayError):
    """Raised when no usable authentication is available for a fetch."""


class RepositoryState(StrEnum):
    """Multi-step operation currently in progress in a repository."""

    CLEAN = "clean"
    MERGE = "merge"
    REVERT = "revert"
    REVERT_SEQUENCE = "revert-sequence"
    CHERRY_PICK = "cherry-pick"
    CHERRY_PICK_SEQUENCE = "cherry-pick-sequence"
    BISECT = "bisect"
    REBASE = "rebase"
    REBASE_INTERACTIVE = "rebase-interactive"
    REBASE_MERGE = "rebase-merge"
    APPLY_MAILBOX = "apply-mailbox"
    APPLY_MAILBOX_OR_REBASE = "apply-mailbox-or-rebase"


@dataclass(frozen=True)
class FetchHead:
    """The mergeable entry recorded in FETCH_HEAD by the last fetch."""

    hexsha: str
    description: str


def _repo_path(repo: git.Repo) -> Path:
    return Path(repo.working_tree_dir or repo.git_dir)


def _describe(error: Exception) -> str:
    if not isinstance(error, GitCommandError):
        return str(error)
    # GitPython formats captured output as "\n  stderr: '<text>'"
    for output in (error.stderr, error.stdout):
        detail = (output or "").strip().removeprefix("stderr:").removeprefix("stdout:")
        detail = detail.strip().strip("'").strip()
        if detail:
            return detail
    return str(error)


@contextmanager
def _git_operation(operation: str, repo: git.Repo) -> Iterator[None]:
    """Translate GitPython errors raised inside the block into `GitGatewayError`."""
    try:
        yield
    except GitGatewayError:
        raise
    except (GitError, ODBError, ValueError) as e:
        path = _repo_path(repo)
        raise GitGatewayError(f"git {operation} failed in {path}: {_describe(e)}", operation, path) from e


@contextmanager
def open_repository(path: Path) -> Iterator[git.Repo]:
    """
    Open the repository rooted at `path` and close it again on exit.

    Parent directories are not searched, so a subdirectory of a work tree is
    not considered a repository.

    Parameters
    ----------
    path : Path
        The directory to open.

    Yields
    ------
    git.Repo
        The opened repository handle.

    Raises
    ------
    NotARepositoryError
        If `path` is not the root of a git repository.
    """
    try:
        repo = git.Repo(path, search_parent_directories=False)
    except (InvalidGitRepositoryError, NoSuchPathError) as e:
        raise NotARepositoryError(f"{path} is not a git repository", "open", path) from e
    try:
        yield repo
    finally:
        repo.close()


def is_repository(path: Path) -> bool:
    """Check whether `path` can be opened as a repository root."""
    try:
        with open_repository(path):
            return True
    except NotARepositoryError:
        return False


def branch_from_reference(reference: str) -> str:
    """
    Derive a branch name from a full reference name.

    `refs/heads/<name>` yields `<name>`, any other reference yields its last
    path segment. An empty result falls back to `DEFAULT_BRANCH`.
    """
    prefix = "refs/heads/"
    if reference.startswith(prefix):
        name = reference[len(prefix) :]
    else:
        name = reference.rsplit("/", 1)[-1]
    return name or DEFAULT_BRANCH


def current_branch(repo: git.Repo) -> str:
    """
    Get the name of the currently checked out branch.

    Parameters
    ----------
    repo : git.Repo
        The repository to inspect.

    Returns
    -------
    str
        The branch name, `DEFAULT_BRANCH` for an unborn or detached HEAD.
    """
    with _git_operation("symbolic-ref", repo):
        if not repo.head.is_valid():
            return DEFAULT_BRANCH
        if repo.head.is_detached:
            return DEFAULT_BRANCH
        return branch_from_reference(repo.head.reference.path)


def head_commit(repo: git.Repo) -> str | None:
    """Return the hexsha HEAD points to, or None for an unborn branch."""
    with _git_operation("rev-parse", repo):
        if not repo.head.is_valid():
            return None
        return repo.head.commit.hexsha


def repository_state(repo: git.Repo) -> RepositoryState:
    """
    Determine which multi-step operation is in progress, if any.

    The marker files in the git directory are checked in the same order
    libgit2 uses, so a rebase takes precedence over a merge.
    """
    git_dir = Path(repo.git_dir)
    rebase_merge = git_dir / "rebase-merge"
    rebase_apply = git_dir / "rebase-apply"
    sequencer_todo = git_dir / "sequencer" / "todo"

    if (rebase_merge / "interactive").is_file():
        return RepositoryState.REBASE_INTERACTIVE
    if rebase_merge.is_dir():
        return RepositoryState.REBASE_MERGE
    if (rebase_apply / "rebasing").is_file():
        return RepositoryState.REBASE
    if (rebase_apply / "applying").is_file():
        return RepositoryState.APPLY_MAILBOX
    if rebase_apply.is_dir():
        return RepositoryState.APPLY_MAILBOX_OR_REBASE
    if (git_dir / "MERGE_HEAD").is_file():
        return RepositoryState.MERGE
    if (git_dir / "REVERT_HEAD").is_file():
        if sequencer_todo.is_file():
            return RepositoryState.REVERT_SEQUENCE
        return RepositoryState.REVERT
    if (git_dir / "CHERRY_PICK_HEAD").is_file():
        if sequencer_todo.is_file():
            return RepositoryState.CHERRY_PICK_SEQUENCE
        return RepositoryState.CHERRY_PICK
    if (git_dir / "BISECT_LOG").is_file():
        return RepositoryState.BISECT
    return RepositoryState.CLEAN


def parse_remote_url(url: str) -> tuple[bool, str | None]:
    """
    Inspect a remote URL.

    Parameters
    ----------
    url : str
        The URL configured for the remote.

    Returns
    -------
    tuple[bool, str | None]
        Whether the URL uses the ssh transport and the username it names, if any.
    """
    if "://" in url:
        parsed = urlparse(url)
        return parsed.scheme in _SSH_SCHEMES, parsed.username
    match = _SCP_LIKE_URL.match(url)
    if match is None:
        return False, None
    return True, match.group("user")


def fetch_environment(url: str) -> dict[str, str]:
    """
    Build the environment git needs to authenticate a fetch from `url`.

    Only ssh transports need credentials: the user comes from the URL (or
    `DEFAULT_SSH_USER`) and the private key from the `GPM_SSH_KEY` variable.

    Raises
    ------
    CredentialError
        If the remote uses ssh and `GPM_SSH_KEY` is not set.
    """
    env = {"GIT_TERMINAL_PROMPT": "0"}
    is_ssh, user = parse_remote_url(url)
    if not is_ssh:
        return env

    user = user or DEFAULT_SSH_USER
    key = os.environ.get(SSH_KEY_ENV)
    if not key:
        raise CredentialError(f"unable to get private key from {SSH_KEY_ENV}", "fetch")

    log.info("authenticate with user %s and private key located in %s", user, key)
    env["GIT_SSH_COMMAND"] = " ".join(
        ["ssh", "-i", shlex.quote(key), "-o", "IdentitiesOnly=yes", "-l", shlex.quote(user)]
    )
    return env


def fetch_remote(repo: git.Repo, branch_name: str) -> None:
    """
    Fetch `branch_name` and all tags from the `origin` remote.

    Updates the remote tracking branch and FETCH_HEAD.

    Raises
    ------
    CredentialError
        If the remote needs an ssh key and none is configured.
    GitGatewayError
        If the remote is missing or the fetch fails.
    """
    with _git_operation("fetch", repo):
        repo.remote(REMOTE_NAME)
        url = repo.config_reader().get_value(f'remote "{REMOTE_NAME}"', "url", None)
        if not url:
            path = _repo_path(repo)
            raise GitGatewayError(f"remote {REMOTE_NAME} has no url in {path}", "fetch", path)
        try:
            env = fetch_environment(str(url))
        except CredentialError as e:
            raise CredentialError(str(e), "fetch", _repo_path(repo)) from e
        with repo.git.custom_environment(**env):
            repo.git.fetch(REMOTE_NAME, branch_name, tags=True)


def working_tree_diff_size(repo: git.Repo) -> int:
    """Count the files that differ between the index and the working tree."""
    with _git_operation("diff", repo):
        return len(repo.index.diff(None))


def staged_diff_size(repo: git.Repo) -> int:
    """Count the files that differ between the last commit and the index."""
    with _git_operation("diff --cached", repo):
        if not repo.head.is_valid():
            # Unborn branch: everything in the index is staged
            return len({path for path, _stage in repo.index.entries})
        return len(repo.index.diff("HEAD"))


def reset_hard_to_remote(repo: git.Repo, branch_name: str) -> None:
    """
    Hard reset index and working tree to `refs/remotes/origin/<branch_name>`.

    Uncommitted and staged changes are discarded.

    Raises
    ------
    GitGatewayError
        If the remote tracking reference does not exist or the reset fails.
    """
    ref_name = f"refs/remotes/{REMOTE_NAME}/{branch_name}"
    with _git_operation("reset", repo):
        try:
            target = repo.rev_parse(ref_name)
        except (ODBError, ValueError) as e:
            path = _repo_path(repo)
            raise GitGatewayError(f"remote tracking reference {ref_name} not found in {path}", "reset", path) from e
        repo.head.reset(target, index=True, working_tree=True)


def read_fetch_head(repo: git.Repo) -> FetchHead:
    """
    Read the mergeable entry of FETCH_HEAD.

    Raises
    ------
    GitGatewayError
        If FETCH_HEAD is missing or holds only `not-for-merge` entries.
    """
    fetch_head_file = Path(repo.git_dir) / "FETCH_HEAD"
    path = _repo_path(repo)
    try:
        lines = fetch_head_file.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise GitGatewayError(f"FETCH_HEAD not found in {path}", "merge", path) from e

    for line in lines:
        hexsha, _, rest = line.partition("\t")
        marker, _, description = rest.partition("\t")
        if hexsha and marker != "not-for-merge":
            return FetchHead(hexsha=hexsha, description=description)
    raise GitGatewayError(f"FETCH_HEAD in {path} has nothing to merge", "merge", path)


def merge_fetched_head(repo: git.Repo) -> None:
    """
    Merge the commit of the last fetch into the current branch.

    Fast-forwards when possible, otherwise creates a merge commit without
    opening an editor. A failed merge is aborted so the repository is not
    left mid-merge.
    """
    fetch_head = read_fetch_head(repo)
    log.debug("Merging %s (%s) into %s", fetch_head.hexsha, fetch_head.description, _repo_path(repo))
    with _git_operation("merge", repo):
        try:
            repo.git.merge("FETCH_HEAD", no_edit=True)
        except GitCommandError:
            if repository_state(repo) == RepositoryState.MERGE:
                repo.git.merge(abort=True)
            raise
