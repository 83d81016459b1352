# /// script
# requires-python = ">=3.13"
# dependencies = [
#     "click",
#     "gitpython",
#     "rich",
# ]
# ///
"""
Update all git repositories located in subdirectories.

Walks the directory tree up to a maximum depth, fetches every repository it
finds from `origin` and merges the fetched branch into clean repositories.
With `--force` every repository is hard reset to its remote tracking branch
first, discarding local changes.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TaskID, TextColumn
from rich.table import Table

from git_common import FilesystemError, get_subdirectories
from git_common import GitOptions as BaseGitOptions
from git_gateway import (
    REMOTE_NAME,
    GitGatewayError,
    NotARepositoryError,
    RepositoryState,
    current_branch,
    fetch_remote,
    head_commit,
    is_repository,
    merge_fetched_head,
    open_repository,
    repository_state,
    reset_hard_to_remote,
    staged_diff_size,
    working_tree_diff_size,
)

log = logging.getLogger(__name__)

SUCCESS_EMOJI = "✅"
FAILURE_EMOJI = "❌"
DEFAULT_DEPTH = 3


@dataclass
class UpdateOptions(BaseGitOptions):
    """Options for updating the repositories below a directory."""

    depth: int = DEFAULT_DEPTH  # Deepest level still checked for repositories
    force: bool = False  # Hard reset to the remote branch before merging
    strict: bool = True  # Staged changes make a repository not clean
    recurse_on_failure: bool = True  # Recurse into repositories that could not be classified
    jobs: int = 1  # Number of repositories processed in parallel


class ClassificationKind(StrEnum):
    """Outcome of checking a single directory."""

    NOT_A_REPOSITORY = "not-a-repository"
    FETCH_FAILED = "fetch-failed"
    FAILED = "failed"
    CLEAN = "clean"
    NOT_CLEAN = "not-clean"


@dataclass
class Classification:
    """Result of classifying a directory as an updatable repository."""

    path: Path
    kind: ClassificationKind
    branch: str = ""
    state: RepositoryState | None = None
    working_tree_changes: int = 0
    staged_changes: int = 0
    error: str = ""

    @property
    def is_repository(self) -> bool:
        return self.kind in (ClassificationKind.CLEAN, ClassificationKind.NOT_CLEAN)

    @property
    def is_clean(self) -> bool:
        return self.kind == ClassificationKind.CLEAN


@dataclass
class UpdateOutcome:
    """Result of updating a single repository."""

    path: Path
    branch: str = ""
    forced: bool = False
    changed: bool = False
    error: str = ""

    @property
    def success(self) -> bool:
        return not self.error


@dataclass
class UpdateStats:
    """
    Statistics for a whole run.

    Shared by every repository of the run; the counters are guarded by a lock
    so worker threads can record into the same instance.
    """

    updated: int = 0
    changed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_update(self, changed: bool) -> None:
        with self._lock:
            self.updated += 1
            if changed:
                self.changed += 1

    def record_skip(self) -> None:
        with self._lock:
            self.skipped += 1

    def record_failure(self, path: Path, message: str) -> None:
        with self._lock:
            self.failed += 1
            self.errors.append(f"{path}: {message}")


def _report(progress: Progress | None, task: TaskID | None, prefix: str, message: str) -> None:
    if progress is None or task is None:
        return
    progress.update(task, description=f"[bold dim]{prefix}[/] {message}")


def is_clean_repository(state: RepositoryState, working_tree_changes: int, staged_changes: int, strict: bool) -> bool:
    """
    Decide whether a repository may be updated without losing work.

    Parameters
    ----------
    state : RepositoryState
        The multi-step operation in progress.
    working_tree_changes : int
        Files differing between index and working tree.
    staged_changes : int
        Files differing between the last commit and the index.
    strict : bool
        Whether staged changes also block the update.

    Returns
    -------
    bool
        True if no operation is in progress and there are no local changes.
    """
    if state != RepositoryState.CLEAN or working_tree_changes:
        return False
    return not (strict and staged_changes)


def classify_repository(
    path: Path,
    options: UpdateOptions,
    progress: Progress | None = None,
    task: TaskID | None = None,
) -> Classification:
    """
    Check whether `path` holds a repository that is clean, fetching `origin` on the way.

    Parameters
    ----------
    path : Path
        The directory to check.
    options : UpdateOptions
        Options of the run, `strict` selects the clean definition.
    progress : Progress, optional
        Progress display that names the current repository and operation.
    task : TaskID, optional
        The progress task to update.

    Returns
    -------
    Classification
        The tagged result; only `CLEAN` and `NOT_CLEAN` name a usable repository.
    """
    try:
        with open_repository(path) as repo:
            if repo.bare:
                return Classification(path, ClassificationKind.FAILED, error="bare repository has no working tree")

            branch = current_branch(repo)
            state = repository_state(repo)
            prefix = f"{path} {REMOTE_NAME}/{branch}"
            log.debug("Checking %s state=%s", path, state)
            _report(progress, task, prefix, f"Checking {path}")

            _report(progress, task, prefix, f"Fetching {REMOTE_NAME}/{branch}")
            try:
                fetch_remote(repo, branch)
            except GitGatewayError as e:
                log.debug("Fetching %s/%s failed for %s: %s", REMOTE_NAME, branch, path, e)
                return Classification(path, ClassificationKind.FETCH_FAILED, branch, state, error=str(e))

            working_tree_changes = working_tree_diff_size(repo)
            staged_changes = staged_diff_size(repo)
    except NotARepositoryError as e:
        # Expected for every plain directory
        log.debug("%s %s", FAILURE_EMOJI, e)
        return Classification(path, ClassificationKind.NOT_A_REPOSITORY, error=str(e))
    except GitGatewayError as e:
        log.debug("Cannot classify %s: %s", path, e)
        return Classification(path, ClassificationKind.FAILED, error=str(e))

    log.debug(
        "Number of changed files: %d, number of changed cached files: %d",
        working_tree_changes,
        staged_changes,
    )
    clean = is_clean_repository(state, working_tree_changes, staged_changes, options.strict)
    kind = ClassificationKind.CLEAN if clean else ClassificationKind.NOT_CLEAN
    return Classification(path, kind, branch, state, working_tree_changes, staged_changes)


def update_repository(
    path: Path,
    options: UpdateOptions,
    stats: UpdateStats,
    progress: Progress | None = None,
    task: TaskID | None = None,
) -> UpdateOutcome:
    """
    Update the repository at `path` from the last fetch of `origin`.

    With `options.force` the repository is hard reset to its remote tracking
    branch first. Failures are recorded in `stats` and returned, not raised.

    Parameters
    ----------
    path : Path
        The repository to update.
    options : UpdateOptions
        Options of the run.
    stats : UpdateStats
        Statistics of the run, `updated` grows by one on success.
    progress : Progress, optional
        Progress display that names the current repository.
    task : TaskID, optional
        The progress task to update.

    Returns
    -------
    UpdateOutcome
        What happened to the repository.
    """
    outcome = UpdateOutcome(path=path, forced=options.force)
    try:
        with open_repository(path) as repo:
            outcome.branch = current_branch(repo)
            _report(progress, task, f"{path} {REMOTE_NAME}/{outcome.branch}", "Updating")
            before = head_commit(repo)

            if options.force:
                reset_hard_to_remote(repo, outcome.branch)

            log.debug("Updating %s %s", path, outcome.branch)
            merge_fetched_head(repo)
            outcome.changed = head_commit(repo) != before
    except GitGatewayError as e:
        outcome.error = str(e)
        log.warning("Failed to update repo %s: %s", path, e)
        stats.record_failure(path, outcome.error)
        return outcome

    stats.record_update(outcome.changed)
    return outcome


class RepositoryWalker:
    """Walks a directory tree and updates the repositories found in it."""

    def __init__(
        self,
        options: UpdateOptions,
        stats: UpdateStats | None = None,
        progress: Progress | None = None,
        task: TaskID | None = None,
    ):
        self.options = options
        self.stats = stats if stats is not None else UpdateStats()
        self.progress = progress
        self.task = task

    def _print(self, message: str) -> None:
        if self.options.console:
            self.options.console.print(message)

    def walk(self, directory: Path, depth: int = 1) -> None:
        """
        Check every subdirectory of `directory` and update or recurse.

        Depth 1 are the immediate subdirectories of the starting directory,
        directories deeper than `options.depth` are never checked.

        Raises
        ------
        FilesystemError
            If a directory cannot be listed.
        """
        for path in get_subdirectories(directory):
            log.debug("Checking %s", path.resolve())
            classification = classify_repository(path, self.options, self.progress, self.task)
            if classification.is_repository:
                self.handle_repository(classification)
                continue

            if classification.kind != ClassificationKind.NOT_A_REPOSITORY:
                if self.options.verbose:
                    self._print(f"[yellow]![/yellow] Cannot check [bold]{path}[/bold]: {classification.error}")
                if not self.options.recurse_on_failure:
                    self.stats.record_failure(path, classification.error)
                    continue

            if depth < self.options.depth:
                self.walk(path, depth + 1)

    def handle_repository(self, classification: Classification, task: TaskID | None = None) -> UpdateOutcome | None:
        """Update a classified repository when it is clean or the run is forced."""
        task = self.task if task is None else task
        path = classification.path
        if not (classification.is_clean or self.options.force):
            log.debug("Skipping %s: not clean (%s)", path, classification.state)
            self.stats.record_skip()
            if self.options.verbose:
                self._print(f"[yellow]![/yellow] Skipped [bold]{path}[/bold]: local changes or {classification.state}")
            return None

        outcome = update_repository(path, self.options, self.stats, self.progress, task)
        if outcome.success:
            verb = "Reset and updated" if outcome.forced else "Updated"
            self._print(f"[green]✓[/green] {verb} [bold]{path}[/bold] ({REMOTE_NAME}/{outcome.branch})")
        else:
            self._print(f"[red]✗[/red] Failed to update [bold]{path}[/bold]: {outcome.error}")
        return outcome

    def discover(self, directory: Path, depth: int = 1) -> list[Path]:
        """
        Collect the repositories below `directory` without fetching them.

        Repositories are leaves: their subdirectories are not searched.
        """
        repositories = []
        for path in get_subdirectories(directory):
            if is_repository(path):
                repositories.append(path)
            elif depth < self.options.depth:
                repositories.extend(self.discover(path, depth + 1))
        return repositories

    def process(self, path: Path) -> None:
        """Classify and update a single discovered repository."""
        # One spinner line per worker, removed once the repository is done
        task = self.progress.add_task(f"{path}", total=None) if self.progress is not None else None
        try:
            classification = classify_repository(path, self.options, self.progress, task)
            if classification.is_repository:
                self.handle_repository(classification, task)
                return
            self.stats.record_failure(path, classification.error)
            self._print(f"[red]✗[/red] Cannot check [bold]{path}[/bold]: {classification.error}")
        finally:
            if task is not None:
                self.progress.remove_task(task)

    def run(self, directory: Path) -> UpdateStats:
        """
        Update all repositories below `directory`.

        Sequential runs walk depth first; with more than one job the
        repositories are discovered first and then processed by a thread pool.
        """
        if self.options.jobs <= 1:
            self.walk(directory)
            return self.stats

        repositories = self.discover(directory)
        log.debug("Found %d repositories below %s", len(repositories), directory)
        with ThreadPoolExecutor(max_workers=self.options.jobs) as executor:
            futures = {executor.submit(self.process, path): path for path in repositories}
            for done, future in enumerate(as_completed(futures), start=1):
                future.result()
                _report(self.progress, self.task, "", f"Processed {done}/{len(repositories)} repositories")
        return self.stats


def update_repositories(directory: Path, options: UpdateOptions) -> UpdateStats:
    """
    Update all repositories below `directory`, showing a spinner on the console.

    Parameters
    ----------
    directory : Path
        The starting directory; it is not checked itself.
    options : UpdateOptions
        Options of the run.

    Returns
    -------
    UpdateStats
        Statistics of the run.
    """
    if options.console is None:
        return RepositoryWalker(options).run(directory)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=options.console,
        transient=True,
    ) as progress:
        task = progress.add_task("Starting...", total=None)
        stats = RepositoryWalker(options, progress=progress, task=task).run(directory)
        progress.update(task, description="Finished updating")
    return stats


def create_summary_table(stats: UpdateStats) -> Table:
    """Create the summary table of a run."""
    table = Table(title="Summary")
    table.add_column("Status", style="bold")
    table.add_column("Count", justify="right")

    table.add_row("Updated", f"[green]{stats.updated}[/green]")
    table.add_row("Changed", f"[cyan]{stats.changed}[/cyan]")
    table.add_row("Skipped", f"[yellow]{stats.skipped}[/yellow]")
    table.add_row("Failed", f"[red]{stats.failed}[/red]")
    return table


def show_errors(stats: UpdateStats, console: Console) -> None:
    if not stats.errors:
        return
    console.print(f"\n[red]{FAILURE_EMOJI} Errors during update:[/red]")
    for error in stats.errors:
        console.print(f"  [red]•[/red] {error}")


def _setup_logging(verbose: bool) -> None:
    """
    Setup logging configuration based on verbosity level.

    Parameters
    ----------
    verbose : bool
        If True, enable debug logging; otherwise use info level
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")


@click.command()
@click.argument(
    "directory",
    type=click.Path(exists=True, file_okay=False, dir_okay=True, path_type=Path),
    default=".",
    required=False,
)
@click.option(
    "--depth",
    "-d",
    type=click.IntRange(min=1),
    default=DEFAULT_DEPTH,
    show_default=True,
    help="How deep to check for git repositories",
)
@click.option(
    "--force",
    "-f",
    is_flag=True,
    default=False,
    help="Force resetting and updating of currently checked out branches",
)
@click.option(
    "--strict/--allow-staged",
    default=True,
    help="Treat repositories with staged changes as not clean (default: strict)",
)
@click.option(
    "--recurse-on-failure/--no-recurse-on-failure",
    default=True,
    help="Search inside repositories whose fetch or check failed",
)
@click.option(
    "--jobs",
    "-j",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Number of repositories updated in parallel",
)
@click.option("--verbose", "-v", is_flag=True, help="Show detailed output")
def main(
    directory: Path,
    depth: int,
    force: bool,
    strict: bool,
    recurse_on_failure: bool,
    jobs: int,
    verbose: bool,
):
    """
    Update all git repositories that are located in subfolders.

    If no directory is specified, the current working directory is used.
    An ssh private key for fetching can be given in the GPM_SSH_KEY variable.
    """
    _setup_logging(verbose)
    console = Console()

    console.print(
        Panel.fit(
            "[bold blue]Git Update Repos[/bold blue]",
            subtitle=f"Directory: [cyan]{directory}[/cyan]",
        )
    )
    console.print(f"Updating all git repositories up to a depth of {depth}")
    if verbose:
        console.print(f"[blue]ℹ[/blue] Force mode: [green]{force}[/green]")
        console.print(f"[blue]ℹ[/blue] Strict mode: [green]{strict}[/green]")
        console.print(f"[blue]ℹ[/blue] Jobs: [green]{jobs}[/green]")

    options = UpdateOptions(
        console=console,
        verbose=verbose,
        depth=depth,
        force=force,
        strict=strict,
        recurse_on_failure=recurse_on_failure,
        jobs=jobs,
    )

    try:
        stats = update_repositories(directory, options)
    except FilesystemError as e:
        raise click.ClickException(str(e))
    except KeyboardInterrupt:
        console.print(f"\n[red]{FAILURE_EMOJI} Update was aborted.[/red]")
        raise click.Abort()

    console.print(create_summary_table(stats))
    show_errors(stats, console)
    console.print(f"{SUCCESS_EMOJI} Updated {stats.updated} repositories")


if __name__ == "__main__":
    main()
