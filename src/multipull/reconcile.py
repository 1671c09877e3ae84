"""Bring a repository's current branch up to date without losing local work."""

from __future__ import annotations

import logging

from .context import RunContext
from .core import GitError, GitOperations, PullOutcome, RepositoryReport, RepositoryRef, Status
from .status import WIP_MESSAGE, common_status, dirty_paths, is_clean, read_status

logger = logging.getLogger("multipull")


def pull_repo(context: RunContext, ref: RepositoryRef) -> RepositoryReport:
    """Synchronize one repository with its remote and report its state.

    Submodule repositories are only reported. Conflicts are not errors: the
    returned report carries the conflict marker outcome instead.
    """
    logger.debug(f"Processing repository {ref.name}...")
    git = context.get_git(ref)
    if context.is_submodule(ref.name):
        return common_status(context, ref, git)

    fetch_all(context, ref, git)

    default_branch = context.get_default_branch(ref.name)
    status = read_status(git, default_branch)
    pull = synchronize(git, status, default_branch, dry_run=context.is_dry_run())
    return common_status(context, ref, git, pull=pull)


def fetch_all(context: RunContext, ref: RepositoryRef, git: GitOperations) -> None:
    """Fetch every remote, garbage-collecting and retrying once on failure."""
    try:
        git.fetch("all")
    except GitError as e:
        logger.warning(f"Fetch failed in {ref.name}, will call GC and try again: {e.message}")
        context.run_gc(ref, git)
        git.fetch("all")


def is_up_to_date(status: Status) -> bool:
    if status.tracking:
        return status.behind == 0
    if status.is_detached:
        return True
    return status.diff_from_default is None or status.diff_from_default.behind == 0


def synchronize(
    git: GitOperations, status: Status, default_branch: str, dry_run: bool = False
) -> PullOutcome:
    """Apply the remote changes to the current branch.

    Args:
        git: Handle of the repository.
        status: Status read after fetching.
        default_branch: Branch untracked branches are rebased onto.
        dry_run: Only report the action that would be taken.

    Returns:
        PullOutcome: files and summary of the pull, the empty outcome when
        nothing was pulled, or the conflict marker outcome.
    """
    if is_up_to_date(status):
        return PullOutcome.empty()

    submodules = git.submodule_paths()
    clean = is_clean(status, submodules)
    straight_pull = bool(status.tracking) and clean and not status.ahead

    if dry_run:
        if straight_pull:
            action = "pull"
        elif status.tracking:
            action = "pull --rebase"
        else:
            action = f"rebase onto origin/{default_branch}"
        return PullOutcome(files=(f"*** DRY RUN: would {action} ***",))

    if straight_pull:
        return git.pull("--all", "--stat")

    if not status.tracking:
        return _rebase_onto_default(git, status, default_branch, clean, submodules)

    return _rebase_onto_tracking(git, status, clean, submodules)


def _rebase_onto_default(
    git: GitOperations,
    status: Status,
    default_branch: str,
    clean: bool,
    submodules: list[str],
) -> PullOutcome:
    # No tracking branch: no incremental file list is available on this path.
    rebased = rebase_with_wip(git, status, f"origin/{default_branch}", clean, submodules)
    return PullOutcome.empty() if rebased else PullOutcome.conflict()


def rebase_with_wip(
    git: GitOperations,
    status: Status,
    target: str,
    clean: bool,
    submodules: list[str],
) -> bool:
    """Rebase onto `target` with local changes shelved, aborting on failure.

    Returns:
        bool: True when the rebase went through.
    """
    if not clean:
        commit_wip(git, status, submodules)

    rebased = True
    try:
        git.rebase(target, "--stat")
    except GitError as e:
        rebased = False
        logger.info(f"Rebase onto {target} failed in {git.repo_path}: {e.message}")
        try:
            git.rebase_abort()
        except GitError as abort_error:
            logger.warning(f"Cannot abort rebase in {git.repo_path}: {abort_error.message}")

    if not clean:
        reset_wip(git)

    return rebased


def _rebase_onto_tracking(
    git: GitOperations, status: Status, clean: bool, submodules: list[str]
) -> PullOutcome:
    if not clean:
        commit_wip(git, status, submodules)

    rebase: PullOutcome | None = None
    try:
        rebase = git.pull("--rebase", "--stat", "--all")
    except GitError as e:
        # The rebase state is left as is: the next pass resolves it.
        logger.info(f"Pull with rebase failed in {git.repo_path}: {e.message}")
        if not clean:
            logger.warning(
                f"Rebase stopped in {git.repo_path}: local changes are held by the "
                f"'{WIP_MESSAGE}' commit of the rebase in progress"
            )

    if not clean:
        reset_wip(git)

    if rebase is not None:
        return rebase

    try:
        return git.pull("--stat", "--all")
    except GitError as e:
        logger.info(f"Plain pull failed in {git.repo_path}: {e.message}")
        return PullOutcome.conflict()


def commit_wip(git: GitOperations, status: Status, submodules: list[str]) -> None:
    """Shelve uncommitted changes in a commit carrying the WIP sentinel.

    When nested submodules are dirty, only the other paths are committed so
    the submodule pointers stay as they are in the working tree.
    """
    nested = set(submodules)
    touches_submodule = any(p in nested for p in dirty_paths(status))
    if touches_submodule:
        git.commit(WIP_MESSAGE, "--no-verify", paths=dirty_paths(status, submodules))
    else:
        git.commit(WIP_MESSAGE, "--no-verify", "-a")


def reset_wip(git: GitOperations) -> None:
    """Undo the WIP commit, leaving its changes unstaged in the working tree."""
    last_message = git.last_commit_message()
    if last_message != WIP_MESSAGE:
        logger.warning(
            f"Last commit in {git.repo_path} is not the WIP commit ({last_message!r}), "
            "leaving it in place"
        )
        return
    git.reset("--soft", "HEAD~1")
    git.reset("HEAD")
