"""Task functions and stage lists for the commands other than pull."""

from __future__ import annotations

import logging
import re

from .context import RunContext
from .core import (
    REBASE_CONFLICT_MARKER,
    CommandResult,
    GitError,
    GitOperations,
    PullOutcome,
    RepositoryReport,
    RepositoryRef,
    Status,
    run_command,
)
from .processor import FanOutStage, SingleStage, TaskResult, plural
from .reconcile import fetch_all, pull_repo, rebase_with_wip
from .status import common_status, is_clean, read_status

logger = logging.getLogger("multipull")


def status_repo(context: RunContext, ref: RepositoryRef) -> RepositoryReport:
    logger.debug(f"Processing repository {ref.name}...")
    return common_status(context, ref)


# =============================================================================
# Push
# =============================================================================


def push_repo(context: RunContext, ref: RepositoryRef) -> RepositoryReport:
    """Push the current branch when it is ahead of its remote counterpart."""
    logger.debug(f"Processing repository {ref.name}...")
    git = context.get_git(ref)
    pushed = push_branch(context, git)
    return common_status(context, ref, git, pushed=pushed)


def push_branch(context: RunContext, git: GitOperations) -> str:
    """Push if needed and describe what happened ("" when there was nothing to push)."""
    status = git.status()
    if status.is_detached:
        return "No (detached HEAD)"

    if status.behind and not context.is_forced():
        return (
            f"No ('{status.current}' is behind {status.behind} "
            f"commit{plural(status.behind)} from '{status.tracking}')"
        )

    if status.tracking and status.ahead == 0 and status.behind == 0:
        return ""

    if not status.tracking:
        args = ["--set-upstream", "origin", status.current]
    elif status.behind:
        args = ["--force-with-lease"]
    else:
        args = []

    if context.is_dry_run():
        return f"Dry: git push {' '.join(args)}".rstrip()

    git.push(*args)
    return "Yes (forced)" if status.behind else "Yes"


# =============================================================================
# Checkout
# =============================================================================


def checkout_branch_repo(context: RunContext, ref: RepositoryRef) -> RepositoryReport:
    """Check out the working branch, or the default branch where it does not exist."""
    logger.debug(f"Processing repository {ref.name}...")
    git = context.get_git(ref)
    fetch_all(context, ref, git)

    branch = context.working_branch or context.get_default_branch(ref.name)
    if context.is_dry_run():
        logger.info(f"Dry run: would check out {branch} in {ref.name}")
    else:
        checkout_branch(context, ref, git, branch)
    return common_status(context, ref, git)


def checkout_branch(
    context: RunContext, ref: RepositoryRef, git: GitOperations, branch: str
) -> None:
    try:
        git.checkout(branch)
    except GitError as e:
        if f"pathspec '{branch}' did not match any file" not in e.message:
            raise
        default_branch = context.get_default_branch(ref.name)
        if branch == default_branch:
            return
        if git.status().current == default_branch:
            return
        logger.info(f"{branch} does not exist in {ref.name}, checking out {default_branch}")
        git.checkout(default_branch)


# =============================================================================
# Catching up with the default branch
# =============================================================================


def is_behind_default(status: Status) -> bool:
    return status.diff_from_default is not None and status.diff_from_default.behind > 0


def _needs_default_branch(status: Status, default_branch: str) -> bool:
    if status.is_detached or status.current == default_branch:
        return False
    return is_behind_default(status)


def rebase_branch_repo(context: RunContext, ref: RepositoryRef) -> RepositoryReport:
    """Rebase the current branch onto origin/<default> when it is behind it.

    Local changes are shelved in a WIP commit during the rebase. A rebase
    that would conflict is aborted and reported with the rebase conflict
    marker.
    """
    logger.debug(f"Processing repository {ref.name}...")
    git = context.get_git(ref)
    fetch_all(context, ref, git)

    default_branch = context.get_default_branch(ref.name)
    status = read_status(git, default_branch, context.is_submodule(ref.name))
    if not _needs_default_branch(status, default_branch):
        return common_status(context, ref, git)

    target = f"origin/{default_branch}"
    if context.is_dry_run():
        pull = PullOutcome(files=(f"*** DRY RUN: would rebase onto {target} ***",))
        return common_status(context, ref, git, pull=pull)

    submodules = git.submodule_paths()
    if not rebase_with_wip(git, status, target, is_clean(status, submodules), submodules):
        return common_status(context, ref, git, pull=PullOutcome.conflict(REBASE_CONFLICT_MARKER))

    base = status.current if status.tracking else default_branch
    try:
        pull = git.diff_summary(f"{status.current}...origin/{base}")
    except GitError as e:
        pull = PullOutcome(files=(e.message,))
    return common_status(context, ref, git, pull=pull)


def merge_branch_repo(context: RunContext, ref: RepositoryRef) -> RepositoryReport:
    """Merge the default branch into the current branch when it is behind it."""
    logger.debug(f"Processing repository {ref.name}...")
    git = context.get_git(ref)
    fetch_all(context, ref, git)

    default_branch = context.get_default_branch(ref.name)
    status = read_status(git, default_branch, context.is_submodule(ref.name))
    if not _needs_default_branch(status, default_branch):
        return common_status(context, ref, git)

    if context.is_dry_run():
        pull = PullOutcome(files=(f"*** DRY RUN: would merge {default_branch} ***",))
    else:
        pull = git.merge(default_branch, "--stat")
    return common_status(context, ref, git, pull=pull)


# =============================================================================
# Exec
# =============================================================================


def exec_repo(context: RunContext, ref: RepositoryRef) -> CommandResult | None:
    """Run the `exec` command in the repository, unless `match` excludes it.

    Returns:
        The command result, or None when the repository name does not match.
    """
    logger.debug(f"Processing repository {ref.name}...")
    pattern = context.options.get("match")
    if pattern and not re.search(pattern, ref.name):
        return None

    command = context.options.get("exec")
    if not command:
        raise ValueError("No command to execute.")
    return run_command(command, ref.path)


# =============================================================================
# Branch lookup
# =============================================================================


def has_remote_branch(context: RunContext, ref: RepositoryRef) -> bool:
    git = context.get_git(ref)
    git.fetch("origin")
    return git.verify_ref(f"origin/{context.working_branch}")


def keep_repos_with_branch(context: RunContext, results: list[TaskResult]) -> list[str]:
    """Narrow the fleet to the repositories where the branch exists.

    The run is interrupted when no repository has it.
    """
    names = {r.repository for r in results if r.value}
    context.repos = [ref for ref in context.repos if ref.name in names]
    if not context.repos:
        logger.info(f"Branch '{context.working_branch}' was not found in any repository")
        context.interrupt()
    return context.repo_names


def find_branch_stages() -> list[FanOutStage | SingleStage]:
    return [
        FanOutStage(
            has_remote_branch,
            title=lambda c: f"Looking for '{c.working_branch}' in {len(c.repos)} repositories",
        ),
        SingleStage(keep_repos_with_branch),
    ]


def pull_stages() -> list[FanOutStage | SingleStage]:
    return [FanOutStage(pull_repo, title=lambda c: f"Pulling {len(c.repos)} repositories")]


def checkout_stages(existing_only: bool = False) -> list[FanOutStage | SingleStage]:
    stages = find_branch_stages() if existing_only else []
    stages.append(
        FanOutStage(
            checkout_branch_repo,
            title=lambda c: f"Checking out '{c.working_branch or 'default branch'}'",
        )
    )
    return stages
