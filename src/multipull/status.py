"""Common status helper shared by all repository tasks."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .core import AheadBehind, GitOperations, RepositoryReport, Status

if TYPE_CHECKING:
    from .context import RunContext
    from .core import RepositoryRef

logger = logging.getLogger("multipull")

WIP_MESSAGE = "[multipull] WIP"
DIRTY_CATEGORIES = ("modified", "deleted", "created", "conflicted")


def read_status(git: GitOperations, default_branch: str, is_submodule: bool = False) -> Status:
    """Read the status, completed with its position against the default branch.

    `git status` occasionally reports neither a branch nor its upstream right
    after a fetch; such a read is retried once.
    """
    status = git.status()
    if not status.current and not status.tracking:
        logger.debug(f"Empty status read in {git.repo_path}, reading it again")
        status = git.status()

    is_default = status.current == default_branch
    diff = None
    if not is_default and not is_submodule:
        diff = diff_from_default(git, default_branch, status.current)
    return status.with_default_branch(is_default, diff)


def diff_from_default(git: GitOperations, default_branch: str, current: str) -> AheadBehind:
    """Count commits of `current` ahead of / behind `origin/<default_branch>`."""
    ahead = behind = 0
    for line in git.rev_list(f"origin/{default_branch}...{current}", left_right=True):
        if line.startswith("<"):
            behind += 1
        else:
            ahead += 1
    return AheadBehind(ahead=ahead, behind=behind)


def is_clean(status: Status, submodule_paths: list[str] | tuple[str, ...] = ()) -> bool:
    """True when no dirty path remains once nested submodules are set aside."""
    return not dirty_paths(status, submodule_paths)


def dirty_paths(status: Status, submodule_paths: list[str] | tuple[str, ...] = ()) -> list[str]:
    nested = set(submodule_paths)
    return [
        path
        for category in DIRTY_CATEGORIES
        for path in getattr(status, category)
        if path not in nested
    ]


def has_wip_commit(git: GitOperations) -> bool:
    return git.last_commit_message() == WIP_MESSAGE


def common_status(
    context: RunContext,
    ref: RepositoryRef,
    git: GitOperations | None = None,
    **extra,
) -> RepositoryReport:
    """Status, stash count and WIP flag of a repository.

    Extra keyword arguments (`pull`, `pushed`) are attached to the report.
    """
    git = git or context.get_git(ref)
    status = read_status(git, context.get_default_branch(ref.name), context.is_submodule(ref.name))
    stash = git.stash_list()
    return RepositoryReport(
        repository=ref.name,
        status=status,
        stash=stash,
        has_wip_commit=has_wip_commit(git),
        **extra,
    )
