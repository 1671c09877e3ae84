"""Tests for the common status helper."""

from unittest.mock import MagicMock

from multipull.context import RunContext
from multipull.core import AheadBehind, StashInfo, Status
from multipull.status import (
    WIP_MESSAGE,
    common_status,
    diff_from_default,
    dirty_paths,
    is_clean,
    read_status,
)


def test_read_status_retries_empty_read(git: MagicMock) -> None:
    """Verifies that a status without branch and upstream is read a second time."""
    git.status.side_effect = [Status(), Status(current="main", tracking="origin/main")]

    status = read_status(git, "main")

    assert git.status.call_count == 2
    assert status.current == "main"
    assert status.is_default_branch
    assert status.diff_from_default is None


def test_read_status_computes_diff_from_default(git: MagicMock) -> None:
    """Verifies the position of a feature branch against the default branch."""
    git.status.return_value = Status(current="feature", tracking="origin/feature")
    git.rev_list.return_value = ["<a1", "<b2", ">c3"]

    status = read_status(git, "develop")

    git.rev_list.assert_called_once_with("origin/develop...feature", left_right=True)
    assert status.is_default_branch is False
    assert status.diff_from_default == AheadBehind(ahead=1, behind=2)


def test_read_status_of_submodule_skips_diff(git: MagicMock) -> None:
    """Verifies that submodules are not compared with the default branch."""
    git.status.return_value = Status(current="HEAD")

    status = read_status(git, "main", is_submodule=True)

    git.rev_list.assert_not_called()
    assert status.diff_from_default is None


def test_diff_from_default_counts_sides(git: MagicMock) -> None:
    """Verifies the left/right counting of rev-list output."""
    git.rev_list.return_value = [">1", ">2", ">3"]

    assert diff_from_default(git, "main", "topic") == AheadBehind(ahead=3, behind=0)


def test_nested_submodules_do_not_make_a_tree_dirty() -> None:
    """Verifies that submodule pointer changes are ignored by the cleanliness check."""
    status = Status(modified=("vendor/lib",), not_added=("scratch.txt",))

    assert is_clean(status, ["vendor/lib"])
    assert not is_clean(status)
    assert dirty_paths(status) == ["vendor/lib"]


def test_common_status_builds_report(context: RunContext, git: MagicMock) -> None:
    """Verifies that the report carries the status, stash count and WIP flag."""
    git.stash_list.return_value = StashInfo(total=2)
    git.last_commit_message.return_value = WIP_MESSAGE

    report = common_status(context, context.repos[0], pushed="Yes")

    assert report.repository == "repo-1"
    assert report.status.current == "main"
    assert report.stash.total == 2
    assert report.has_wip_commit is True
    assert report.pushed == "Yes"
    assert report.pull is None
    assert report.to_dict()["stash"] == {"total": 2}
