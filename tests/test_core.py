"""Tests for the git Repository Handle and its output parsers."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from multipull.core import (
    CONFLICT_MARKER,
    REBASE_CONFLICT_MARKER,
    CommandResult,
    GitError,
    GitOperations,
    PullOutcome,
    RepositorySetupError,
    open_repository,
    parse_stat_output,
    parse_status_porcelain,
    run_command,
)

PORCELAIN = """\
# branch.oid 5b1d4c2e7f0a9d8c6b5a4f3e2d1c0b9a8f7e6d5c
# branch.head feature/login
# branch.upstream origin/feature/login
# branch.ab +2 -3
1 .M N... 100644 100644 100644 3f4a 3f4a src/app.py
1 A. N... 000000 100644 100644 0000 9c8b src/new module.py
1 .D N... 100644 100644 000000 1a2b 1a2b docs/old.md
2 R. N... 100644 100644 100644 aaaa bbbb R100 src/renamed.py\tsrc/original.py
u UU N... 100644 100644 100644 100644 c1c1 d2d2 e3e3 setup.cfg
? notes.txt
"""

STAT = """\
Updating 1a2b3c4..5d6e7f8
Fast-forward
 README.md          |  4 +++-
 src/app.py         | 10 ++++------
 assets/logo.png    | Bin 0 -> 2048 bytes
 3 files changed, 8 insertions(+), 7 deletions(-)
"""


def test_parse_status_porcelain() -> None:
    """Verifies the branch header and the file categories of a porcelain v2 status."""
    status = parse_status_porcelain(PORCELAIN)

    assert status.current == "feature/login"
    assert status.tracking == "origin/feature/login"
    assert (status.ahead, status.behind) == (2, 3)
    assert status.modified == ("src/app.py",)
    assert status.created == ("src/new module.py",)
    assert status.deleted == ("docs/old.md",)
    assert status.renamed == ("src/renamed.py",)
    assert status.conflicted == ("setup.cfg",)
    assert status.not_added == ("notes.txt",)


def test_parse_status_detached_without_upstream() -> None:
    """Verifies that a detached HEAD is reported as the HEAD sentinel."""
    status = parse_status_porcelain("# branch.oid abc\n# branch.head (detached)\n")

    assert status.current == "HEAD"
    assert status.is_detached
    assert status.tracking is None
    assert (status.ahead, status.behind) == (0, 0)


def test_parse_stat_output() -> None:
    """Verifies the file list and summary extracted from `--stat` output."""
    outcome = parse_stat_output(STAT)

    assert outcome.files == ("README.md", "src/app.py", "assets/logo.png")
    assert outcome.summary == {"changes": 3, "insertions": 8, "deletions": 7}


def test_parse_stat_output_without_changes() -> None:
    """Verifies that an up to date pull produces the empty outcome."""
    assert parse_stat_output("Already up to date.\n") == PullOutcome.empty()


def test_conflict_outcome() -> None:
    """Verifies the conflict sentinel outcome."""
    outcome = PullOutcome.conflict()

    assert outcome.files == (CONFLICT_MARKER,)
    assert outcome.is_conflict
    assert not PullOutcome.empty().is_conflict


def test_run_raises_git_error_on_failure(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that a non-zero git exit is turned into a GitError with stderr.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mock_run = mocker.patch("multipull.core.subprocess.run")
    mock_run.return_value = subprocess.CompletedProcess(
        args=[], returncode=128, stdout="", stderr="fatal: not a git repository\n"
    )

    with pytest.raises(GitError) as excinfo:
        GitOperations(tmp_path).fetch()

    assert excinfo.value.stderr == "fatal: not a git repository"
    assert excinfo.value.command == ["git", "fetch", "--all"]
    assert "git fetch --all failed" in excinfo.value.message
    assert mock_run.call_args.kwargs["cwd"] == tmp_path


def test_run_wraps_missing_git_binary(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that a git executable that cannot start raises GitError."""
    mocker.patch("multipull.core.subprocess.run", side_effect=FileNotFoundError("git"))

    with pytest.raises(GitError, match="Cannot run git"):
        GitOperations(tmp_path).status()


def test_commit_with_paths(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that explicit paths follow the `--` separator."""
    git = GitOperations(tmp_path)
    mock_run = mocker.patch.object(git, "_run", return_value="")

    git.commit("WIP", "--no-verify", paths=["a.py", "b.py"])

    mock_run.assert_called_once_with("commit", "-m", "WIP", "--no-verify", "--", "a.py", "b.py")


def test_fetch_single_remote(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies the arguments of a fetch of one remote."""
    git = GitOperations(tmp_path)
    mock_run = mocker.patch.object(git, "_run", return_value="")

    git.fetch("origin")

    mock_run.assert_called_once_with("fetch", "origin")


def test_stash_list_counts_entries(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that every stash line counts as one stash."""
    git = GitOperations(tmp_path)
    mocker.patch.object(
        git, "_run", return_value="stash@{0}: WIP on main: abc\nstash@{1}: On main: def\n"
    )

    assert git.stash_list().total == 2


def test_last_commit_message_of_empty_repository(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that a repository without commits has an empty last message."""
    git = GitOperations(tmp_path)
    mocker.patch.object(git, "_run", side_effect=GitError("does not have any commits yet"))

    assert git.last_commit_message() == ""


def test_verify_ref(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that an unknown ref is reported as missing, not raised."""
    git = GitOperations(tmp_path)
    mocker.patch.object(git, "_run", side_effect=["3f4a\n", GitError("Needed a single revision")])

    assert git.verify_ref("origin/main") is True
    assert git.verify_ref("origin/nope") is False


def test_submodule_paths(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that submodule paths are read from .gitmodules."""
    (tmp_path / ".gitmodules").write_text("[submodule]\n")
    git = GitOperations(tmp_path)
    mocker.patch.object(
        git,
        "_run",
        return_value="submodule.lib.path vendor/lib\nsubmodule.docs.path docs/theme\n",
    )

    assert git.submodule_paths() == ["vendor/lib", "docs/theme"]


def test_submodule_paths_without_gitmodules(tmp_path: Path) -> None:
    """Verifies that a repository without .gitmodules has no submodule."""
    assert GitOperations(tmp_path).submodule_paths() == []


def test_open_repository_requires_git_directory(tmp_path: Path) -> None:
    """Verifies that opening a plain directory fails with a setup error."""
    with pytest.raises(RepositorySetupError, match="Cannot setup git in"):
        open_repository(tmp_path)

    (tmp_path / ".git").mkdir()
    assert open_repository(tmp_path).repo_path == tmp_path


def test_rebase_conflict_outcome() -> None:
    """Verifies that the rebase conflict marker is a conflict too."""
    outcome = PullOutcome.conflict(REBASE_CONFLICT_MARKER)

    assert outcome.files == ("*** FETCHED ONLY, REBASE WOULD PRODUCE CONFLICTS ***",)
    assert outcome.is_conflict


def test_merge_parses_stat_output(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies the arguments of a merge and the outcome read from its output."""
    git = GitOperations(tmp_path)
    mock_run = mocker.patch.object(git, "_run", return_value=STAT)

    outcome = git.merge("main", "--stat")

    mock_run.assert_called_once_with("merge", "main", "--stat")
    assert outcome.summary == {"changes": 3, "insertions": 8, "deletions": 7}


def test_diff_summary(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that the diff of a range is read with --stat."""
    git = GitOperations(tmp_path)
    mock_run = mocker.patch.object(git, "_run", return_value=STAT)

    outcome = git.diff_summary("topic...origin/main")

    mock_run.assert_called_once_with("diff", "--stat", "topic...origin/main")
    assert outcome.files == ("README.md", "src/app.py", "assets/logo.png")


def test_run_command_reports_failure_as_result(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that a failing shell command is a result, not an exception.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
        mocker (MagicMock): Pytest fixture for mocking.
    """
    mock_run = mocker.patch("multipull.core.subprocess.run")
    mock_run.return_value = subprocess.CompletedProcess(
        args="make test", returncode=2, stdout="running\n", stderr="make: *** [test] Error 1\n"
    )

    result = run_command("make test", tmp_path)

    assert result == CommandResult("make test", 2, "running\n", "make: *** [test] Error 1\n")
    assert not result.ok
    assert result.to_dict()["returncode"] == 2
    assert mock_run.call_args.kwargs["cwd"] == tmp_path
    assert mock_run.call_args.kwargs["shell"] is True
