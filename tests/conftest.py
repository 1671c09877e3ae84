"""Shared fixtures: an in-memory fleet and a mocked Repository Handle."""

from pathlib import Path
from typing import Any, Callable
from unittest.mock import MagicMock

import pytest

from multipull.context import MultipullConfig, RunContext
from multipull.core import GitOperations, PullOutcome, RepositoryRef, StashInfo, Status


class FakeProgress:
    """Progress sink recording its ticks."""

    def __init__(self, total: int, console: Any = None):
        self.total = total
        self.ticks = 0
        self.closed = False

    def tick(self) -> None:
        self.ticks += 1

    def close(self) -> None:
        self.closed = True


def make_refs(root: Path, names: list[str]) -> list[RepositoryRef]:
    return [RepositoryRef(name=name, path=root / name) for name in names]


@pytest.fixture
def make_context(tmp_path: Path) -> Callable[..., RunContext]:
    """Builds a RunContext over repositories named after the given names.

    Args:
        tmp_path (Path): Pytest fixture for a temporary directory.
    """

    def _make(
        names: list[str] | None = None,
        options: dict[str, Any] | None = None,
        working_branch: str | None = None,
        **config: Any,
    ) -> RunContext:
        names = names if names is not None else ["repo-1"]
        conf = MultipullConfig(root=tmp_path, repos=list(names), **config)
        return RunContext(conf, options=options, working_branch=working_branch)

    return _make


@pytest.fixture
def git(tmp_path: Path, mocker: MagicMock) -> MagicMock:
    """A GitOperations double of a clean, synchronized repository on main."""
    handle = mocker.create_autospec(GitOperations, instance=True)
    handle.repo_path = tmp_path / "repo-1"
    handle.status.return_value = Status(current="main", tracking="origin/main")
    handle.stash_list.return_value = StashInfo()
    handle.last_commit_message.return_value = "Initial commit"
    handle.rev_list.return_value = []
    handle.submodule_paths.return_value = []
    handle.pull.return_value = PullOutcome.empty()
    handle.verify_ref.return_value = True
    return handle


@pytest.fixture
def context(make_context: Callable[..., RunContext], git: MagicMock, mocker: MagicMock) -> RunContext:
    """A single-repository context whose handle is the `git` double."""
    ctx = make_context()
    mocker.patch.object(ctx, "get_git", return_value=git)
    return ctx


def called_names(handle: MagicMock) -> list[str]:
    """Names of the handle methods called, in call order."""
    return [c[0] for c in handle.method_calls]
