"""Domain models and the git Repository Handle used by every task."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass, field, replace
from pathlib import Path

logger = logging.getLogger("multipull")

DETACHED_HEAD = "HEAD"
CONFLICT_MARKER = "*** FETCHED ONLY, MERGE WOULD PRODUCE CONFLICTS ***"
REBASE_CONFLICT_MARKER = "*** FETCHED ONLY, REBASE WOULD PRODUCE CONFLICTS ***"

# =============================================================================
# Errors
# =============================================================================


class GitError(Exception):
    """A git invocation failed."""

    def __init__(self, message: str, command: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.message = message
        self.command = command or []
        self.stderr = stderr


class RepositorySetupError(GitError):
    """The repository path is missing or is not a git checkout."""


# =============================================================================
# Domain Models
# =============================================================================


@dataclass(frozen=True)
class RepositoryRef:
    """A repository of the fleet: its name and where it lives."""

    name: str
    path: Path

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class AheadBehind:
    ahead: int = 0
    behind: int = 0

    def to_dict(self) -> dict:
        return {"ahead": self.ahead, "behind": self.behind}


@dataclass(frozen=True)
class Status:
    """Working tree and branch status of a repository."""

    current: str = ""
    tracking: str | None = None
    ahead: int = 0
    behind: int = 0
    not_added: tuple[str, ...] = ()
    created: tuple[str, ...] = ()
    modified: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()
    renamed: tuple[str, ...] = ()
    conflicted: tuple[str, ...] = ()
    is_default_branch: bool = False
    diff_from_default: AheadBehind | None = None

    @property
    def is_detached(self) -> bool:
        return self.current == DETACHED_HEAD

    def with_default_branch(
        self, is_default_branch: bool, diff_from_default: AheadBehind | None
    ) -> Status:
        return replace(
            self, is_default_branch=is_default_branch, diff_from_default=diff_from_default
        )

    def to_dict(self) -> dict:
        return {
            "current": self.current,
            "tracking": self.tracking,
            "ahead": self.ahead,
            "behind": self.behind,
            "not_added": list(self.not_added),
            "created": list(self.created),
            "modified": list(self.modified),
            "deleted": list(self.deleted),
            "renamed": list(self.renamed),
            "conflicted": list(self.conflicted),
            "is_default_branch": self.is_default_branch,
            "diff_from_default": (
                self.diff_from_default.to_dict() if self.diff_from_default else None
            ),
        }


@dataclass(frozen=True)
class StashInfo:
    total: int = 0

    def to_dict(self) -> dict:
        return {"total": self.total}


@dataclass(frozen=True)
class PullOutcome:
    """Files touched by a synchronization, with the `--stat` summary."""

    files: tuple[str, ...] = ()
    summary: dict[str, int] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> PullOutcome:
        return cls()

    @classmethod
    def conflict(cls, marker: str = CONFLICT_MARKER) -> PullOutcome:
        return cls(files=(marker,))

    @property
    def is_conflict(self) -> bool:
        return self.files in ((CONFLICT_MARKER,), (REBASE_CONFLICT_MARKER,))

    def to_dict(self) -> dict:
        return {"files": list(self.files), "summary": dict(self.summary)}


@dataclass(frozen=True)
class RepositoryReport:
    """Common status of a repository, optionally with what a task did to it."""

    repository: str
    status: Status
    stash: StashInfo
    has_wip_commit: bool = False
    pull: PullOutcome | None = None
    pushed: str | None = None

    def to_dict(self) -> dict:
        return {
            "repository": self.repository,
            "status": self.status.to_dict(),
            "stash": self.stash.to_dict(),
            "has_wip_commit": self.has_wip_commit,
            "pull": self.pull.to_dict() if self.pull else None,
            "pushed": self.pushed,
        }


@dataclass(frozen=True)
class CommandResult:
    """Exit code and output of a shell command run inside a repository."""

    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "returncode": self.returncode,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


# =============================================================================
# Git Operations (Repository Handle)
# =============================================================================

_STAT_FILE_LINE = re.compile(r"^\s*(\S.*?)\s+\|\s+(?:\d+|Bin)")


def parse_stat_output(output: str) -> PullOutcome:
    """Extract touched files and the summary line from `--stat` output."""
    files: list[str] = []
    summary: dict[str, int] = {}
    for line in output.splitlines():
        match = _STAT_FILE_LINE.match(line)
        if match:
            files.append(match.group(1))
            continue
        changes = re.search(r"(\d+)\s+files? changed", line)
        if changes:
            summary["changes"] = int(changes.group(1))
            insertions = re.search(r"(\d+)\s+insertion", line)
            deletions = re.search(r"(\d+)\s+deletion", line)
            summary["insertions"] = int(insertions.group(1)) if insertions else 0
            summary["deletions"] = int(deletions.group(1)) if deletions else 0
    return PullOutcome(files=tuple(files), summary=summary)


def parse_status_porcelain(output: str) -> Status:
    """Parse `git status --porcelain=v2 --branch` into a Status."""
    info: dict = {"current": "", "tracking": None, "ahead": 0, "behind": 0}
    buckets: dict[str, list[str]] = {
        "not_added": [],
        "created": [],
        "modified": [],
        "deleted": [],
        "renamed": [],
        "conflicted": [],
    }
    for line in output.splitlines():
        if line.startswith("# branch.head "):
            head = line[len("# branch.head ") :]
            info["current"] = DETACHED_HEAD if head == "(detached)" else head
        elif line.startswith("# branch.upstream "):
            info["tracking"] = line[len("# branch.upstream ") :]
        elif line.startswith("# branch.ab "):
            # Format: # branch.ab +<ahead> -<behind>
            parts = line.split()
            if len(parts) == 4:
                info["ahead"] = abs(int(parts[2]))
                info["behind"] = abs(int(parts[3]))
        elif line.startswith("1 "):
            # Changed entry: 1 XY sub mH mI mW hH hI path
            xy = line[2:4]
            path = line.split(" ", 8)[8]
            _classify(xy, path, buckets)
        elif line.startswith("2 "):
            # Renamed entry: 2 XY sub mH mI mW hH hI Xscore path<TAB>origPath
            path = line.split(" ", 9)[9].split("\t", 1)[0]
            buckets["renamed"].append(path)
            _classify(xy="." + line[3], path=path, buckets=buckets)
        elif line.startswith("u "):
            buckets["conflicted"].append(line.split(" ", 10)[10])
        elif line.startswith("? "):
            buckets["not_added"].append(line[2:])
    return Status(**info, **{k: tuple(v) for k, v in buckets.items()})


def _classify(xy: str, path: str, buckets: dict[str, list[str]]) -> None:
    index, worktree = xy[0], xy[1]
    if index == "A":
        buckets["created"].append(path)
    elif "D" in xy:
        buckets["deleted"].append(path)
    elif "M" in xy or worktree == "T" or index == "T":
        buckets["modified"].append(path)


class GitOperations:
    """Low-level Git operations for a single repository."""

    def __init__(self, repo_path: Path):
        self.repo_path = repo_path

    def _run(self, *args: str) -> str:
        """Run a git command in the repository, raising GitError on failure."""
        command = ["git", *args]
        try:
            result = subprocess.run(
                command,
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise GitError(f"Cannot run git in {self.repo_path}: {e}", command) from e
        if result.returncode != 0:
            stderr = result.stderr.strip() or result.stdout.strip()
            raise GitError(f"git {' '.join(args)} failed: {stderr}", command, stderr)
        return result.stdout

    def status(self) -> Status:
        return parse_status_porcelain(self._run("status", "--porcelain=v2", "--branch"))

    def stash_list(self) -> StashInfo:
        output = self._run("stash", "list")
        return StashInfo(total=len([line for line in output.splitlines() if line]))

    def fetch(self, remote: str = "all") -> None:
        if remote == "all":
            self._run("fetch", "--all")
        else:
            self._run("fetch", remote)

    def gc(self) -> None:
        self._run("gc", "--prune=now")

    def rebase(self, target: str, *flags: str) -> None:
        self._run("rebase", target, *flags)

    def rebase_abort(self) -> None:
        self._run("rebase", "--abort")

    def commit(self, message: str, *flags: str, paths: list[str] | None = None) -> None:
        args = ["commit", "-m", message, *flags]
        if paths:
            args.extend(["--", *paths])
        self._run(*args)

    def reset(self, *args: str) -> None:
        self._run("reset", *args)

    def pull(self, *flags: str) -> PullOutcome:
        return parse_stat_output(self._run("pull", *flags))

    def push(self, *args: str) -> None:
        self._run("push", *args)

    def checkout(self, branch: str) -> None:
        self._run("checkout", branch)

    def merge(self, target: str, *flags: str) -> PullOutcome:
        return parse_stat_output(self._run("merge", target, *flags))

    def diff_summary(self, range_spec: str) -> PullOutcome:
        """Files and line counts changed over `range_spec`, as `--stat` reports them."""
        return parse_stat_output(self._run("diff", "--stat", range_spec))

    def last_commit_message(self) -> str:
        try:
            return self._run("log", "--pretty=format:%s", "-1").strip()
        except GitError as e:
            # A repository without any commit has no message to compare.
            logger.debug(f"No last commit in {self.repo_path}: {e}")
            return ""

    def rev_list(self, range_spec: str, left_right: bool = True) -> list[str]:
        args = ["rev-list"]
        if left_right:
            args.append("--left-right")
        args.append(range_spec)
        return [line for line in self._run(*args).splitlines() if line]

    def verify_ref(self, ref: str) -> bool:
        try:
            self._run("rev-parse", "--verify", ref)
        except GitError:
            return False
        return True

    def submodule_paths(self) -> list[str]:
        """Paths of the submodules declared in this repository's .gitmodules."""
        if not (self.repo_path / ".gitmodules").exists():
            return []
        try:
            output = self._run(
                "config", "--file", ".gitmodules", "--get-regexp", r"^submodule\..*\.path$"
            )
        except GitError:
            return []
        return [line.split(" ", 1)[1] for line in output.splitlines() if " " in line]


def open_repository(path: Path) -> GitOperations:
    """Create the Repository Handle for `path`."""
    if not (path / ".git").exists():
        raise RepositorySetupError(f"Cannot setup git in {path}: not a git repository")
    return GitOperations(path)


def run_command(command: str, cwd: Path) -> CommandResult:
    """Run `command` through the shell in `cwd`.

    A non-zero exit is part of the result, not an error.
    """
    result = subprocess.run(
        command,
        shell=True,
        cwd=cwd,
        capture_output=True,
        text=True,
        check=False,
    )
    return CommandResult(
        command=command,
        returncode=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
    )
