"""Configuration loading and the per-run shared context."""

from __future__ import annotations

import logging
import os
import threading
import tomllib
from collections.abc import Callable, Hashable, Iterable
from concurrent.futures import Future, wait
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .core import GitOperations, RepositoryRef, open_repository

logger = logging.getLogger("multipull")


class ConfigError(Exception):
    """The configuration file is missing required values or cannot be parsed."""


# =============================================================================
# Configuration
# =============================================================================


def distinct_list(value: str | Iterable[str] | None) -> list[str]:
    """Split a comma separated string (or a list) into unique, ordered items."""
    if not value:
        return []
    items = value.split(",") if isinstance(value, str) else list(value)
    return list(dict.fromkeys(item.strip() for item in items if item.strip()))


def parse_branches(value: str | dict[str, str] | None) -> dict[str, str]:
    """Read per-repository default branches, as a table or `repo:branch,...`."""
    if not value:
        return {}
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    branches = {}
    for item in distinct_list(value):
        repo, _, branch = item.partition(":")
        if not branch:
            raise ConfigError(f"Invalid branch override '{item}', expected 'repo:branch'")
        branches[repo] = branch
    return branches


def resolve_references(branches: dict[str, str], refs: dict[str, str]) -> dict[str, str]:
    """Replace `${name}` values by the matching entry of `refs` when there is one."""
    resolved = {}
    for repo, branch in branches.items():
        if branch.startswith("${") and branch.endswith("}"):
            branch = refs.get(branch[2:-1], branch)
        resolved[repo] = branch
    return resolved


@dataclass
class MultipullConfig:
    """Settings of the fleet.

    Attributes:
        root: Directory holding the repositories.
        repos: Repository names under `root`; discovered when empty.
        default_branch: Default branch of every repository without override.
        branches: Per-repository default branch overrides.
        refs: Named values `branches` entries may refer to as `${name}`.
        submodules: Repositories that only report their status.
        max_workers: Upper bound of concurrent repository tasks.
    """

    root: Path | None = None
    repos: list[str] = field(default_factory=list)
    default_branch: str = "main"
    branches: dict[str, str] = field(default_factory=dict)
    refs: dict[str, str] = field(default_factory=dict)
    submodules: list[str] = field(default_factory=list)
    max_workers: int | None = None

    @classmethod
    def load(cls, config_file: Path | None = None, **overrides: Any) -> MultipullConfig:
        """Load the configuration file, then apply non-empty overrides."""
        instance = cls()
        path = config_file or resolve_config_file()
        if path is not None:
            instance = instance._merge_from_file(path)
        updates = {k: v for k, v in overrides.items() if v not in (None, [], {})}
        if updates:
            instance = replace(instance, **updates)
        return instance

    def _merge_from_file(self, path: Path) -> MultipullConfig:
        try:
            with open(path.expanduser(), "rb") as f:
                data = tomllib.load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"Config file not found: {path}") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Config syntax error in {path}: {e}") from e

        data = data.get("multipull", data)
        valid_keys = self.__dataclass_fields__.keys()
        invalid_keys = set(data) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in {path}: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        refs = {str(k): str(v) for k, v in data.get("refs", {}).items()}
        updates: dict[str, Any] = {"refs": refs}
        if "root" in data:
            updates["root"] = Path(os.path.expandvars(str(data["root"]))).expanduser()
        if "repos" in data:
            updates["repos"] = distinct_list(data["repos"])
        if "default_branch" in data:
            updates["default_branch"] = str(data["default_branch"])
        if "branches" in data:
            updates["branches"] = resolve_references(parse_branches(data["branches"]), refs)
        if "submodules" in data:
            updates["submodules"] = distinct_list(data["submodules"])
        if "max_workers" in data:
            updates["max_workers"] = int(data["max_workers"])
        return replace(self, **updates)


def resolve_config_file() -> Path | None:
    """Auto-resolve the config file from environment and standard locations.

    Priority order:
    1. $MULTIPULL_CONFIG environment variable
    2. ~/.config/multipull/config.toml (XDG-compliant)
    3. ~/.multipullrc.toml (legacy fallback)
    """
    env_config = os.environ.get("MULTIPULL_CONFIG")
    if env_config:
        env_path = Path(env_config).expanduser()
        if env_path.is_file():
            return env_path

    xdg_path = Path.home() / ".config" / "multipull" / "config.toml"
    if xdg_path.is_file():
        return xdg_path

    legacy_path = Path.home() / ".multipullrc.toml"
    if legacy_path.is_file():
        return legacy_path

    return None


def list_repositories(config: MultipullConfig) -> list[RepositoryRef]:
    """Enumerate the fleet: configured repos, or every git checkout under root."""
    if config.root is None:
        raise ConfigError("No root directory configured (set 'root' or use --root)")
    root = config.root.expanduser()
    if config.repos:
        names = config.repos
    elif root.is_dir():
        names = sorted(p.name for p in root.iterdir() if (p / ".git").exists())
    else:
        raise ConfigError(f"Root directory does not exist: {root}")
    return [RepositoryRef(name=name, path=root / name) for name in names]


# =============================================================================
# Shared execution context
# =============================================================================


class SingleFlight:
    """Collapse concurrent calls sharing a key into one execution.

    The first caller for a key runs the function; callers arriving while it
    runs wait for it to finish and do not run it again.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: dict[Hashable, Future] = {}

    def run(self, key: Hashable, fn: Callable[[], Any]) -> bool:
        """Run `fn` for `key` unless already in flight.

        Returns:
            True when this caller ran `fn`, False when it waited for another one.
        """
        with self._lock:
            future = self._in_flight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[key] = future

        if not owner:
            wait([future])
            return False

        try:
            future.set_result(fn())
        except BaseException as e:
            future.set_exception(e)
            raise
        finally:
            with self._lock:
                del self._in_flight[key]
        return True

    def in_flight(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._in_flight


class RunContext:
    """Everything the stages of one run share.

    Built once per run and passed to every task function. The interruption
    flag, the git handle cache and the garbage-collection guard are safe to use
    from concurrent repository tasks.
    """

    def __init__(
        self,
        config: MultipullConfig,
        options: dict[str, Any] | None = None,
        working_branch: str | None = None,
        repos: list[RepositoryRef] | None = None,
    ):
        self.config = config
        self.options: dict[str, Any] = dict(options or {})
        self.working_branch = working_branch or None
        self.repos = repos if repos is not None else list_repositories(config)
        if self.options.get("this"):
            self.repos = [r for r in self.repos if self.is_in_current_repo(r)]

        self.gc_guard = SingleFlight()
        self._gc_lock = threading.Lock()
        self._interrupted = threading.Event()
        self._git_cache: dict[str, GitOperations] = {}
        self._cache_lock = threading.Lock()

    @property
    def repo_names(self) -> list[str]:
        return [r.name for r in self.repos]

    def get_default_branch(self, repo_name: str) -> str:
        return self.config.branches.get(repo_name, self.config.default_branch)

    def is_submodule(self, repo_name: str) -> bool:
        return repo_name in self.config.submodules

    def get_git(self, ref: RepositoryRef) -> GitOperations:
        """Return the cached Repository Handle of `ref`, creating it on first use."""
        with self._cache_lock:
            git = self._git_cache.get(ref.name)
            if git is None:
                git = open_repository(ref.path)
                self._git_cache[ref.name] = git
            return git

    def run_gc(self, ref: RepositoryRef, git: GitOperations) -> bool:
        """Garbage-collect `ref`, sharing an in-flight run for the same repository.

        Distinct repositories are collected one at a time.
        """

        def _gc() -> None:
            with self._gc_lock:
                logger.info(f"Running git gc in {ref.name}")
                git.gc()

        return self.gc_guard.run(str(ref.path), _gc)

    def is_dry_run(self) -> bool:
        return bool(self.options.get("dry-run"))

    def is_forced(self) -> bool:
        return bool(self.options.get("force"))

    def is_in_current_repo(self, ref: RepositoryRef) -> bool:
        cwd = Path.cwd().resolve()
        repo_path = ref.path.resolve()
        return cwd == repo_path or repo_path in cwd.parents

    def interrupt(self) -> None:
        self._interrupted.set()

    def is_interrupted(self) -> bool:
        return self._interrupted.is_set()
