"""multipull: keep a fleet of git repositories in sync with their remotes."""

# Guard against deleted CWD (e.g. directory removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .cli import app
from .context import ConfigError, MultipullConfig, RunContext, SingleFlight
from .core import (
    AheadBehind,
    GitError,
    GitOperations,
    PullOutcome,
    RepositoryRef,
    RepositoryReport,
    RepositorySetupError,
    StashInfo,
    Status,
    open_repository,
)
from .formatters import OutputFormatter
from .processor import (
    FanOutStage,
    PipelineError,
    PipelineResult,
    Processor,
    ProcessorState,
    ResultOrderError,
    SingleStage,
    TaskResult,
)
from .reconcile import pull_repo
from .schema import get_tool_schema

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    # Models
    "AheadBehind",
    "PullOutcome",
    "RepositoryRef",
    "RepositoryReport",
    "StashInfo",
    "Status",
    # Errors
    "ConfigError",
    "GitError",
    "PipelineError",
    "RepositorySetupError",
    "ResultOrderError",
    # Operations
    "GitOperations",
    "MultipullConfig",
    "RunContext",
    "SingleFlight",
    "open_repository",
    "pull_repo",
    # Orchestration
    "FanOutStage",
    "PipelineResult",
    "Processor",
    "ProcessorState",
    "SingleStage",
    "TaskResult",
    # Functions
    "get_tool_schema",
    # Formatters
    "OutputFormatter",
]
