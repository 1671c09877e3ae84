"""Command-line interface."""

from __future__ import annotations

import json
import logging
import re
import sys
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console

from ._version import __version__
from .context import ConfigError, MultipullConfig, RunContext, distinct_list
from .formatters import OutputFormatter
from .processor import FanOutStage, PipelineResult, Processor, Stage, TaskResult
from .runners import (
    checkout_stages,
    exec_repo,
    find_branch_stages,
    merge_branch_repo,
    pull_stages,
    push_repo,
    rebase_branch_repo,
    status_repo,
)
from .schema import get_tool_schema

logger = logging.getLogger("multipull")

app = typer.Typer(
    name="multipull",
    help="Keep a fleet of git repositories in sync with their remotes.",
    no_args_is_help=True,
)

CONFIG_OPTION = typer.Option(
    None, "--config", "-c", help="TOML config file (default: auto-resolved)"
)
ROOT_OPTION = typer.Option(None, "--root", help="Directory holding the repositories")
REPOS_OPTION = typer.Option(
    None, "--repos", help="Comma separated repository names under the root"
)
JSON_OPTION = typer.Option(False, "--json", "-j", help="Output as JSON")
THIS_OPTION = typer.Option(
    False, "--this", help="Only process the repository containing the current directory"
)
DRY_RUN_OPTION = typer.Option(
    False, "--dry-run", "-n", help="Show what would be done without doing it"
)
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Log debug messages")
MAX_WORKERS_OPTION = typer.Option(
    None, "--max-workers", help="Maximum number of repositories processed at once"
)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"multipull {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    schema: bool = typer.Option(
        False,
        "--schema",
        help="Output MCP-compatible tool schema for AI agents",
    ),
):
    """multipull: keep a fleet of git repositories in sync with their remotes."""
    if schema:
        print(json.dumps(get_tool_schema(), indent=2))
        raise typer.Exit()


def setup_logging(verbose: bool) -> None:
    """Log to stderr, at DEBUG level when verbose."""
    formatter = logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s", "%H:%M:%S")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def get_console_and_formatter(json_output: bool) -> tuple[Console, OutputFormatter]:
    """Create console and formatter."""
    console = Console(force_terminal=not json_output)
    formatter = OutputFormatter(console, use_json=json_output)
    return console, formatter


def build_context(
    config_file: Path | None,
    root: Path | None,
    repos: str | None,
    options: dict,
    working_branch: str | None = None,
    max_workers: int | None = None,
) -> RunContext:
    config = MultipullConfig.load(
        config_file,
        root=root,
        repos=distinct_list(repos),
        max_workers=max_workers,
    )
    return RunContext(config, options=options, working_branch=working_branch)


def run_pipeline(
    stages: Stage | Sequence[Stage],
    *,
    config_file: Path | None,
    root: Path | None,
    repos: str | None,
    json_output: bool,
    verbose: bool,
    max_workers: int | None,
    options: dict,
    working_branch: str | None = None,
) -> tuple[RunContext, PipelineResult, OutputFormatter, datetime]:
    """Build the context, run the stages and exit on configuration errors."""
    setup_logging(verbose)
    started_at = datetime.now()
    console, formatter = get_console_and_formatter(json_output)

    try:
        context = build_context(config_file, root, repos, options, working_branch, max_workers)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/]")
        raise typer.Exit(2)

    logger.debug(f"Will process {', '.join(context.repo_names)} repos in {context.config.root}.")
    if not context.repos:
        console.print("[yellow]No repository to process[/]")
        raise typer.Exit()

    # Keep stdout clean for JSON output.
    progress_console = Console(stderr=True) if json_output else console
    processor = Processor(context, stages, console=progress_console)
    outcome = processor.run()
    return context, outcome, formatter, started_at


def report(
    context: RunContext, outcome: PipelineResult, formatter: OutputFormatter, started_at: datetime
) -> None:
    formatter.print_results(context, outcome, started_at)
    if outcome.error is not None:
        raise typer.Exit(1)


@app.command()
def status(
    config_file: Path = CONFIG_OPTION,
    root: Path = ROOT_OPTION,
    repos: str = REPOS_OPTION,
    json_output: bool = JSON_OPTION,
    this: bool = THIS_OPTION,
    verbose: bool = VERBOSE_OPTION,
    max_workers: int = MAX_WORKERS_OPTION,
):
    """Show status of all repositories."""
    report(
        *run_pipeline(
            FanOutStage(status_repo),
            config_file=config_file,
            root=root,
            repos=repos,
            json_output=json_output,
            verbose=verbose,
            max_workers=max_workers,
            options={"this": this},
        )
    )


@app.command()
def pull(
    config_file: Path = CONFIG_OPTION,
    root: Path = ROOT_OPTION,
    repos: str = REPOS_OPTION,
    json_output: bool = JSON_OPTION,
    this: bool = THIS_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    verbose: bool = VERBOSE_OPTION,
    max_workers: int = MAX_WORKERS_OPTION,
):
    """Fetch and bring every current branch up to date with its remote.

    Dirty or ahead branches are rebased with their local changes kept in a
    temporary WIP commit. Repositories whose merge would conflict are only
    fetched.
    """
    report(
        *run_pipeline(
            pull_stages(),
            config_file=config_file,
            root=root,
            repos=repos,
            json_output=json_output,
            verbose=verbose,
            max_workers=max_workers,
            options={"this": this, "dry-run": dry_run},
        )
    )


@app.command()
def push(
    config_file: Path = CONFIG_OPTION,
    root: Path = ROOT_OPTION,
    repos: str = REPOS_OPTION,
    json_output: bool = JSON_OPTION,
    this: bool = THIS_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Push with --force-with-lease branches behind their remote",
    ),
    verbose: bool = VERBOSE_OPTION,
    max_workers: int = MAX_WORKERS_OPTION,
):
    """Push current branches that are ahead of their remote."""
    report(
        *run_pipeline(
            FanOutStage(push_repo, title="Pushing repositories"),
            config_file=config_file,
            root=root,
            repos=repos,
            json_output=json_output,
            verbose=verbose,
            max_workers=max_workers,
            options={"this": this, "dry-run": dry_run, "force": force},
        )
    )


@app.command()
def checkout(
    branch: str = typer.Argument(None, help="Branch to check out (default: default branch)"),
    existing: bool = typer.Option(
        False,
        "--existing",
        "-e",
        help="Only touch repositories where origin/<branch> exists",
    ),
    config_file: Path = CONFIG_OPTION,
    root: Path = ROOT_OPTION,
    repos: str = REPOS_OPTION,
    json_output: bool = JSON_OPTION,
    this: bool = THIS_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    verbose: bool = VERBOSE_OPTION,
    max_workers: int = MAX_WORKERS_OPTION,
):
    """Check out a branch everywhere, falling back to each default branch."""
    console, _ = get_console_and_formatter(json_output)
    if existing and not branch:
        console.print("[red]Error: --existing needs a branch name[/]")
        raise typer.Exit(1)

    context, outcome, formatter, started_at = run_pipeline(
        checkout_stages(existing_only=existing),
        config_file=config_file,
        root=root,
        repos=repos,
        json_output=json_output,
        verbose=verbose,
        max_workers=max_workers,
        options={"this": this, "dry-run": dry_run},
        working_branch=branch,
    )
    if context.is_interrupted() and not json_output:
        console.print(f"Branch '{branch}' was not found in any repository")
        return
    report(context, outcome, formatter, started_at)


@app.command(name="find-branch")
def find_branch(
    branch: str = typer.Argument(..., help="Branch name to look for"),
    config_file: Path = CONFIG_OPTION,
    root: Path = ROOT_OPTION,
    repos: str = REPOS_OPTION,
    json_output: bool = JSON_OPTION,
    this: bool = THIS_OPTION,
    verbose: bool = VERBOSE_OPTION,
    max_workers: int = MAX_WORKERS_OPTION,
):
    """List the repositories whose origin has BRANCH."""
    context, outcome, formatter, started_at = run_pipeline(
        find_branch_stages(),
        config_file=config_file,
        root=root,
        repos=repos,
        json_output=json_output,
        verbose=verbose,
        max_workers=max_workers,
        options={"this": this},
        working_branch=branch,
    )
    if json_output or outcome.error is not None:
        report(context, outcome, formatter, started_at)
        return

    found = outcome.results.value if isinstance(outcome.results, TaskResult) else []
    count = len(found)
    repos_word = "repo" if count == 1 else "repos"
    formatter.console.print(f"Branch '{branch}' was found in {count} {repos_word}:")
    if found:
        formatter.console.print(", ".join(found))


@app.command(name="rebase-branch")
def rebase_branch(
    config_file: Path = CONFIG_OPTION,
    root: Path = ROOT_OPTION,
    repos: str = REPOS_OPTION,
    json_output: bool = JSON_OPTION,
    this: bool = THIS_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    verbose: bool = VERBOSE_OPTION,
    max_workers: int = MAX_WORKERS_OPTION,
):
    """Rebase current branches behind their default branch onto origin/<default>.

    Local changes are kept in a temporary WIP commit. Rebases that would
    conflict are aborted and flagged.
    """
    report(
        *run_pipeline(
            FanOutStage(
                rebase_branch_repo,
                title=lambda c: f"Rebasing {len(c.repos)} repositories onto their default branch",
            ),
            config_file=config_file,
            root=root,
            repos=repos,
            json_output=json_output,
            verbose=verbose,
            max_workers=max_workers,
            options={"this": this, "dry-run": dry_run},
        )
    )


@app.command(name="merge-branch")
def merge_branch(
    config_file: Path = CONFIG_OPTION,
    root: Path = ROOT_OPTION,
    repos: str = REPOS_OPTION,
    json_output: bool = JSON_OPTION,
    this: bool = THIS_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    verbose: bool = VERBOSE_OPTION,
    max_workers: int = MAX_WORKERS_OPTION,
):
    """Merge the default branch into current branches that are behind it."""
    report(
        *run_pipeline(
            FanOutStage(
                merge_branch_repo,
                title=lambda c: f"Merging default branches in {len(c.repos)} repositories",
            ),
            config_file=config_file,
            root=root,
            repos=repos,
            json_output=json_output,
            verbose=verbose,
            max_workers=max_workers,
            options={"this": this, "dry-run": dry_run},
        )
    )


@app.command(name="exec")
def exec_command(
    command: str = typer.Argument(..., help="Shell command to run in every repository"),
    match: str = typer.Option(
        None, "--match", "-m", help="Only repositories whose name matches this regex"
    ),
    config_file: Path = CONFIG_OPTION,
    root: Path = ROOT_OPTION,
    repos: str = REPOS_OPTION,
    json_output: bool = JSON_OPTION,
    this: bool = THIS_OPTION,
    verbose: bool = VERBOSE_OPTION,
    max_workers: int = MAX_WORKERS_OPTION,
):
    """Run COMMAND in every repository and show its output."""
    if match:
        try:
            re.compile(match)
        except re.error as e:
            console, _ = get_console_and_formatter(json_output)
            console.print(f"[red]Error: invalid --match pattern: {e}[/]")
            raise typer.Exit(2)

    context, outcome, formatter, started_at = run_pipeline(
        FanOutStage(exec_repo),
        config_file=config_file,
        root=root,
        repos=repos,
        json_output=json_output,
        verbose=verbose,
        max_workers=max_workers,
        options={"this": this, "exec": command, "match": match},
    )
    formatter.print_command_results(context, outcome, started_at)
    if outcome.error is not None:
        raise typer.Exit(1)
