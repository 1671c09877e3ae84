"""Output formatters for console and JSON display."""

from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .core import AheadBehind, CommandResult, PullOutcome, RepositoryReport

if TYPE_CHECKING:
    from .context import RunContext
    from .processor import PipelineResult, TaskResult

STATUS_COLUMNS = [
    ("??", "not_added"),
    ("M", "modified"),
    ("D", "deleted"),
    ("A", "created"),
    ("C", "conflicted"),
]

HEADERS = [
    "Repository",
    "Current",
    "Tracking",
    "Pushed",
    "S",
    *[header for header, _ in STATUS_COLUMNS],
    "Files",
    "Changes",
    "Insertions",
    "Deletions",
    "WIP",
    "Error",
    "ms",
]


def one_or_count(items: tuple[str, ...] | list[str]) -> str:
    """The item itself when there is only one, otherwise how many there are."""
    if not items:
        return ""
    if len(items) == 1:
        return items[0]
    return str(len(items))


def format_diff(diff: AheadBehind | None, parenthesis: bool = False) -> str:
    if diff is None:
        return ""
    parts = []
    if diff.behind:
        parts.append(f"-{diff.behind}")
    if diff.ahead:
        parts.append(f"+{diff.ahead}")
    if not parts:
        return ""
    stat = "/".join(parts)
    return f" ({stat})" if parenthesis else f" {stat}"


def different_or_empty(actual: str | None, common: str) -> str:
    if actual == common:
        return ""
    return actual or "*** none ***"


def first_line(error: Exception | None) -> str:
    text = str(error).strip() if error is not None else ""
    if not text:
        return type(error).__name__
    return text.splitlines()[0]


def drop_empty_columns(headers: list[str], rows: list[list[str]]) -> tuple[list[str], list[list[str]]]:
    """Remove the columns (except the first one) that are empty on every row."""
    if not rows:
        return headers, rows
    keep = [
        i for i in range(len(headers)) if i == 0 or any(row[i] not in ("", None) for row in rows)
    ]
    return [headers[i] for i in keep], [[row[i] for i in keep] for row in rows]


class OutputFormatter:
    """Format run results for console or JSON."""

    def __init__(self, console: Console, use_json: bool = False):
        self.console = console
        self.use_json = use_json

    def print_results(
        self,
        context: RunContext,
        outcome: PipelineResult,
        started_at: datetime,
    ):
        """Print the last results of a run, then its errors."""
        if self.use_json:
            self._print_results_json(context, outcome, started_at)
            return

        results = outcome.results if isinstance(outcome.results, list) else []
        rows = [self.build_row(context, r) for r in results]
        rows = [row for row in rows if row is not None]
        headers, rows = drop_empty_columns(list(HEADERS), rows)

        if rows:
            table = Table()
            for header in headers:
                table.add_column(header, style="cyan" if header == "Repository" else None)
            for row in rows:
                table.add_row(*[escape(cell) for cell in row])
            self.console.print(table)

        self._print_footer(context, outcome, started_at)

    def print_command_results(
        self,
        context: RunContext,
        outcome: PipelineResult,
        started_at: datetime,
    ):
        """Print the output of the command run in each repository."""
        if self.use_json:
            self._print_results_json(context, outcome, started_at)
            return

        results = outcome.results if isinstance(outcome.results, list) else []
        for result in results:
            output = result.value
            if not isinstance(output, CommandResult):
                continue
            style = "green" if output.ok else "red"
            self.console.print(
                f"[bold {style}]{escape(result.repository)}[/] [dim](exit {output.returncode})[/]"
            )
            text = (output.stdout + output.stderr).rstrip()
            if text:
                self.console.print(text, markup=False, highlight=False)

        self._print_footer(context, outcome, started_at)

    def _print_footer(
        self, context: RunContext, outcome: PipelineResult, started_at: datetime
    ):
        elapsed = (datetime.now() - started_at).total_seconds()
        self.console.print(
            f"Checked [bold]{len(context.repos)}[/] repositories in : {elapsed:.3f}s "
            f"@ {datetime.now():%Y-%m-%d %H:%M:%S}"
        )
        if outcome.error is not None:
            self.print_error(outcome.error)

    def build_row(self, context: RunContext, result: TaskResult) -> list[str] | None:
        """Table cells of one repository, or None when there is nothing to show."""
        elapsed_ms = f"{result.elapsed * 1000:.0f}"
        if result.failed:
            # Repository and error only; the full trace follows the table.
            blanks = [""] * (len(HEADERS) - 3)
            return [result.repository or "", *blanks, first_line(result.error), elapsed_ms]

        report = result.value
        if not isinstance(report, RepositoryReport):
            return None

        status = report.status
        pull = report.pull or PullOutcome.empty()
        default_branch = context.get_default_branch(report.repository)

        current = different_or_empty(status.current, default_branch)
        current += format_diff(AheadBehind(status.ahead, status.behind))
        current += format_diff(status.diff_from_default, parenthesis=True)
        tracking = different_or_empty(status.tracking, f"origin/{status.current}")

        cells = [
            current.strip(),
            tracking,
            report.pushed or "",
            str(report.stash.total) if report.stash.total else "",
            *[one_or_count(getattr(status, attr)) for _, attr in STATUS_COLUMNS],
            one_or_count(pull.files),
            *[str(pull.summary.get(k) or "") for k in ("changes", "insertions", "deletions")],
            "yes" if report.has_wip_commit else "",
            "",
        ]
        if not any(cells):
            return None
        return [report.repository, *cells, elapsed_ms]

    def print_error(self, error: Exception):
        """Print a pipeline error in red."""
        self.console.print(f"[red]{escape(str(error))}[/]")

    def _print_results_json(
        self, context: RunContext, outcome: PipelineResult, started_at: datetime
    ):
        results = outcome.results
        if isinstance(results, list):
            payload = [r.to_dict() for r in results]
        elif results is not None:
            payload = results.to_dict()
        else:
            payload = None
        output = {
            "repositories": context.repo_names,
            "state": outcome.state.value,
            "results": payload,
            "error": str(outcome.error) if outcome.error else None,
            "elapsed_s": round((datetime.now() - started_at).total_seconds(), 3),
        }
        self.console.print(json.dumps(output, indent=2, default=str), markup=False, soft_wrap=True)
