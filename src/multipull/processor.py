"""Run a pipeline of stages over every repository of the fleet."""

from __future__ import annotations

import logging
import textwrap
import time
import traceback
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TimeElapsedColumn

from .context import RunContext
from .core import RepositoryRef

logger = logging.getLogger("multipull")

Title = str | Callable[[RunContext], str] | None

# =============================================================================
# Stages and results
# =============================================================================


@dataclass(frozen=True)
class FanOutStage:
    """Stage run once per repository, concurrently: `fn(context, ref)`."""

    fn: Callable[[RunContext, RepositoryRef], Any]
    title: Title = None


@dataclass(frozen=True)
class SingleStage:
    """Stage run once with the previous stage's results: `fn(context, previous)`."""

    fn: Callable[[RunContext, Any], Any]
    title: Title = None


Stage = FanOutStage | SingleStage


@dataclass(frozen=True)
class TaskResult:
    """Outcome of one task call. `repository` is None for single stages."""

    repository: str | None
    value: Any = None
    error: Exception | None = None
    traceback: str = ""
    elapsed: float = 0.0

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        value = self.value.to_dict() if hasattr(self.value, "to_dict") else self.value
        return {
            "repository": self.repository,
            "value": value,
            "error": str(self.error) if self.error else None,
            "elapsed_ms": round(self.elapsed * 1000),
        }


class ProcessorState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    FAILED = "failed"
    COMPLETED = "completed"


class ResultOrderError(RuntimeError):
    """Fan-out results do not line up with the repository list."""


def plural(count: int) -> str:
    return "s" if count > 1 else ""


def indent(text: str, prefix: str = "|  ") -> str:
    return textwrap.indent(text.rstrip("\n"), prefix, lambda line: True)


class PipelineError(Exception):
    """Aggregated failures of the stage that halted the pipeline."""

    def __init__(self, failures: Sequence[TaskResult]):
        self.failures = list(failures)
        super().__init__(self._build_message())

    @property
    def repositories(self) -> list[str]:
        return [f.repository for f in self.failures if f.repository is not None]

    def _build_message(self) -> str:
        if len(self.failures) == 1 and self.failures[0].repository is None:
            return "\n".join(["Aborting execution:", indent(_trace_of(self.failures[0]))])

        count = len(self.failures)
        parts = [
            f"Aborting execution because of {count} error{plural(count)} "
            f"in {', '.join(self.repositories)}:"
        ]
        for failure in self.failures:
            parts.append(f"------------  in {failure.repository}:")
            parts.append(indent(_trace_of(failure)))
        return "\n".join(parts)


def _trace_of(result: TaskResult) -> str:
    return result.traceback or repr(result.error)


@dataclass
class PipelineResult:
    """What a run produced: the last results and, when halted on error, why."""

    results: list[TaskResult] | TaskResult | None
    state: ProcessorState
    error: PipelineError | None = None
    stages_run: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


def check_result_order(repos: Sequence[RepositoryRef], results: Sequence[TaskResult | None]) -> None:
    """Raise ResultOrderError unless `results[i]` belongs to `repos[i]` for every i."""
    if len(results) != len(repos):
        raise ResultOrderError(f"Expected {len(repos)} results, but got {len(results)}")
    for i, (ref, result) in enumerate(zip(repos, results)):
        actual = result.repository if result is not None else None
        if actual != ref.name:
            raise ResultOrderError(
                f"Unordered results: expected {ref.name} at position {i}, but got {actual}"
            )


def normalize_stages(stages: Stage | Callable | Sequence[Stage]) -> list[Stage]:
    if isinstance(stages, (FanOutStage, SingleStage)):
        return [stages]
    if callable(stages):
        return [FanOutStage(stages)]
    if isinstance(stages, (list, tuple)) and all(
        isinstance(s, (FanOutStage, SingleStage)) for s in stages
    ):
        return list(stages)
    raise TypeError(f"Invalid specification: {stages!r}")


# =============================================================================
# Progress
# =============================================================================


class ProgressSink(Protocol):
    def tick(self) -> None: ...

    def close(self) -> None: ...


class RichProgressSink:
    """Progress bar ticked once per completed repository task."""

    def __init__(self, total: int, console: Console | None = None):
        self._progress = Progress(
            BarColumn(bar_width=None),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        )
        self._task = self._progress.add_task("", total=total)
        self._progress.start()

    def tick(self) -> None:
        self._progress.advance(self._task)

    def close(self) -> None:
        self._progress.stop()


# =============================================================================
# Processor
# =============================================================================


class Processor:
    """Drive an ordered list of stages over the repositories of a context.

    Stages run strictly one after the other. A fan-out stage runs its task
    on every repository at once and waits for all of them. The pipeline halts
    after the first stage with a failed task, or after any stage once the
    context was interrupted, and hands back the last results.
    """

    def __init__(
        self,
        context: RunContext,
        stages: Stage | Callable | Sequence[Stage],
        *,
        console: Console | None = None,
        progress_factory: Callable[[int], ProgressSink] | None = None,
        max_workers: int | None = None,
    ):
        self.context = context
        self.stages = normalize_stages(stages)
        self.console = console or Console()
        self.progress_factory = progress_factory or (
            lambda total: RichProgressSink(total, console=self.console)
        )
        self.max_workers = max_workers or context.config.max_workers
        self.state = ProcessorState.IDLE
        self.current_stage: int | None = None
        self.last_results: list[TaskResult] | TaskResult | None = None

    @property
    def repos(self) -> list[RepositoryRef]:
        return self.context.repos

    def run(self) -> PipelineResult:
        for index, stage in enumerate(self.stages):
            self.state = ProcessorState.RUNNING
            self.current_stage = index
            start = time.perf_counter()

            title = self._title(stage)
            if title:
                self.console.print(f"[bold]{title}[/]")

            if isinstance(stage, SingleStage):
                self.last_results = self._run_single(stage)
                failures = [self.last_results] if self.last_results.failed else []
            else:
                self.last_results = self._run_fan_out(stage)
                failures = [r for r in self.last_results if r.failed]

            if failures:
                self.state = ProcessorState.FAILED
                return self._result(index, PipelineError(failures))

            if title:
                elapsed_ms = (time.perf_counter() - start) * 1000
                self.console.print(f"[dim]  ({elapsed_ms:.0f} ms)[/]")

            if self.context.is_interrupted():
                logger.debug(f"Interrupted after stage {index + 1}/{len(self.stages)}")
                self.state = ProcessorState.INTERRUPTED
                return self._result(index)

        self.state = ProcessorState.COMPLETED
        return self._result(len(self.stages) - 1)

    def _result(self, index: int, error: PipelineError | None = None) -> PipelineResult:
        return PipelineResult(
            results=self.last_results,
            state=self.state,
            error=error,
            stages_run=index + 1,
        )

    def _title(self, stage: Stage) -> str | None:
        if callable(stage.title):
            return stage.title(self.context)
        return stage.title

    def _run_single(self, stage: SingleStage) -> TaskResult:
        return _timed(None, stage.fn, self.context, self.last_results)

    def _run_fan_out(self, stage: FanOutStage) -> list[TaskResult]:
        repos = list(self.repos)
        slots: list[TaskResult | None] = [None] * len(repos)

        progress = self.progress_factory(len(repos) + 1)
        try:
            progress.tick()
            if repos:
                workers = self.max_workers or len(repos)
                with ThreadPoolExecutor(max_workers=workers) as executor:
                    futures = {
                        executor.submit(self._process_repo, stage.fn, ref): i
                        for i, ref in enumerate(repos)
                    }
                    for future in as_completed(futures):
                        slots[futures[future]] = future.result()
                        progress.tick()
        finally:
            progress.close()

        check_result_order(repos, slots)
        return [r for r in slots if r is not None]

    def _process_repo(self, fn: Callable, ref: RepositoryRef) -> TaskResult:
        result = _timed(ref.name, fn, self.context, ref)
        logger.debug(f"Completed task {ref.name}")
        return result


def _timed(repository: str | None, fn: Callable, *args: Any) -> TaskResult:
    start = time.perf_counter()
    try:
        value = fn(*args)
    except Exception as e:
        return TaskResult(
            repository=repository,
            error=e,
            traceback=traceback.format_exc(),
            elapsed=time.perf_counter() - start,
        )
    return TaskResult(repository=repository, value=value, elapsed=time.perf_counter() - start)
