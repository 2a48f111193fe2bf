"""Build service: the outer loop driving iterations until the build stops.

State flow:
    Starting -> Running(1) -> IterationComplete(n, k) -> Running(n + 1) ... -> Done | Failed

After IterationComplete the stop conditions are checked in a fixed order:
single-iteration mode, the iteration limit, then cancellation. Cancellation
is also checked after every transition, so a cancelled run stops promptly
even between worker runs.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

import click

from cli_agent_loop.clients.vcs import Vcs
from cli_agent_loop.config import BuildConfig
from cli_agent_loop.errors import CliAgentLoopError, WorkerCancelled, WorkerTimeout
from cli_agent_loop.models.build_state import (
    BuildContext,
    BuildState,
    Continue,
    DisplaySink,
    Done,
    DoneReason,
    Failed,
    IterationComplete,
    Running,
    Starting,
)
from cli_agent_loop.models.task_document import TaskListDocument
from cli_agent_loop.models.tokens import TokenUsage, format_usage
from cli_agent_loop.services.iteration_service import run_single_iteration
from cli_agent_loop.utils.prompts import describe_prompt_source, get_build_prompt

logger = logging.getLogger(__name__)

# Called with (iteration, max_iterations) whenever an iteration starts
ProgressCallback = Callable[[int, int], None]

# Number of attempt records shown by a dry run
DRY_RUN_ATTEMPTS_SHOWN = 3


@dataclass
class BuildOutcome:
    state: BuildState
    tokens: TokenUsage

    @property
    def failed(self) -> bool:
        return isinstance(self.state, Failed)


def format_duration(seconds: float) -> str:
    total = int(seconds)
    return f"{total // 60}m {total % 60}s"


def log_iteration(ctx: BuildContext, iteration: int, tasks_completed: int) -> None:
    """Append an iteration log row to the document and persist it."""
    started_at = ctx.iteration_started_at or datetime.now(timezone.utc)
    duration = format_duration(ctx.elapsed()) if ctx.iteration_start is not None else "~"
    notes = (
        "No tasks completed" if tasks_completed == 0 else f"{tasks_completed} task(s) completed"
    )
    ctx.document.log_iteration(
        iteration, started_at.strftime("%Y-%m-%d %H:%M"), duration, tasks_completed, notes
    )
    ctx.document.write(ctx.document_path)


def _start_iteration(
    ctx: BuildContext, iteration: int, progress_callback: Optional[ProgressCallback]
) -> Running:
    ctx.start_iteration(iteration)
    logger.info(f"--- Iteration {iteration} ---")
    if progress_callback is not None:
        progress_callback(iteration, ctx.max_iterations)
    return Running(iteration)


def _run_iteration(ctx: BuildContext, iteration: int) -> BuildState:
    try:
        result = run_single_iteration(ctx)
    except WorkerCancelled:
        return Done(DoneReason.USER_CANCELLED)
    except WorkerTimeout as e:
        ctx.timeout_retry_count += 1
        if ctx.timeout_retry_count > ctx.config.timeout_retries:
            logger.error(f"Iteration {iteration} timed out {ctx.timeout_retry_count} time(s)")
            return Failed(
                f"{e} (timed out {ctx.timeout_retry_count} time(s), "
                f"max retries: {ctx.config.timeout_retries})"
            )
        logger.warning(
            f"Iteration {iteration} timed out, retry "
            f"{ctx.timeout_retry_count}/{ctx.config.timeout_retries}"
        )
        ctx.start_iteration(iteration)
        return Running(iteration)
    except (CliAgentLoopError, OSError) as e:
        logger.error(f"Iteration {iteration} failed: {e}")
        return Failed(str(e))

    if isinstance(result, Continue):
        ctx.timeout_retry_count = 0
        return IterationComplete(iteration, result.tasks_completed)
    return Done(result.reason)


def _complete_iteration(
    ctx: BuildContext,
    iteration: int,
    tasks_completed: int,
    progress_callback: Optional[ProgressCallback],
) -> BuildState:
    logger.info(
        f"Iteration {iteration} complete: {tasks_completed} task(s) in {ctx.elapsed():.1f}s "
        f"({ctx.document.completed_tasks()}/{ctx.document.total_tasks()} tasks)"
    )
    try:
        log_iteration(ctx, iteration, tasks_completed)
    except OSError as e:
        return Failed(f"Failed to write iteration log: {e}")

    if ctx.once:
        return Done(DoneReason.SINGLE_ITERATION_COMPLETE)
    if iteration >= ctx.max_iterations:
        logger.info(f"Max iterations ({ctx.max_iterations}) reached")
        return Done(DoneReason.MAX_ITERATIONS_REACHED)
    if ctx.is_cancelled():
        return Done(DoneReason.USER_CANCELLED)
    return _start_iteration(ctx, iteration + 1, progress_callback)


def _next_state(
    ctx: BuildContext, state: BuildState, progress_callback: Optional[ProgressCallback]
) -> BuildState:
    if isinstance(state, Starting):
        return _start_iteration(ctx, 1, progress_callback)
    if isinstance(state, Running):
        return _run_iteration(ctx, state.iteration)
    if isinstance(state, IterationComplete):
        return _complete_iteration(ctx, state.iteration, state.tasks_completed, progress_callback)
    raise ValueError(f"No transition out of terminal state {state!r}")


def completion_message(reason: DoneReason, ctx: BuildContext) -> List[str]:
    completed = ctx.document.completed_tasks()
    total = ctx.document.total_tasks()
    lines = [
        "",
        "=== BUILD COMPLETE ===",
        f"Reason: {reason.describe()}",
        f"Final progress: {completed}/{total} tasks",
    ]
    if reason in (DoneReason.ALL_TASKS_COMPLETE, DoneReason.DONE_MARKER):
        lines.append("All tasks completed successfully!")
    elif reason == DoneReason.MAX_ITERATIONS_REACHED:
        lines.append(
            f"Stopped after {ctx.max_iterations} iterations. {total - completed} task(s) remaining."
        )
    elif reason == DoneReason.USER_CANCELLED:
        lines.append("Build cancelled by user.")
    else:
        lines.append("Single iteration completed (--once mode).")
    lines.append(f"Tokens: {format_usage(ctx.total_tokens)}")
    return lines


def dry_run_report(ctx: BuildContext) -> List[str]:
    """Describe what a build would do, without spawning or writing anything."""
    document = ctx.document
    lines = ["", "=== DRY RUN MODE ===", ""]
    lines.append(f"Progress file: {ctx.document_path}")
    lines.append(f"Project: {document.name}")
    lines.append("")

    lines.append(f"Status: {document.status}")
    if document.is_done():
        lines.append("  -> RALPH_DONE detected, build would exit immediately")
    lines.append("")

    total = document.total_tasks()
    completed = document.completed_tasks()
    remaining = total - completed
    lines.append(f"Tasks: {completed}/{total} complete ({remaining} remaining)")
    if remaining == 0 and total > 0:
        lines.append("  -> All tasks complete, build would exit immediately")
    lines.append("")

    next_task = document.next_task()
    if next_task is not None:
        phase_name, task = next_task
        lines.append("Next task to execute:")
        lines.append(f"  Phase: {phase_name}")
        lines.append(f"  Task:  {task.description}")
    else:
        lines.append("No pending tasks found.")
    lines.append("")

    lines.append("Configuration:")
    lines.append(f"  Worker: {ctx.config.worker_path}")
    lines.append(f"  Max iterations: {ctx.max_iterations}")
    lines.append(f"  Once mode: {ctx.once}")
    lines.append(f"  Recent attempts depth: {ctx.config.recent_attempts}")
    lines.append(f"  Iteration timeout: {ctx.config.iteration_timeout:g}s")
    lines.append(f"  Timeout retries: {ctx.config.timeout_retries}")
    lines.append("")

    lines.append(f"Build prompt: {describe_prompt_source(ctx.config)}")
    try:
        prompt = get_build_prompt(ctx.config)
        lines.append(f"  Prompt length: {len(prompt)} chars")
    except CliAgentLoopError as e:
        lines.append(f"  WARNING: Failed to load prompt: {e}")
    lines.append("")

    if document.recent_attempts:
        lines.append(f"Recent attempts ({len(document.recent_attempts)}):")
        for attempt in list(reversed(document.recent_attempts))[:DRY_RUN_ATTEMPTS_SHOWN]:
            lines.append(f"  Iteration {attempt.iteration}: {attempt.tried} -> {attempt.result}")

    lines.append("")
    lines.append("=== END DRY RUN ===")
    lines.append("")
    lines.append("To execute, run without --dry-run flag.")
    return lines


def run_dry_run(ctx: BuildContext) -> BuildOutcome:
    for line in dry_run_report(ctx):
        click.echo(line)
    return BuildOutcome(state=Starting(), tokens=TokenUsage())


def run_build(
    document_path: Path,
    config: BuildConfig,
    cancel_event: Optional[threading.Event] = None,
    once: bool = False,
    dry_run: bool = False,
    display: Optional[DisplaySink] = None,
    vcs: Optional[Vcs] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> BuildOutcome:
    """Run a build against the task document at document_path.

    Returns:
        BuildOutcome with the terminal state and the tokens used. A dry run
        returns the untouched Starting state.

    Raises:
        TaskDocumentParseError: If the document cannot be parsed up front
        OSError: If the document cannot be read
    """
    document_path = Path(document_path)
    document = TaskListDocument.load(document_path)
    ctx = BuildContext(
        document_path=document_path,
        document=document,
        config=config,
        cancel_event=cancel_event or threading.Event(),
        once=once,
        dry_run=dry_run,
        vcs=vcs,
        display=display,
    )

    if dry_run:
        return run_dry_run(ctx)

    click.echo(f"Build started: {document_path}")
    click.echo(f"Tasks: {document.completed_tasks()}/{document.total_tasks()} complete")

    state: BuildState = Starting()
    while not state.is_terminal():
        state = _next_state(ctx, state, progress_callback)
        if ctx.is_cancelled() and not isinstance(state, Done):
            state = Done(DoneReason.USER_CANCELLED)

    if isinstance(state, Done):
        for line in completion_message(state.reason, ctx):
            click.echo(line)
    else:
        logger.error(f"Build failed: {state.error}")
    return BuildOutcome(state=state, tokens=ctx.total_tokens)
