"""Iteration service: one worker run against the task document.

Each call reloads the document, checks whether the build is already finished,
runs the worker on the serialized document, and replaces the document with the
worker's updated copy. Failures are written into the document as attempt
records before the error propagates, so the next iteration (or the next run)
can see what went wrong.
"""

import logging
import queue
import threading
from pathlib import Path
from typing import List, Optional

from cli_agent_loop.clients.worker_process import STDOUT, OutputLine, WorkerProcess, build_worker_args
from cli_agent_loop.constants import (
    CONTEXT_WINDOW_TOKENS,
    DISPLAY_DRAIN_TIMEOUT,
    WORKER_HEADLESS_ARGS,
    WORKER_SYSTEM_PROMPT_FLAG,
)
from cli_agent_loop.errors import (
    SpawnError,
    StreamDecodeError,
    TaskDocumentParseError,
    VcsError,
    WorkerCancelled,
    WorkerExitError,
    WorkerTimeout,
)
from cli_agent_loop.models.build_state import (
    DISPLAY_OUTPUT,
    DISPLAY_THINKING,
    DISPLAY_TOKENS,
    DISPLAY_TOOL,
    BuildContext,
    Continue,
    DisplayEvent,
    DisplaySink,
    DoneReason,
    Finished,
    IterationResult,
)
from cli_agent_loop.models.stream_event import decode_event, format_tool_summary
from cli_agent_loop.models.task_document import TaskListDocument
from cli_agent_loop.models.tokens import format_tokens
from cli_agent_loop.services.response_accumulator import StreamResponse
from cli_agent_loop.utils.prompts import get_build_prompt

logger = logging.getLogger(__name__)

ITERATION_INSTRUCTIONS = (
    "Execute the next incomplete task. Output the complete updated progress file."
)

# Attempt records written when an iteration fails: (tried, next-step hint)
SPAWN_FAILURE = ("Spawn worker subprocess", "Check worker_path configuration")
RUN_FAILURE = ("Execute worker subprocess", "Retry or check subprocess")
PARSE_FAILURE = ("Parse worker response", "Check response format")


def format_iteration_commit(project_name: str, iteration: int, tasks_completed: int) -> str:
    return f"[{project_name}][iter {iteration}] Completed {tasks_completed} task(s)"


def build_user_input(document: TaskListDocument) -> str:
    return (
        f"## Current Progress\n\n{document.to_markdown()}\n\n"
        f"## Instructions\n\n{ITERATION_INSTRUCTIONS}"
    )


def worker_working_dir(document_path: Path) -> str:
    """Directory the worker runs in: the one holding the task document."""
    parent = str(Path(document_path).parent)
    return parent or "."


def _completion_reason(document: TaskListDocument) -> Optional[DoneReason]:
    if document.is_done():
        return DoneReason.DONE_MARKER
    if document.all_tasks_complete():
        return DoneReason.ALL_TASKS_COMPLETE
    return None


def _record_failure(ctx: BuildContext, failure: tuple, error: Exception) -> None:
    tried, hint = failure
    ctx.document.add_attempt(ctx.current_iteration, tried, f"Error: {error}", hint)
    ctx.document.trim_attempts(ctx.config.recent_attempts)
    ctx.document.write(ctx.document_path)
    logger.warning(f"Iteration {ctx.current_iteration}: {tried} failed: {error}")


class DisplayRelay:
    """Delivers display events to the sink on a thread of its own.

    The worker's wait loop only enqueues, so a slow display never delays the
    deadline and cancellation checks. A broken display never stops the build.
    """

    def __init__(self, sink: DisplaySink):
        self._sink = sink
        self._queue: "queue.Queue" = queue.Queue()
        self._thread = threading.Thread(target=self._deliver, name="display-relay", daemon=True)
        self._thread.start()

    def send(self, kind: str, text: str) -> None:
        self._queue.put(DisplayEvent(kind, text))

    def _deliver(self) -> None:
        while True:
            event = self._queue.get()
            if event is None:
                return
            try:
                self._sink(event)
            except Exception as e:
                logger.debug(f"Display sink rejected event: {e}")

    def close(self, timeout: float = DISPLAY_DRAIN_TIMEOUT) -> None:
        """Deliver what is queued, waiting at most timeout seconds."""
        self._queue.put(None)
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Display is still busy, leaving it to finish in the background")


def _stream_line(relay: DisplayRelay, response: StreamResponse, line: OutputLine) -> None:
    if line.channel != STDOUT:
        return
    try:
        event = decode_event(line.text)
    except StreamDecodeError:
        response.invalid_lines += 1
        return
    response.valid_lines += 1
    response.process_event(event)

    if not event.is_assistant():
        return
    thinking = event.extract_thinking()
    if thinking:
        relay.send(DISPLAY_THINKING, thinking)
    text = event.extract_text()
    if text:
        relay.send(DISPLAY_OUTPUT, text)
    for tool_name, input_json in event.extract_tool_uses():
        relay.send(DISPLAY_TOOL, format_tool_summary(tool_name, input_json))
    usage = event.usage()
    if usage is not None:
        used = usage.input_tokens + usage.output_tokens
        ratio = min(used / CONTEXT_WINDOW_TOKENS, 1.0)
        relay.send(
            DISPLAY_TOKENS,
            f"{format_tokens(usage.input_tokens)} in / {format_tokens(usage.output_tokens)} out "
            f"({ratio:.0%} of context)",
        )


def _run_worker(ctx: BuildContext, worker: WorkerProcess, response: StreamResponse) -> None:
    timeout = ctx.config.iteration_timeout
    if ctx.display is not None:
        relay = DisplayRelay(ctx.display)
        try:
            worker.run_with_callback(
                lambda line: _stream_line(relay, response, line), timeout, ctx.cancel_event
            )
        finally:
            relay.close(DISPLAY_DRAIN_TIMEOUT)
        return
    lines: List[OutputLine] = worker.run_with_timeout(timeout, ctx.cancel_event)
    for line in lines:
        if line.channel == STDOUT:
            response.process_line(line.text)


def _commit(ctx: BuildContext, tasks_completed: int) -> None:
    message = format_iteration_commit(ctx.project_name, ctx.current_iteration, tasks_completed)
    try:
        commit_hash = ctx.vcs.commit_all(message)
    except VcsError as e:
        logger.warning(f"Auto-commit failed: {e}")
        return
    if commit_hash is None:
        logger.info("No file changes to commit")
    else:
        logger.info(f"Committed {commit_hash}")


def run_single_iteration(ctx: BuildContext) -> IterationResult:
    """Run one iteration of the build.

    Args:
        ctx: Build context; its document, token counters and iteration
            history are updated in place

    Returns:
        Finished if the document is complete (before or after the run),
        otherwise Continue with the number of tasks completed this iteration

    Raises:
        SpawnError: Worker could not be started
        WorkerCancelled: Cancellation was signaled during the run
        WorkerTimeout: Worker exceeded config.iteration_timeout
        WorkerExitError: Worker exited non-zero
        TaskDocumentParseError: Worker output was not a task document
        PromptLoadError: Build prompt override could not be read
    """
    # Another actor may have edited the document since the last iteration
    ctx.document = TaskListDocument.load(ctx.document_path)
    tasks_before = ctx.document.completed_tasks()

    reason = _completion_reason(ctx.document)
    if reason is not None:
        logger.info(f"Iteration {ctx.current_iteration}: nothing to do ({reason.describe()})")
        return Finished(reason)

    system_prompt = get_build_prompt(ctx.config)
    ctx.document.clear_iteration_completed()
    args = build_worker_args(
        ctx.config.worker_base_args,
        [
            *WORKER_HEADLESS_ARGS,
            WORKER_SYSTEM_PROMPT_FLAG,
            system_prompt,
            build_user_input(ctx.document),
        ],
        ctx.config.skip_permissions,
    )
    working_dir = worker_working_dir(ctx.document_path)

    logger.info(f"Iteration {ctx.current_iteration}: spawning worker {ctx.config.worker_path}")
    try:
        worker = WorkerProcess.spawn(ctx.config.worker_path, args, working_dir)
    except SpawnError as e:
        _record_failure(ctx, SPAWN_FAILURE, e)
        raise

    response = StreamResponse()
    with worker:
        logger.debug(f"Worker pid={worker.pid}")
        try:
            _run_worker(ctx, worker, response)
        except (WorkerCancelled, WorkerTimeout, WorkerExitError) as e:
            _record_failure(ctx, RUN_FAILURE, e)
            raise

    logger.info(
        f"Iteration {ctx.current_iteration}: {len(response.text)} chars, "
        f"{response.valid_lines} events ({response.invalid_lines} skipped), "
        f"model={response.model}"
    )
    iteration_tokens = response.to_tokens(ctx.current_iteration)
    ctx.iteration_tokens.append(iteration_tokens)
    ctx.total_tokens.add(iteration_tokens)

    try:
        updated = TaskListDocument.parse(response.text)
    except TaskDocumentParseError as e:
        _record_failure(ctx, PARSE_FAILURE, e)
        raise

    # Checkpoint before anything else can fail
    updated.trim_attempts(ctx.config.recent_attempts)
    updated.write(ctx.document_path)

    tasks_completed = max(0, updated.completed_tasks() - tasks_before)
    if tasks_completed > 0 and ctx.vcs is not None:
        _commit(ctx, tasks_completed)

    ctx.document = updated
    reason = _completion_reason(ctx.document)
    if reason is not None:
        return Finished(reason)
    return Continue(tasks_completed)
