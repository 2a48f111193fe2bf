"""Build state machine types and the per-run context."""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Union

from cli_agent_loop.clients.vcs import Vcs
from cli_agent_loop.config import BuildConfig
from cli_agent_loop.models.task_document import TaskListDocument
from cli_agent_loop.models.tokens import IterationTokens, TokenUsage


class DoneReason(str, Enum):
    """Why a build stopped without failing."""

    ALL_TASKS_COMPLETE = "all_tasks_complete"
    DONE_MARKER = "done_marker"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    USER_CANCELLED = "user_cancelled"
    SINGLE_ITERATION_COMPLETE = "single_iteration_complete"

    def describe(self) -> str:
        return DONE_REASON_DESCRIPTIONS[self]


DONE_REASON_DESCRIPTIONS = {
    DoneReason.ALL_TASKS_COMPLETE: "All tasks complete",
    DoneReason.DONE_MARKER: "RALPH_DONE marker detected",
    DoneReason.MAX_ITERATIONS_REACHED: "Maximum iterations reached",
    DoneReason.USER_CANCELLED: "Cancelled by user",
    DoneReason.SINGLE_ITERATION_COMPLETE: "Single iteration complete (--once)",
}


# ── Build states ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Starting:
    def is_terminal(self) -> bool:
        return False


@dataclass(frozen=True)
class Running:
    iteration: int

    def is_terminal(self) -> bool:
        return False


@dataclass(frozen=True)
class IterationComplete:
    iteration: int
    tasks_completed: int

    def is_terminal(self) -> bool:
        return False


@dataclass(frozen=True)
class Done:
    reason: DoneReason

    def is_terminal(self) -> bool:
        return True


@dataclass(frozen=True)
class Failed:
    error: str

    def is_terminal(self) -> bool:
        return True


BuildState = Union[Starting, Running, IterationComplete, Done, Failed]


# ── Iteration results ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class Continue:
    tasks_completed: int


@dataclass(frozen=True)
class Finished:
    reason: DoneReason


IterationResult = Union[Continue, Finished]


DISPLAY_OUTPUT = "output"
DISPLAY_TOOL = "tool"
DISPLAY_TOKENS = "tokens"
DISPLAY_THINKING = "thinking"


@dataclass(frozen=True)
class DisplayEvent:
    """Something worth showing live, such as assistant text or a tool call."""

    kind: str
    text: str


# Receives display events during streaming runs; failures are ignored
DisplaySink = Callable[[DisplayEvent], None]


@dataclass
class BuildContext:
    """Mutable state for one build run, threaded through every transition."""

    document_path: Path
    document: TaskListDocument
    config: BuildConfig
    cancel_event: threading.Event = field(default_factory=threading.Event)
    current_iteration: int = 0
    max_iterations: int = 0
    once: bool = False
    dry_run: bool = False
    iteration_start: Optional[float] = None
    iteration_started_at: Optional[datetime] = None
    timeout_retry_count: int = 0
    total_tokens: TokenUsage = field(default_factory=TokenUsage)
    iteration_tokens: List[IterationTokens] = field(default_factory=list)
    vcs: Optional[Vcs] = None
    display: Optional[DisplaySink] = None
    project_name: str = ""

    def __post_init__(self):
        if not self.max_iterations:
            self.max_iterations = self.config.max_iterations
        if not self.project_name:
            self.project_name = self.document.name

    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def start_iteration(self, iteration: int) -> None:
        self.current_iteration = iteration
        self.iteration_start = time.monotonic()
        self.iteration_started_at = datetime.now(timezone.utc)

    def elapsed(self) -> float:
        if self.iteration_start is None:
            return 0.0
        return time.monotonic() - self.iteration_start
