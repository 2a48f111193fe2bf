"""Task document model.

The task document is the persistent unit of work shared by the loop and the
worker. It is stored as markdown:

    # Progress: <name>
    ## Status / ## Analysis / ## Tasks (### <phase> + checkbox lines)
    ## Testing Strategy / ## Completed This Iteration
    ## Recent Attempts (### Iteration N + Tried/Result/Next items)
    ## Iteration Log (table)

Parsing is line-oriented and tolerant of preamble text and a surrounding code
fence, since the document usually comes back embedded in worker prose.
"""

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from cli_agent_loop.constants import DONE_MARKER
from cli_agent_loop.errors import TaskDocumentParseError

logger = logging.getLogger(__name__)

HEADING_PATTERN = re.compile(r"^(#{1,3})\s+(.*?)\s*$")
TASK_LINE_PATTERN = re.compile(r"^\s*[-*+]\s+\[([ xX])\]\s*(.*?)\s*$")
LIST_ITEM_PATTERN = re.compile(r"^\s*[-*+]\s+(.*?)\s*$")
ATTEMPT_HEADING_PATTERN = re.compile(r"^Iteration\s+(\d+)$", re.IGNORECASE)
ATTEMPT_FIELD_PATTERN = re.compile(r"^(Tried|Result|Next):\s*(.*)$", re.IGNORECASE)
FENCE_PATTERN = re.compile(r"^\s*```[\w-]*\s*$")
TITLE_PREFIX_PATTERN = re.compile(r"^Progress:\s*", re.IGNORECASE)
PROGRESS_TITLE_PATTERN = re.compile(r"^#\s+Progress:", re.IGNORECASE)

SECTION_STATUS = "status"
SECTION_ANALYSIS = "analysis"
SECTION_TASKS = "tasks"
SECTION_TESTING = "testing strategy"
SECTION_COMPLETED = "completed this iteration"
SECTION_ATTEMPTS = "recent attempts"
SECTION_LOG = "iteration log"

ITERATION_LOG_HEADER = (
    "| Iteration | Started | Duration | Tasks Completed | Notes |\n"
    "|-----------|---------|----------|-----------------|-------|\n"
)


class Task(BaseModel):
    description: str
    completed: bool = False


class TaskPhase(BaseModel):
    name: str
    tasks: List[Task] = Field(default_factory=list)


class Attempt(BaseModel):
    """Failure-memory record: what was tried, what happened, what to do next."""

    iteration: int
    tried: str = ""
    result: str = ""
    next: Optional[str] = None


class IterationEntry(BaseModel):
    iteration: int
    started: str = ""
    duration: str = ""
    tasks_completed: int = 0
    notes: str = ""


def _single_line(text: str) -> str:
    return " ".join(text.split())


class TaskListDocument(BaseModel):
    """Phases of tasks plus the run history written back after each iteration."""

    name: str
    status: str = ""
    analysis: str = ""
    phases: List[TaskPhase] = Field(default_factory=list)
    testing_strategy: str = ""
    completed_this_iteration: List[str] = Field(default_factory=list)
    recent_attempts: List[Attempt] = Field(default_factory=list)
    iteration_log: List[IterationEntry] = Field(default_factory=list)

    # ── Queries ────────────────────────────────────────────────────────────

    def is_done(self) -> bool:
        return DONE_MARKER in self.status

    def total_tasks(self) -> int:
        return sum(len(phase.tasks) for phase in self.phases)

    def completed_tasks(self) -> int:
        return sum(1 for phase in self.phases for task in phase.tasks if task.completed)

    def all_tasks_complete(self) -> bool:
        total = self.total_tasks()
        return total > 0 and self.completed_tasks() == total

    def next_task(self) -> Optional[Tuple[str, Task]]:
        """Return (phase name, task) for the first incomplete task."""
        for phase in self.phases:
            for task in phase.tasks:
                if not task.completed:
                    return phase.name, task
        return None

    # ── Mutations ──────────────────────────────────────────────────────────

    def complete_task(self, phase_name: str, description: str) -> bool:
        for phase in self.phases:
            if phase.name != phase_name:
                continue
            for task in phase.tasks:
                if task.description == description and not task.completed:
                    task.completed = True
                    self.completed_this_iteration.append(description)
                    return True
        return False

    def add_attempt(
        self, iteration: int, tried: str, result: str, next_step: Optional[str] = None
    ) -> None:
        self.recent_attempts.append(
            Attempt(
                iteration=iteration,
                tried=_single_line(tried),
                result=_single_line(result),
                next=_single_line(next_step) if next_step is not None else None,
            )
        )

    def trim_attempts(self, max_attempts: int) -> None:
        """Keep only the newest max_attempts attempt records."""
        if max_attempts <= 0:
            self.recent_attempts = []
        elif len(self.recent_attempts) > max_attempts:
            self.recent_attempts = self.recent_attempts[-max_attempts:]

    def log_iteration(
        self, iteration: int, started: str, duration: str, tasks_completed: int, notes: str
    ) -> None:
        self.iteration_log.append(
            IterationEntry(
                iteration=iteration,
                started=_single_line(started).replace("|", "/"),
                duration=_single_line(duration).replace("|", "/"),
                tasks_completed=tasks_completed,
                notes=_single_line(notes).replace("|", "/"),
            )
        )

    def clear_iteration_completed(self) -> None:
        self.completed_this_iteration = []

    def mark_done(self, message: str) -> None:
        self.status = f"{DONE_MARKER} - {message}"

    # ── Serialization ──────────────────────────────────────────────────────

    def to_markdown(self) -> str:
        parts = [f"# Progress: {self.name}\n\n"]

        parts.append(f"## Status\n\n{self.status}\n\n")
        parts.append(f"## Analysis\n\n{self.analysis}\n\n")

        parts.append("## Tasks\n\n")
        for phase in self.phases:
            parts.append(f"### {phase.name}\n\n")
            for task in phase.tasks:
                checkbox = "[x]" if task.completed else "[ ]"
                parts.append(f"- {checkbox} {task.description}\n")
            parts.append("\n")

        parts.append(f"## Testing Strategy\n\n{self.testing_strategy}\n\n")

        parts.append("## Completed This Iteration\n\n")
        for item in self.completed_this_iteration:
            parts.append(f"- [x] {item}\n")
        parts.append("\n")

        parts.append("## Recent Attempts\n\n")
        for attempt in self.recent_attempts:
            parts.append(f"### Iteration {attempt.iteration}\n\n")
            parts.append(f"- Tried: {attempt.tried}\n")
            parts.append(f"- Result: {attempt.result}\n")
            if attempt.next is not None:
                parts.append(f"- Next: {attempt.next}\n")
            parts.append("\n")

        parts.append("## Iteration Log\n\n")
        parts.append(ITERATION_LOG_HEADER)
        for entry in self.iteration_log:
            parts.append(
                f"| {entry.iteration} | {entry.started} | {entry.duration} | "
                f"{entry.tasks_completed} | {entry.notes} |\n"
            )
        return "".join(parts)

    @classmethod
    def parse(cls, content: str) -> "TaskListDocument":
        """Parse markdown into a TaskListDocument.

        Raises:
            TaskDocumentParseError: If no non-empty "# " title heading is found
        """
        lines = _document_lines(content)
        name = TITLE_PREFIX_PATTERN.sub("", HEADING_PATTERN.match(lines[0]).group(2)).strip()
        if not name:
            raise TaskDocumentParseError("Task document title is empty")

        document = cls(name=name)
        section = ""
        section_text: List[str] = []
        phase: Optional[TaskPhase] = None
        attempt: Optional[Attempt] = None

        def flush_text() -> None:
            text = "\n".join(section_text).strip()
            if section == SECTION_STATUS:
                document.status = text
            elif section == SECTION_ANALYSIS:
                document.analysis = text
            elif section == SECTION_TESTING:
                document.testing_strategy = text
            section_text.clear()

        for line in lines[1:]:
            heading = HEADING_PATTERN.match(line)
            if heading and len(heading.group(1)) == 2:
                flush_text()
                section = heading.group(2).strip().lower()
                phase = None
                attempt = None
                continue
            if heading and len(heading.group(1)) == 3:
                title = heading.group(2).strip()
                if section == SECTION_TASKS:
                    phase = TaskPhase(name=title)
                    document.phases.append(phase)
                    continue
                if section == SECTION_ATTEMPTS:
                    match = ATTEMPT_HEADING_PATTERN.match(title)
                    attempt = None
                    if match:
                        attempt = Attempt(iteration=int(match.group(1)))
                        document.recent_attempts.append(attempt)
                    continue

            if section == SECTION_TASKS:
                task = TASK_LINE_PATTERN.match(line)
                if task:
                    if phase is None:
                        phase = TaskPhase(name="Tasks")
                        document.phases.append(phase)
                    phase.tasks.append(
                        Task(description=task.group(2), completed=task.group(1) in "xX")
                    )
            elif section == SECTION_COMPLETED:
                item = TASK_LINE_PATTERN.match(line)
                if item:
                    document.completed_this_iteration.append(item.group(2))
                elif LIST_ITEM_PATTERN.match(line):
                    document.completed_this_iteration.append(LIST_ITEM_PATTERN.match(line).group(1))
            elif section == SECTION_ATTEMPTS:
                _parse_attempt_line(attempt, line)
            elif section == SECTION_LOG:
                entry = _parse_log_row(line)
                if entry is not None:
                    document.iteration_log.append(entry)
            else:
                section_text.append(line)

        flush_text()
        return document

    # ── Persistence ────────────────────────────────────────────────────────

    @classmethod
    def load(cls, path: Path) -> "TaskListDocument":
        try:
            content = Path(path).read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise TaskDocumentParseError(f"Task document {path} is not valid UTF-8: {e}") from e
        return cls.parse(content)

    def write(self, path: Path) -> None:
        """Write the document atomically (temp file + fsync + rename)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(self.to_markdown())
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp, path)
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)
        logger.debug(f"Wrote task document: {path}")


def _document_lines(content: str) -> List[str]:
    """Return the document's lines, starting at its title heading."""
    lines = content.splitlines()
    start = _title_index(lines)
    if start is None:
        # Text blocks are joined without separators, so the title may follow prose
        index = content.find("# Progress:")
        if index < 0:
            raise TaskDocumentParseError("No task document title heading found")
        return _document_lines(content[index:])

    # Only a fence still open right above the title wraps the document
    fences = [i for i in range(start) if FENCE_PATTERN.match(lines[i])]
    nearest = next((i for i in range(start - 1, -1, -1) if lines[i].strip()), None)
    if len(fences) % 2 == 1 and nearest == fences[-1]:
        for end in range(len(lines) - 1, start, -1):
            if FENCE_PATTERN.match(lines[end]):
                return lines[start:end]
    return lines[start:]


def _title_index(lines: List[str]) -> Optional[int]:
    """Index of the title heading.

    A "# Progress:" heading wins. Otherwise the last level-1 heading before the
    first section heading, since prose ahead of the document may carry its own.
    """
    progress = next((i for i, line in enumerate(lines) if PROGRESS_TITLE_PATTERN.match(line)), None)
    if progress is not None:
        return progress
    title = None
    for i, line in enumerate(lines):
        heading = HEADING_PATTERN.match(line)
        if heading is None:
            continue
        if len(heading.group(1)) == 1:
            title = i
        elif title is not None:
            break
    return title


def _parse_attempt_line(attempt: Optional[Attempt], line: str) -> None:
    if attempt is None:
        return
    item = LIST_ITEM_PATTERN.match(line)
    if not item:
        return
    field = ATTEMPT_FIELD_PATTERN.match(item.group(1))
    if not field:
        return
    key, value = field.group(1).lower(), field.group(2).strip()
    if key == "tried":
        attempt.tried = value
    elif key == "result":
        attempt.result = value
    else:
        attempt.next = value


def _parse_log_row(line: str) -> Optional[IterationEntry]:
    stripped = line.strip()
    if not stripped.startswith("|"):
        return None
    cells = [cell.strip() for cell in stripped.strip("|").split("|")]
    if len(cells) < 5:
        return None
    try:
        iteration = int(cells[0])
    except ValueError:
        # Header and separator rows
        return None
    try:
        tasks_completed = int(cells[3])
    except ValueError:
        tasks_completed = 0
    return IterationEntry(
        iteration=iteration,
        started=cells[1],
        duration=cells[2],
        tasks_completed=tasks_completed,
        notes=" | ".join(cells[4:]),
    )
