"""Build prompt passed to the worker as its system instructions."""

from pathlib import Path

from cli_agent_loop.config import BuildConfig
from cli_agent_loop.errors import PromptLoadError

DEFAULT_BUILD_PROMPT = """\
# Build Agent

You are an autonomous build agent working through a progress file one task at
a time. The current progress file is given to you in the user message.

## Rules

1. ONE TASK PER ITERATION. Pick the first unchecked task (`- [ ]`) in the
   first phase that still has work, implement it completely, and verify it.
2. Mark the task done by changing its checkbox to `- [x]` and list it under
   `## Completed This Iteration`.
3. Never remove tasks, phases, attempts or iteration log rows. Never
   uncheck a completed task.
4. If the task cannot be finished, leave it unchecked and explain what went
   wrong in `## Status`.
5. When every task is complete and verified, set `## Status` to
   `RALPH_DONE - <one line summary>`.

## Output Format

Respond with the COMPLETE updated progress file and nothing else, starting
with its `# Progress: <name>` heading. Keep every section:

- `## Status`
- `## Analysis`
- `## Tasks` (phases as `### <phase>` with checkbox lines)
- `## Testing Strategy`
- `## Completed This Iteration`
- `## Recent Attempts`
- `## Iteration Log`
"""


def get_build_prompt(config: BuildConfig) -> str:
    """Return the build prompt, reading config.build_prompt when it is set.

    Raises:
        PromptLoadError: If the override file cannot be read
    """
    if config.build_prompt is None:
        return DEFAULT_BUILD_PROMPT
    path = Path(config.build_prompt)
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise PromptLoadError(f"Failed to read build prompt from '{path}': {e}") from e


def describe_prompt_source(config: BuildConfig) -> str:
    return str(config.build_prompt) if config.build_prompt is not None else "default"
