"""Constants for CLI Agent Loop (CAL) application.

This module defines the defaults used throughout the CAL application,
including worker invocation, iteration limits, and configuration locations.

CAL repeatedly invokes a headless coding-agent CLI (Claude Code by default),
feeds it the current task list, parses its stream-json output and writes the
updated task list back to disk until the work is done.
"""

from pathlib import Path

# =============================================================================
# Worker Configuration
# =============================================================================
# Default worker executable, resolved against PATH at config load time
DEFAULT_WORKER_PATH = "claude"

# Flags that put the worker in headless, machine-readable mode.
# --verbose is required by the claude CLI for stream-json together with -p.
WORKER_HEADLESS_ARGS = ["-p", "--verbose", "--output-format", "stream-json"]

# Flag used to pass the system instructions to the worker
WORKER_SYSTEM_PROMPT_FLAG = "--system-prompt"

# Bypasses the worker's own tool permission prompts (opt-in)
SKIP_PERMISSIONS_FLAG = "--dangerously-skip-permissions"

# =============================================================================
# Build Loop Configuration
# =============================================================================
# Maximum iterations before the build stops on its own
DEFAULT_MAX_ITERATIONS = 20

# Number of attempt records kept in the task document (failure memory depth)
DEFAULT_RECENT_ATTEMPTS = 5

# Time budget for a single worker run (seconds)
DEFAULT_ITERATION_TIMEOUT = 600

# Extra runs allowed for an iteration that timed out (0 = fail on first timeout)
DEFAULT_TIMEOUT_RETRIES = 0

# =============================================================================
# Process Supervision
# =============================================================================
# Grace period between SIGTERM and SIGKILL when stopping a worker (seconds)
TERMINATE_GRACE_SECONDS = 5.0

# Upper bound on a single blocking wait, so cancellation is noticed promptly
OUTPUT_POLL_INTERVAL = 0.05

# Lines of stderr quoted back when the worker exits non-zero
STDERR_TAIL_LINES = 20

# How long a finished iteration waits for the display to catch up
DISPLAY_DRAIN_TIMEOUT = 5.0

# =============================================================================
# Task Document
# =============================================================================
# Status substring meaning "no further iterations are needed"
DONE_MARKER = "RALPH_DONE"

# Rough context window used for the live usage ratio
CONTEXT_WINDOW_TOKENS = 200_000

# =============================================================================
# Configuration Files
# =============================================================================
# Prefix for environment variable overrides (CAL_MAX_ITERATIONS, ...)
ENV_PREFIX = "CAL_"

# Base directory for user configuration (~/.config/cli-agent-loop)
CAL_CONFIG_DIR = Path.home() / ".config" / "cli-agent-loop"

# Default TOML config file, read only if it exists
DEFAULT_CONFIG_FILE = CAL_CONFIG_DIR / "config.toml"
