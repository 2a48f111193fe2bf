"""CLI Agent Loop - drives a headless coding agent through a task list."""

__version__ = "0.1.0"
