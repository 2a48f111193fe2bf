"""Exception types raised by the build loop."""


class CliAgentLoopError(Exception):
    """Base class for all CAL errors."""

    pass


class ConfigError(CliAgentLoopError):
    """Raised when configuration cannot be loaded or is invalid."""

    pass


class SpawnError(CliAgentLoopError):
    """Raised when the worker executable cannot be started."""

    def __init__(self, executable: str, reason: str):
        self.executable = executable
        self.reason = reason
        super().__init__(f"Failed to spawn '{executable}': {reason}")


class WorkerTimeout(CliAgentLoopError):
    """Raised when a worker run exceeds its time budget."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(f"Process timeout after {seconds:g} seconds")


class WorkerCancelled(CliAgentLoopError):
    """Raised when a worker run is stopped by the cancellation signal."""

    def __init__(self):
        super().__init__("Process cancelled by user")


class WorkerExitError(CliAgentLoopError):
    """Raised when the worker exits with a non-zero status."""

    def __init__(self, exit_code: int, stderr: str = ""):
        self.exit_code = exit_code
        self.stderr = stderr
        message = f"Process exited with code {exit_code}"
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)


class StreamDecodeError(CliAgentLoopError):
    """Raised when a worker output line is not a stream-json event."""

    pass


class TaskDocumentParseError(CliAgentLoopError):
    """Raised when text cannot be parsed as a task document."""

    pass


class PromptLoadError(CliAgentLoopError):
    """Raised when the build prompt override cannot be read."""

    pass


class VcsError(CliAgentLoopError):
    """Raised when a version-control command fails."""

    def __init__(self, command: str, error: str):
        self.command = command
        self.error = error
        super().__init__(f"VCS command '{command}' failed: {error}")
