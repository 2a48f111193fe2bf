"""Worker process supervisor.

Spawns the worker CLI in its own session and process group, fans both output
pipes into one queue of tagged lines, and races pipe data against a deadline
and a cancellation event.

Usage:
    with WorkerProcess.spawn("claude", args, working_dir) as worker:
        lines = worker.run_with_timeout(600, cancel_event)
"""

import atexit
import ctypes
import logging
import os
import queue
import signal
import subprocess
import sys
import threading
import time
from collections import deque
from typing import Callable, List, NamedTuple, Optional, Sequence

from cli_agent_loop.constants import (
    OUTPUT_POLL_INTERVAL,
    SKIP_PERMISSIONS_FLAG,
    STDERR_TAIL_LINES,
    TERMINATE_GRACE_SECONDS,
)
from cli_agent_loop.errors import SpawnError, WorkerCancelled, WorkerExitError, WorkerTimeout

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"

# Linux prctl option: signal delivered to the child when its parent dies
PR_SET_PDEATHSIG = 1

# Queued by a reader thread once its pipe hits EOF
_END_OF_STREAM = object()


class OutputLine(NamedTuple):
    channel: str
    text: str


# Workers still running; drained at interpreter exit so none are orphaned
_live_workers = set()
_live_workers_lock = threading.Lock()


def _kill_live_workers() -> None:
    with _live_workers_lock:
        workers = list(_live_workers)
    for worker in workers:
        worker.close()


atexit.register(_kill_live_workers)


def _die_with_parent() -> None:
    """Runs in the child before exec: ask the kernel for SIGKILL on parent death."""
    try:
        libc = ctypes.CDLL(None, use_errno=True)
        libc.prctl(PR_SET_PDEATHSIG, signal.SIGKILL)
    except (OSError, AttributeError):
        # Not fatal: the atexit registry still covers orderly interpreter exits
        pass


def build_worker_args(
    base_args: Sequence[str], additional_args: Sequence[str], skip_permissions: bool = False
) -> List[str]:
    """Assemble worker arguments: base args, permission flag, then command args."""
    args = list(base_args)
    if skip_permissions:
        args.append(SKIP_PERMISSIONS_FLAG)
    args.extend(additional_args)
    return args


class WorkerProcess:
    """Handle to one running worker process."""

    def __init__(self, process: subprocess.Popen, executable: str):
        self._process = process
        self.executable = executable
        self._queue: "queue.Queue" = queue.Queue()
        self._open_streams = 2
        self._closed = False
        self.stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        self._readers = [
            threading.Thread(
                target=self._read_stream,
                args=(process.stdout, STDOUT),
                name=f"worker-{process.pid}-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._read_stream,
                args=(process.stderr, STDERR),
                name=f"worker-{process.pid}-stderr",
                daemon=True,
            ),
        ]
        for reader in self._readers:
            reader.start()
        with _live_workers_lock:
            _live_workers.add(self)

    @classmethod
    def spawn(cls, executable: str, args: Sequence[str], working_dir: str) -> "WorkerProcess":
        """Start the worker detached from the controlling terminal.

        Raises:
            SpawnError: If the executable is missing, not runnable, or the
                working directory does not exist
        """
        command = [executable, *args]
        try:
            process = subprocess.Popen(
                command,
                cwd=working_dir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
                preexec_fn=_die_with_parent if sys.platform.startswith("linux") else None,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            raise SpawnError(executable, str(e)) from e

        logger.info(f"Spawned worker pid={process.pid}: {executable} (cwd={working_dir})")
        return cls(process, executable)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.poll()

    def _read_stream(self, stream, channel: str) -> None:
        try:
            with stream:
                for line in stream:
                    self._queue.put(OutputLine(channel, line.rstrip("\r\n")))
        except (OSError, ValueError) as e:
            logger.debug(f"Worker {channel} reader stopped: {e}")
        finally:
            self._queue.put(_END_OF_STREAM)

    def _take(self, timeout: Optional[float]) -> Optional[OutputLine]:
        """Return the next line, or None once both pipes are closed.

        Raises:
            queue.Empty: If nothing arrived within timeout
        """
        while self._open_streams:
            item = self._queue.get(timeout=timeout)
            if item is _END_OF_STREAM:
                self._open_streams -= 1
                continue
            if item.channel == STDERR:
                self.stderr_tail.append(item.text)
            return item
        return None

    def next_output(self) -> Optional[OutputLine]:
        """Block for the next interleaved line; None after both pipes close."""
        return self._take(None)

    def _check_exit_conditions(self, deadline: float, timeout: float, cancel_event) -> float:
        """Stop the worker if cancelled or past the deadline, else return time left."""
        # Cancellation wins over an elapsed deadline
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Cancelling worker pid={self.pid}")
            self.terminate_gracefully()
            raise WorkerCancelled()
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning(f"Worker pid={self.pid} exceeded {timeout:g}s, terminating")
            self.terminate_gracefully()
            raise WorkerTimeout(timeout)
        return remaining

    def _drive(self, on_line: Callable[[OutputLine], None], timeout: float, cancel_event) -> None:
        deadline = time.monotonic() + timeout

        while True:
            remaining = self._check_exit_conditions(deadline, timeout, cancel_event)
            try:
                line = self._take(min(OUTPUT_POLL_INTERVAL, remaining))
            except queue.Empty:
                continue
            if line is None:
                break
            on_line(line)

        # Pipes are closed; the exit status may still lag behind
        while True:
            remaining = self._check_exit_conditions(deadline, timeout, cancel_event)
            try:
                returncode = self._process.wait(timeout=min(OUTPUT_POLL_INTERVAL, remaining))
                break
            except subprocess.TimeoutExpired:
                continue

        logger.info(f"Worker pid={self.pid} exited with code {returncode}")
        if returncode != 0:
            raise WorkerExitError(returncode, "\n".join(self.stderr_tail))

    def run_with_timeout(
        self, timeout: float, cancel_event: Optional[threading.Event] = None
    ) -> List[OutputLine]:
        """Collect every output line until the worker exits.

        Raises:
            WorkerCancelled: If cancel_event was set first
            WorkerTimeout: If the deadline passed first
            WorkerExitError: If the worker exited non-zero
        """
        lines: List[OutputLine] = []
        self._drive(lines.append, timeout, cancel_event)
        return lines

    def run_with_callback(
        self,
        on_line: Callable[[OutputLine], None],
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Push each output line to on_line as it arrives.

        Same exit contract as run_with_timeout. Exceptions raised by on_line
        are logged and do not stop the run.
        """

        def forward(line: OutputLine) -> None:
            try:
                on_line(line)
            except Exception as e:
                logger.warning(f"Output callback failed: {e}")

        self._drive(forward, timeout, cancel_event)

    def _signal_group(self, sig: int) -> None:
        # The worker leads its own session, so its pid is the process group id
        try:
            os.killpg(self._process.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass

    def terminate_gracefully(self, grace: float = TERMINATE_GRACE_SECONDS) -> None:
        """SIGTERM the process group, then SIGKILL after grace seconds."""
        if self._process.poll() is not None:
            return
        self._signal_group(signal.SIGTERM)
        try:
            self._process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning(f"Worker pid={self.pid} ignored SIGTERM, killing")
            self.kill()

    def kill(self) -> None:
        self._signal_group(signal.SIGKILL)
        self._process.wait()

    def close(self) -> None:
        """Kill the process group if anything is left and reap the worker."""
        if self._closed:
            return
        self._closed = True
        if self._process.poll() is None:
            self.kill()
        else:
            # Leader is gone; take down any children still holding the group
            self._signal_group(signal.SIGKILL)
        for reader in self._readers:
            reader.join(timeout=1.0)
        with _live_workers_lock:
            _live_workers.discard(self)

    def __enter__(self) -> "WorkerProcess":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
