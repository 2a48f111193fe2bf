"""Interrupt handling for build runs.

The first Ctrl-C (or a SIGTERM) sets the cancellation event so the running
iteration can stop its worker and the loop can exit cleanly. A second Ctrl-C
aborts immediately with KeyboardInterrupt.
"""

import logging
import signal
import threading
from typing import Callable

logger = logging.getLogger(__name__)


def install_interrupt_handler(cancel_event: threading.Event) -> Callable[[], None]:
    """Route SIGINT/SIGTERM to cancel_event; return a callable restoring the old handlers."""
    previous_int = signal.getsignal(signal.SIGINT)
    previous_term = signal.getsignal(signal.SIGTERM)

    def _handle_interrupt(signum, frame):
        if signum == signal.SIGINT and cancel_event.is_set():
            logger.warning("Second interrupt received, aborting")
            raise KeyboardInterrupt
        logger.warning(f"Received {signal.Signals(signum).name}, cancelling build")
        cancel_event.set()

    signal.signal(signal.SIGINT, _handle_interrupt)
    signal.signal(signal.SIGTERM, _handle_interrupt)

    def restore() -> None:
        signal.signal(signal.SIGINT, previous_int)
        signal.signal(signal.SIGTERM, previous_term)

    return restore
