"""Folds a worker's stream-json events into one logical response."""

import logging
from typing import List, Optional

from cli_agent_loop.errors import StreamDecodeError
from cli_agent_loop.models.stream_event import StreamEvent, decode_event
from cli_agent_loop.models.tokens import IterationTokens

logger = logging.getLogger(__name__)


class StreamResponse:
    """Accumulated text, model, stop reason and token usage for one iteration.

    An iteration can span several assistant messages (one per tool-use turn);
    usage from every one of them is summed.
    """

    def __init__(self):
        self.text = ""
        self.input_tokens = 0
        self.output_tokens = 0
        self.cache_creation_input_tokens = 0
        self.cache_read_input_tokens = 0
        self.model: Optional[str] = None
        self.stop_reason: Optional[str] = None
        self.tool_uses: List[str] = []
        self.valid_lines = 0
        self.invalid_lines = 0

    def process_event(self, event: StreamEvent) -> None:
        if not event.is_assistant():
            return

        text = event.extract_text()
        if text:
            self.text += text

        for name, _ in event.extract_tool_uses():
            self.tool_uses.append(name)

        message = event.message
        if message is not None:
            if self.model is None and message.model:
                self.model = message.model
            if message.stop_reason is not None:
                self.stop_reason = message.stop_reason

        usage = event.usage()
        if usage is not None:
            self.input_tokens += usage.input_tokens
            self.output_tokens += usage.output_tokens
            self.cache_creation_input_tokens += usage.cache_write
            self.cache_read_input_tokens += usage.cache_read

    def process_line(self, line: str) -> bool:
        """Decode and accumulate one line; False if it was not a valid event."""
        try:
            event = decode_event(line)
        except StreamDecodeError as e:
            self.invalid_lines += 1
            logger.debug(f"Skipping malformed worker line: {e}")
            return False
        self.valid_lines += 1
        self.process_event(event)
        return True

    def to_tokens(self, iteration: int) -> IterationTokens:
        return IterationTokens(
            iteration=iteration,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_creation_input_tokens=self.cache_creation_input_tokens,
            cache_read_input_tokens=self.cache_read_input_tokens,
        )
