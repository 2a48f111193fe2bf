"""Stream-json event models.

The worker writes one JSON object per line on stdout. Each object carries a
``type`` discriminator ("assistant", "user", "system", "result", ...). Assistant
and user events wrap a ``message`` whose ``content`` is either a bare string or
a list of typed blocks (text, thinking, tool_use, tool_result).

Decoding is deliberately tolerant: unknown fields, unknown event types and
unknown block types all decode, and extraction helpers simply skip what they
do not understand.
"""

import json
from typing import Any, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from cli_agent_loop.errors import StreamDecodeError

# Max characters of a tool input shown in a one-line summary
TOOL_SUMMARY_MAX_CHARS = 80

# Tool input keys that best describe a call, checked in order
TOOL_SUMMARY_KEYS = {
    "Read": ("file_path",),
    "Write": ("file_path",),
    "Edit": ("file_path",),
    "MultiEdit": ("file_path",),
    "NotebookEdit": ("notebook_path",),
    "Bash": ("command",),
    "Glob": ("pattern",),
    "Grep": ("pattern",),
    "WebFetch": ("url",),
    "WebSearch": ("query",),
    "Task": ("description",),
    "TodoWrite": (),
}


class Usage(BaseModel):
    """Token usage statistics attached to an assistant message."""

    model_config = ConfigDict(extra="ignore")

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: Optional[int] = None
    cache_read_input_tokens: Optional[int] = None

    @field_validator("input_tokens", "output_tokens", mode="before")
    @classmethod
    def _none_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value

    @property
    def cache_write(self) -> int:
        return self.cache_creation_input_tokens or 0

    @property
    def cache_read(self) -> int:
        return self.cache_read_input_tokens or 0


class ContentBlock(BaseModel):
    """One typed block inside a message's content array."""

    model_config = ConfigDict(extra="ignore")

    type: str = ""
    text: Optional[str] = None
    thinking: Optional[str] = None
    name: Optional[str] = None
    input: Optional[Any] = None
    id: Optional[str] = None


class Message(BaseModel):
    """The message wrapped by user and assistant events."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    role: Optional[str] = None
    # Bare string (usually user echoes) or a list of typed blocks
    content: Union[str, List[ContentBlock], None] = None
    model: Optional[str] = None
    stop_reason: Optional[str] = None
    usage: Optional[Usage] = None

    @field_validator("content", mode="before")
    @classmethod
    def _sniff_content_shape(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value
        if isinstance(value, list):
            return [block for block in value if isinstance(block, dict)]
        return None

    @field_validator("usage", mode="before")
    @classmethod
    def _ignore_malformed_usage(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else None


class StreamEvent(BaseModel):
    """A single decoded line of worker output."""

    model_config = ConfigDict(extra="ignore")

    type: str
    subtype: Optional[str] = None
    message: Optional[Message] = None
    result: Optional[str] = None
    session_id: Optional[str] = None
    uuid: Optional[str] = None
    timestamp: Optional[str] = None

    @field_validator("message", mode="before")
    @classmethod
    def _ignore_non_object_message(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else None

    @field_validator("result", mode="before")
    @classmethod
    def _result_text_only(cls, value: Any) -> Any:
        return value if isinstance(value, str) else None

    def is_assistant(self) -> bool:
        return self.type == "assistant"

    def is_result(self) -> bool:
        return self.type == "result"

    def _blocks(self) -> List[ContentBlock]:
        if self.message is None or not isinstance(self.message.content, list):
            return []
        return self.message.content

    def extract_text(self) -> Optional[str]:
        """Return the concatenated text of the message, or None if it has none.

        A bare string content is returned as-is; for block content only blocks
        of type "text" contribute. An empty result maps to None.
        """
        if self.message is None or self.message.content is None:
            return None
        if isinstance(self.message.content, str):
            return self.message.content or None
        text = "".join(block.text for block in self._blocks() if block.type == "text" and block.text)
        return text or None

    def extract_thinking(self) -> Optional[str]:
        text = "".join(
            block.thinking for block in self._blocks() if block.type == "thinking" and block.thinking
        )
        return text or None

    def extract_tool_uses(self) -> List[Tuple[str, str]]:
        """Return (tool name, canonical JSON input) for each tool_use block.

        Only assistant messages produce tool invocations.
        """
        if not self.is_assistant():
            return []
        tool_uses = []
        for block in self._blocks():
            if block.type != "tool_use":
                continue
            payload = block.input if block.input is not None else {}
            tool_uses.append(
                (block.name or "unknown", json.dumps(payload, sort_keys=True, separators=(",", ":")))
            )
        return tool_uses

    def usage(self) -> Optional[Usage]:
        if self.message is None:
            return None
        return self.message.usage


def decode_event(line: str) -> StreamEvent:
    """Decode one line of worker output into a StreamEvent.

    Raises:
        StreamDecodeError: If the line is blank, not JSON, or not an event object
    """
    stripped = line.strip()
    if not stripped:
        raise StreamDecodeError("Empty line")
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError as e:
        raise StreamDecodeError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise StreamDecodeError(f"Expected a JSON object, got {type(data).__name__}")
    try:
        return StreamEvent.model_validate(data)
    except ValidationError as e:
        raise StreamDecodeError(f"Not a stream event: {e.errors()[0]['msg']}") from e


def format_tool_summary(tool_name: str, input_json: str) -> str:
    """Build a one-line summary of a tool invocation for live display."""
    try:
        payload = json.loads(input_json)
    except json.JSONDecodeError:
        payload = None

    detail = ""
    if isinstance(payload, dict):
        for key in TOOL_SUMMARY_KEYS.get(tool_name, ()):
            value = payload.get(key)
            if isinstance(value, str) and value:
                detail = value
                break
        else:
            if tool_name not in TOOL_SUMMARY_KEYS and payload:
                detail = input_json
    elif payload is not None:
        detail = input_json

    detail = " ".join(detail.split())
    if len(detail) > TOOL_SUMMARY_MAX_CHARS:
        detail = detail[: TOOL_SUMMARY_MAX_CHARS - 3] + "..."
    return f"{tool_name}: {detail}" if detail else tool_name
