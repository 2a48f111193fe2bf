"""Token usage tracking models and formatting."""

from pydantic import BaseModel


class TokenUsage(BaseModel):
    """Cumulative token usage across iterations."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


class IterationTokens(TokenUsage):
    """Token usage for a single iteration."""

    iteration: int = 0


def format_tokens(count: int) -> str:
    """Format a token count for display (500, 5.2k, 1.2M)."""
    if count < 1000:
        return str(count)
    for divisor, suffix in ((1_000_000_000, "G"), (1_000_000, "M"), (1_000, "k")):
        if count >= divisor:
            return f"{count / divisor:.1f}{suffix}"
    return str(count)


def format_usage(usage: TokenUsage) -> str:
    return (
        f"{format_tokens(usage.input_tokens)} in / {format_tokens(usage.output_tokens)} out / "
        f"{format_tokens(usage.cache_creation_input_tokens)} cache write / "
        f"{format_tokens(usage.cache_read_input_tokens)} cache read"
    )
