"""Presentation helpers shared by the TUI and the CLI."""

from datetime import datetime
from typing import Optional

from .models import Message, RecordType, TokenUsage
from .session import iter_messages

# Message categories, in the order the filter dialog lists them
MESSAGE_FILTER_TYPES = (
    "initial-prompt",
    "user",
    "thinking",
    "tool",
    "assistant",
    "subagent",
    "system",
    "result",
)

MESSAGE_FILTER_LABELS = {
    "initial-prompt": "Initial Prompt",
    "user": "User",
    "thinking": "Thinking",
    "tool": "Tool",
    "assistant": "Assistant",
    "subagent": "Task Subagent",
    "system": "System",
    "result": "Result",
}


def truncate(text: Optional[str], max_len: int = 100) -> str:
    """Truncate text with ellipsis."""
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    if max_len <= 3:
        return text[:max_len]
    return text[:max_len - 3] + "..."


def one_line(text: Optional[str]) -> str:
    return " ".join((text or "").split())


def format_tokens(count: int) -> str:
    """1234 -> 1.2k, 2500000 -> 2.5M."""
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1000:
        return f"{count / 1000:.1f}k"
    return str(count)


def format_duration(start: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Elapsed time since ``start``: ``42s``, ``3m 5s`` or ``2h 14m``."""
    if start is None:
        return "0s"
    if now is None:
        now = datetime.now(start.tzinfo or None)
    elif (now.tzinfo is None) != (start.tzinfo is None):
        now = now.replace(tzinfo=start.tzinfo)
    seconds = max(0, int((now - start).total_seconds()))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def format_message_duration(seconds: Optional[float]) -> str:
    """Zero-padded duration of a single step, e.g. ``01m 05s``."""
    if seconds is None or seconds < 0:
        return ""
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours:02d}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes:02d}m {secs:02d}s"
    return f"{secs}s"


def format_time(ts: Optional[datetime]) -> str:
    """Local wall-clock time of a record."""
    if ts is None:
        return "--:--:--"
    if ts.tzinfo is not None:
        ts = ts.astimezone()
    return ts.strftime("%H:%M:%S")


def message_filter_type(message: Message, is_initial_prompt: bool = False) -> str:
    """Category used to filter the message list."""
    if message.type is RecordType.SYSTEM:
        return "system"
    if message.type is RecordType.RESULT:
        return "result"
    if is_initial_prompt:
        return "initial-prompt"
    if message.type in (RecordType.USER, RecordType.TOOL_RESULT):
        return "user"

    if any(call.is_subagent for call in message.tool_calls):
        return "subagent"
    has_text = bool(message.text.strip())
    has_calls = bool(message.tool_calls)
    if has_text and not has_calls:
        return "thinking"
    if has_calls and not has_text:
        return "tool"
    return "assistant"


def subagent_tokens(messages: list[Message]) -> TokenUsage:
    """Token usage summed over a sub-agent conversation, nested delegations included."""
    input_tokens = output_tokens = cache_read = cache_creation = 0
    for message, _depth in iter_messages(messages):
        if message.usage is None:
            continue
        input_tokens += message.usage.input_tokens
        output_tokens += message.usage.output_tokens
        cache_read += message.usage.cache_read_tokens
        cache_creation += message.usage.cache_creation_tokens
    return TokenUsage(input_tokens, output_tokens, cache_read, cache_creation)
