"""UI widgets for the agent monitor TUI."""

import json
from datetime import datetime
from typing import Optional

from rich.text import Text
from textual.app import ComposeResult
from textual.containers import ScrollableContainer
from textual.widgets import ListItem, Static

from ..formatting import (
    MESSAGE_FILTER_LABELS,
    format_duration,
    format_message_duration,
    format_time,
    format_tokens,
    message_filter_type,
    one_line,
    subagent_tokens,
    truncate,
)
from ..models import ErrorInfo, LifecycleState, Message, RecordType, Run, Session, ToolCall, ToolStatus
from ..session import iter_messages

TYPE_STYLES = {
    RecordType.USER: ("User", "green"),
    RecordType.TOOL_RESULT: ("Tool", "green"),
    RecordType.ASSISTANT: ("Assistant", "magenta"),
    RecordType.SYSTEM: ("System", "blue"),
    RecordType.RESULT: ("Result", "cyan"),
}

STATUS_ICONS = {
    ToolStatus.PENDING: ("○", "dim"),
    ToolStatus.RUNNING: ("◐", "yellow"),
    ToolStatus.COMPLETED: ("●", "green"),
    ToolStatus.ERROR: ("✗", "red bold"),
}

STATE_STYLES = {
    LifecycleState.IDLE: "dim",
    LifecycleState.STARTING: "yellow",
    LifecycleState.RUNNING: "green bold",
    LifecycleState.STOPPING: "yellow",
    LifecycleState.RESUMING: "yellow",
    LifecycleState.ERROR: "red bold",
}


def tool_summary(call: ToolCall, width: int = 40) -> str:
    """Short one-line description of a tool call's input."""
    if call.is_subagent:
        return truncate(call.subagent_description or call.subagent_type or "Subagent", width)
    for key in ("command", "file_path", "pattern", "path", "url", "query"):
        value = call.input.get(key)
        if isinstance(value, str) and value:
            return truncate(one_line(value), width)
    parts = []
    for key, value in call.input.items():
        if isinstance(value, (str, int, float, bool)):
            parts.append(f"{key}: {truncate(one_line(str(value)), 30)}")
    return truncate(", ".join(parts), width)


class _TextItem(ListItem):
    """List item rendering one Rich Text line that adapts to its width."""

    def __init__(self):
        super().__init__()
        self._static: Optional[Static] = None

    def compose(self) -> ComposeResult:
        self._static = Static(self._build_text(100))
        yield self._static

    def on_resize(self, event) -> None:
        """Update text when resized."""
        self.refresh_text()

    def refresh_text(self) -> None:
        if self._static:
            self._static.update(self._build_text(self.size.width or 100))

    def _build_text(self, width: int) -> Text:
        raise NotImplementedError


class MessageItem(_TextItem):
    """List item for a top-level message."""

    def __init__(self, message: Message, index: int):
        super().__init__()
        self.message = message
        self.index = index
        self.filter_type = message_filter_type(message, is_initial_prompt=index == 0 and message.type is RecordType.USER)

    def update_message(self, message: Message) -> None:
        self.message = message
        self.refresh_text()

    def _build_text(self, width: int) -> Text:
        message = self.message
        label, color = TYPE_STYLES.get(message.type, ("?", "white"))

        text = Text()
        text.append(format_time(message.timestamp), style="cyan")
        text.append(" │ ", style="dim")
        text.append(f"{label:<9}", style=f"{color} bold")
        text.append(" │ ", style="dim")

        prefix_width = 27
        for call in message.tool_calls:
            icon, style = STATUS_ICONS[call.status]
            name = f"{call.name}({len(call.subagent_messages)})" if call.is_subagent else call.name
            text.append(f"{icon} {name} ", style=style)
            prefix_width += len(name) + 3

        body = one_line(message.text)
        if not body and len(message.tool_calls) == 1:
            body = tool_summary(message.tool_calls[0], 60)
        if body:
            text.append(truncate(body, max(20, width - prefix_width)), style="white")

        if message.usage is not None and message.usage.output_tokens:
            text.append(f" {format_tokens(message.usage.output_tokens)} out", style="dim")
        return text


class SubagentItem(_TextItem):
    """List item for a delegated sub-agent."""

    def __init__(self, call: ToolCall):
        super().__init__()
        self.call = call

    def _build_text(self, width: int) -> Text:
        call = self.call
        icon, style = STATUS_ICONS[call.status]
        tokens = subagent_tokens(call.subagent_messages)

        text = Text()
        text.append("  " * call.depth)
        text.append(f"{icon} ", style=style)
        text.append(f"{(call.subagent_type or call.name)[:18]:<18}", style="cyan bold")
        text.append(" │ ", style="dim")
        text.append(f"{len(call.subagent_messages):>3} msgs ", style="yellow")
        text.append(f"{format_tokens(tokens.total):>6} tok", style="dim")
        text.append(" │ ", style="dim")

        prefix_width = 42 + 2 * call.depth
        desc = call.subagent_description or one_line(call.subagent_prompt) or "(no description)"
        text.append(truncate(desc, max(20, width - prefix_width)), style="white")
        return text


class RunSeparator(_TextItem):
    """Divider in the message list where the agent was started again."""

    def __init__(self, run: Run, ended_at: Optional[datetime] = None):
        super().__init__()
        self.run = run
        self.ended_at = ended_at

    def _build_text(self, width: int) -> Text:
        label = f" Run {self.run.number} "
        if self.run.stats.start_time is not None:
            label += f"· started {format_time(self.run.stats.start_time)} "
        if self.ended_at is not None:
            label += f"· previous ended {format_time(self.ended_at)} "
        side = max(2, (width - len(label)) // 2)
        return Text("─" * side + label + "─" * side, style="dim")


class ErrorItem(_TextItem):
    """List item for a failed tool call."""

    def __init__(self, error: ErrorInfo):
        super().__init__()
        self.error = error

    def _build_text(self, width: int) -> Text:
        text = Text()
        text.append(format_time(self.error.timestamp), style="cyan")
        text.append(" │ ", style="dim")
        text.append(f"{self.error.tool_name[:14]:<14}", style="red bold")
        text.append(" │ ", style="dim")
        text.append(truncate(one_line(self.error.error_content), max(20, width - 31)), style="white")
        return text


class DetailPanel(ScrollableContainer, can_focus=True):
    """Scrollable panel showing the selected message, sub-agent or error."""

    RESULT_LIMIT = 2000

    def __init__(self, id: str = None):
        super().__init__(id=id)

    def update(self, text: Text) -> None:
        """Replace all content."""
        for child in list(self.children):
            child.remove()
        self.mount(Static(text, markup=False))

    def clear_display(self) -> None:
        self.update(Text("Select a message to view details", style="dim"))

    def _block(self, text: Text, title: str, body: str, style: str, limit: Optional[int] = None) -> None:
        text.append(f"┌─ {title} ", style=f"bold {style}")
        text.append("─" * max(1, 36 - len(title)), style=style)
        text.append("\n")
        shown = body if limit is None else body[:limit]
        for line in (shown or "(empty)").split("\n"):
            text.append("│ ", style=style)
            text.append(f"{line}\n")
        if limit is not None and len(body) > limit:
            text.append("│ ", style=style)
            text.append("... (truncated)\n", style="dim")
        text.append("└" + "─" * 40 + "\n", style=style)

    def _append_tool_call(self, text: Text, call: ToolCall) -> None:
        icon, style = STATUS_ICONS[call.status]
        text.append(f"{icon} {call.name}", style=f"{style} bold")
        text.append(f"  {call.status.value}", style=style)
        duration = format_message_duration(call.duration)
        if duration:
            text.append(f"  ({duration})", style="dim")
        text.append("\n")
        self._block(text, "Input", json.dumps(call.input, indent=2, default=str), "blue", self.RESULT_LIMIT)
        if call.result is not None:
            self._block(text, "Error" if call.is_error else "Result", call.result, "red" if call.is_error else "green",
                        self.RESULT_LIMIT)
        text.append("\n")

    def show_message(self, message: Message) -> None:
        label, color = TYPE_STYLES.get(message.type, ("?", "white"))
        text = Text()
        text.append(f"━━━ {label} Message ━━━\n", style=f"bold {color}")
        text.append("Time: ", style="bold")
        text.append(f"{format_time(message.timestamp)}\n")
        text.append("Category: ", style="bold")
        text.append(f"{MESSAGE_FILTER_LABELS[message_filter_type(message)]}\n", style="dim")
        if message.usage is not None:
            text.append("Tokens: ", style="bold")
            text.append(
                f"{format_tokens(message.usage.input_tokens)} in / {format_tokens(message.usage.output_tokens)} out"
                f" / {format_tokens(message.usage.cache_read_tokens)} cached\n"
            )
        text.append("\n")
        if message.text:
            self._block(text, "Text", message.text, color)
            text.append("\n")
        for call in message.tool_calls:
            self._append_tool_call(text, call)
        self.update(text)

    def show_subagent(self, call: ToolCall, path: Optional[list[ToolCall]] = None) -> None:
        """Show a delegation and its nested conversation."""
        tokens = subagent_tokens(call.subagent_messages)
        icon, style = STATUS_ICONS[call.status]

        text = Text()
        if path and len(path) > 1:
            crumbs = " › ".join(truncate(c.subagent_type or c.name, 20) for c in path)
            text.append(f"{crumbs}\n\n", style="dim")
        text.append("━━━ Sub-agent ━━━\n", style="bold yellow")
        text.append("Type: ", style="bold")
        text.append(f"{call.subagent_type or call.name}\n", style="cyan bold")
        text.append("Status: ", style="bold")
        text.append(f"{icon} {call.status.value}\n", style=style)
        if call.subagent_description:
            text.append("Description: ", style="bold")
            text.append(f"{call.subagent_description}\n")
        text.append("Tokens: ", style="bold")
        text.append(f"{format_tokens(tokens.total)} ({format_tokens(tokens.input_tokens)} in / "
                    f"{format_tokens(tokens.output_tokens)} out)\n")
        duration = format_message_duration(call.duration)
        if duration:
            text.append("Duration: ", style="bold")
            text.append(f"{duration}\n")
        text.append("\n")

        if call.subagent_prompt:
            self._block(text, "Prompt", call.subagent_prompt, "green", self.RESULT_LIMIT)
            text.append("\n")

        text.append("━━━ Conversation ━━━\n", style="bold cyan")
        if not call.subagent_messages:
            text.append("(no messages yet)\n", style="dim")
        for message, depth in iter_messages(call.subagent_messages):
            label, color = TYPE_STYLES.get(message.type, ("?", "white"))
            indent = "  " * depth
            text.append(f"{indent}{format_time(message.timestamp)} ", style="cyan")
            text.append(f"{label}: ", style=f"{color} bold")
            text.append(f"{truncate(one_line(message.text), 120)}\n")
            for child in message.tool_calls:
                child_icon, child_style = STATUS_ICONS[child.status]
                text.append(f"{indent}  {child_icon} {child.name} ", style=child_style)
                text.append(f"{tool_summary(child, 60)}\n", style="dim")

        if call.result is not None:
            text.append("\n")
            self._block(text, "Error" if call.is_error else "Result", call.result,
                        "red" if call.is_error else "green", self.RESULT_LIMIT)
        self.update(text)

    def show_error(self, error: ErrorInfo, call: Optional[ToolCall] = None) -> None:
        text = Text()
        text.append("━━━ Tool Error ━━━\n", style="bold red")
        text.append("Tool: ", style="bold")
        text.append(f"{error.tool_name}\n", style="red")
        text.append("Time: ", style="bold")
        text.append(f"{format_time(error.timestamp)}\n")
        text.append("Tool call: ", style="bold")
        text.append(f"{error.tool_call_id}\n", style="dim")
        if error.message_index >= 0:
            text.append("Message: ", style="bold")
            text.append(f"#{error.message_index + 1}\n", style="dim")
        text.append("\n")
        if call is not None:
            self._block(text, "Input", json.dumps(call.input, indent=2, default=str), "blue", self.RESULT_LIMIT)
            text.append("\n")
        self._block(text, "Error", error.error_content, "red")
        self.update(text)


def build_stats_text(session: Session) -> Text:
    """Full statistics view for the stats tab."""
    stats = session.stats
    text = Text()
    text.append("━━━ Session ━━━\n", style="bold cyan")
    for label, value in (
        ("Session ID", session.session_id or "-"),
        ("Model", session.model or "-"),
        ("Log", str(session.source_path) if session.source_path else "-"),
        ("Started", format_time(stats.start_time)),
        ("Duration", format_duration(stats.start_time, stats.end_time)),
        ("Status", "active" if stats.is_active else "finished"),
    ):
        text.append(f"{label + ':':<14}", style="bold")
        text.append(f"{value}\n")

    text.append("\n━━━ Activity ━━━\n", style="bold cyan")
    for label, value in (
        ("Messages", stats.message_count),
        ("Tool calls", stats.tool_call_count),
        ("Sub-agents", stats.subagent_count),
        ("Errors", stats.error_count),
        ("Records", stats.record_count),
    ):
        text.append(f"{label + ':':<14}", style="bold")
        text.append(f"{value}\n", style="red" if label == "Errors" and value else "")

    text.append("\n━━━ Tokens ━━━\n", style="bold cyan")
    for label, value in (
        ("Input", stats.input_tokens),
        ("Cache read", stats.cache_read_tokens),
        ("Cache write", stats.cache_creation_tokens),
        ("Output", stats.output_tokens),
        ("Total", stats.total_tokens),
    ):
        text.append(f"{label + ':':<14}", style="bold")
        text.append(f"{format_tokens(value)}\n", style="yellow" if label == "Total" else "")

    run = session.current_run
    if run is not None and len(session.runs) > 1:
        run_stats = run.stats
        text.append(f"\n━━━ Current run ({run.number} of {len(session.runs)}) ━━━\n", style="bold cyan")
        for label, value in (
            ("Started", format_time(run_stats.start_time)),
            ("Duration", format_duration(run_stats.start_time, run_stats.end_time)),
            ("Status", "active" if run_stats.is_active else "finished"),
            ("Messages", run_stats.message_count),
            ("Tool calls", run_stats.tool_call_count),
            ("Errors", run_stats.error_count),
            ("Tokens", format_tokens(run_stats.total_tokens)),
        ):
            text.append(f"{label + ':':<14}", style="bold")
            text.append(f"{value}\n")
    return text


def build_sidebar_text(session: Optional[Session], state: LifecycleState, error: Optional[str] = None) -> Text:
    """Compact lifecycle and token summary."""
    text = Text()
    text.append("Agent\n", style="bold")
    text.append(f"● {state.value}\n", style=STATE_STYLES[state])
    if error:
        text.append(f"{truncate(error, 60)}\n", style="red")
    if session is None:
        return text

    stats = session.stats
    run = session.current_run
    if run is not None and len(session.runs) > 1:
        text.append(f"\nRun {run.number}\n", style="bold")
        text.append(f"{format_duration(run.stats.start_time, run.stats.end_time)}\n")
    text.append("\nElapsed\n", style="bold")
    text.append(f"{format_duration(stats.start_time, stats.end_time)}\n")
    text.append("\nTokens\n", style="bold")
    text.append("in  ", style="dim")
    text.append(f"{format_tokens(stats.total_input_tokens)}\n", style="green")
    text.append("out ", style="dim")
    text.append(f"{format_tokens(stats.output_tokens)}\n", style="magenta")
    text.append("\nCounts\n", style="bold")
    text.append(f"{stats.message_count} msgs\n")
    text.append(f"{stats.tool_call_count} tools\n")
    text.append(f"{stats.subagent_count} agents\n", style="yellow")
    text.append(f"{stats.error_count} errors\n", style="red" if stats.error_count else "")
    open_calls = len(session.open_calls)
    if open_calls:
        text.append(f"{open_calls} in flight\n", style="yellow")
    return text
