"""Session model for a monitored agent log."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


# Tool names that spawn a nested agent
SUBAGENT_TOOL_NAMES = ("Task", "Agent")


class RecordType(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"
    RESULT = "result"


class ToolStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_resolved(self) -> bool:
        return self in (ToolStatus.COMPLETED, ToolStatus.ERROR)


class LifecycleState(str, Enum):
    """State of the agent process as seen by the monitor."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    RESUMING = "resuming"
    ERROR = "error"


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens + self.cache_read_tokens + self.cache_creation_tokens


@dataclass(frozen=True)
class ToolUse:
    """A tool invocation carried by a record."""

    id: str
    name: str
    input: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolOutcome:
    """A tool result carried by a record."""

    tool_call_id: str
    content: str = ""
    is_error: bool = False


@dataclass(frozen=True)
class Record:
    """One parsed log line. Never mutated after parsing."""

    id: str
    type: RecordType
    timestamp: Optional[datetime]
    parent_tool_use_id: Optional[str] = None
    text: str = ""
    tool_uses: tuple[ToolUse, ...] = ()
    tool_results: tuple[ToolOutcome, ...] = ()
    usage: Optional[TokenUsage] = None
    session_id: Optional[str] = None
    model: Optional[str] = None
    subtype: Optional[str] = None
    raw: str = field(default="", repr=False, compare=False)


@dataclass(frozen=True)
class ParseFailure:
    """A line that could not be turned into a Record."""

    line: str
    reason: str


@dataclass
class Message:
    """One conversational turn."""

    id: str
    type: RecordType
    timestamp: Optional[datetime]
    text: str = ""
    tool_calls: list["ToolCall"] = field(default_factory=list)
    usage: Optional[TokenUsage] = None
    parent_tool_use_id: Optional[str] = None


@dataclass
class ToolCall:
    """A tracked tool invocation.

    Status only ever moves forward: pending -> running -> completed/error.
    Delegations (sub-agent spawns) collect the nested conversation in
    ``subagent_messages``.
    """

    id: str
    name: str
    input: dict = field(default_factory=dict)
    status: ToolStatus = ToolStatus.PENDING
    result: Optional[str] = None
    is_error: bool = False
    timestamp: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Delegation
    is_subagent: bool = False
    subagent_type: Optional[str] = None
    subagent_description: Optional[str] = None
    subagent_prompt: Optional[str] = None
    subagent_messages: list[Message] = field(default_factory=list)

    # 0 for calls made by the top-level agent
    depth: int = 0

    @classmethod
    def from_tool_use(cls, tool_use: ToolUse, timestamp: Optional[datetime], depth: int = 0) -> "ToolCall":
        is_subagent = tool_use.name in SUBAGENT_TOOL_NAMES
        tool_input = tool_use.input or {}

        def _input_str(key: str) -> Optional[str]:
            value = tool_input.get(key)
            return value if isinstance(value, str) else None

        return cls(
            id=tool_use.id,
            name=tool_use.name,
            input=dict(tool_input),
            timestamp=timestamp,
            is_subagent=is_subagent,
            subagent_type=_input_str("subagent_type") if is_subagent else None,
            subagent_description=_input_str("description") if is_subagent else None,
            subagent_prompt=_input_str("prompt") if is_subagent else None,
            depth=depth,
        )

    @property
    def is_resolved(self) -> bool:
        return self.status.is_resolved

    @property
    def duration(self) -> Optional[float]:
        """Seconds between invocation and resolution, if both are known."""
        if self.timestamp is None or self.completed_at is None:
            return None
        return (self.completed_at - self.timestamp).total_seconds()

    def mark_running(self) -> bool:
        if self.status is not ToolStatus.PENDING:
            return False
        self.status = ToolStatus.RUNNING
        return True

    def resolve(self, outcome: ToolOutcome, timestamp: Optional[datetime] = None) -> bool:
        """Apply a result. Returns False if the call was already resolved."""
        if self.is_resolved:
            return False
        self.status = ToolStatus.ERROR if outcome.is_error else ToolStatus.COMPLETED
        self.result = outcome.content
        self.is_error = outcome.is_error
        self.completed_at = timestamp
        return True


@dataclass
class ErrorInfo:
    id: str
    tool_call_id: str
    tool_name: str
    timestamp: Optional[datetime]
    error_content: str
    message_index: int  # index of the owning top-level message


@dataclass
class SessionStats:
    message_count: int = 0
    tool_call_count: int = 0
    error_count: int = 0
    subagent_count: int = 0
    record_count: int = 0

    # Token totals
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def total_input_tokens(self) -> int:
        """Input tokens including cache reads and writes."""
        return self.input_tokens + self.cache_read_tokens + self.cache_creation_tokens

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.output_tokens

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    def add_usage(self, usage: TokenUsage) -> None:
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.cache_read_tokens += usage.cache_read_tokens
        self.cache_creation_tokens += usage.cache_creation_tokens


@dataclass
class Run:
    """The stretch of a log written by one agent process.

    Starting or resuming the agent appends to the same log, so a log holds
    one or more runs back to back.
    """

    number: int
    start_index: int  # index in Session.messages of the run's first top-level message
    stats: SessionStats = field(default_factory=SessionStats)


@dataclass
class Session:
    """Everything reconstructed from one log file."""

    messages: list[Message] = field(default_factory=list)
    tool_calls: dict[str, ToolCall] = field(default_factory=dict)
    errors: list[ErrorInfo] = field(default_factory=list)
    stats: SessionStats = field(default_factory=SessionStats)
    runs: list[Run] = field(default_factory=list)

    # Metadata picked up from records
    session_id: Optional[str] = None
    model: Optional[str] = None
    source_path: Optional[Path] = None

    @property
    def open_calls(self) -> dict[str, ToolCall]:
        return {call_id: call for call_id, call in self.tool_calls.items() if not call.is_resolved}

    @property
    def subagents(self) -> list[ToolCall]:
        """Delegation tool calls in invocation order, nested ones included."""
        return [call for call in self.tool_calls.values() if call.is_subagent]

    @property
    def current_run(self) -> Optional[Run]:
        return self.runs[-1] if self.runs else None


@dataclass
class SessionDelta:
    """What a single builder step changed."""

    reset: bool = False
    new_messages: list[Message] = field(default_factory=list)
    updated_tool_calls: list[ToolCall] = field(default_factory=list)
    new_errors: list[ErrorInfo] = field(default_factory=list)
    new_runs: list[Run] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.reset or self.new_messages or self.updated_tool_calls or self.new_errors or self.new_runs)

    def merge(self, other: "SessionDelta") -> None:
        """Fold a later delta into this one."""
        if other.reset:
            self.reset = True
            self.new_messages = []
            self.updated_tool_calls = []
            self.new_errors = []
            self.new_runs = []
        self.new_messages.extend(other.new_messages)
        self.updated_tool_calls.extend(other.updated_tool_calls)
        self.new_errors.extend(other.new_errors)
        self.new_runs.extend(other.new_runs)
        self.diagnostics.extend(other.diagnostics)


@dataclass
class LockRecord:
    """Contents of a project lock file."""

    pid: int
    created_at: Optional[datetime] = None
    command: list[str] = field(default_factory=list)
    session_id: Optional[str] = None
    # Held by the launching monitor until the agent's PID is known
    placeholder: bool = False
