"""Incremental construction of a Session from parsed records."""

import copy
import logging
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .models import (
    ErrorInfo,
    Message,
    ParseFailure,
    Record,
    RecordType,
    Run,
    Session,
    SessionDelta,
    SessionStats,
    ToolCall,
    ToolOutcome,
)

logger = logging.getLogger(__name__)

# Deepest level of sub-agent nesting kept as its own level. Conversations
# nested further are attached to the ancestor at this depth.
MAX_SUBAGENT_DEPTH = 8


class SessionModelBuilder:
    """Builds and maintains a Session from records applied in file order.

    Records naming a known tool call in ``parent_tool_use_id`` are
    reparented under that call's ``subagent_messages`` instead of the
    top-level message list, recursively for nested delegations.
    """

    def __init__(self, source_path: Optional[Path] = None, max_depth: int = MAX_SUBAGENT_DEPTH):
        if max_depth < 1:
            raise ValueError("max_depth must be at least 1")
        self.source_path = source_path
        self.max_depth = max_depth
        self._clear()

    def _clear(self) -> None:
        self._session = Session(source_path=self.source_path)
        # tool call id -> tool call whose subagent_messages receives its children
        self._containers: dict[str, ToolCall] = {}
        # tool call id -> index of the top-level message that owns it
        self._top_index: dict[str, int] = {}
        self._message_seq = 0
        self._error_seq = 0
        self._depth_warned = False

    @property
    def session(self) -> Session:
        """The live session. Treat as read-only; use snapshot() to hand it out."""
        return self._session

    def snapshot(self) -> Session:
        """Deep copy of the current session, safe to give to readers."""
        return copy.deepcopy(self._session)

    def reset(self) -> SessionDelta:
        """Discard all state, e.g. after the log was truncated or replaced."""
        logger.info(f"Resetting session for {self.source_path or '<stream>'}")
        self._clear()
        return SessionDelta(reset=True)

    def apply(self, record: Record) -> SessionDelta:
        """Apply one record and report what changed."""
        delta = SessionDelta()
        session = self._session
        if self._starts_run(record):
            self._begin_run(record, delta)
        counters = self._counters()

        for stats in counters:
            stats.record_count += 1
            if record.timestamp is not None and stats.start_time is None:
                stats.start_time = record.timestamp
            if record.usage is not None:
                stats.add_usage(record.usage)
        if record.session_id and not session.session_id:
            session.session_id = record.session_id
        if record.model and not session.model:
            session.model = record.model

        # Results first: a record can both close earlier calls and carry text
        for outcome in record.tool_results:
            self._resolve(outcome, record, delta)

        if record.type is RecordType.RESULT and record.timestamp is not None:
            for stats in counters:
                stats.end_time = record.timestamp

        new_uses = []
        for tool_use in record.tool_uses:
            if tool_use.id in session.tool_calls:
                self._diagnose(delta, f"Duplicate tool call {tool_use.id} in record {record.id}; ignored")
                continue
            new_uses.append(tool_use)

        if self._is_empty(record, new_uses):
            return delta
        if record.type is RecordType.RESULT and self._duplicates_last_message(record):
            logger.debug(f"Collapsing result record {record.id} into preceding assistant message")
            return delta

        self._message_seq += 1
        message = Message(
            id=f"msg-{self._message_seq}",
            type=record.type,
            timestamp=record.timestamp,
            text=record.text,
            usage=record.usage,
            parent_tool_use_id=record.parent_tool_use_id,
        )
        container = self._container_for(record, delta)
        if container is None:
            depth = 0
            session.messages.append(message)
            top_index = len(session.messages) - 1
            for stats in counters:
                stats.message_count += 1
            delta.new_messages.append(message)
        else:
            depth = container.depth + 1
            container.subagent_messages.append(message)
            top_index = self._top_index.get(container.id, -1)
            delta.updated_tool_calls.append(container)

        for tool_use in new_uses:
            call = ToolCall.from_tool_use(tool_use, record.timestamp, depth=depth)
            message.tool_calls.append(call)
            session.tool_calls[call.id] = call
            self._top_index[call.id] = top_index
            if depth < self.max_depth:
                self._containers[call.id] = call
            else:
                # Too deep: children of this call land beside it
                self._containers[call.id] = container if container is not None else call
            for stats in counters:
                stats.tool_call_count += 1
                if call.is_subagent:
                    stats.subagent_count += 1

        return delta

    def _counters(self) -> tuple[SessionStats, ...]:
        """Stats updated by the current record: session totals and the current run."""
        run = self._session.current_run
        return (self._session.stats, run.stats) if run is not None else (self._session.stats,)

    def _starts_run(self, record: Record) -> bool:
        """True when the record opens a new agent process's stretch of the log."""
        if record.parent_tool_use_id is not None:
            return False
        run = self._session.current_run
        if run is None:
            return True
        if run.stats.record_count == 0:
            return False
        if record.type is RecordType.SYSTEM and record.subtype == "init":
            return True
        return run.stats.end_time is not None and record.type is not RecordType.RESULT

    def _begin_run(self, record: Record, delta: SessionDelta) -> None:
        session = self._session
        run = Run(number=len(session.runs) + 1, start_index=len(session.messages))
        session.runs.append(run)
        if run.number > 1:
            # The log is live again
            session.stats.end_time = None
            logger.info(f"Run {run.number} starts at record {record.id}")
            delta.new_runs.append(run)

    def apply_all(self, results: Iterable) -> SessionDelta:
        """Apply parser output in order, turning failures into diagnostics."""
        delta = SessionDelta()
        for result in results:
            if isinstance(result, ParseFailure):
                self._diagnose(delta, f"Skipping malformed line ({result.reason}): {result.line[:120]!r}")
                continue
            delta.merge(self.apply(result))
        return delta

    def _is_empty(self, record: Record, new_uses: list) -> bool:
        if new_uses:
            return False
        if record.type is RecordType.TOOL_RESULT:
            return True
        return not record.text.strip()

    def _duplicates_last_message(self, record: Record) -> bool:
        if record.parent_tool_use_id is not None or not self._session.messages:
            return False
        last = self._session.messages[-1]
        return last.type is RecordType.ASSISTANT and last.text.strip() == record.text.strip()

    def _container_for(self, record: Record, delta: SessionDelta) -> Optional[ToolCall]:
        parent_id = record.parent_tool_use_id
        if not parent_id:
            return None

        container = self._containers.get(parent_id)
        if container is None:
            self._diagnose(delta, f"Record {record.id} names unknown parent tool call {parent_id}; kept at top level")
            return None

        parent = self._session.tool_calls[parent_id]
        if parent.mark_running():
            delta.updated_tool_calls.append(parent)
        if container is not parent and not self._depth_warned:
            self._depth_warned = True
            self._diagnose(
                delta,
                f"Sub-agent nesting deeper than {self.max_depth} levels; flattening under {container.id}",
            )
        return container

    def _resolve(self, outcome: ToolOutcome, record: Record, delta: SessionDelta) -> None:
        call = self._session.tool_calls.get(outcome.tool_call_id)
        if call is None:
            self._diagnose(delta, f"Dropping result for unknown tool call {outcome.tool_call_id}")
            return
        if not call.resolve(outcome, record.timestamp):
            logger.debug(f"Tool call {call.id} already resolved; ignoring repeated result")
            return

        delta.updated_tool_calls.append(call)
        if call.is_error:
            for stats in self._counters():
                stats.error_count += 1
            self._error_seq += 1
            error = ErrorInfo(
                id=f"err-{self._error_seq}",
                tool_call_id=call.id,
                tool_name=call.name,
                timestamp=record.timestamp or call.timestamp,
                error_content=outcome.content,
                message_index=self._top_index.get(call.id, -1),
            )
            self._session.errors.append(error)
            delta.new_errors.append(error)

    @staticmethod
    def _diagnose(delta: SessionDelta, message: str) -> None:
        logger.debug(message)
        delta.diagnostics.append(message)


def build_session(records: Iterable, source_path: Optional[Path] = None) -> Session:
    """Build a session in one pass from records (or parser results)."""
    builder = SessionModelBuilder(source_path=source_path)
    builder.apply_all(records)
    return builder.session


def iter_messages(messages: list[Message]) -> Iterator[tuple[Message, int]]:
    """Walk a message tree depth-first, yielding (message, depth).

    Children of a message's tool calls follow the message itself, so the
    order matches how the conversation reads.
    """
    stack: list[tuple[Message, int]] = [(m, 0) for m in reversed(messages)]
    while stack:
        message, depth = stack.pop()
        yield message, depth
        children = []
        for call in message.tool_calls:
            children.extend((child, depth + 1) for child in call.subagent_messages)
        stack.extend(reversed(children))


def subagent_path(session: Session, tool_call_id: str) -> list[ToolCall]:
    """Chain of delegations from the top level down to ``tool_call_id``."""
    parents: dict[str, Optional[str]] = {}
    for call in session.tool_calls.values():
        parents.setdefault(call.id, None)
        for child in call.subagent_messages:
            for child_call in child.tool_calls:
                parents[child_call.id] = call.id

    path = []
    current: Optional[str] = tool_call_id
    seen = set()
    while current is not None and current not in seen and current in session.tool_calls:
        seen.add(current)
        path.append(session.tool_calls[current])
        current = parents.get(current)
    path.reverse()
    return path
