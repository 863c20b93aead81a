"""Parsing of agent log lines into typed records.

Two line dialects are understood:

* the flat monitor schema, where tool fields live at the top level
  (``tool_call_id``, ``tool_name``, ``tool_input``, ``tool_result``), and
* the agent's ``stream-json`` output, where text, tool invocations and tool
  results are content blocks under ``message.content``.

Both map onto the same ``Record``.
"""

import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Iterable, Iterator, Optional, Union

from .models import ParseFailure, Record, RecordType, TokenUsage, ToolOutcome, ToolUse

logger = logging.getLogger(__name__)

ParseResult = Union[Record, ParseFailure]

_RECORD_TYPES = {t.value: t for t in RecordType}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, accepting a trailing ``Z``."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


def stringify_content(content: Any) -> str:
    """Turn tool result content into display text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list) and content and all(
        isinstance(item, dict) and item.get("type") == "text" for item in content
    ):
        return "\n".join(str(item.get("text", "")) for item in content)
    try:
        return json.dumps(content, indent=2)
    except (TypeError, ValueError):
        return str(content)


def extract_text(blocks: list) -> str:
    """Join the text blocks of a message."""
    texts = []
    for block in blocks:
        if isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text")
            if isinstance(text, str):
                texts.append(text)
        elif isinstance(block, str):
            texts.append(block)
    return "\n".join(texts)


def _int_field(data: dict, *keys: str) -> int:
    for key in keys:
        value = data.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return int(value)
    return 0


def _usage_from(data: dict) -> Optional[TokenUsage]:
    if not isinstance(data, dict):
        return None
    keys = ("input_tokens", "output_tokens", "cache_read_tokens", "cache_read_input_tokens",
            "cache_creation_tokens", "cache_creation_input_tokens")
    if not any(k in data for k in keys):
        return None
    return TokenUsage(
        input_tokens=_int_field(data, "input_tokens"),
        output_tokens=_int_field(data, "output_tokens"),
        cache_read_tokens=_int_field(data, "cache_read_tokens", "cache_read_input_tokens"),
        cache_creation_tokens=_int_field(data, "cache_creation_tokens", "cache_creation_input_tokens"),
    )


def _optional_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


class RecordParser:
    """Converts raw log lines to ``Record`` or ``ParseFailure``.

    Parsing is pure: the same line always yields the same result, so the
    parser can be shared across tailers.
    """

    def __init__(self, require_timestamp: bool = True):
        self.require_timestamp = require_timestamp

    def parse(self, line: str) -> ParseResult:
        stripped = line.strip()
        if not stripped:
            return ParseFailure(line=line, reason="empty line")

        try:
            data = json.loads(stripped)
        except json.JSONDecodeError as e:
            return ParseFailure(line=line, reason=f"invalid JSON: {e.msg}")

        if not isinstance(data, dict):
            return ParseFailure(line=line, reason="record is not an object")

        raw_type = data.get("type")
        if raw_type is None:
            return ParseFailure(line=line, reason="missing 'type'")
        record_type = _RECORD_TYPES.get(raw_type)
        if record_type is None:
            return ParseFailure(line=line, reason=f"unknown type {raw_type!r}")

        raw_ts = data.get("timestamp")
        timestamp = parse_timestamp(raw_ts)
        if timestamp is None:
            if raw_ts is not None:
                return ParseFailure(line=line, reason=f"invalid timestamp {raw_ts!r}")
            if self.require_timestamp:
                return ParseFailure(line=line, reason="missing 'timestamp'")

        message = data.get("message")
        if not isinstance(message, dict):
            message = {}
        blocks = message.get("content")
        if isinstance(blocks, str):
            blocks = [{"type": "text", "text": blocks}]
        elif not isinstance(blocks, list):
            blocks = []

        try:
            tool_uses = self._tool_uses(data, blocks, record_type)
            tool_results = self._tool_results(data, blocks, record_type)
        except ValueError as e:
            return ParseFailure(line=line, reason=str(e))

        text = self._text(data, blocks, record_type)
        # A top-level "usage" object on result records is a session total, not a delta
        usage = _usage_from(message.get("usage")) or _usage_from(data)

        return Record(
            id=self._record_id(data, stripped),
            type=record_type,
            timestamp=timestamp,
            parent_tool_use_id=_optional_str(data.get("parent_tool_use_id")),
            text=text,
            tool_uses=tuple(tool_uses),
            tool_results=tuple(tool_results),
            usage=usage,
            session_id=_optional_str(data.get("session_id")),
            model=_optional_str(message.get("model")) or _optional_str(data.get("model")),
            subtype=_optional_str(data.get("subtype")),
            raw=stripped,
        )

    def parse_lines(self, lines: Iterable[str]) -> Iterator[ParseResult]:
        """Parse lines in order, skipping blank ones."""
        for line in lines:
            if not line.strip():
                continue
            yield self.parse(line)

    @staticmethod
    def _record_id(data: dict, line: str) -> str:
        for key in ("uuid", "id"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
        return hashlib.sha1(line.encode("utf-8")).hexdigest()[:16]

    @staticmethod
    def _text(data: dict, blocks: list, record_type: RecordType) -> str:
        if record_type is RecordType.RESULT:
            result = data.get("result")
            if isinstance(result, str):
                return result
        if isinstance(data.get("text"), str):
            return data["text"]
        if record_type is RecordType.TOOL_RESULT:
            return ""
        return extract_text(blocks)

    @staticmethod
    def _tool_uses(data: dict, blocks: list, record_type: RecordType) -> list[ToolUse]:
        uses = []
        if record_type is not RecordType.TOOL_RESULT and "tool_name" in data:
            call_id = _optional_str(data.get("tool_call_id"))
            if call_id is None:
                raise ValueError("tool invocation without 'tool_call_id'")
            tool_input = data.get("tool_input")
            uses.append(ToolUse(
                id=call_id,
                name=str(data.get("tool_name") or "Unknown"),
                input=tool_input if isinstance(tool_input, dict) else {},
            ))

        for block in blocks:
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                continue
            call_id = _optional_str(block.get("id"))
            if call_id is None:
                raise ValueError("tool_use block without 'id'")
            block_input = block.get("input")
            uses.append(ToolUse(
                id=call_id,
                name=str(block.get("name") or "Unknown"),
                input=block_input if isinstance(block_input, dict) else {},
            ))
        return uses

    @staticmethod
    def _tool_results(data: dict, blocks: list, record_type: RecordType) -> list[ToolOutcome]:
        results = []
        if record_type is RecordType.TOOL_RESULT:
            call_id = _optional_str(data.get("tool_call_id")) or _optional_str(data.get("tool_use_id"))
            if call_id is not None:
                content = data["tool_result"] if "tool_result" in data else data.get("content")
                results.append(ToolOutcome(
                    tool_call_id=call_id,
                    content=stringify_content(content),
                    is_error=bool(data.get("is_error")),
                ))
            elif not any(isinstance(b, dict) and b.get("type") == "tool_result" for b in blocks):
                raise ValueError("tool_result without 'tool_call_id'")

        for block in blocks:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            call_id = _optional_str(block.get("tool_use_id"))
            if call_id is None:
                logger.debug("Skipping tool_result block without tool_use_id")
                continue
            results.append(ToolOutcome(
                tool_call_id=call_id,
                content=stringify_content(block.get("content")),
                is_error=bool(block.get("is_error")),
            ))
        return results
