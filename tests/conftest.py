"""Shared fixtures for agent monitor tests."""

import json

import pytest


@pytest.fixture
def make_line():
    """Build one JSONL log line; ``ts`` is shorthand for a timestamp offset in seconds."""

    def _make(ts: int = 0, **fields) -> str:
        fields.setdefault("timestamp", f"2025-11-30T18:45:{ts:02d}.000Z")
        return json.dumps(fields)

    return _make


@pytest.fixture
def task_example(make_line):
    """A delegation, one sub-agent message and the delegation's result."""
    return [
        make_line(0, type="assistant", tool_call_id="t1", tool_name="Task",
                  tool_input={"subagent_type": "explorer", "description": "Find files", "prompt": "look around"}),
        make_line(1, type="assistant", parent_tool_use_id="t1", text="working"),
        make_line(2, type="tool_result", tool_call_id="t1", tool_result="done"),
    ]


@pytest.fixture
def project(tmp_path):
    """A project directory with an empty data directory."""
    (tmp_path / ".agent-monitor").mkdir()
    return tmp_path


@pytest.fixture
def append_lines():
    """Append complete lines to a log file."""

    def _append(path, lines):
        with open(path, "a") as f:
            for line in lines:
                f.write(line + "\n")

    return _append
