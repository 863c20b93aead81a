"""Tests for building sessions from records."""

import pytest

from agent_monitor.models import RecordType, ToolStatus
from agent_monitor.parser import RecordParser
from agent_monitor.session import SessionModelBuilder, build_session, iter_messages, subagent_path


def build(lines, **kwargs):
    builder = SessionModelBuilder(**kwargs)
    delta = builder.apply_all(RecordParser().parse_lines(lines))
    return builder, delta


def nested_lines(make_line, levels: int) -> list[str]:
    """A chain of delegations ``levels`` deep, each child delegating again."""
    lines = [make_line(0, type="assistant", tool_call_id="t1", tool_name="Task", tool_input={"prompt": "level 1"})]
    for level in range(1, levels + 1):
        fields = dict(type="assistant", parent_tool_use_id=f"t{level}", text=f"at level {level}")
        if level < levels:
            fields.update(tool_call_id=f"t{level + 1}", tool_name="Task", tool_input={"prompt": f"level {level + 1}"})
        lines.append(make_line(level, **fields))
    return lines


class TestTaskExample:
    """One delegation, one sub-agent message, one result."""

    def test_structure(self, task_example):
        """Test the delegation owns its sub-agent message."""
        builder, _ = build(task_example)
        session = builder.session

        assert len(session.messages) == 1
        initiating = session.messages[0]
        assert initiating.type is RecordType.ASSISTANT
        assert [c.id for c in initiating.tool_calls] == ["t1"]

        call = session.tool_calls["t1"]
        assert call.status is ToolStatus.COMPLETED
        assert call.result == "done"
        assert call.is_subagent
        assert call.subagent_type == "explorer"
        assert call.subagent_description == "Find files"
        assert [m.text for m in call.subagent_messages] == ["working"]

    def test_stats(self, task_example):
        """Test counters for the delegation example."""
        builder, _ = build(task_example)
        stats = builder.session.stats
        assert stats.message_count == 1
        assert stats.tool_call_count == 1
        assert stats.subagent_count == 1
        assert stats.error_count == 0
        assert stats.record_count == 3

    def test_pending_becomes_running_on_first_child(self, task_example):
        """Test a delegation runs once its first child arrives."""
        builder, _ = build(task_example[:1])
        assert builder.session.tool_calls["t1"].status is ToolStatus.PENDING
        builder.apply_all(RecordParser().parse_lines(task_example[1:2]))
        assert builder.session.tool_calls["t1"].status is ToolStatus.RUNNING

    def test_completion_time(self, task_example):
        """Test the result time completes the call."""
        builder, _ = build(task_example)
        assert builder.session.tool_calls["t1"].duration == 2.0


class TestNesting:
    """Tests for sub-agent nesting."""

    def test_nested_delegations(self, make_line):
        """Test delegations inside delegations."""
        builder, _ = build(nested_lines(make_line, 3))
        session = builder.session

        assert len(session.messages) == 1
        t1, t2, t3 = (session.tool_calls[f"t{i}"] for i in (1, 2, 3))
        assert (t1.depth, t2.depth, t3.depth) == (0, 1, 2)
        assert t1.subagent_messages[0].tool_calls == [t2]
        assert t2.subagent_messages[0].tool_calls == [t3]
        assert [m.text for m in t3.subagent_messages] == ["at level 3"]
        assert session.stats.subagent_count == 3

    def test_each_record_appears_once(self, make_line):
        """Test no record is placed twice."""
        builder, _ = build(nested_lines(make_line, 4))
        texts = [m.text for m, _ in iter_messages(builder.session.messages) if m.text]
        assert texts == ["at level 1", "at level 2", "at level 3", "at level 4"]

    def test_walk_depths(self, make_line):
        """Test depth-first walking with depths."""
        builder, _ = build(nested_lines(make_line, 3))
        assert [depth for _, depth in iter_messages(builder.session.messages)] == [0, 1, 2, 3]

    def test_depth_limit_flattens(self, make_line):
        """Test nesting past the limit is flattened."""
        builder, delta = build(nested_lines(make_line, 4), max_depth=2)
        session = builder.session

        t2, t3 = session.tool_calls["t2"], session.tool_calls["t3"]
        assert [m.text for m in t2.subagent_messages] == ["at level 2", "at level 3", "at level 4"]
        assert t3.subagent_messages == []
        assert any("deeper than 2" in d for d in delta.diagnostics)

    def test_subagent_path(self, make_line):
        """Test the chain of delegations down to a call."""
        builder, _ = build(nested_lines(make_line, 3))
        assert [c.id for c in subagent_path(builder.session, "t3")] == ["t1", "t2", "t3"]
        assert subagent_path(builder.session, "missing") == []

    def test_unknown_parent_stays_top_level(self, make_line):
        """Test an unknown parent keeps the record at the top level."""
        builder, delta = build([make_line(0, type="assistant", parent_tool_use_id="ghost", text="orphan")])
        assert [m.text for m in builder.session.messages] == ["orphan"]
        assert any("unknown parent tool call ghost" in d for d in delta.diagnostics)


class TestResolution:
    """Tests for applying tool results."""

    def test_repeated_result_is_ignored(self, make_line):
        """Test a second result for a call changes nothing."""
        lines = [
            make_line(0, type="assistant", tool_call_id="t1", tool_name="Bash"),
            make_line(1, type="tool_result", tool_call_id="t1", tool_result="first"),
        ]
        builder, _ = build(lines)
        call = builder.session.tool_calls["t1"]
        completed_at = call.completed_at

        delta = builder.apply_all(RecordParser().parse_lines([
            make_line(5, type="tool_result", tool_call_id="t1", tool_result="second", is_error=True),
        ]))
        assert call.status is ToolStatus.COMPLETED
        assert call.result == "first"
        assert call.completed_at == completed_at
        assert builder.session.stats.error_count == 0
        assert delta.updated_tool_calls == []

    def test_error_result(self, make_line):
        """Test a failed call is recorded as an error."""
        lines = [
            make_line(0, type="user", text="Run the tests"),
            make_line(1, type="assistant", tool_call_id="t1", tool_name="Bash", tool_input={"command": "pytest"}),
            make_line(2, type="tool_result", tool_call_id="t1", tool_result="exit 1", is_error=True),
        ]
        builder, delta = build(lines)
        session = builder.session

        assert session.tool_calls["t1"].status is ToolStatus.ERROR
        assert session.stats.error_count == 1
        error = session.errors[0]
        assert error.id == "err-1"
        assert error.tool_name == "Bash"
        assert error.error_content == "exit 1"
        assert error.message_index == 1
        assert delta.new_errors == [error]

    def test_result_for_unknown_call(self, make_line):
        """Test a result for an unknown call is dropped."""
        builder, delta = build([make_line(0, type="tool_result", tool_call_id="nope", tool_result="x")])
        assert builder.session.messages == []
        assert any("unknown tool call nope" in d for d in delta.diagnostics)

    def test_stream_json_result_block(self, make_line):
        """Test results arriving in user message blocks."""
        lines = [
            make_line(0, type="assistant", message={"content": [
                {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {"file_path": "a.py"}},
            ]}),
            make_line(1, type="user", message={"content": [
                {"type": "tool_result", "tool_use_id": "toolu_1", "content": "print('hi')"},
            ]}),
        ]
        builder, _ = build(lines)
        assert builder.session.tool_calls["toolu_1"].result == "print('hi')"
        # A user record carrying only tool results adds no message
        assert len(builder.session.messages) == 1

    def test_open_calls(self, make_line):
        """Test unresolved calls are open."""
        builder, _ = build([
            make_line(0, type="assistant", tool_call_id="t1", tool_name="Bash"),
            make_line(1, type="assistant", tool_call_id="t2", tool_name="Read"),
            make_line(2, type="tool_result", tool_call_id="t1", tool_result="ok"),
        ])
        assert list(builder.session.open_calls) == ["t2"]


class TestSessionBuilder:
    """Tests for the incremental builder."""

    def test_message_ids_are_deterministic(self, task_example, make_line):
        """Test message ids depend only on order."""
        lines = task_example + [make_line(3, type="assistant", text="finished")]
        first, _ = build(lines)
        second, _ = build(lines)
        assert [m.id for m in first.session.messages] == [m.id for m in second.session.messages] == ["msg-1", "msg-3"]

    def test_token_totals(self, make_line):
        """Test token usage is summed."""
        builder, _ = build([
            make_line(0, type="assistant", text="a", message={"usage": {
                "input_tokens": 10, "output_tokens": 2, "cache_read_input_tokens": 100}}),
            make_line(1, type="assistant", text="b", message={"usage": {"input_tokens": 5, "output_tokens": 1}}),
        ])
        stats = builder.session.stats
        assert stats.input_tokens == 15
        assert stats.output_tokens == 3
        assert stats.cache_read_tokens == 100
        assert stats.total_input_tokens == 115
        assert stats.total_tokens == 118

    def test_metadata(self, make_line):
        """Test session id and model are taken from the first records."""
        builder, _ = build([make_line(0, type="system", subtype="init", session_id="sess-1", model="claude-x")])
        assert builder.session.session_id == "sess-1"
        assert builder.session.model == "claude-x"

    def test_result_duplicate_is_collapsed(self, make_line):
        """Test a result repeating the last answer adds no message."""
        builder, _ = build([
            make_line(0, type="assistant", text="All tests pass."),
            make_line(9, type="result", subtype="success", result="All tests pass."),
        ])
        session = builder.session
        assert len(session.messages) == 1
        assert session.stats.end_time is not None
        assert not session.stats.is_active

    def test_distinct_result_is_kept(self, make_line):
        """Test a result with new text is kept."""
        builder, _ = build([
            make_line(0, type="assistant", text="Working on it"),
            make_line(9, type="result", result="Summary of the run"),
        ])
        assert [m.type for m in builder.session.messages] == [RecordType.ASSISTANT, RecordType.RESULT]

    def test_empty_records_add_no_message(self, make_line):
        """Test records without content add no message."""
        builder, _ = build([make_line(0, type="assistant", text="  "), make_line(1, type="user", text="")])
        assert builder.session.messages == []
        assert builder.session.stats.record_count == 2

    def test_duplicate_tool_call_id(self, make_line):
        """Test a repeated tool call id is ignored."""
        builder, delta = build([
            make_line(0, type="assistant", tool_call_id="t1", tool_name="Bash"),
            make_line(1, type="assistant", tool_call_id="t1", tool_name="Bash"),
        ])
        assert builder.session.stats.tool_call_count == 1
        assert any("Duplicate tool call t1" in d for d in delta.diagnostics)

    def test_parse_failures_become_diagnostics(self, make_line):
        """Test parse failures are reported, not raised."""
        builder, delta = build([make_line(0, type="assistant", text="ok"), "not json"])
        assert len(builder.session.messages) == 1
        assert len(delta.diagnostics) == 1
        assert "invalid JSON" in delta.diagnostics[0]

    def test_reset(self, task_example):
        """Test reset discards everything."""
        builder, _ = build(task_example)
        delta = builder.reset()
        assert delta.reset
        assert builder.session.messages == []
        assert builder.session.tool_calls == {}
        assert builder.session.stats.message_count == 0

    def test_snapshot_is_independent(self, task_example):
        """Test snapshots do not follow later changes."""
        builder, _ = build(task_example)
        snapshot = builder.snapshot()
        snapshot.messages.clear()
        assert len(builder.session.messages) == 1

    def test_build_session(self, task_example):
        """Test the one-shot builder."""
        session = build_session(RecordParser().parse_lines(task_example))
        assert session.tool_calls["t1"].status is ToolStatus.COMPLETED

    def test_invalid_max_depth(self):
        """Test the depth limit must be positive."""
        with pytest.raises(ValueError):
            SessionModelBuilder(max_depth=0)


class TestRuns:
    """Tests for agent runs sharing one log."""

    @pytest.fixture
    def resumed_lines(self, make_line):
        return [
            make_line(0, type="system", subtype="init", session_id="sess-1"),
            make_line(1, type="assistant", text="First attempt", message={"usage": {"input_tokens": 10}}),
            make_line(2, type="result", result="Gave up"),
            make_line(5, type="system", subtype="init", session_id="sess-1"),
            make_line(6, type="assistant", text="Second attempt", message={"usage": {"input_tokens": 4}}),
        ]

    def test_resume_reopens_session(self, resumed_lines):
        """Test output after a final result makes the session active again."""
        builder, delta = build(resumed_lines)
        session = builder.session
        assert session.stats.is_active
        assert [run.number for run in session.runs] == [1, 2]
        assert delta.new_runs == [session.runs[1]]

    def test_per_run_stats(self, resumed_lines):
        """Test each run counts only its own records."""
        builder, _ = build(resumed_lines)
        first, second = builder.session.runs
        assert (first.start_index, second.start_index) == (0, 2)
        assert (first.stats.message_count, second.stats.message_count) == (2, 1)
        assert (first.stats.input_tokens, second.stats.input_tokens) == (10, 4)
        assert not first.stats.is_active
        assert second.stats.is_active
        assert second.stats.start_time.second == 5
        assert builder.session.stats.message_count == 3
        assert builder.session.current_run is second

    def test_second_result_ends_session_again(self, resumed_lines, make_line):
        """Test the resumed run can finish the session again."""
        builder, _ = build(resumed_lines + [make_line(9, type="result", result="Fixed it")])
        assert not builder.session.stats.is_active
        assert len(builder.session.runs) == 2

    def test_run_without_init_record(self, make_line):
        """Test top-level output after a result starts a run even without an init record."""
        builder, _ = build([
            make_line(0, type="assistant", text="one"),
            make_line(1, type="result", result="stopped"),
            make_line(2, type="user", text="more feedback"),
        ])
        session = builder.session
        assert [run.start_index for run in session.runs] == [0, 2]
        assert session.stats.is_active

    def test_leading_init_is_one_run(self, make_line):
        """Test the init record opening a log does not add a second run."""
        builder, delta = build([
            make_line(0, type="system", subtype="init"),
            make_line(1, type="assistant", text="hello"),
        ])
        assert len(builder.session.runs) == 1
        assert delta.new_runs == []

    def test_subagent_output_does_not_start_run(self, make_line):
        """Test late sub-agent records stay in the finished run."""
        builder, _ = build([
            make_line(0, type="assistant", tool_call_id="t1", tool_name="Task", tool_input={"prompt": "look"}),
            make_line(1, type="result", result="stopped early"),
            make_line(2, type="assistant", parent_tool_use_id="t1", text="still looking"),
        ])
        assert len(builder.session.runs) == 1
        assert not builder.session.stats.is_active

    def test_errors_counted_per_run(self, resumed_lines, make_line):
        """Test a failed call in the resumed run counts only there."""
        builder, _ = build(resumed_lines + [
            make_line(7, type="assistant", tool_call_id="t9", tool_name="Bash"),
            make_line(8, type="tool_result", tool_call_id="t9", tool_result="boom", is_error=True),
        ])
        first, second = builder.session.runs
        assert (first.stats.error_count, second.stats.error_count) == (0, 1)
        assert builder.session.stats.error_count == 1

    def test_incremental_matches_one_pass(self, resumed_lines):
        """Test applying records one at a time gives the same runs."""
        whole, _ = build(resumed_lines)
        builder = SessionModelBuilder()
        new_runs = []
        for result in RecordParser().parse_lines(resumed_lines):
            new_runs.extend(builder.apply(result).new_runs)
        assert builder.session.runs == whole.session.runs
        assert [run.number for run in new_runs] == [2]

    def test_reset_clears_runs(self, resumed_lines):
        """Test reset forgets earlier runs."""
        builder, _ = build(resumed_lines)
        builder.reset()
        assert builder.session.runs == []
        assert builder.session.current_run is None
