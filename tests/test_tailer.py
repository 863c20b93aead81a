"""Tests for incremental log tailing."""

import os

import pytest

from agent_monitor.tailer import LogTailer


@pytest.fixture
def log_path(tmp_path):
    return tmp_path / "session.jsonl"


class TestLogTailer:
    """Tests for reading appended lines."""

    def test_missing_file(self, log_path):
        """Test polling a file that does not exist."""
        batch = LogTailer(log_path).poll()
        assert batch.empty
        assert batch.offset == 0

    def test_reads_complete_lines(self, log_path):
        """Test complete lines are returned."""
        log_path.write_text("one\ntwo\n")
        tailer = LogTailer(log_path)
        batch = tailer.poll()
        assert batch.lines == ["one", "two"]
        assert batch.offset == 8
        assert tailer.poll().empty

    def test_partial_line_is_held_back(self, log_path):
        """Test an unfinished line waits for its newline."""
        log_path.write_text("one\ntw")
        tailer = LogTailer(log_path)
        assert tailer.poll().lines == ["one"]
        assert tailer.offset == 4

        with open(log_path, "a") as f:
            f.write("o\n")
        assert tailer.poll().lines == ["two"]

    def test_starting_offset(self, log_path):
        """Test tailing from a given offset."""
        log_path.write_text("one\ntwo\n")
        assert LogTailer(log_path, offset=4).poll().lines == ["two"]

    def test_blank_lines_skipped(self, log_path):
        """Test blank lines are dropped."""
        log_path.write_text("one\n\n   \ntwo\n")
        assert LogTailer(log_path).poll().lines == ["one", "two"]

    def test_invalid_utf8_is_replaced(self, log_path):
        """Test invalid UTF-8 does not stop the tailer."""
        log_path.write_bytes(b"caf\xe9\n")
        assert LogTailer(log_path).poll().lines == ["caf�"]

    def test_bounded_reads(self, log_path):
        """Test each poll reads at most one window."""
        log_path.write_text("abcd\n" * 4)
        tailer = LogTailer(log_path, max_read_bytes=12)
        assert tailer.poll().lines == ["abcd", "abcd"]
        assert tailer.poll().lines == ["abcd", "abcd"]
        assert tailer.poll().empty

    def test_line_longer_than_read_window(self, log_path):
        """Test a line longer than the window is still read whole."""
        long_line = "x" * 100
        log_path.write_text(long_line + "\nshort\n")
        tailer = LogTailer(log_path, max_read_bytes=10)
        assert tailer.poll().lines == [long_line, "short"]

    @pytest.mark.parametrize("chunk_size", [1, 3, 7, 64])
    def test_chunked_appends_match_full_read(self, log_path, chunk_size):
        """Test appends in chunks give the same lines."""
        content = "".join(f'{{"n": {i}, "pad": "{"p" * (i % 5)}"}}\n' for i in range(20))
        log_path.write_text("")
        tailer = LogTailer(log_path)

        seen = []
        for start in range(0, len(content), chunk_size):
            with open(log_path, "a") as f:
                f.write(content[start:start + chunk_size])
            batch = tailer.poll()
            assert not batch.reset
            seen.extend(batch.lines)

        assert seen == content.splitlines()


class TestLogTailerResets:
    """Tests for truncated and replaced logs."""

    def test_truncation(self, log_path):
        """Test truncation restarts from the top."""
        log_path.write_text("one\ntwo\nthree\n")
        tailer = LogTailer(log_path)
        tailer.poll()

        log_path.write_text("new\n")
        batch = tailer.poll()
        assert batch.reset
        assert batch.lines == ["new"]
        assert batch.offset == 4

    def test_shorter_than_offset(self, log_path):
        """Test a file shorter than the offset is treated as truncated."""
        log_path.write_text("one\ntwo\n")
        tailer = LogTailer(log_path, offset=100)
        batch = tailer.poll()
        assert batch.reset
        assert batch.lines == ["one", "two"]

    def test_rotation_detected_by_identity(self, log_path, tmp_path):
        """Test a replaced file is detected by inode."""
        log_path.write_text("old-1\nold-2\n")
        tailer = LogTailer(log_path)
        tailer.poll()

        os.rename(log_path, tmp_path / "archived.jsonl")
        log_path.write_text("fresh-1\nfresh-2\nfresh-3\n")
        batch = tailer.poll()
        assert batch.reset
        assert batch.lines == ["fresh-1", "fresh-2", "fresh-3"]

    def test_file_deleted_then_recreated(self, log_path):
        """Test a recreated file is read from the start."""
        log_path.write_text("one\n")
        tailer = LogTailer(log_path)
        tailer.poll()

        keep = log_path.with_suffix(".keep")
        os.rename(log_path, keep)
        assert tailer.poll().empty

        log_path.write_text("two\nthree\n")
        batch = tailer.poll()
        assert batch.reset
        assert batch.lines == ["two", "three"]

    def test_manual_reset(self, log_path):
        """Test reset rereads the file."""
        log_path.write_text("one\n")
        tailer = LogTailer(log_path)
        tailer.poll()
        tailer.reset()
        assert tailer.poll().lines == ["one"]
