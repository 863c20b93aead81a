"""Tests for log rotation and archive retention."""

import gzip
import os
import time
from datetime import datetime, timezone

import pytest

from agent_monitor.rotation import LogRotator, archive_stamp, last_timestamp
from agent_monitor.tailer import LogTailer

STAMP = "20251130_184532_456"


@pytest.fixture
def log_path(tmp_path, make_line, append_lines):
    path = tmp_path / "claude_output.jsonl"
    append_lines(path, [
        make_line(0, type="assistant", text="first"),
        make_line(type="assistant", text="last", timestamp="2025-11-30T18:45:32.456Z"),
    ])
    return path


@pytest.fixture
def rotator(log_path, tmp_path):
    return LogRotator(log_path, archive_dir=tmp_path / "archive", max_bytes=10, compress=False)


class TestNaming:
    """Tests for archive naming."""

    def test_archive_stamp(self):
        """Test archive names carry the timestamp."""
        ts = datetime(2025, 11, 30, 18, 45, 32, 456789, tzinfo=timezone.utc)
        assert archive_stamp(ts) == STAMP

    def test_last_timestamp(self, log_path):
        """Test the last record timestamp is found."""
        assert last_timestamp(log_path) == datetime(2025, 11, 30, 18, 45, 32, 456000, tzinfo=timezone.utc)

    def test_last_timestamp_without_records(self, tmp_path):
        """Test a log without timestamps."""
        path = tmp_path / "noise.jsonl"
        path.write_text("not json\n{}\n")
        assert last_timestamp(path) is None


class TestRotate:
    """Tests for rotating the live log."""

    def test_rotates_large_log(self, rotator, log_path, tmp_path):
        """Test a log over the limit is archived."""
        content = log_path.read_text()
        result = rotator.rotate_if_needed()

        assert result.archived
        assert result.archive_path == tmp_path / "archive" / f"claude_output.{STAMP}.jsonl"
        assert result.archive_path.read_text() == content
        assert not log_path.exists()

    def test_small_log_untouched(self, log_path, tmp_path):
        """Test a log under the limit stays put."""
        rotator = LogRotator(log_path, archive_dir=tmp_path / "archive", max_bytes=1024 * 1024)
        assert not rotator.needs_rotation()
        assert not rotator.rotate_if_needed().archived
        assert log_path.exists()

    def test_missing_or_empty_log(self, rotator, log_path):
        """Test nothing happens without a log."""
        log_path.write_text("")
        assert not rotator.rotate().archived
        log_path.unlink()
        assert not rotator.rotate().archived

    def test_name_collision_gets_suffix(self, rotator, tmp_path):
        """Test an existing archive name gets a suffix."""
        archive_dir = tmp_path / "archive"
        archive_dir.mkdir()
        (archive_dir / f"claude_output.{STAMP}.jsonl").write_text("older")
        (archive_dir / f"claude_output.{STAMP}_1.jsonl.gz").write_bytes(b"")

        result = rotator.rotate()
        assert result.archive_path.name == f"claude_output.{STAMP}_2.jsonl"

    def test_compression(self, log_path, tmp_path):
        """Test archives are gzipped when enabled."""
        content = log_path.read_bytes()
        rotator = LogRotator(log_path, archive_dir=tmp_path / "archive", max_bytes=10, compress=True)
        result = rotator.rotate()

        final = result.wait(timeout=5)
        assert final.name == f"claude_output.{STAMP}.jsonl.gz"
        assert not result.archive_path.exists()
        with gzip.open(final, "rb") as f:
            assert f.read() == content

    def test_tailer_rebuilds_after_rotation(self, rotator, log_path, make_line, append_lines):
        """Test the tailer starts over on the fresh log."""
        tailer = LogTailer(log_path)
        assert len(tailer.poll().lines) == 2

        rotator.rotate()
        append_lines(log_path, [make_line(5, type="assistant", text="after rotation")])
        batch = tailer.poll()
        assert batch.reset
        assert len(batch.lines) == 1


class TestArchives:
    """Tests for listing and pruning archives."""

    def _make_archive(self, archive_dir, stamp, age_days=0.0, suffix=".jsonl"):
        path = archive_dir / f"claude_output.{stamp}{suffix}"
        path.write_text("x")
        mtime = time.time() - age_days * 86400
        os.utime(path, (mtime, mtime))
        return path

    def test_list_newest_first(self, rotator, tmp_path):
        """Test archives are listed newest first."""
        archive_dir = tmp_path / "archive"
        archive_dir.mkdir()
        older = self._make_archive(archive_dir, "20251101_080000_000", suffix=".jsonl.gz")
        newer = self._make_archive(archive_dir, "20251130_080000_000")
        (archive_dir / "notes.txt").write_text("unrelated")
        (archive_dir / "other_log.20251130_080000_000.jsonl").write_text("unrelated")

        assert rotator.list_archives() == [newer, older]

    def test_list_without_directory(self, rotator):
        """Test listing without an archive directory."""
        assert rotator.list_archives() == []

    def test_prune_by_age(self, rotator, tmp_path):
        """Test old archives are deleted."""
        archive_dir = tmp_path / "archive"
        archive_dir.mkdir()
        expired = self._make_archive(archive_dir, "20251101_080000_000", age_days=10)
        recent = self._make_archive(archive_dir, "20251129_080000_000", age_days=1)
        unrelated = archive_dir / "keep-me.txt"
        unrelated.write_text("x")
        os.utime(unrelated, (0, 0))

        assert rotator.prune() == [expired]
        assert not expired.exists()
        assert recent.exists()
        assert unrelated.exists()
