"""Size-based rotation, compression and pruning of agent logs."""

import gzip
import json
import logging
import os
import re
import shutil
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .parser import parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 50 * 1024 * 1024
DEFAULT_RETENTION_DAYS = 7
TAIL_SCAN_BYTES = 64 * 1024
TAIL_SCAN_LINES = 5

_ARCHIVE_STAMP = r"\d{8}_\d{6}_\d{3}(?:_\d+)?"


@dataclass
class ArchiveResult:
    archived: bool
    archive_path: Optional[Path] = None
    error: Optional[str] = None
    compression: Optional[threading.Thread] = None

    def wait(self, timeout: Optional[float] = None) -> Optional[Path]:
        """Block until compression finishes; returns the final archive path."""
        if self.compression is not None:
            self.compression.join(timeout)
        if self.archive_path is None:
            return None
        gz_path = self.archive_path.with_name(self.archive_path.name + ".gz")
        if gz_path.exists() and not self.archive_path.exists():
            return gz_path
        return self.archive_path


def last_timestamp(path: Path) -> Optional[datetime]:
    """Timestamp of the last record in a log, reading only its tail."""
    try:
        size = path.stat().st_size
        with open(path, "rb") as f:
            f.seek(max(0, size - TAIL_SCAN_BYTES))
            tail = f.read()
    except OSError as e:
        logger.debug(f"Cannot read tail of {path}: {e}")
        return None

    lines = [line for line in tail.decode("utf-8", errors="replace").splitlines() if line.strip()]
    for line in reversed(lines[-TAIL_SCAN_LINES:]):
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            ts = parse_timestamp(data.get("timestamp"))
            if ts is not None:
                return ts
    return None


def archive_stamp(ts: datetime) -> str:
    """``2025-11-30T18:45:32.456Z`` -> ``20251130_184532_456`` (UTC)."""
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y%m%d_%H%M%S_") + f"{ts.microsecond // 1000:03d}"


def compress_file(path: Path) -> Path:
    """Gzip ``path`` next to itself and remove the original."""
    gz_path = path.with_name(path.name + ".gz")
    with open(path, "rb") as src, gzip.open(gz_path, "wb") as dst:
        shutil.copyfileobj(src, dst)
    path.unlink()
    return gz_path


class LogRotator:
    """Archives the active log once it grows past ``max_bytes``.

    The active file is renamed away, so a tailer following it sees a new
    file identity and rebuilds; nothing else is shared with the tailer.
    """

    def __init__(
        self,
        log_path: Path,
        archive_dir: Optional[Path] = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        compress: bool = True,
    ):
        self.log_path = Path(log_path)
        self.archive_dir = Path(archive_dir) if archive_dir else self.log_path.parent / "archive"
        self.max_bytes = max_bytes
        self.retention_days = retention_days
        self.compress = compress

        suffix = self.log_path.suffix
        self._basename = self.log_path.name[: -len(suffix)] if suffix else self.log_path.name
        self._ext = suffix.lstrip(".") or "log"
        self._pattern = re.compile(
            rf"^{re.escape(self._basename)}\.{_ARCHIVE_STAMP}\.{re.escape(self._ext)}(?:\.gz)?$"
        )

    def needs_rotation(self) -> bool:
        try:
            return self.log_path.stat().st_size > self.max_bytes
        except FileNotFoundError:
            return False

    def rotate_if_needed(self) -> ArchiveResult:
        if not self.needs_rotation():
            return ArchiveResult(archived=False)
        return self.rotate()

    def rotate(self) -> ArchiveResult:
        """Move the active log into the archive directory now."""
        try:
            if self.log_path.stat().st_size == 0:
                return ArchiveResult(archived=False)
        except FileNotFoundError:
            return ArchiveResult(archived=False)

        ts = last_timestamp(self.log_path) or datetime.now(timezone.utc)
        try:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            archive_path = self._free_archive_path(archive_stamp(ts))
            os.rename(self.log_path, archive_path)
        except OSError as e:
            logger.error(f"Failed to rotate {self.log_path}: {e}")
            return ArchiveResult(archived=False, error=str(e))

        logger.info(f"Rotated {self.log_path} to {archive_path}")
        result = ArchiveResult(archived=True, archive_path=archive_path)
        if self.compress:
            result.compression = threading.Thread(
                target=self._compress, args=(archive_path,), name=f"compress-{archive_path.name}", daemon=True
            )
            result.compression.start()
        return result

    def prune(self, now: Optional[float] = None) -> list[Path]:
        """Delete archives last modified before the retention window."""
        now = time.time() if now is None else now
        cutoff = now - self.retention_days * 86400
        removed = []
        for path in self.list_archives():
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed.append(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Could not prune {path}: {e}")
        if removed:
            logger.info(f"Pruned {len(removed)} archives older than {self.retention_days} days")
        return removed

    def list_archives(self) -> list[Path]:
        """Archives of this log, most recent first."""
        if not self.archive_dir.is_dir():
            return []
        names = [p.name for p in self.archive_dir.iterdir() if self._pattern.match(p.name)]
        return [self.archive_dir / name for name in sorted(names, reverse=True)]

    def _free_archive_path(self, stamp: str) -> Path:
        candidate = self.archive_dir / f"{self._basename}.{stamp}.{self._ext}"
        counter = 1
        while candidate.exists() or candidate.with_name(candidate.name + ".gz").exists():
            candidate = self.archive_dir / f"{self._basename}.{stamp}_{counter}.{self._ext}"
            counter += 1
        return candidate

    @staticmethod
    def _compress(path: Path) -> None:
        try:
            gz_path = compress_file(path)
            logger.info(f"Compressed {path.name} to {gz_path.name}")
        except OSError as e:
            logger.error(f"Failed to compress {path}: {e}")
