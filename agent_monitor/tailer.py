"""Incremental, rotation-aware reading of an append-only log file."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_READ_BYTES = 8 * 1024 * 1024


@dataclass
class TailBatch:
    """Result of one poll.

    When ``reset`` is set the file was truncated or replaced; consumers must
    discard what they built so far before handling ``lines``.
    """

    reset: bool = False
    lines: list[str] = field(default_factory=list)
    offset: int = 0

    @property
    def empty(self) -> bool:
        return not self.reset and not self.lines


class LogTailer:
    """Reads newly appended, newline-terminated lines from one file.

    The offset only ever advances past complete lines, so a line still being
    written is picked up whole on a later poll. Truncation is detected by
    the file shrinking, rotation by the file identity (device, inode)
    changing.
    """

    def __init__(self, path: Path, offset: int = 0, max_read_bytes: int = DEFAULT_MAX_READ_BYTES):
        self.path = Path(path)
        self.offset = max(0, offset)
        self.max_read_bytes = max_read_bytes
        self._identity: Optional[tuple[int, int]] = None
        self._last_size: Optional[int] = None

    def reset(self) -> None:
        """Forget the position; the next poll starts from the beginning."""
        self.offset = 0
        self._identity = None
        self._last_size = None

    def poll(self) -> TailBatch:
        """Read whatever complete lines were appended since the last poll."""
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return TailBatch(offset=self.offset)
        except OSError as e:
            logger.debug(f"Could not stat {self.path}: {e}; retrying on next poll")
            return TailBatch(offset=self.offset)

        identity = (st.st_dev, st.st_ino)
        size = st.st_size
        reset = False

        if self._identity is not None and identity != self._identity:
            logger.info(f"Log file {self.path} was replaced (rotation); restarting from offset 0")
            reset = True
        elif self._last_size is not None and size < self._last_size:
            logger.info(f"Log file {self.path} shrank from {self._last_size} to {size} bytes; restarting from offset 0")
            reset = True
        elif size < self.offset:
            logger.info(f"Log file {self.path} is shorter than stored offset {self.offset}; restarting from offset 0")
            reset = True

        if reset:
            self.offset = 0

        lines: list[str] = []
        if size > self.offset:
            available = size - self.offset
            try:
                chunk = self._read(self.offset, min(available, self.max_read_bytes))
                if b"\n" not in chunk and len(chunk) < available:
                    # A single line longer than the read window
                    chunk = self._read(self.offset, available)
            except OSError as e:
                logger.debug(f"Could not read {self.path}: {e}; retrying on next poll")
                if reset:
                    # Remember the reset so it is not lost with the failed read
                    self._identity = identity
                    self._last_size = 0
                    return TailBatch(reset=True, offset=self.offset)
                return TailBatch(offset=self.offset)

            consumed = chunk.rfind(b"\n") + 1
            if consumed:
                for raw in chunk[:consumed].split(b"\n"):
                    if raw.strip():
                        lines.append(raw.decode("utf-8", errors="replace"))
                self.offset += consumed

        self._identity = identity
        self._last_size = size
        return TailBatch(reset=reset, lines=lines, offset=self.offset)

    def _read(self, start: int, length: int) -> bytes:
        with open(self.path, "rb") as f:
            f.seek(start)
            return f.read(length)
