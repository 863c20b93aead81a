"""Live session store fed by tailing an agent log."""

import asyncio
import contextlib
import gzip
import logging
from collections import deque
from pathlib import Path
from typing import Callable, Optional

from .models import Session, SessionDelta
from .parser import RecordParser
from .session import SessionModelBuilder
from .tailer import LogTailer

logger = logging.getLogger(__name__)

Subscriber = Callable[[Session, SessionDelta], None]

DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_DEBOUNCE = 0.15
MAX_DIAGNOSTICS = 200


class SessionMonitor:
    """Single source of truth for the session built from one log file.

    All reads, parsing and model updates happen on one asyncio loop, in file
    order. Readers subscribe and receive a snapshot plus the delta after
    every pass that changed something.
    """

    def __init__(
        self,
        path: Path,
        offset: int = 0,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        debounce: float = DEFAULT_DEBOUNCE,
        require_timestamp: bool = True,
    ):
        self.path = Path(path)
        self.poll_interval = poll_interval
        self.debounce = debounce
        self.tailer = LogTailer(self.path, offset=offset)
        self.parser = RecordParser(require_timestamp=require_timestamp)
        self.builder = SessionModelBuilder(source_path=self.path)
        self.diagnostics: deque[str] = deque(maxlen=MAX_DIAGNOSTICS)

        self._subscribers: list[Subscriber] = []
        self._wake: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def session(self) -> Session:
        return self.builder.session

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def snapshot(self) -> Session:
        return self.builder.snapshot()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def poll_once(self) -> SessionDelta:
        """Run one read pass and publish the result if anything changed."""
        batch = self.tailer.poll()
        delta = SessionDelta()
        if batch.reset:
            delta.merge(self.builder.reset())
        return self._ingest(batch.lines, delta)

    def refresh(self) -> SessionDelta:
        """Throw away the session and re-read the file from the start."""
        self.tailer.reset()
        delta = self.builder.reset()
        return self._ingest(self.tailer.poll().lines, delta)

    def _ingest(self, lines: list[str], delta: SessionDelta) -> SessionDelta:
        if lines:
            delta.merge(self.builder.apply_all(self.parser.parse_lines(lines)))
        self.diagnostics.extend(delta.diagnostics)
        if delta.changed:
            self._publish(delta)
        return delta

    def notify(self) -> None:
        """Ask for a read pass. Calls within the debounce window coalesce."""
        if self._wake is not None:
            self._wake.set()

    async def run(self) -> None:
        """Tail the log until cancelled."""
        self._wake = asyncio.Event()
        self._safe_poll()
        while True:
            woken = False
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
                woken = True
            except asyncio.TimeoutError:
                pass
            if woken and self.debounce > 0:
                await asyncio.sleep(self.debounce)
            self._wake.clear()
            self._safe_poll()

    def start(self) -> asyncio.Task:
        """Start tailing on the running event loop."""
        if self.running:
            return self._task
        self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """Cancel the poll loop and any pending debounce; keeps the session."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _safe_poll(self) -> None:
        try:
            self.poll_once()
        except Exception:
            # Ingestion errors never stop the monitor
            logger.exception(f"Unexpected error while reading {self.path}")

    def _publish(self, delta: SessionDelta) -> None:
        if not self._subscribers:
            return
        snapshot = self.snapshot()
        for callback in list(self._subscribers):
            try:
                callback(snapshot, delta)
            except Exception:
                logger.exception("Session subscriber failed")


def read_log_lines(path: Path) -> list[str]:
    """Read all lines of a log or a gzip-compressed archive."""
    path = Path(path)
    opener = gzip.open if path.suffix == ".gz" else open
    with opener(path, "rt", encoding="utf-8", errors="replace") as f:
        return [line for line in f if line.strip()]


def load_session(path: Path, require_timestamp: bool = True) -> Session:
    """Build a session from a complete file in one go."""
    path = Path(path)
    parser = RecordParser(require_timestamp=require_timestamp)
    builder = SessionModelBuilder(source_path=path)
    delta = builder.apply_all(parser.parse_lines(read_log_lines(path)))
    if delta.diagnostics:
        logger.info(f"{len(delta.diagnostics)} diagnostics while loading {path}")
    return builder.session
