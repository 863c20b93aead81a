"""Per-project lock file and lifecycle control of the agent process.

The lock file is the only shared state between monitors and the agent: its
first line is the PID of the process that owns the project, optionally
followed by one line of JSON metadata. A lock naming a live PID means the
agent is running; a missing lock or a dead PID means it is not.

Every change to the lock file (create, stale removal, update, release)
happens under an exclusive ``flock`` on a sidecar guard file, so two
coordinators never interleave read-judge-remove sequences. Checking
liveness and then acting on it is still not atomic: a PID can be reused by
an unrelated process between a crash and the next check; that residual
risk is accepted.

While an agent is being spawned the lock names the launching monitor and
is marked as a placeholder. Other monitors see the project as busy but
never signal a placeholder holder.
"""

import asyncio
import contextlib
import fcntl
import json
import logging
import os
import signal
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from .errors import AlreadyRunningError, LockError, NotRunningError, ProcessControlError
from .models import LifecycleState, LockRecord

logger = logging.getLogger(__name__)

# 130/143 are shells reporting SIGINT/SIGTERM; negative codes are direct signal exits
NORMAL_EXIT_CODES = frozenset({0, 130, 143, -signal.SIGINT, -signal.SIGTERM})

DEFAULT_RESUME_PROMPT = """# Resuming Session

Your manager has given you the feedback below. Consider it carefully, then resume your work accordingly.

## Manager's Feedback
"""

StateListener = Callable[[LifecycleState, Optional[str]], None]


def is_alive(pid: int) -> bool:
    """Liveness check: does a process with this PID exist?"""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


def format_lock(record: LockRecord) -> str:
    meta = {
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "command": record.command,
        "session_id": record.session_id,
    }
    if record.placeholder:
        meta["placeholder"] = True
    return f"{record.pid}\n{json.dumps(meta)}\n"


def parse_lock(text: str) -> Optional[LockRecord]:
    """Parse lock file contents; None if there is no usable PID."""
    lines = text.strip().splitlines()
    if not lines:
        return None
    try:
        pid = int(lines[0].strip())
    except ValueError:
        return None
    if pid <= 0:
        return None

    record = LockRecord(pid=pid)
    if len(lines) > 1:
        try:
            meta = json.loads(lines[1])
        except json.JSONDecodeError:
            meta = {}
        if isinstance(meta, dict):
            created = meta.get("created_at")
            if isinstance(created, str):
                with contextlib.suppress(ValueError):
                    record.created_at = datetime.fromisoformat(created)
            if isinstance(meta.get("command"), list):
                record.command = [str(c) for c in meta["command"]]
            if isinstance(meta.get("session_id"), str):
                record.session_id = meta["session_id"]
            record.placeholder = meta.get("placeholder") is True
    return record


class LockCoordinator:
    """Guarantees at most one live agent process per project.

    Every decision is taken from the lock file and a liveness check, never
    from in-memory flags, so several monitors can share a project.
    """

    def __init__(
        self,
        lock_path: Path,
        project_dir: Optional[Path] = None,
        log_path: Optional[Path] = None,
        command: Optional[list[str]] = None,
        resume_command: Optional[list[str]] = None,
        env: Optional[dict[str, str]] = None,
        feedback_path: Optional[Path] = None,
        resume_template_path: Optional[Path] = None,
        shutdown_timeout: float = 5.0,
        startup_timeout: float = 2.0,
        on_start: Optional[Callable[[LockRecord], None]] = None,
        on_exit: Optional[Callable[[int], None]] = None,
    ):
        self.lock_path = Path(lock_path)
        self.guard_path = self.lock_path.with_name(self.lock_path.name + ".guard")
        self.project_dir = Path(project_dir) if project_dir else self.lock_path.parent
        self.log_path = Path(log_path) if log_path else None
        self.command = list(command or [])
        self.resume_command = list(resume_command or [])
        self.env = dict(env or {})
        self.feedback_path = Path(feedback_path) if feedback_path else self.lock_path.with_name("feedback.md")
        self.resume_template_path = Path(resume_template_path) if resume_template_path else None
        self.shutdown_timeout = shutdown_timeout
        self.startup_timeout = startup_timeout

        # Task-adapter hooks
        self.on_start = on_start
        self.on_exit = on_exit

        self._state = LifecycleState.IDLE
        self._error: Optional[str] = None
        self._listeners: list[StateListener] = []
        self._process: Optional[asyncio.subprocess.Process] = None
        self._watchers: set[asyncio.Task] = set()
        self.returncode: Optional[int] = None

    @classmethod
    def from_config(cls, config, **kwargs) -> "LockCoordinator":
        """Build a coordinator from a MonitorConfig."""
        return cls(
            lock_path=config.process.lock_path,
            project_dir=config.project_root,
            log_path=config.process.log_path,
            command=config.agent.command,
            resume_command=config.agent.resume_command,
            env=config.agent.env,
            feedback_path=config.process.feedback_path,
            resume_template_path=config.process.resume_template_path,
            shutdown_timeout=config.process.shutdown_timeout,
            startup_timeout=config.process.startup_timeout,
            **kwargs,
        )

    # -- state --

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def error(self) -> Optional[str]:
        return self._error

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set_state(self, state: LifecycleState, error: Optional[str] = None) -> None:
        if state is self._state and error == self._error:
            return
        logger.debug(f"Lifecycle {self._state.value} -> {state.value}")
        self._state = state
        self._error = error
        for listener in list(self._listeners):
            try:
                listener(state, error)
            except Exception:
                logger.exception("Lifecycle listener failed")

    @property
    def owns_process(self) -> bool:
        """True while a process spawned by this coordinator is running."""
        return self._process is not None and self._process.returncode is None

    async def wait(self) -> Optional[int]:
        """Wait until every process spawned here has exited and been cleaned up."""
        while self._watchers:
            await asyncio.gather(*list(self._watchers), return_exceptions=True)
        return self.returncode

    def refresh_state(self) -> LifecycleState:
        """Re-derive running/idle from the lock file."""
        if self._state in (LifecycleState.STARTING, LifecycleState.STOPPING, LifecycleState.RESUMING):
            return self._state
        try:
            live = self.holder() is not None
        except LockError as e:
            logger.debug(f"Lock check failed: {e}")
            return self._state
        if live and self._state is not LifecycleState.RUNNING:
            self._set_state(LifecycleState.RUNNING)
        elif not live and self._state is LifecycleState.RUNNING:
            self._set_state(LifecycleState.IDLE)
        return self._state

    # -- lock file protocol --

    def _read_text(self) -> Optional[str]:
        try:
            return self.lock_path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise LockError(f"Cannot read lock file {self.lock_path}: {e}") from e

    def read(self) -> Optional[LockRecord]:
        """Current lock contents, whether or not the holder is alive."""
        text = self._read_text()
        return parse_lock(text) if text is not None else None

    def holder(self) -> Optional[LockRecord]:
        """The lock record if its PID is alive, else None."""
        record = self.read()
        if record is not None and is_alive(record.pid):
            return record
        return None

    def is_locked(self) -> bool:
        return self.holder() is not None

    def acquire(
        self,
        pid: Optional[int] = None,
        command: Optional[list[str]] = None,
        session_id: Optional[str] = None,
        placeholder: bool = False,
    ) -> LockRecord:
        """Take the lock for ``pid`` (default: this process).

        Raises AlreadyRunningError if a live process holds it. A lock left by
        a dead process is removed and the acquisition retried.
        """
        record = LockRecord(
            pid=pid or os.getpid(),
            created_at=datetime.now(timezone.utc),
            command=list(command or []),
            session_id=session_id,
            placeholder=placeholder,
        )
        with self._guard():
            for _ in range(3):
                if self._publish(record):
                    logger.info(f"Acquired lock {self.lock_path} for PID {record.pid}")
                    return record

                text = self._read_text()
                if text is None:
                    # Removed by hand, outside the guard
                    continue
                existing = parse_lock(text)
                if existing is not None and is_alive(existing.pid):
                    raise AlreadyRunningError(existing.pid)

                stale_pid = existing.pid if existing else "unknown"
                logger.warning(f"Removing stale lock file {self.lock_path} (PID {stale_pid} no longer running)")
                self._remove_if_unchanged(text)

        raise LockError(f"Could not acquire {self.lock_path}: lock keeps changing")

    def update(self, pid: int, command: Optional[list[str]] = None, session_id: Optional[str] = None) -> LockRecord:
        """Point an acquired lock at a new holder (e.g. the spawned child)."""
        with self._guard():
            previous = self.read()
            record = LockRecord(
                pid=pid,
                created_at=previous.created_at if previous and previous.created_at else datetime.now(timezone.utc),
                command=list(command if command is not None else (previous.command if previous else [])),
                session_id=session_id if session_id is not None else (previous.session_id if previous else None),
            )
            tmp = self._write_temp(record)
            try:
                os.replace(tmp, self.lock_path)
            except OSError as e:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp)
                raise LockError(f"Cannot update lock file {self.lock_path}: {e}") from e
        return record

    def release(self, pid: Optional[int] = None) -> bool:
        """Remove the lock. With ``pid``, only if that PID still holds it.

        Idempotent: releasing an absent lock is not an error.
        """
        with self._guard():
            if pid is not None:
                current = self.read()
                if current is None or current.pid != pid:
                    return False
            try:
                self.lock_path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise LockError(f"Cannot remove lock file {self.lock_path}: {e}") from e
        logger.info(f"Released lock {self.lock_path}")
        return True

    @contextlib.contextmanager
    def _guard(self) -> Iterator[None]:
        """Hold an exclusive flock on the guard file for the duration."""
        try:
            self.guard_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.guard_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise LockError(f"Cannot open lock guard {self.guard_path}: {e}") from e
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _write_temp(self, record: LockRecord) -> str:
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f".{self.lock_path.name}.", suffix=".tmp", dir=self.lock_path.parent)
            with os.fdopen(fd, "w") as f:
                f.write(format_lock(record))
        except OSError as e:
            raise LockError(f"Cannot write lock file {self.lock_path}: {e}") from e
        return tmp

    def _publish(self, record: LockRecord) -> bool:
        """Create the lock file with full contents, only if it does not exist."""
        tmp = self._write_temp(record)
        try:
            os.link(tmp, self.lock_path)
            return True
        except FileExistsError:
            return False
        except OSError:
            # No hard links on this filesystem
            return self._publish_exclusive(record)
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp)

    def _publish_exclusive(self, record: LockRecord) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return False
        except OSError as e:
            raise LockError(f"Cannot create lock file {self.lock_path}: {e}") from e
        with os.fdopen(fd, "w") as f:
            f.write(format_lock(record))
        return True

    def _remove_if_unchanged(self, expected: str) -> None:
        if self._read_text() != expected:
            return
        with contextlib.suppress(FileNotFoundError):
            self.lock_path.unlink()

    # -- process control --

    async def start(self) -> LockRecord:
        """Spawn the agent process under the project lock."""
        self._ensure_idle("start")
        if not self.command:
            raise ProcessControlError("No agent command configured")

        self.acquire(command=self.command, placeholder=True)
        self._set_state(LifecycleState.STARTING)
        try:
            process = await self._spawn(self.command)
        except ProcessControlError as e:
            self.release(os.getpid())
            self._set_state(LifecycleState.ERROR, str(e))
            raise

        record = self.update(process.pid, command=self.command)
        logger.info(f"Started agent (PID {process.pid}): {' '.join(self.command)}")
        self._set_state(LifecycleState.RUNNING)
        self._fire_on_start(record)
        return record

    async def resume(self, session_id: str, feedback: str) -> LockRecord:
        """Start a new process continuing ``session_id`` with human feedback.

        Only succeeds while the previous lock is released or stale.
        """
        self._ensure_idle("resume")
        if not self.resume_command:
            raise ProcessControlError("No resume command configured")

        argv = [part.replace("{session_id}", session_id) for part in self.resume_command]
        self.acquire(command=argv, session_id=session_id, placeholder=True)
        self._set_state(LifecycleState.RESUMING)
        try:
            process = await self._spawn(argv, stdin_text=self.build_resume_prompt(feedback))
        except ProcessControlError as e:
            self.release(os.getpid())
            self._set_state(LifecycleState.ERROR, str(e))
            raise

        record = self.update(process.pid, command=argv, session_id=session_id)
        logger.info(f"Resumed session {session_id} (PID {process.pid})")
        self._set_state(LifecycleState.RUNNING)
        self._fire_on_start(record)
        return record

    async def stop(self) -> bool:
        """Terminate the lock holder, escalating to SIGKILL after the timeout.

        Returns False if nothing was running (a stale lock is still cleared).
        """
        record = self.read()
        if record is None or not is_alive(record.pid):
            if record is not None:
                logger.info(f"Clearing stale lock for PID {record.pid}")
                self.release(record.pid)
            self._set_state(LifecycleState.IDLE)
            return False
        if record.placeholder:
            raise ProcessControlError(f"Agent is still starting under monitor PID {record.pid}", pid=record.pid)

        self._set_state(LifecycleState.STOPPING)
        try:
            self._signal(record.pid, signal.SIGTERM)
            if not await self._wait_for_exit(record.pid, self.shutdown_timeout):
                logger.warning(f"PID {record.pid} ignored SIGTERM for {self.shutdown_timeout}s; sending SIGKILL")
                self._signal(record.pid, signal.SIGKILL)
                if not await self._wait_for_exit(record.pid, 1.0) and is_alive(record.pid):
                    raise ProcessControlError(f"PID {record.pid} survived SIGKILL; lock kept", pid=record.pid)
        except ProcessControlError as e:
            self._set_state(LifecycleState.ERROR, str(e))
            raise

        if self._process is not None and self._process.pid == record.pid:
            # The exit watcher must not report a deliberate stop as a crash
            self._process = None
        self.release(record.pid)
        logger.info(f"Stopped agent (PID {record.pid})")
        self._set_state(LifecycleState.IDLE)
        return True

    def interrupt(self, feedback: str) -> LockRecord:
        """Hand feedback to the running agent and interrupt it; keeps the lock."""
        record = self.holder()
        if record is None:
            raise NotRunningError("No running agent to interrupt")
        if record.placeholder:
            raise ProcessControlError(f"Agent is still starting under monitor PID {record.pid}", pid=record.pid)
        try:
            self.feedback_path.parent.mkdir(parents=True, exist_ok=True)
            self.feedback_path.write_text(feedback)
        except OSError as e:
            raise ProcessControlError(f"Cannot write feedback file {self.feedback_path}: {e}", pid=record.pid) from e
        self._signal(record.pid, signal.SIGINT)
        logger.info(f"Interrupted agent (PID {record.pid}) with feedback in {self.feedback_path}")
        return record

    def build_resume_prompt(self, feedback: str) -> str:
        template = DEFAULT_RESUME_PROMPT
        if self.resume_template_path and self.resume_template_path.exists():
            try:
                template = self.resume_template_path.read_text()
            except OSError as e:
                logger.warning(f"Cannot read resume template {self.resume_template_path}: {e}")
        return f"{template.strip()}\n\n{feedback}"

    def _ensure_idle(self, action: str) -> None:
        if self._state in (LifecycleState.STARTING, LifecycleState.STOPPING, LifecycleState.RESUMING):
            raise ProcessControlError(f"Cannot {action} while agent is {self._state.value}")

    async def _spawn(self, argv: list[str], stdin_text: Optional[str] = None) -> asyncio.subprocess.Process:
        env = {**os.environ, **self.env, "AGENT_MONITOR_PROJECT_DIR": str(self.project_dir)}
        stdout = asyncio.subprocess.DEVNULL
        log_file = None
        if self.log_path is not None:
            try:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                log_file = open(self.log_path, "ab")
            except OSError as e:
                raise ProcessControlError(f"Cannot open log file {self.log_path}: {e}") from e
            stdout = log_file

        try:
            process = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *argv,
                    cwd=str(self.project_dir),
                    env=env,
                    stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
                    stdout=stdout,
                    stderr=asyncio.subprocess.DEVNULL,
                    # Own process group, so stop() reaches its children too
                    start_new_session=True,
                ),
                timeout=self.startup_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProcessControlError(f"{argv[0]} did not start within {self.startup_timeout}s") from e
        except OSError as e:
            raise ProcessControlError(f"Failed to start {argv[0]}: {e}") from e
        finally:
            if log_file is not None:
                log_file.close()

        if stdin_text is not None and process.stdin is not None:
            try:
                await asyncio.wait_for(self._feed(process, stdin_text), timeout=self.startup_timeout)
            except (BrokenPipeError, ConnectionResetError) as e:
                logger.warning(f"Agent (PID {process.pid}) closed stdin early: {e}")
            except asyncio.TimeoutError as e:
                logger.error(f"Agent (PID {process.pid}) did not read its prompt; killing it")
                self._signal(process.pid, signal.SIGKILL)
                await process.wait()
                raise ProcessControlError(
                    f"Agent did not read its prompt within {self.startup_timeout}s", pid=process.pid
                ) from e

        self._process = process
        self.returncode = None
        watcher = asyncio.get_running_loop().create_task(self._watch(process))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        return process

    @staticmethod
    async def _feed(process: asyncio.subprocess.Process, text: str) -> None:
        process.stdin.write(text.encode("utf-8"))
        await process.stdin.drain()
        process.stdin.close()

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        self.returncode = returncode
        current = self._process is process
        if current:
            self._process = None
        try:
            self.release(process.pid)
        except LockError as e:
            logger.warning(f"Could not release lock after PID {process.pid} exited: {e}")

        if current and self._state is not LifecycleState.STOPPING:
            if returncode in NORMAL_EXIT_CODES:
                logger.info(f"Agent (PID {process.pid}) exited with code {returncode}")
                self._set_state(LifecycleState.IDLE)
            else:
                logger.error(f"Agent (PID {process.pid}) exited with code {returncode}")
                self._set_state(LifecycleState.ERROR, f"Agent exited with code {returncode}")

        if self.on_exit is not None:
            try:
                self.on_exit(returncode)
            except Exception:
                logger.exception("on_exit callback failed")

    def _fire_on_start(self, record: LockRecord) -> None:
        if self.on_start is None:
            return
        try:
            self.on_start(record)
        except Exception:
            logger.exception("on_start callback failed")

    def _signal(self, pid: int, sig: int) -> None:
        try:
            if os.getpgid(pid) == pid:
                os.killpg(pid, sig)
            else:
                os.kill(pid, sig)
        except ProcessLookupError:
            logger.debug(f"PID {pid} already gone before {signal.Signals(sig).name}")
        except PermissionError as e:
            raise ProcessControlError(f"Not allowed to signal PID {pid}: {e}", pid=pid) from e

    async def _wait_for_exit(self, pid: int, timeout: float) -> bool:
        process = self._process
        if process is not None and process.pid == pid:
            try:
                await asyncio.wait_for(asyncio.shield(process.wait()), timeout=timeout)
                return True
            except asyncio.TimeoutError:
                return False

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while is_alive(pid):
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(0.05)
        return True
