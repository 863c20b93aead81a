"""Layered settings for the monitor.

Settings are read from several JSON files and merged, highest precedence
first:

1. CLI arguments
2. Local overrides (``<project>/.agent-monitor/settings.local.json``)
3. Project settings (``<project>/.agent-monitor/settings.json``)
4. Global user settings (``~/.config/agent-monitor/settings.json``)
5. Built-in defaults
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

from .errors import ConfigValidationError

logger = logging.getLogger(__name__)

DATA_DIR_NAME = ".agent-monitor"
SETTINGS_FILE = "settings.json"
LOCAL_SETTINGS_FILE = "settings.local.json"
TABS = ("messages", "subagents", "errors", "stats")


def global_settings_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME")
    config_home = Path(base) if base else Path.home() / ".config"
    return config_home / "agent-monitor" / SETTINGS_FILE


@dataclass
class AgentConfig:
    """How to launch the agent."""

    command: list[str] = field(default_factory=list)
    resume_command: list[str] = field(default_factory=lambda: [
        "claude", "--resume", "{session_id}", "-p", "--output-format=stream-json", "--verbose",
    ])
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class DisplayConfig:
    show_sidebar: bool = True
    default_tab: str = field(default="messages", metadata={"choices": TABS})


@dataclass
class ProcessConfig:
    """Files and timings for the agent process. Paths are relative to the project root."""

    log_path: str = f"{DATA_DIR_NAME}/claude_output.jsonl"
    lock_path: str = f"{DATA_DIR_NAME}/claude.lock"
    feedback_path: str = f"{DATA_DIR_NAME}/feedback.md"
    resume_template_path: str = f"{DATA_DIR_NAME}/resume.md"
    startup_timeout: float = field(default=2.0, metadata={"min": 0.1})
    shutdown_timeout: float = field(default=5.0, metadata={"min": 0.0})
    poll_interval: float = field(default=0.5, metadata={"min": 0.01})
    debounce: float = field(default=0.15, metadata={"min": 0.0})
    lock_check_interval: float = field(default=5.0, metadata={"min": 0.1})
    require_timestamp: bool = True


@dataclass
class PathsConfig:
    archive_dir: str = f"{DATA_DIR_NAME}/archive"


@dataclass
class RotationConfig:
    max_log_mb: float = field(default=50, metadata={"min": 0.001})
    retention_days: float = field(default=7, metadata={"min": 0.0})
    compress: bool = True

    @property
    def max_bytes(self) -> int:
        return int(self.max_log_mb * 1024 * 1024)


@dataclass
class ResolvedProcessPaths:
    log_path: Path
    lock_path: Path
    feedback_path: Path
    resume_template_path: Path
    startup_timeout: float
    shutdown_timeout: float
    poll_interval: float
    debounce: float
    lock_check_interval: float
    require_timestamp: bool


@dataclass
class MonitorConfig:
    project_root: Path
    agent: AgentConfig = field(default_factory=AgentConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    process_settings: ProcessConfig = field(default_factory=ProcessConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    rotation: RotationConfig = field(default_factory=RotationConfig)

    @property
    def data_dir(self) -> Path:
        return self.project_root / DATA_DIR_NAME

    @property
    def archive_dir(self) -> Path:
        return self.resolve(self.paths.archive_dir)

    @property
    def process(self) -> ResolvedProcessPaths:
        """Process settings with paths resolved against the project root."""
        p = self.process_settings
        return ResolvedProcessPaths(
            log_path=self.resolve(p.log_path),
            lock_path=self.resolve(p.lock_path),
            feedback_path=self.resolve(p.feedback_path),
            resume_template_path=self.resolve(p.resume_template_path),
            startup_timeout=p.startup_timeout,
            shutdown_timeout=p.shutdown_timeout,
            poll_interval=p.poll_interval,
            debounce=p.debounce,
            lock_check_interval=p.lock_check_interval,
            require_timestamp=p.require_timestamp,
        )

    def resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else self.project_root / path


_SECTIONS = {
    "agent": AgentConfig,
    "display": DisplayConfig,
    "process": ProcessConfig,
    "paths": PathsConfig,
    "rotation": RotationConfig,
}


def find_project_root(start: Optional[Path] = None) -> Path:
    """Nearest directory at or above ``start`` holding a data directory."""
    current = Path(start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / DATA_DIR_NAME).is_dir():
            return candidate
    return current


def read_settings_file(path: Path) -> dict:
    """Read one settings layer; unreadable or invalid files count as empty."""
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring settings file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring settings file {path}: top level is not an object")
        return {}
    return data


def merge_settings(base: dict, override: dict) -> dict:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_settings(merged[key], value)
        else:
            merged[key] = value
    return merged


def _check_value(section: str, f, value: Any, default: Any) -> Any:
    name = f"{section}.{f.name}"
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigValidationError(name, value, "expected true or false")
    elif isinstance(default, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigValidationError(name, value, "expected a number")
        minimum = f.metadata.get("min")
        if minimum is not None and value < minimum:
            raise ConfigValidationError(name, value, f"must be at least {minimum}")
        value = float(value) if isinstance(default, float) else value
    elif isinstance(default, str):
        if not isinstance(value, str):
            raise ConfigValidationError(name, value, "expected a string")
        choices = f.metadata.get("choices")
        if choices and value not in choices:
            raise ConfigValidationError(name, value, f"must be one of {', '.join(choices)}")
    elif isinstance(default, list):
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigValidationError(name, value, "expected a list of strings")
    elif isinstance(default, dict):
        if not isinstance(value, dict) or not all(isinstance(v, str) for v in value.values()):
            raise ConfigValidationError(name, value, "expected an object of strings")
    return value


def _build_section(section: str, cls, data: Any):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigValidationError(section, data, "expected an object")
    defaults = cls()
    values = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        values[f.name] = _check_value(section, f, data[f.name], getattr(defaults, f.name))
    return cls(**values)


def config_from_dict(project_root: Path, data: dict) -> MonitorConfig:
    """Validate merged settings into a MonitorConfig."""
    sections = {name: _build_section(name, cls, data.get(name)) for name, cls in _SECTIONS.items()}
    return MonitorConfig(
        project_root=project_root,
        agent=sections["agent"],
        display=sections["display"],
        process_settings=sections["process"],
        paths=sections["paths"],
        rotation=sections["rotation"],
    )


def load_config(
    project_root: Optional[Path] = None,
    cli_overrides: Optional[dict] = None,
    global_path: Optional[Path] = None,
) -> MonitorConfig:
    """Load and validate all settings layers for a project.

    Raises ConfigValidationError for a bad value or a missing project
    directory; those are the only fatal startup errors.
    """
    root = Path(project_root).expanduser().resolve() if project_root else find_project_root()
    if not root.is_dir():
        raise ConfigValidationError("project_root", str(root), "not a directory")

    merged: dict = {}
    for layer in (
        global_path or global_settings_path(),
        root / DATA_DIR_NAME / SETTINGS_FILE,
        root / DATA_DIR_NAME / LOCAL_SETTINGS_FILE,
    ):
        merged = merge_settings(merged, read_settings_file(layer))
    if cli_overrides:
        merged = merge_settings(merged, cli_overrides)

    config = config_from_dict(root, merged)
    logger.debug(f"Loaded config for {root}")
    return config
