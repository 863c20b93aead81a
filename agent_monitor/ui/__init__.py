"""UI components for the agent monitor."""

from .widgets import (
    DetailPanel,
    ErrorItem,
    MessageItem,
    RunSeparator,
    SubagentItem,
    build_sidebar_text,
    build_stats_text,
)
from .styles import APP_CSS

__all__ = [
    "DetailPanel",
    "ErrorItem",
    "MessageItem",
    "RunSeparator",
    "SubagentItem",
    "build_sidebar_text",
    "build_stats_text",
    "APP_CSS",
]
