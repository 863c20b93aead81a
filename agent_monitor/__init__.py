"""Agent Monitor - live view and control of a coding agent session."""

__version__ = "0.1.0"
