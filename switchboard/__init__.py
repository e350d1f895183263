"""Switchboard: model routing and tool-loop orchestration for chat turns."""

__version__ = "0.1.0"
