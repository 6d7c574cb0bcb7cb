"""Agent task orchestration and dispatch."""

__version__ = "0.1.0"
