"""Iteration control for long-running coding-agent loops."""

__version__ = "0.1.0"
