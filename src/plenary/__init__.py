"""Streaming chat client for a legislative research assistant."""

__version__ = "0.1.0"
