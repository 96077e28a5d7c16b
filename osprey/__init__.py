"""Persistent key-value server, client and tools, with write-ahead logging and snapshots."""

__version__ = "0.1.0"

__all__ = ["__version__"]