"""Blockchain transaction and script-history index over an ordered key-value store."""

__version__ = "0.4.1"