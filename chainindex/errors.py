"""Exception types raised by the indexer."""

from __future__ import annotations


class ElectrsError(Exception):
    """Base class for every error raised by the package."""


class ConnectionFailure(ElectrsError):
    """A connection to a remote peer or daemon failed."""

    def __init__(self, msg: str) -> None:
        super().__init__(f"Connection error: {msg}")
        self.msg = msg


class Interrupted(ElectrsError):
    """The process was interrupted by an external signal."""

    def __init__(self, sig: int) -> None:
        super().__init__(f"Interrupted by signal {sig}")
        self.sig = sig


class TooPopular(ElectrsError):
    """A query touched more history entries than allowed."""

    def __init__(self) -> None:
        super().__init__("Too many history entries")