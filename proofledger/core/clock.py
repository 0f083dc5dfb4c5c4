"""
Block clock.

The ledger stamps claims with the current block number and never does
arithmetic on it. Whatever produces blocks owns the clock.
"""

from abc import ABC, abstractmethod
from threading import Lock


class BlockClock(ABC):
    """Source of the current block number. Must never go backwards."""

    @abstractmethod
    def block_number(self) -> int:
        pass


class ManualBlockClock(BlockClock):
    """
    A clock advanced explicitly by the block producer (the Runtime).
    """

    def __init__(self, start: int = 0):
        if start < 0:
            raise ValueError(f"Block number cannot be negative, got {start}")
        self._current = start
        self._lock = Lock()

    def block_number(self) -> int:
        return self._current

    def advance(self) -> int:
        """Move to the next block and return its number."""
        with self._lock:
            self._current += 1
            return self._current
