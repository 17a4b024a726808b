"""
Global Sequencer

Issues one integer per ledger entry across every organization.
Values are unique and strictly increasing; a value taken by a
transaction that later aborts is simply never used (gaps are expected).

The PostgreSQL store draws from the `ledger_seq` database sequence
instead, which has the same contract.
"""

from abc import ABC, abstractmethod
from threading import Lock


class Sequencer(ABC):
    """Contract for the global sequence source."""

    @abstractmethod
    def next(self) -> int:
        """Reserve and return the next sequence value."""
        pass

    @abstractmethod
    def current(self) -> int:
        """Highest value handed out so far (start - 1 if none)."""
        pass


class InMemorySequencer(Sequencer):
    """Lock-protected counter. Not shared between processes."""

    def __init__(self, start: int = 1):
        if start < 1:
            raise ValueError("Sequence must start at 1 or above")
        self._last = start - 1
        self._lock = Lock()

    def next(self) -> int:
        with self._lock:
            self._last += 1
            return self._last

    def current(self) -> int:
        with self._lock:
            return self._last
