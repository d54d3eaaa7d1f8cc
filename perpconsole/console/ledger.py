"""
History ledger: bounded, append-only record of command outcomes.
"""
from collections import deque
from typing import Deque, Iterator, List

from perpconsole import constants
from perpconsole.domain.models import CommandResult


class HistoryLedger:
    """
    Fixed-capacity ring buffer of CommandResult.

    Appending to a full ledger drops the oldest entry. Only the REPL and the
    batch runner append; everything else reads.
    """

    def __init__(self, capacity: int = constants.LEDGER_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._entries: Deque[CommandResult] = deque(maxlen=capacity)

    def append(self, result: CommandResult) -> None:
        self._entries.append(result)

    def recent(self, k: int) -> List[CommandResult]:
        """Last k entries, oldest first."""
        if k <= 0:
            return []
        entries = list(self._entries)
        return entries[-k:]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CommandResult]:
        return iter(list(self._entries))
