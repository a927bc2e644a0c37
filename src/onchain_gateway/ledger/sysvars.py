# Ledger Sysvars: clock and rent services handed to programs
#
# Clock: programs see a unix timestamp that never moves backwards. If the
# wall clock steps back, the last returned value is repeated (stalled).
# Rent: minimum balance an account must hold to persist on the ledger,
# as a function of its data size.

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

# Rent parameters (lamports per byte-year, two-year exemption window)
LAMPORTS_PER_BYTE_YEAR = 3480
EXEMPTION_THRESHOLD_YEARS = 2
ACCOUNT_STORAGE_OVERHEAD = 128


@dataclass(frozen=True)
class Clock:
    """Snapshot of ledger time handed to one transaction."""

    slot: int
    unix_timestamp: int


class ClockService:
    """Monotonic-or-stalled source of ledger time.

    Args:
        time_source: Callable returning seconds since the epoch.
            Defaults to time.time.
    """

    def __init__(self, time_source: Optional[Callable[[], float]] = None):
        self._time_source = time_source or time.time
        self._lock = threading.Lock()
        self._last = 0
        self._slot = 0

    def now(self) -> Clock:
        with self._lock:
            self._last = max(self._last, int(self._time_source()))
            self._slot += 1
            return Clock(slot=self._slot, unix_timestamp=self._last)


class ManualClock(ClockService):
    """Clock driven by explicit set/advance calls (tests, replays)."""

    def __init__(self, start: int = 0):
        self._current = start
        super().__init__(time_source=lambda: self._current)

    def set(self, unix_timestamp: int) -> None:
        self._current = unix_timestamp

    def advance(self, seconds: int) -> None:
        self._current += seconds


@dataclass(frozen=True)
class Rent:
    lamports_per_byte_year: int = LAMPORTS_PER_BYTE_YEAR
    exemption_threshold: int = EXEMPTION_THRESHOLD_YEARS

    def minimum_balance(self, data_len: int) -> int:
        """Lamports needed for an account of ``data_len`` bytes to persist."""
        return (
            (ACCOUNT_STORAGE_OVERHEAD + data_len)
            * self.lamports_per_byte_year
            * self.exemption_threshold
        )
