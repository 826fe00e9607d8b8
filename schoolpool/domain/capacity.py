"""
Capacity ledger for a single trip.

The ledger is never persisted: it is rebuilt from the trip's capacity and
its ACTIVE participant count inside the same locked transaction that is
about to change the roster, so the count can never drift from the rows.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import CapacityExceededError


@dataclass
class CapacityLedger:
    trip_id: int
    capacity: int
    accepted: int = 0

    @property
    def spare(self) -> int:
        return max(0, self.capacity - self.accepted)

    def has_spare(self) -> bool:
        return self.accepted < self.capacity

    def reserve(self) -> None:
        """Take one seat or raise ``CapacityExceededError``."""
        if not self.has_spare():
            raise CapacityExceededError(
                f"Trip {self.trip_id} is full ({self.accepted}/{self.capacity})",
                {"trip_id": self.trip_id, "capacity": self.capacity},
            )
        self.accepted += 1
