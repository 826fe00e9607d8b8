"""
Domain value objects and state-machine helpers.

Patterns used
-------------
- **State Pattern** on requests, invitations and trips: every status change
  goes through :func:`check_transition` against the tables in ``enums``.
- Progress stages form a total order
  (MATCHED < STARTED < PICKED_UP < ARRIVED) that only moves forward.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional

from .enums import CancelReasonCode, ProgressStage
from .errors import InvalidStateError


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Place:
    text: str
    location: Location


@dataclass(frozen=True)
class RosterCancellation:
    """Provider's resolution of an unmet participant at departure."""

    participant_id: int
    reason_code: CancelReasonCode
    reason_text: Optional[str] = None


@dataclass(frozen=True)
class Actor:
    """Caller identity as resolved by the upstream identity provider."""

    profile_id: str
    is_verified_provider: bool = False
    is_admin: bool = False


# ── State machine helpers ─────────────────────────────────────────────


def check_transition(
    entity: str,
    current: enum.Enum,
    new: enum.Enum,
    table: Mapping[enum.Enum, set],
) -> None:
    """Raise ``InvalidStateError`` unless *current* -> *new* is legal."""
    allowed = table.get(current, set())
    if new not in allowed:
        raise InvalidStateError(
            f"Cannot transition {entity} from {current.value} to {new.value}",
            {"entity": entity, "from": current.value, "to": new.value},
        )


def advance_stage(
    current: Optional[ProgressStage], new: ProgressStage
) -> ProgressStage:
    """Return *new* if it is strictly ahead of *current*, else raise."""
    if current is not None and new.rank <= current.rank:
        raise InvalidStateError(
            f"Progress cannot move from {current.value} to {new.value}",
            {"from": current.value, "to": new.value},
        )
    return new


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
