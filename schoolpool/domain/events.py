"""
Transition events emitted after a unit of work commits.

Events are full snapshots of the fields that changed, never deltas, so a
subscriber that sees the same event twice ends up in the same state.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


class EntityType(str, enum.Enum):
    PICKUP_REQUEST = "pickup_request"
    INVITATION = "invitation"
    TRIP = "trip"
    TRIP_PARTICIPANT = "trip_participant"
    TRIP_ARRIVAL = "trip_arrival"
    TRIP_REVIEW = "trip_review"
    INVITATION_MESSAGE = "invitation_message"


@dataclass(frozen=True)
class TransitionEvent:
    entity_type: EntityType
    entity_id: int
    status: Optional[str]
    fields: dict[str, Any] = field(default_factory=dict)
    owner_ids: tuple[str, ...] = ()
    trip_id: Optional[int] = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "status": self.status,
            "fields": {k: _jsonable(v) for k, v in self.fields.items()},
            "owner_ids": list(self.owner_ids),
            "trip_id": self.trip_id,
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value
