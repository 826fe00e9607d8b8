"""Post-trip reviews: one rating per completed request, never a state change."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import IntegrityError

from schoolpool.domain.entities import Actor
from schoolpool.domain.enums import RequestStatus
from schoolpool.domain.errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from schoolpool.domain.events import EntityType, TransitionEvent
from schoolpool.infrastructure.locks import request_key
from schoolpool.infrastructure.models import TripModel, TripReviewModel

from .base import Service

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 1000


@dataclass
class ReviewSummary:
    trip_id: int
    reviews: list[TripReviewModel] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.reviews)

    @property
    def average_rating(self) -> Optional[float]:
        if not self.reviews:
            return None
        return round(sum(r.rating for r in self.reviews) / len(self.reviews), 2)


class ReviewService(Service):
    async def submit_review(
        self,
        request_id: int,
        requester: Actor,
        rating: int,
        comment: Optional[str] = None,
    ) -> TripReviewModel:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("rating must be an integer from 1 to 5", {"rating": rating})
        if comment is not None:
            comment = comment.strip() or None
        if comment is not None and len(comment) > MAX_COMMENT_LENGTH:
            raise ValidationError(
                f"comment must be at most {MAX_COMMENT_LENGTH} characters",
                {"field": "comment"},
            )

        async with self.uow.transaction(request_key(request_id)) as tx:
            now = self.now()
            req = await tx.requests.get_by_id(request_id, for_update=True)
            if req is None:
                raise NotFoundError("PickupRequest", request_id)
            if req.requester_id != requester.profile_id:
                raise AuthorizationError("Only the requester can review this ride")
            if req.status != RequestStatus.COMPLETED:
                raise InvalidStateError(
                    "Only completed rides can be reviewed",
                    {"status": req.status.value},
                )
            if await tx.reviews.get_for_request(req.id) is not None:
                raise PolicyViolationError(
                    "duplicate_review", "This ride was already reviewed"
                )
            part = await tx.participants.get_active_for_request(req.id)
            if part is None:
                raise NotFoundError("TripParticipant", req.id)
            trip = await tx.trips.get_by_id(part.trip_id)

            try:
                review = await tx.reviews.create(
                    TripReviewModel(
                        trip_id=trip.id,
                        request_id=req.id,
                        reviewer_id=requester.profile_id,
                        provider_id=trip.provider_id,
                        rating=rating,
                        comment=comment,
                        created_at=now,
                    )
                )
            except IntegrityError as exc:
                raise PolicyViolationError(
                    "duplicate_review", "This ride was already reviewed"
                ) from exc
            tx.emit(
                TransitionEvent(
                    entity_type=EntityType.TRIP_REVIEW,
                    entity_id=review.id,
                    status=None,
                    fields={"request_id": req.id, "rating": rating},
                    owner_ids=(trip.provider_id, requester.profile_id),
                    trip_id=trip.id,
                )
            )
        logger.info("Review %d submitted for request %d", review.id, request_id)
        return review

    async def list_trip_reviews(self, trip_id: int) -> ReviewSummary:
        await self.uow.peek(TripModel, trip_id, "Trip")
        async with self.uow.read() as tx:
            reviews = await tx.reviews.list_for_trip(trip_id)
        return ReviewSummary(trip_id=trip_id, reviews=reviews)
