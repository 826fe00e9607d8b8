"""
Invitation message threads
==========================

Every invitation carries a private thread between the trip's provider and
the invited requester. Only those two profiles may read, post or mark the
thread read; the invitation's status does not matter, so a thread stays
readable after the offer is accepted, declined or expired.

Unread counts are per reader: messages from the other party posted after
the reader's ``last_read_at`` marker.
"""

from __future__ import annotations

import logging
from typing import Iterable

from schoolpool.domain.entities import Actor
from schoolpool.domain.enums import SenderRole
from schoolpool.domain.errors import AuthorizationError, NotFoundError, ValidationError
from schoolpool.domain.events import EntityType, TransitionEvent
from schoolpool.infrastructure.locks import thread_key
from schoolpool.infrastructure.models import (
    InvitationMessageModel,
    InvitationModel,
    MessageReadModel,
)

from .base import Service, Transaction

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000


def sender_role(inv: InvitationModel, actor: Actor) -> SenderRole:
    """The actor's side of the thread, or ``AuthorizationError``."""
    if actor.profile_id == inv.provider_id:
        return SenderRole.PROVIDER
    if actor.profile_id == inv.requester_id:
        return SenderRole.REQUESTER
    raise AuthorizationError(
        "Only the invitation's provider or requester can use this thread",
        {"invitation_id": inv.id},
    )


class MessageService(Service):
    async def _thread(
        self, tx: Transaction, invitation_id: int, actor: Actor
    ) -> tuple[InvitationModel, SenderRole]:
        inv = await tx.invitations.get_by_id(invitation_id)
        if inv is None:
            raise NotFoundError("Invitation", invitation_id)
        return inv, sender_role(inv, actor)

    async def list_messages(
        self, invitation_id: int, actor: Actor
    ) -> list[InvitationMessageModel]:
        """Thread in posting order, oldest first."""
        async with self.uow.read() as tx:
            await self._thread(tx, invitation_id, actor)
            return await tx.messages.list_for_invitation(invitation_id)

    async def send_message(
        self, invitation_id: int, actor: Actor, body: str
    ) -> InvitationMessageModel:
        body = (body or "").strip()
        if not body:
            raise ValidationError("Message body is required", {"field": "body"})
        if len(body) > MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message must be at most {MAX_MESSAGE_LENGTH} characters",
                {"field": "body"},
            )

        async with self.uow.transaction() as tx:
            now = self.now()
            inv, role = await self._thread(tx, invitation_id, actor)
            message = await tx.messages.create(
                InvitationMessageModel(
                    invitation_id=inv.id,
                    trip_id=inv.trip_id,
                    request_id=inv.request_id,
                    sender_id=actor.profile_id,
                    sender_role=role,
                    body=body,
                    created_at=now,
                )
            )
            tx.emit(
                TransitionEvent(
                    entity_type=EntityType.INVITATION_MESSAGE,
                    entity_id=message.id,
                    status=None,
                    fields={
                        "invitation_id": inv.id,
                        "sender_id": actor.profile_id,
                        "sender_role": role,
                        "body": body,
                        "created_at": now,
                    },
                    owner_ids=(inv.provider_id, inv.requester_id),
                    trip_id=inv.trip_id,
                )
            )
        logger.info(
            "Message %d posted to invitation %d by %s",
            message.id,
            invitation_id,
            role.value,
        )
        return message

    async def mark_thread_read(
        self, invitation_id: int, actor: Actor
    ) -> MessageReadModel:
        """Move the caller's read marker to now. Never moves it backwards."""
        async with self.uow.transaction(
            thread_key(invitation_id, actor.profile_id)
        ) as tx:
            now = self.now()
            inv, _ = await self._thread(tx, invitation_id, actor)
            marker = await tx.message_reads.get(inv.id, actor.profile_id)
            if marker is None:
                marker = await tx.message_reads.create(
                    MessageReadModel(
                        invitation_id=inv.id,
                        profile_id=actor.profile_id,
                        last_read_at=now,
                    )
                )
            elif marker.last_read_at < now:
                marker.last_read_at = now
        return marker

    async def unread_counts(
        self, invitation_ids: Iterable[int], actor: Actor
    ) -> dict[int, int]:
        ids = list(dict.fromkeys(invitation_ids))
        counts: dict[int, int] = {}
        if not ids:
            return counts
        async with self.uow.read() as tx:
            for invitation_id in ids:
                inv, _ = await self._thread(tx, invitation_id, actor)
                marker = await tx.message_reads.get(inv.id, actor.profile_id)
                counts[inv.id] = await tx.messages.count_unread(
                    inv.id,
                    actor.profile_id,
                    marker.last_read_at if marker is not None else None,
                )
        return counts
